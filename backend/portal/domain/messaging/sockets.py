"""Socket.IO namespace for the messaging transport.

Each connection joins its user room plus one room per active conversation, then
every client event is dispatched to the same services the REST routes use.
Failures are reported to the invoking channel only, as an `error` event and as
the acknowledgement value.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Optional, Type, TypeVar

import socketio
from pydantic import BaseModel
from pydantic import ValidationError as PayloadError

from portal.domain.messaging import fanout, schemas
from portal.domain.messaging.conversations import ConversationService, conversation_service
from portal.domain.messaging.exceptions import InternalError, MessagingError, UnauthorizedError, ValidationError
from portal.domain.messaging.messages import MessageService, message_service
from portal.domain.messaging.presence import PresenceTracker, presence_tracker
from portal.infra.auth import AuthenticatedUser, authenticate_socket
from portal.obs import logging as obs_logging
from portal.obs import metrics as obs_metrics

_LOG = obs_logging.get_logger("portal.messaging.sockets")

ModelT = TypeVar("ModelT", bound=BaseModel)

# client event name -> handler method
_EVENT_HANDLERS = {
	"sendMessage": "handle_send_message",
	"editMessage": "handle_edit_message",
	"deleteMessage": "handle_delete_message",
	"markMessageRead": "handle_mark_read",
	"startTyping": "handle_start_typing",
	"stopTyping": "handle_stop_typing",
	"joinConversation": "handle_join_conversation",
	"leaveConversation": "handle_leave_conversation",
	"createConversation": "handle_create_conversation",
	"addGroupMembers": "handle_add_group_members",
	"removeGroupMember": "handle_remove_group_member",
	"leaveGroup": "handle_leave_group",
	"deleteConversation": "handle_delete_conversation",
	"clearConversation": "handle_clear_conversation",
	"updateConversation": "handle_update_conversation",
	"getConversations": "handle_get_conversations",
	"getConversationMessages": "handle_get_conversation_messages",
	"getMessageContext": "handle_get_message_context",
	"getRecentConversations": "handle_get_recent_conversations",
	"updateRecentConversation": "handle_update_recent_conversation",
	"removeFromRecentConversations": "handle_remove_from_recent",
	"toggleReaction": "handle_toggle_reaction",
	"togglePin": "handle_toggle_pin",
	"setStatus": "handle_set_status",
	"heartbeat": "handle_heartbeat",
}


def _body(payload: Any) -> Dict[str, Any]:
	if payload is None:
		return {}
	if not isinstance(payload, dict):
		raise ValidationError("invalid_payload")
	return payload


def _parse(model: Type[ModelT], payload: Dict[str, Any]) -> ModelT:
	try:
		return model.model_validate(payload)
	except PayloadError as exc:
		first = exc.errors()[0] if exc.errors() else {}
		field = ".".join(str(part) for part in first.get("loc", ())) or "payload"
		raise ValidationError(f"invalid_{field}") from None


def _required(payload: Dict[str, Any], key: str) -> str:
	value = payload.get(key)
	if value is None or (isinstance(value, str) and not value.strip()):
		raise ValidationError(f"{key}_required")
	return str(value)


def _optional_int(payload: Dict[str, Any], key: str) -> Optional[int]:
	value = payload.get(key)
	if value is None:
		return None
	try:
		return int(value)
	except (TypeError, ValueError):
		raise ValidationError(f"invalid_{key}") from None


class MessagingNamespace(socketio.AsyncNamespace):
	"""Namespace carrying conversation, message, typing and presence events."""

	def __init__(
		self,
		namespace: str = "/",
		*,
		conversations: ConversationService | None = None,
		messages: MessageService | None = None,
		presence: PresenceTracker | None = None,
	) -> None:
		super().__init__(namespace)
		self._sessions: Dict[str, AuthenticatedUser] = {}
		self.conversations = conversations or conversation_service
		self.messages = messages or message_service
		self.presence = presence or presence_tracker

	async def trigger_event(self, event: str, *args):
		handler_name = _EVENT_HANDLERS.get(event)
		if handler_name is None:
			return await super().trigger_event(event, *args)
		sid = args[0]
		payload = args[1] if len(args) > 1 else None
		handler: Callable[[AuthenticatedUser, str, Dict[str, Any]], Awaitable[Any]] = getattr(self, handler_name)
		return await self._dispatch(event, sid, payload, handler)

	def user_for(self, sid: str) -> Optional[AuthenticatedUser]:
		return self._sessions.get(sid)

	# --- Lifecycle --------------------------------------------------------

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		obs_metrics.socket_connected(self.namespace)
		try:
			user = authenticate_socket(environ, auth)
		except MessagingError:
			obs_metrics.socket_disconnected(self.namespace)
			raise ConnectionRefusedError("unauthorized") from None
		self._sessions[sid] = user
		rooms = [fanout.user_room(user.id)]
		rooms.extend(fanout.conversation_room(cid) for cid in await self.conversations.membership_ids(user.id))
		for room in rooms:
			try:
				await self.enter_room(sid, room)
			except ValueError:
				_LOG.debug("socket.room_attach_failed", extra={"room": room}, exc_info=True)
		try:
			await self.presence.connect(user.id, sid)
		except Exception:
			_LOG.exception("presence.connect_failed", extra={"user_id": user.id})
		_LOG.info("socket.connected", extra={"user_id": user.id, "rooms": len(rooms)})

	async def on_disconnect(self, sid: str, reason: Any = None) -> None:
		obs_metrics.socket_disconnected(self.namespace)
		user = self._sessions.pop(sid, None)
		if user is None:
			return
		try:
			await self.presence.disconnect(user.id, sid)
		except Exception:
			_LOG.exception("presence.disconnect_failed", extra={"user_id": user.id})

	# --- Dispatch ---------------------------------------------------------

	async def _dispatch(
		self,
		event: str,
		sid: str,
		payload: Any,
		handler: Callable[[AuthenticatedUser, str, Dict[str, Any]], Awaitable[Any]],
	) -> Dict[str, Any]:
		obs_metrics.socket_event(self.namespace, event)
		user = self._sessions.get(sid)
		try:
			if user is None:
				raise UnauthorizedError("unauthenticated")
			body = _body(payload)
			conversation_id = body.get("conversationId")
			token = obs_logging.bind_context(
				route=f"socket:{event}",
				user_id=user.id,
				conversation_id=str(conversation_id) if conversation_id else None,
			)
			try:
				result = await handler(user, sid, body)
			finally:
				obs_logging.reset_context(token)
		except MessagingError as exc:
			return await self._report(sid, event, exc)
		except Exception:
			_LOG.exception("socket.handler_failed", extra={"event": event})
			return await self._report(sid, event, InternalError())
		ack: Dict[str, Any] = {"success": True}
		if isinstance(result, dict):
			ack.update(result)
		return ack

	async def _report(self, sid: str, event: str, exc: MessagingError) -> Dict[str, Any]:
		obs_metrics.socket_error(event, exc.code)
		body = {"event": event, "message": exc.message, "code": exc.code}
		await self.emit("error", body, room=sid)
		return exc.to_payload()

	async def _reply(self, sid: str, event: str, body: Dict[str, Any]) -> Dict[str, Any]:
		await self.emit(event, body, room=sid)
		return body

	# --- Messages ---------------------------------------------------------

	async def handle_send_message(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		conversation_id = _required(payload, "conversationId")
		request = _parse(schemas.SendMessageRequest, payload)
		result = await self.messages.send(user.id, conversation_id, request, transport="socket", skip_sid=sid)
		body = result.wire()
		if payload.get("tempId") is not None:
			body["tempId"] = payload["tempId"]
		return await self._reply(sid, "messageSent", body)

	async def handle_edit_message(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		result = await self.messages.edit(user.id, _required(payload, "messageId"), payload.get("content"))
		return result.wire()

	async def handle_delete_message(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		result = await self.messages.retract(user.id, _required(payload, "messageId"))
		return result.wire()

	async def handle_mark_read(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		result = await self.messages.mark_read(
			user.id,
			_required(payload, "conversationId"),
			payload.get("messageId"),
			skip_sid=sid,
		)
		return result.wire()

	async def handle_start_typing(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		sent = await self.messages.typing(user.id, _required(payload, "conversationId"), active=True, skip_sid=sid)
		return {"delivered": sent}

	async def handle_stop_typing(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		sent = await self.messages.typing(user.id, _required(payload, "conversationId"), active=False, skip_sid=sid)
		return {"delivered": sent}

	async def handle_toggle_reaction(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		result = await self.messages.toggle_reaction(user.id, _required(payload, "messageId"), payload.get("emoji"))
		return result.wire()

	async def handle_toggle_pin(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		result = await self.messages.toggle_pin(user.id, _required(payload, "messageId"))
		return result.wire()

	async def handle_get_conversation_messages(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		conversation_id = _required(payload, "conversationId")
		result = await self.messages.history(
			user.id,
			conversation_id,
			page=_optional_int(payload, "page"),
			limit=_optional_int(payload, "limit"),
			sort_by=str(payload.get("sortBy") or "createdAt"),
			sort_order=str(payload.get("sortOrder") or "desc"),
		)
		body = result.wire()
		body["conversationId"] = conversation_id
		return await self._reply(sid, "conversationMessages", body)

	async def handle_get_message_context(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		result = await self.messages.context(
			user.id,
			_required(payload, "messageId"),
			conversation_id=payload.get("conversationId"),
			context_size=_optional_int(payload, "contextSize"),
		)
		return await self._reply(sid, "messageContext", result.wire())

	# --- Rooms ------------------------------------------------------------

	async def handle_join_conversation(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		conversation = await self.conversations.require_membership(user.id, _required(payload, "conversationId"))
		await self.enter_room(sid, fanout.conversation_room(conversation.id))
		return {"conversationId": conversation.id}

	async def handle_leave_conversation(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		conversation_id = _required(payload, "conversationId")
		await self.leave_room(sid, fanout.conversation_room(conversation_id))
		return {"conversationId": conversation_id}

	# --- Conversations ----------------------------------------------------

	async def handle_create_conversation(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		request = _parse(schemas.ConversationCreateRequest, payload)
		result = await self.conversations.create(user.id, request)
		return result.wire()

	async def handle_add_group_members(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		request = _parse(schemas.AddMembersRequest, payload)
		result = await self.conversations.add_members(user.id, _required(payload, "conversationId"), request.user_ids)
		return result.wire()

	async def handle_remove_group_member(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		member_id = payload.get("memberId") or payload.get("userId")
		if not member_id:
			raise ValidationError("memberId_required")
		result = await self.conversations.remove_member(user.id, _required(payload, "conversationId"), str(member_id))
		return result.wire()

	async def handle_leave_group(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		result = await self.conversations.leave(user.id, _required(payload, "conversationId"))
		return result.wire()

	async def handle_delete_conversation(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		result = await self.conversations.delete(user.id, _required(payload, "conversationId"))
		return result.wire()

	async def handle_clear_conversation(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		result = await self.conversations.clear(user.id, _required(payload, "conversationId"))
		return result.wire()

	async def handle_update_conversation(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		conversation_id = _required(payload, "conversationId")
		request = _parse(schemas.ConversationUpdateRequest, {k: v for k, v in payload.items() if k != "conversationId"})
		result = await self.conversations.update(user.id, conversation_id, request)
		return result.wire()

	async def handle_get_conversations(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		result = await self.conversations.list(user.id)
		return await self._reply(sid, "conversations", result.wire())

	# --- Inbox ------------------------------------------------------------

	async def handle_get_recent_conversations(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		result = await self.conversations.recent(user.id)
		return await self._reply(sid, "recentConversations", result.wire())

	async def handle_update_recent_conversation(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		conversation_id = _required(payload, "conversationId")
		request = _parse(schemas.InboxSettingsRequest, {k: v for k, v in payload.items() if k != "conversationId"})
		result = await self.conversations.update_recent(user.id, conversation_id, request)
		return result.wire()

	async def handle_remove_from_recent(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		result = await self.conversations.remove_from_recent(user.id, _required(payload, "conversationId"))
		return result.wire()

	# --- Presence ---------------------------------------------------------

	async def handle_set_status(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		request = _parse(schemas.PresenceStatusRequest, payload)
		presence = await self.presence.set_status(user.id, request.status)
		return {"presence": schemas.PresenceDTO.from_model(presence).wire()}

	async def handle_heartbeat(self, user: AuthenticatedUser, sid: str, payload: Dict[str, Any]):
		return {"bound": await self.presence.heartbeat(user.id, sid)}


def set_namespace(namespace: MessagingNamespace | None) -> None:
	fanout.set_namespace(namespace)
