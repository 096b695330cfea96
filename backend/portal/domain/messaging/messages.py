"""Message send, edit, retract, read tracking and history.

`MessageService.send` is the single send path for REST, Socket.IO and forwarding.
The store applies the message, the conversation counters and the inbox projection
in one unit; delivery and notification work starts only once that has returned.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

import ulid

from portal.api.pagination import page_metadata, page_request
from portal.domain.messaging import fanout, models, policy, schemas
from portal.domain.messaging.exceptions import InvalidOperation, NotFoundError, ValidationError
from portal.domain.messaging.notifications import NotificationGateway, notification_gateway
from portal.domain.messaging.presence import PresenceTracker, presence_tracker
from portal.domain.messaging.repo import get_repository
from portal.obs import logging as obs_logging
from portal.obs import metrics as obs_metrics
from portal.settings import settings

_LOG = obs_logging.get_logger("portal.messaging.messages")

_SORT_FIELDS = {"createdAt": "created_at", "created_at": "created_at", "seq": "seq"}


def _now() -> datetime:
	return datetime.now(timezone.utc)


def _message_payload(message: models.Message) -> dict:
	return schemas.MessageDTO.from_model(message).wire()


class MessageService:
	def __init__(
		self,
		*,
		notifications: NotificationGateway | None = None,
		presence: PresenceTracker | None = None,
	) -> None:
		self._notifications = notifications or notification_gateway
		self._presence = presence or presence_tracker

	@property
	def repo(self):
		return get_repository()

	async def _visible_conversation(self, actor: str, conversation_id: str) -> models.Conversation:
		conversation_id = policy.clean_id(conversation_id, field="conversation_id")
		return policy.ensure_visible(await self.repo.get_conversation(conversation_id), actor)

	async def _message_in_view(self, actor: str, message_id: str) -> tuple[models.Message, models.Conversation]:
		message_id = policy.clean_id(message_id, field="message_id")
		message = await self.repo.get_message(message_id)
		if message is None:
			raise NotFoundError("message_not_found")
		conversation = policy.ensure_visible(await self.repo.get_conversation(message.conversation_id), actor)
		return message, conversation

	# --- Send -------------------------------------------------------------

	async def send(
		self,
		actor_id: str,
		conversation_id: str,
		payload: schemas.SendMessageRequest,
		*,
		transport: str = "rest",
		skip_sid: Optional[str] = None,
		forward_info: Optional[models.ForwardInfo] = None,
	) -> schemas.MessageEnvelope:
		actor = policy.require_actor(actor_id)
		conversation_id = policy.clean_id(conversation_id, field="conversation_id")
		conversation = policy.ensure_active(await self.repo.get_conversation(conversation_id))
		policy.ensure_participant(conversation, actor)
		attachments = policy.normalize_attachments([a.to_model() for a in payload.attachments])
		content = policy.normalize_content(payload.content, required=not attachments)
		reply_to = await self._validate_reply(conversation.id, payload.reply_to)
		mentions = tuple(uid for uid in policy.clean_ids(payload.mentions, field="mentions") if conversation.is_participant(uid))
		draft = models.MessageDraft(
			id=str(ulid.new()),
			conversation_id=conversation.id,
			sender_id=actor,
			content=content,
			attachments=attachments,
			reply_to=reply_to,
			mentions=mentions,
			forward_info=forward_info,
		)
		message = await self.repo.append_message(draft, _now())
		obs_metrics.inc_message_sent(transport)
		message = await self._after_send(conversation, message, skip_sid=skip_sid)
		return schemas.MessageEnvelope(message=schemas.MessageDTO.from_model(message))

	async def _validate_reply(self, conversation_id: str, reply_to: Optional[str]) -> Optional[str]:
		if reply_to is None:
			return None
		reply_to = policy.clean_id(reply_to, field="reply_to")
		target = await self.repo.get_message(reply_to)
		if target is None or target.conversation_id != conversation_id:
			raise ValidationError("invalid_reply_to")
		return reply_to

	async def _after_send(
		self,
		conversation: models.Conversation,
		message: models.Message,
		*,
		skip_sid: Optional[str],
	) -> models.Message:
		try:
			delivered = await fanout.to_conversation(
				conversation.id,
				"newMessage",
				_message_payload(message),
				skip_sid=skip_sid,
			)
			recipients = [uid for uid in conversation.participant_ids() if uid != message.sender_id]
			if delivered and await self._presence.online_among(recipients):
				if await self.repo.mark_delivered(message.id):
					message.status = models.STATUS_DELIVERED
			await fanout.inbox_updated(await self.repo.inbox_entries(conversation.id))
		except Exception:
			_LOG.exception("messaging.post_send_failed", extra={"message_id": message.id})
			obs_metrics.inc_fanout_failure("newMessage")
		await self._notifications.message_sent(message)
		return message

	async def forward(self, actor_id: str, message_id: str, target_conversation_id: str) -> schemas.MessageEnvelope:
		actor = policy.require_actor(actor_id)
		original, source = await self._message_in_view(actor, message_id)
		if original.is_retracted:
			raise InvalidOperation("message_deleted")
		# forwarding a forward keeps pointing at the first original
		origin = original.forward_info
		info = models.ForwardInfo(
			original_message_id=origin.original_message_id if origin else original.id,
			original_conversation_id=origin.original_conversation_id if origin else source.id,
			forwarded_by=actor,
			forwarded_at=_now(),
		)
		payload = schemas.SendMessageRequest(
			content=original.content,
			attachments=[schemas.AttachmentIn(**a.to_dict()) for a in original.attachments],
		)
		return await self.send(actor, target_conversation_id, payload, transport="forward", forward_info=info)

	# --- Edit / retract ---------------------------------------------------

	async def edit(self, actor_id: str, message_id: str, content: Optional[str]) -> schemas.MessageEnvelope:
		actor = policy.require_actor(actor_id)
		message_id = policy.clean_id(message_id, field="message_id")
		message = policy.ensure_sender(await self.repo.get_message(message_id), actor)
		conversation = policy.ensure_active(await self.repo.get_conversation(message.conversation_id))
		policy.ensure_participant(conversation, actor)
		if message.is_retracted:
			raise InvalidOperation("message_deleted")
		text = policy.normalize_content(content, required=True)
		updated = await self.repo.edit_message(message.id, text, _now())
		obs_metrics.inc_message_edited()
		await fanout.to_conversation(conversation.id, "messageEdited", _message_payload(updated))
		return schemas.MessageEnvelope(message=schemas.MessageDTO.from_model(updated))

	async def retract(self, actor_id: str, message_id: str) -> schemas.MessageEnvelope:
		"""Soft delete: the row stays, its content and attachments are cleared."""
		actor = policy.require_actor(actor_id)
		message_id = policy.clean_id(message_id, field="message_id")
		message = policy.ensure_sender(await self.repo.get_message(message_id), actor)
		conversation = policy.ensure_active(await self.repo.get_conversation(message.conversation_id))
		policy.ensure_participant(conversation, actor)
		if message.is_retracted:
			return schemas.MessageEnvelope(message=schemas.MessageDTO.from_model(message))
		updated = await self.repo.retract_message(message.id, _now())
		obs_metrics.inc_message_retracted()
		await fanout.to_conversation(
			conversation.id,
			"messageDeleted",
			{"messageId": updated.id, "conversationId": conversation.id, "deletedBy": actor},
		)
		return schemas.MessageEnvelope(message=schemas.MessageDTO.from_model(updated))

	# --- Read tracking ----------------------------------------------------

	async def mark_read(
		self,
		actor_id: str,
		conversation_id: str,
		up_to_message_id: Optional[str] = None,
		*,
		skip_sid: Optional[str] = None,
	) -> schemas.ReadResponse:
		actor = policy.require_actor(actor_id)
		conversation = await self._visible_conversation(actor, conversation_id)
		bound: Optional[int] = None
		if up_to_message_id is not None:
			target = await self.repo.get_message(policy.clean_id(up_to_message_id, field="message_id"))
			if target is None or target.conversation_id != conversation.id:
				raise NotFoundError("message_not_found")
			bound = target.seq
		result = await self.repo.mark_read(conversation.id, actor, bound, _now())
		obs_metrics.inc_read_mark()
		if result.message_ids:
			await fanout.to_conversation(
				conversation.id,
				"messageRead",
				{
					"conversationId": conversation.id,
					"userId": actor,
					"messageIds": result.message_ids,
					"lastReadMessageId": result.last_read_message_id,
					"readAt": result.read_at.isoformat(),
				},
				skip_sid=skip_sid,
			)
		await fanout.to_user(
			actor,
			"inboxUpdated",
			{
				"conversationId": conversation.id,
				"unreadCount": result.unread_count,
				"lastReadMessageId": result.last_read_message_id,
			},
		)
		return schemas.ReadResponse(
			conversation_id=conversation.id,
			message_ids=result.message_ids,
			last_read_message_id=result.last_read_message_id,
			unread_count=result.unread_count,
		)

	# --- History ----------------------------------------------------------

	async def history(
		self,
		actor_id: str,
		conversation_id: str,
		*,
		page: Optional[int] = None,
		limit: Optional[int] = None,
		sort_by: str = "createdAt",
		sort_order: str = "desc",
	) -> schemas.MessageListResponse:
		actor = policy.require_actor(actor_id)
		conversation = await self._visible_conversation(actor, conversation_id)
		request = page_request(page, limit)
		field = _SORT_FIELDS.get(sort_by)
		if field is None:
			raise ValidationError("invalid_sort_by")
		order = str(sort_order or "").lower()
		if order not in ("asc", "desc"):
			raise ValidationError("invalid_sort_order")
		result = await self.repo.list_messages(
			conversation.id,
			offset=request.offset,
			limit=request.limit,
			sort_by=field,
			descending=order == "desc",
		)
		await self.repo.touch_last_seen(conversation.id, actor, _now())
		return schemas.MessageListResponse(
			messages=[schemas.MessageDTO.from_model(m) for m in result.items],
			pagination=schemas.PaginationDTO(**page_metadata(request, result.total)),
		)

	async def context(
		self,
		actor_id: str,
		message_id: str,
		*,
		conversation_id: Optional[str] = None,
		context_size: Optional[int] = None,
	) -> schemas.MessageContextResponse:
		"""The target message with up to half the window on each side, oldest first."""
		actor = policy.require_actor(actor_id)
		target, conversation = await self._message_in_view(actor, message_id)
		if conversation_id is not None and policy.clean_id(conversation_id, field="conversation_id") != conversation.id:
			raise NotFoundError("message_not_found")
		size = settings.message_context_default_size if context_size is None else context_size
		if not isinstance(size, int) or size < 0 or size > settings.messages_max_page_size:
			raise ValidationError("invalid_context_size")
		half = size // 2
		older, newer = await self.repo.messages_around(conversation.id, target.seq, before=half, after=half)
		window: List[models.Message] = [*older, target, *newer]
		return schemas.MessageContextResponse(
			conversation_id=conversation.id,
			target_message_id=target.id,
			messages=[schemas.MessageDTO.from_model(m) for m in window],
		)

	# --- Reactions / pins -------------------------------------------------

	async def toggle_reaction(self, actor_id: str, message_id: str, emoji: str) -> schemas.MessageEnvelope:
		actor = policy.require_actor(actor_id)
		message, conversation = await self._message_in_view(actor, message_id)
		if message.is_retracted:
			raise InvalidOperation("message_deleted")
		updated = await self.repo.toggle_reaction(message.id, policy.normalize_emoji(emoji), actor)
		dto = schemas.MessageDTO.from_model(updated)
		await fanout.to_conversation(
			conversation.id,
			"messageReaction",
			{
				"messageId": updated.id,
				"conversationId": conversation.id,
				"userId": actor,
				"reactions": [reaction.wire() for reaction in dto.reactions],
			},
		)
		return schemas.MessageEnvelope(message=dto)

	async def toggle_pin(self, actor_id: str, message_id: str) -> schemas.MessageEnvelope:
		actor = policy.require_actor(actor_id)
		message, conversation = await self._message_in_view(actor, message_id)
		policy.ensure_can_pin(conversation, actor)
		if message.is_retracted:
			raise InvalidOperation("message_deleted")
		updated = await self.repo.set_pinned(message.id, not message.is_pinned, _now())
		await fanout.to_conversation(
			conversation.id,
			"messagePinned",
			{
				"messageId": updated.id,
				"conversationId": conversation.id,
				"isPinned": updated.is_pinned,
				"pinnedBy": actor,
			},
		)
		return schemas.MessageEnvelope(message=schemas.MessageDTO.from_model(updated))

	async def list_pinned(self, actor_id: str, conversation_id: str) -> schemas.PinnedMessagesResponse:
		actor = policy.require_actor(actor_id)
		conversation = await self._visible_conversation(actor, conversation_id)
		pinned = await self.repo.list_pinned(conversation.id)
		return schemas.PinnedMessagesResponse(messages=[schemas.MessageDTO.from_model(m) for m in pinned])

	# --- Typing -----------------------------------------------------------

	async def typing(self, actor_id: str, conversation_id: str, *, active: bool, skip_sid: Optional[str] = None) -> bool:
		"""Relay a typing indicator; returns False when rate limited."""
		actor = policy.require_actor(actor_id)
		conversation = await self._visible_conversation(actor, conversation_id)
		if active and not await policy.allow_typing(actor):
			return False
		event = "userTyping" if active else "userStoppedTyping"
		return await fanout.to_conversation(
			conversation.id,
			event,
			{"conversationId": conversation.id, "userId": actor},
			skip_sid=skip_sid,
		)


message_service = MessageService()
