"""Delivery fan-out over Socket.IO rooms.

Every connected channel sits in `user:{id}` and in one `conversation:{id}` room per
active membership. Events go to rooms only; users without a live channel simply
miss them. Emit failures are logged and counted, never raised to the caller.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Optional, Sequence

import socketio

from portal.domain.messaging import models, schemas
from portal.obs import logging as obs_logging
from portal.obs import metrics as obs_metrics

_namespace: socketio.AsyncNamespace | None = None
_LOG = obs_logging.get_logger("portal.messaging.fanout")


def conversation_room(conversation_id: str) -> str:
	return f"conversation:{conversation_id}"


def user_room(user_id: str) -> str:
	return f"user:{user_id}"


def set_namespace(namespace: socketio.AsyncNamespace | None) -> None:
	global _namespace
	_namespace = namespace


def get_namespace() -> socketio.AsyncNamespace | None:
	return _namespace


async def _emit(
	event: str,
	payload: Any,
	*,
	room: str | List[str] | None,
	skip_sid: Optional[str] = None,
) -> bool:
	if _namespace is None:
		return False
	try:
		obs_metrics.socket_event(_namespace.namespace, event)
		await _namespace.emit(event, payload, room=room, skip_sid=skip_sid)
	except Exception:
		_LOG.exception("messaging.fanout_failed", extra={"event": event, "room": room})
		obs_metrics.inc_fanout_failure(event)
		return False
	return True


async def to_conversation(
	conversation_id: str,
	event: str,
	payload: Any,
	*,
	skip_sid: Optional[str] = None,
) -> bool:
	return await _emit(event, payload, room=conversation_room(conversation_id), skip_sid=skip_sid)


async def to_user(user_id: str, event: str, payload: Any) -> bool:
	return await _emit(event, payload, room=user_room(user_id))


async def to_users(user_ids: Iterable[str], event: str, payload: Any) -> bool:
	rooms = sorted({user_room(user_id) for user_id in user_ids})
	if not rooms:
		return False
	return await _emit(event, payload, room=rooms)


async def to_rooms(rooms: Sequence[str], event: str, payload: Any) -> bool:
	unique = sorted(set(rooms))
	if not unique:
		return False
	return await _emit(event, payload, room=unique)


async def broadcast(event: str, payload: Any) -> bool:
	return await _emit(event, payload, room=None)


async def inbox_updated(entries: Iterable[models.InboxEntry]) -> None:
	"""Push each user's fresh badge state to their personal room."""
	for entry in entries:
		await to_user(entry.user_id, "inboxUpdated", schemas.InboxEntryDTO.from_model(entry).wire())


def _user_sids(user_id: str) -> List[str]:
	if _namespace is None:
		return []
	manager = _namespace.server.manager
	return [sid for sid, _eio_sid in manager.get_participants(_namespace.namespace, user_room(user_id))]


async def subscribe(user_ids: Iterable[str], conversation_id: str) -> None:
	"""Put every live channel of the given users into the conversation room."""
	if _namespace is None:
		return
	room = conversation_room(conversation_id)
	for user_id in user_ids:
		try:
			for sid in _user_sids(user_id):
				await _namespace.enter_room(sid, room)
		except Exception:
			_LOG.exception("messaging.room_join_failed", extra={"room": room, "user_id": user_id})
			obs_metrics.inc_fanout_failure("enter_room")


async def unsubscribe(user_ids: Iterable[str], conversation_id: str) -> None:
	if _namespace is None:
		return
	room = conversation_room(conversation_id)
	for user_id in user_ids:
		try:
			for sid in _user_sids(user_id):
				await _namespace.leave_room(sid, room)
		except Exception:
			_LOG.exception("messaging.room_leave_failed", extra={"room": room, "user_id": user_id})
			obs_metrics.inc_fanout_failure("leave_room")


async def close_conversation(conversation_id: str) -> None:
	if _namespace is None:
		return
	room = conversation_room(conversation_id)
	try:
		await _namespace.close_room(room)
	except Exception:
		_LOG.exception("messaging.room_close_failed", extra={"room": room})
		obs_metrics.inc_fanout_failure("close_room")
