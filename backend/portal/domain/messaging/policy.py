"""Policy helpers for conversations and messages.

Checks raise typed errors at the point of detection, before any state changes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

from portal.domain.messaging import models
from portal.domain.messaging.exceptions import (
	ForbiddenError,
	InvalidOperation,
	NotFoundError,
	UnauthorizedError,
	ValidationError,
)
from portal.infra.redis import redis_client
from portal.settings import settings


def require_actor(actor_id: Optional[str]) -> str:
	actor = str(actor_id or "").strip()
	if not actor:
		raise UnauthorizedError("actor_missing")
	return actor


def clean_id(value: object, *, field: str = "id") -> str:
	text = str(value or "").strip() if isinstance(value, (str, int)) else ""
	if not text or len(text) > 128 or any(ch.isspace() for ch in text):
		raise ValidationError(f"invalid_{field}")
	return text


def clean_ids(values: Optional[Iterable[object]], *, field: str = "user_ids") -> List[str]:
	"""Validate ids, preserving first-seen order and dropping repeats."""
	if values is None or isinstance(values, (str, bytes)):
		raise ValidationError(f"invalid_{field}")
	seen: set[str] = set()
	cleaned: List[str] = []
	for raw in values:
		user_id = clean_id(raw, field=field)
		if user_id not in seen:
			seen.add(user_id)
			cleaned.append(user_id)
	return cleaned


def ensure_active(conversation: Optional[models.Conversation]) -> models.Conversation:
	if conversation is None or not conversation.is_active:
		raise NotFoundError("conversation_not_found")
	return conversation


def ensure_participant(conversation: models.Conversation, user_id: str) -> models.Participant:
	participant = conversation.participant(user_id)
	if participant is None:
		raise ForbiddenError("not_participant")
	return participant


def ensure_visible(conversation: Optional[models.Conversation], user_id: str) -> models.Conversation:
	"""Non-participants get NotFound so conversation ids do not leak."""
	conversation = ensure_active(conversation)
	if not conversation.is_participant(user_id):
		raise NotFoundError("conversation_not_found")
	return conversation


def ensure_group(conversation: models.Conversation) -> None:
	if not conversation.is_group:
		raise InvalidOperation("group_only")


def ensure_manager(conversation: models.Conversation, user_id: str) -> models.Participant:
	participant = ensure_participant(conversation, user_id)
	if not participant.is_admin:
		raise ForbiddenError("admin_required")
	return participant


def ensure_owner(conversation: models.Conversation, user_id: str) -> models.Participant:
	participant = ensure_participant(conversation, user_id)
	if participant.role != models.OWNER:
		raise ForbiddenError("owner_required")
	return participant


def ensure_can_delete(conversation: models.Conversation, user_id: str) -> None:
	if conversation.is_group:
		ensure_owner(conversation, user_id)
	else:
		ensure_participant(conversation, user_id)


def ensure_can_clear(conversation: models.Conversation, user_id: str) -> None:
	if conversation.is_group:
		ensure_manager(conversation, user_id)
	else:
		ensure_participant(conversation, user_id)


def ensure_can_pin(conversation: models.Conversation, user_id: str) -> None:
	if conversation.is_group:
		ensure_manager(conversation, user_id)
	else:
		ensure_participant(conversation, user_id)


def ensure_can_remove(conversation: models.Conversation, actor_id: str, member_id: str) -> models.Participant:
	actor = ensure_manager(conversation, actor_id)
	target = conversation.participant(member_id)
	if target is None:
		raise NotFoundError("member_not_found")
	if target.role == models.OWNER:
		raise ForbiddenError("cannot_remove_owner")
	if member_id == actor_id:
		raise InvalidOperation("use_leave")
	if target.role == models.ADMIN and actor.role != models.OWNER:
		raise ForbiddenError("cannot_remove_admin")
	return target


def ensure_sender(message: Optional[models.Message], user_id: str) -> models.Message:
	if message is None:
		raise NotFoundError("message_not_found")
	if message.sender_id != user_id:
		raise ForbiddenError("not_sender")
	return message


def ensure_capacity(conversation: models.Conversation, adding: int) -> None:
	if len(conversation.participants) + adding > settings.group_max_participants:
		raise InvalidOperation("group_full")


def normalize_content(content: Optional[str], *, required: bool) -> Optional[str]:
	if content is None:
		if required:
			raise ValidationError("content_required")
		return None
	if not isinstance(content, str):
		raise ValidationError("invalid_content")
	text = content.strip()
	if not text:
		if required:
			raise ValidationError("content_required")
		return None
	if len(text) > settings.message_max_length:
		raise ValidationError("content_too_long")
	return text


def normalize_attachments(raw: Optional[Sequence[object]]) -> tuple[models.Attachment, ...]:
	if not raw:
		return ()
	attachments: List[models.Attachment] = []
	for item in raw:
		if isinstance(item, models.Attachment):
			attachment = item
		elif isinstance(item, dict):
			attachment = models.Attachment.from_dict(item)
		else:
			raise ValidationError("invalid_attachment")
		if attachment.type not in models.ATTACHMENT_TYPES:
			raise ValidationError("invalid_attachment_type")
		if not attachment.url:
			raise ValidationError("attachment_url_required")
		attachments.append(attachment)
	return tuple(attachments)


def normalize_emoji(emoji: object) -> str:
	text = str(emoji or "").strip() if isinstance(emoji, str) else ""
	if not text or len(text) > 32:
		raise ValidationError("invalid_emoji")
	return text


def normalize_muted_until(value: Optional[datetime]) -> Optional[datetime]:
	if value is None:
		return None
	if value.tzinfo is None:
		value = value.replace(tzinfo=timezone.utc)
	return value


async def _touch_limit(key: str, ttl_seconds: int) -> int:
	async with redis_client.pipeline(transaction=True) as pipe:
		pipe.incr(key)
		pipe.expire(key, ttl_seconds)
		count, _ = await pipe.execute()
	return int(count)


async def allow_typing(user_id: str) -> bool:
	"""Per-user, per-minute allowance for typing indicators."""
	bucket = datetime.now(timezone.utc).strftime("%Y%m%d%H%M")
	key = f"rl:messaging:typing:{user_id}:{bucket}"
	return await _touch_limit(key, 120) <= settings.typing_limit_per_minute
