"""In-process messaging store used by tests and local runs without Postgres.

All state sits behind one asyncio.Lock, so every method is atomic with respect
to the others, the same guarantee the Postgres repository gets from its
transactions.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from portal.domain.messaging import inbox, models
from portal.domain.messaging.exceptions import NotFoundError


def _copy(value):
	return copy.deepcopy(value)


class MemoryRepository:
	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._conversations: Dict[str, models.Conversation] = {}
		self._direct_index: Dict[str, str] = {}
		self._messages: Dict[str, models.Message] = {}
		self._timeline: Dict[str, List[str]] = {}
		self._inbox: Dict[Tuple[str, str], models.InboxEntry] = {}
		self._notifications: Dict[str, models.Notification] = {}

	async def reset(self) -> None:
		async with self._lock:
			self._conversations.clear()
			self._direct_index.clear()
			self._messages.clear()
			self._timeline.clear()
			self._inbox.clear()
			self._notifications.clear()

	# --- Inbox projection -------------------------------------------------

	def _apply_inbox(self, conversation_id: str, mutations: Sequence[inbox.InboxMutation], now: datetime) -> None:
		for mutation in mutations:
			key = (mutation.user_id, conversation_id)
			entry = self._inbox.get(key)
			if mutation.op == inbox.ENSURE:
				if entry is None:
					self._inbox[key] = models.InboxEntry(
						user_id=mutation.user_id,
						conversation_id=conversation_id,
						updated_at=now,
					)
				continue
			if mutation.op == inbox.REMOVE:
				self._inbox.pop(key, None)
				continue
			if entry is None:
				continue
			if mutation.op == inbox.INCREMENT:
				entry.unread_count += 1
			elif mutation.op == inbox.RESET:
				entry.unread_count = 0
				entry.last_read_message_id = mutation.message_id
				entry.last_read_seq = mutation.seq
			elif mutation.op == inbox.READ_THROUGH:
				if entry.last_read_seq is not None and (mutation.seq or 0) <= entry.last_read_seq:
					continue
				entry.last_read_message_id = mutation.message_id
				entry.last_read_seq = mutation.seq
				entry.unread_count = self._unread_after(conversation_id, mutation.user_id, mutation.seq)
			elif mutation.op == inbox.CLEAR:
				entry.unread_count = 0
				entry.last_read_message_id = None
				entry.last_read_seq = None
			entry.updated_at = now

	def _unread_after(self, conversation_id: str, user_id: str, seq: Optional[int]) -> int:
		if seq is None:
			return 0
		count = 0
		for message_id in self._timeline.get(conversation_id, []):
			message = self._messages[message_id]
			if message.seq > seq and message.sender_id != user_id:
				count += 1
		return count

	# --- Conversations ----------------------------------------------------

	async def create_conversation(
		self,
		conversation: models.Conversation,
		*,
		pair_key: Optional[str] = None,
	) -> Tuple[models.Conversation, bool]:
		async with self._lock:
			if pair_key is not None:
				existing_id = self._direct_index.get(pair_key)
				existing = self._conversations.get(existing_id) if existing_id else None
				if existing is not None and existing.is_active:
					return _copy(existing), False
				self._direct_index[pair_key] = conversation.id
			stored = _copy(conversation)
			self._conversations[stored.id] = stored
			self._timeline[stored.id] = []
			self._apply_inbox(
				stored.id,
				inbox.on_conversation_created(stored.participant_ids()),
				conversation.created_at,
			)
			return _copy(stored), True

	async def get_conversation(self, conversation_id: str) -> Optional[models.Conversation]:
		async with self._lock:
			conversation = self._conversations.get(conversation_id)
			return _copy(conversation) if conversation else None

	async def list_conversations(self, user_id: str) -> List[models.Conversation]:
		async with self._lock:
			found = [
				_copy(conversation)
				for conversation in self._conversations.values()
				if conversation.is_active and conversation.is_participant(user_id)
			]
		found.sort(key=lambda conversation: conversation.id, reverse=True)
		found.sort(key=lambda conversation: conversation.last_activity, reverse=True)
		return found

	async def add_members(
		self,
		conversation_id: str,
		participants: Sequence[models.Participant],
	) -> List[str]:
		async with self._lock:
			conversation = self._require_conversation(conversation_id)
			added: List[str] = []
			for participant in participants:
				if conversation.is_participant(participant.user_id):
					continue
				conversation.participants.append(_copy(participant))
				added.append(participant.user_id)
			if added:
				now = participants[0].joined_at
				conversation.updated_at = now
				self._apply_inbox(conversation_id, inbox.on_members_added(added), now)
			return added

	async def remove_member(self, conversation_id: str, user_id: str) -> bool:
		async with self._lock:
			conversation = self._require_conversation(conversation_id)
			before = len(conversation.participants)
			conversation.participants = [p for p in conversation.participants if p.user_id != user_id]
			if len(conversation.participants) == before:
				return False
			self._apply_inbox(conversation_id, inbox.on_member_removed(user_id), conversation.last_activity)
			return True

	async def update_member_role(self, conversation_id: str, user_id: str, role: str) -> models.Conversation:
		async with self._lock:
			conversation = self._require_conversation(conversation_id)
			participant = conversation.participant(user_id)
			if participant is None:
				raise NotFoundError("member_not_found")
			participant.role = role
			return _copy(conversation)

	async def transfer_ownership(self, conversation_id: str, from_user: str, to_user: str) -> models.Conversation:
		async with self._lock:
			conversation = self._require_conversation(conversation_id)
			current = conversation.participant(from_user)
			target = conversation.participant(to_user)
			if current is None or target is None:
				raise NotFoundError("member_not_found")
			current.role = models.ADMIN
			target.role = models.OWNER
			return _copy(conversation)

	async def update_conversation(
		self,
		conversation_id: str,
		changes: Dict[str, Optional[str]],
		now: datetime,
	) -> models.Conversation:
		async with self._lock:
			conversation = self._require_conversation(conversation_id)
			for field_name, value in changes.items():
				setattr(conversation, field_name, value)
			conversation.updated_at = now
			return _copy(conversation)

	async def purge_conversation(self, conversation_id: str) -> List[str]:
		async with self._lock:
			conversation = self._conversations.pop(conversation_id, None)
			if conversation is None:
				return []
			for message_id in self._timeline.pop(conversation_id, []):
				self._messages.pop(message_id, None)
			for key in [key for key in self._inbox if key[1] == conversation_id]:
				del self._inbox[key]
			for pair_key, mapped in list(self._direct_index.items()):
				if mapped == conversation_id:
					del self._direct_index[pair_key]
			return conversation.participant_ids()

	async def clear_history(self, conversation_id: str, now: datetime) -> int:
		async with self._lock:
			conversation = self._require_conversation(conversation_id)
			message_ids = self._timeline.get(conversation_id, [])
			for message_id in message_ids:
				self._messages.pop(message_id, None)
			deleted = len(message_ids)
			self._timeline[conversation_id] = []
			conversation.last_message_id = None
			conversation.last_activity = now
			self._apply_inbox(conversation_id, inbox.on_history_cleared(conversation.participant_ids()), now)
			return deleted

	async def touch_last_seen(self, conversation_id: str, user_id: str, now: datetime) -> None:
		async with self._lock:
			conversation = self._conversations.get(conversation_id)
			participant = conversation.participant(user_id) if conversation else None
			if participant is not None:
				participant.last_seen = now

	def _require_conversation(self, conversation_id: str) -> models.Conversation:
		conversation = self._conversations.get(conversation_id)
		if conversation is None or not conversation.is_active:
			raise NotFoundError("conversation_not_found")
		return conversation

	# --- Messages ---------------------------------------------------------

	async def append_message(self, draft: models.MessageDraft, now: datetime) -> models.Message:
		async with self._lock:
			conversation = self._require_conversation(draft.conversation_id)
			conversation.total_messages += 1
			message = models.Message(
				id=draft.id,
				conversation_id=draft.conversation_id,
				seq=conversation.total_messages,
				sender_id=draft.sender_id,
				content=draft.content,
				created_at=now,
				attachments=tuple(draft.attachments),
				reply_to=draft.reply_to,
				mentions=tuple(draft.mentions),
				forward_info=draft.forward_info,
				updated_at=now,
			)
			self._messages[message.id] = message
			self._timeline.setdefault(conversation.id, []).append(message.id)
			conversation.last_message_id = message.id
			conversation.last_activity = now
			self._apply_inbox(
				conversation.id,
				inbox.on_message_sent(conversation.participant_ids(), draft.sender_id, message.id, message.seq),
				now,
			)
			return _copy(message)

	async def get_message(self, message_id: str) -> Optional[models.Message]:
		async with self._lock:
			message = self._messages.get(message_id)
			return _copy(message) if message else None

	async def list_messages(
		self,
		conversation_id: str,
		*,
		offset: int,
		limit: int,
		sort_by: str = "created_at",
		descending: bool = True,
	) -> models.MessagePage:
		async with self._lock:
			messages = [self._messages[mid] for mid in self._timeline.get(conversation_id, [])]
			if sort_by == "created_at":
				messages.sort(key=lambda m: (m.created_at, m.seq), reverse=descending)
			else:
				messages.sort(key=lambda m: m.seq, reverse=descending)
			return models.MessagePage(
				items=[_copy(m) for m in messages[offset : offset + limit]],
				total=len(messages),
			)

	async def messages_around(
		self,
		conversation_id: str,
		seq: int,
		*,
		before: int,
		after: int,
	) -> Tuple[List[models.Message], List[models.Message]]:
		async with self._lock:
			messages = [self._messages[mid] for mid in self._timeline.get(conversation_id, [])]
			older = [m for m in messages if m.seq < seq]
			newer = [m for m in messages if m.seq > seq]
			head = older[-before:] if before > 0 else []
			tail = newer[:after] if after > 0 else []
			return [_copy(m) for m in head], [_copy(m) for m in tail]

	async def edit_message(self, message_id: str, content: str, now: datetime) -> models.Message:
		async with self._lock:
			message = self._require_message(message_id)
			message.edit_history.append(models.EditRecord(content=message.content, edited_at=now))
			message.content = content
			message.is_edited = True
			message.updated_at = now
			return _copy(message)

	async def retract_message(self, message_id: str, now: datetime) -> models.Message:
		async with self._lock:
			message = self._require_message(message_id)
			message.status = models.STATUS_DELETED
			message.content = None
			message.attachments = ()
			message.deleted_at = now
			message.updated_at = now
			return _copy(message)

	async def mark_read(
		self,
		conversation_id: str,
		user_id: str,
		up_to_seq: Optional[int],
		now: datetime,
	) -> models.ReadResult:
		async with self._lock:
			self._require_conversation(conversation_id)
			timeline = [self._messages[mid] for mid in self._timeline.get(conversation_id, [])]
			bound = up_to_seq if up_to_seq is not None else (timeline[-1].seq if timeline else 0)
			newly_read: List[str] = []
			pointer: Optional[str] = None
			for message in timeline:
				if message.seq > bound:
					break
				pointer = message.id
				if message.sender_id == user_id or message.is_read_by(user_id):
					continue
				message.read_by.append(models.ReadReceipt(user_id=user_id, read_at=now))
				if message.status in (models.STATUS_SENT, models.STATUS_DELIVERED):
					message.status = models.STATUS_READ
				newly_read.append(message.id)
			self._apply_inbox(conversation_id, inbox.on_read(user_id, pointer, bound), now)
			entry = self._inbox.get((user_id, conversation_id))
			return models.ReadResult(
				conversation_id=conversation_id,
				user_id=user_id,
				message_ids=newly_read,
				last_read_message_id=entry.last_read_message_id if entry else pointer,
				unread_count=entry.unread_count if entry else 0,
				read_at=now,
			)

	async def mark_delivered(self, message_id: str) -> bool:
		async with self._lock:
			message = self._messages.get(message_id)
			if message is None or message.status != models.STATUS_SENT:
				return False
			message.status = models.STATUS_DELIVERED
			return True

	async def toggle_reaction(self, message_id: str, emoji: str, user_id: str) -> models.Message:
		async with self._lock:
			message = self._require_message(message_id)
			users = message.reactions.setdefault(emoji, [])
			if user_id in users:
				users.remove(user_id)
				if not users:
					del message.reactions[emoji]
			else:
				users.append(user_id)
			return _copy(message)

	async def set_pinned(self, message_id: str, pinned: bool, now: datetime) -> models.Message:
		async with self._lock:
			message = self._require_message(message_id)
			message.is_pinned = pinned
			message.updated_at = now
			return _copy(message)

	async def list_pinned(self, conversation_id: str) -> List[models.Message]:
		async with self._lock:
			return [
				_copy(self._messages[mid])
				for mid in self._timeline.get(conversation_id, [])
				if self._messages[mid].is_pinned
			]

	def _require_message(self, message_id: str) -> models.Message:
		message = self._messages.get(message_id)
		if message is None:
			raise NotFoundError("message_not_found")
		return message

	# --- Inbox ------------------------------------------------------------

	async def list_inbox(self, user_id: str) -> List[models.InboxItem]:
		async with self._lock:
			items: List[models.InboxItem] = []
			for (owner, conversation_id), entry in self._inbox.items():
				if owner != user_id:
					continue
				conversation = self._conversations.get(conversation_id)
				if conversation is None or not conversation.is_active:
					continue
				last_message = self._messages.get(conversation.last_message_id) if conversation.last_message_id else None
				items.append(
					models.InboxItem(
						entry=_copy(entry),
						conversation=_copy(conversation),
						last_message=_copy(last_message) if last_message else None,
					)
				)
			return items

	async def get_inbox_entry(self, user_id: str, conversation_id: str) -> Optional[models.InboxEntry]:
		async with self._lock:
			entry = self._inbox.get((user_id, conversation_id))
			return _copy(entry) if entry else None

	async def update_inbox_settings(
		self,
		user_id: str,
		conversation_id: str,
		changes: Dict[str, object],
		now: datetime,
	) -> Optional[models.InboxEntry]:
		async with self._lock:
			entry = self._inbox.get((user_id, conversation_id))
			if entry is None:
				return None
			for field_name, value in changes.items():
				setattr(entry, field_name, value)
			entry.updated_at = now
			return _copy(entry)

	async def remove_inbox_entry(self, user_id: str, conversation_id: str) -> bool:
		async with self._lock:
			return self._inbox.pop((user_id, conversation_id), None) is not None

	async def inbox_entries(self, conversation_id: str) -> List[models.InboxEntry]:
		async with self._lock:
			return [_copy(entry) for (_, cid), entry in self._inbox.items() if cid == conversation_id]

	# --- Notifications ----------------------------------------------------

	async def insert_notification(self, notification: models.Notification) -> models.Notification:
		async with self._lock:
			self._notifications[notification.id] = _copy(notification)
			return _copy(notification)

	async def list_notifications(
		self,
		user_id: str,
		*,
		limit: int,
		unread_only: bool = False,
	) -> List[models.Notification]:
		async with self._lock:
			found = [
				n
				for n in self._notifications.values()
				if n.user_id == user_id and (not unread_only or not n.is_read)
			]
		found.sort(key=lambda n: (n.created_at, n.id), reverse=True)
		return [_copy(n) for n in found[:limit]]

	async def mark_notification_read(
		self,
		user_id: str,
		notification_id: str,
		now: datetime,
	) -> Optional[models.Notification]:
		async with self._lock:
			notification = self._notifications.get(notification_id)
			if notification is None or notification.user_id != user_id:
				return None
			if not notification.is_read:
				notification.is_read = True
				notification.read_at = now
			return _copy(notification)

	async def count_unread_notifications(self, user_id: str) -> int:
		async with self._lock:
			return sum(1 for n in self._notifications.values() if n.user_id == user_id and not n.is_read)
