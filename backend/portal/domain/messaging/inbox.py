"""Inbox projector: the rules that keep per-user inbox entries in step with messages.

Every write path (REST, Socket.IO, workers) derives its inbox changes from the
planners below, and the repositories apply the resulting mutations inside the
same transaction as the change that caused them. Each mutation is a narrow
per-row operation (insert-if-missing, increment, set), never a rewrite of the
whole inbox.

Semantics of the pair kept per (user, conversation):

- `last_read_message_id` only moves when the user reads (MarkRead) or sends, and
  only forward: `last_read_seq` records its position, and a read bound at or
  below it changes nothing.
- `unread_count` counts messages from other senders after that pointer.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timezone
from typing import Iterable, List, Optional, Sequence

from portal.domain.messaging.models import InboxItem

ENSURE = "ensure"
INCREMENT = "increment"
RESET = "reset"
READ_THROUGH = "read_through"
REMOVE = "remove"
CLEAR = "clear"


@dataclass(slots=True, frozen=True)
class InboxMutation:
	user_id: str
	op: str
	message_id: Optional[str] = None
	# RESET and READ_THROUGH: sequence number of the newest message covered
	seq: Optional[int] = None


def _unique(user_ids: Iterable[str]) -> List[str]:
	seen: set[str] = set()
	ordered: List[str] = []
	for user_id in user_ids:
		if user_id not in seen:
			seen.add(user_id)
			ordered.append(user_id)
	return ordered


def on_conversation_created(participant_ids: Sequence[str]) -> List[InboxMutation]:
	return [InboxMutation(user_id, ENSURE) for user_id in _unique(participant_ids)]


def on_members_added(user_ids: Sequence[str]) -> List[InboxMutation]:
	return [InboxMutation(user_id, ENSURE) for user_id in _unique(user_ids)]


def on_member_removed(user_id: str) -> List[InboxMutation]:
	return [InboxMutation(user_id, REMOVE)]


def on_message_sent(
	participant_ids: Sequence[str],
	sender_id: str,
	message_id: str,
	seq: int,
) -> List[InboxMutation]:
	"""Recipients gain one unread; the sender has read up to their own message.

	Entries missing for any participant (freshly added, or hidden from the
	recent list) are inserted first so the increment lands on a row.
	"""
	participants = _unique(participant_ids)
	mutations = [InboxMutation(user_id, ENSURE) for user_id in participants]
	for user_id in participants:
		if user_id == sender_id:
			mutations.append(InboxMutation(user_id, RESET, message_id=message_id, seq=seq))
		else:
			mutations.append(InboxMutation(user_id, INCREMENT))
	return mutations


def on_read(user_id: str, message_id: Optional[str], seq: Optional[int]) -> List[InboxMutation]:
	return [InboxMutation(user_id, READ_THROUGH, message_id=message_id, seq=seq)]


def on_history_cleared(participant_ids: Sequence[str]) -> List[InboxMutation]:
	return [InboxMutation(user_id, CLEAR) for user_id in _unique(participant_ids)]


def _activity_key(item: InboxItem) -> float:
	activity = item.conversation.last_activity
	if activity.tzinfo is None:
		activity = activity.replace(tzinfo=timezone.utc)
	return activity.timestamp()


def sort_items(items: Iterable[InboxItem]) -> List[InboxItem]:
	"""Pinned first, then most recent activity, then conversation id for a stable order."""
	ordered = sorted(items, key=lambda item: item.conversation.id)
	ordered.sort(key=_activity_key, reverse=True)
	ordered.sort(key=lambda item: not item.entry.is_pinned)
	return ordered


