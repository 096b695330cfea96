from datetime import datetime, timedelta, timezone

from portal.domain.messaging import inbox, models


def _conversation(conversation_id: str, activity: datetime) -> models.Conversation:
	return models.Conversation(
		id=conversation_id,
		type=models.DIRECT,
		created_by="alice",
		participants=[],
		created_at=activity,
		last_activity=activity,
	)


def _item(conversation_id: str, activity: datetime, *, pinned: bool = False) -> models.InboxItem:
	entry = models.InboxEntry(user_id="alice", conversation_id=conversation_id, is_pinned=pinned)
	return models.InboxItem(entry=entry, conversation=_conversation(conversation_id, activity))


def test_message_sent_resets_sender_and_increments_others():
	mutations = inbox.on_message_sent(["alice", "bob", "carol"], "bob", "m1", 1)
	ensured = [m.user_id for m in mutations if m.op == inbox.ENSURE]
	assert ensured == ["alice", "bob", "carol"]
	by_user = {m.user_id: m for m in mutations if m.op != inbox.ENSURE}
	assert by_user["bob"].op == inbox.RESET
	assert (by_user["bob"].message_id, by_user["bob"].seq) == ("m1", 1)
	assert by_user["alice"].op == inbox.INCREMENT
	assert by_user["carol"].op == inbox.INCREMENT


def test_ensure_precedes_every_counter_change():
	mutations = inbox.on_message_sent(["alice", "bob"], "alice", "m1", 1)
	first_counter = next(i for i, m in enumerate(mutations) if m.op != inbox.ENSURE)
	assert all(m.op == inbox.ENSURE for m in mutations[:first_counter])
	assert all(m.op != inbox.ENSURE for m in mutations[first_counter:])


def test_planners_drop_duplicate_users():
	assert [m.user_id for m in inbox.on_conversation_created(["a", "b", "a"])] == ["a", "b"]
	assert [m.user_id for m in inbox.on_members_added(["c", "c"])] == ["c"]
	assert [m.user_id for m in inbox.on_history_cleared(["a", "a", "b"])] == ["a", "b"]


def test_read_and_remove_mutations():
	(read,) = inbox.on_read("alice", "m3", 3)
	assert read.op == inbox.READ_THROUGH
	assert (read.message_id, read.seq) == ("m3", 3)
	(removed,) = inbox.on_member_removed("bob")
	assert removed.op == inbox.REMOVE


def test_sort_items_pinned_first_then_recent_activity():
	now = datetime.now(timezone.utc)
	items = [
		_item("c-old", now - timedelta(hours=2)),
		_item("c-new", now),
		_item("c-pinned", now - timedelta(days=3), pinned=True),
		_item("c-mid", now - timedelta(hours=1)),
	]
	ordered = [item.conversation.id for item in inbox.sort_items(items)]
	assert ordered == ["c-pinned", "c-new", "c-mid", "c-old"]


def test_sort_items_breaks_activity_ties_by_id():
	now = datetime.now(timezone.utc)
	ordered = [item.conversation.id for item in inbox.sort_items([_item("b", now), _item("a", now)])]
	assert ordered == ["a", "b"]


def test_inbox_entry_mute_expiry():
	now = datetime.now(timezone.utc)
	entry = models.InboxEntry(user_id="alice", conversation_id="c1", is_muted=True, muted_until=now + timedelta(minutes=5))
	assert entry.is_muted_at(now)
	assert not entry.is_muted_at(now + timedelta(minutes=10))
	assert models.InboxEntry(user_id="alice", conversation_id="c1", is_muted=True).is_muted_at(now)
	assert not models.InboxEntry(user_id="alice", conversation_id="c1").is_muted_at(now)


def test_direct_key_is_order_independent():
	assert models.direct_key("bob", "alice") == models.direct_key("alice", "bob") == "alice:bob"
