from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import socketio

from portal.domain.messaging import fanout, schemas
from portal.domain.messaging.conversations import ConversationService
from portal.domain.messaging.exceptions import ForbiddenError, InvalidOperation, NotFoundError, ValidationError
from portal.domain.messaging.messages import MessageService
from portal.domain.messaging.sockets import MessagingNamespace


def _emitted(namespace, event: str) -> list:
	"""(payload, kwargs) for every emit of `event` on the mocked namespace."""
	return [(call.args[1], call.kwargs) for call in namespace.emit.await_args_list if call.args[0] == event]


def _direct(*participants: str) -> schemas.ConversationCreateRequest:
	return schemas.ConversationCreateRequest(type="direct", participants=list(participants))


def _group(*participants: str, name: str = "Study group") -> schemas.ConversationCreateRequest:
	return schemas.ConversationCreateRequest(type="group", participants=list(participants), name=name)


def _text(content: str) -> schemas.SendMessageRequest:
	return schemas.SendMessageRequest(content=content)


@pytest.fixture
def conversations():
	return ConversationService()


@pytest.fixture
def messages():
	return MessageService()


@pytest.mark.asyncio
async def test_direct_conversation_is_unique_per_pair(conversations, memory_repository):
	first = await conversations.create("alice", _direct("bob"))
	second = await conversations.create("bob", _direct("alice"))
	third = await conversations.create("alice", _direct("alice", "bob"))

	assert first.conversation.id == second.conversation.id == third.conversation.id
	assert len(await memory_repository.list_conversations("alice")) == 1
	roles = {p.user_id: p.role for p in first.conversation.participants}
	assert roles == {"alice": "member", "bob": "member"}


@pytest.mark.asyncio
async def test_direct_create_rejects_bad_participant_lists(conversations):
	with pytest.raises(ValidationError) as self_exc:
		await conversations.create("alice", _direct("alice"))
	assert self_exc.value.detail == "cannot_message_self"

	with pytest.raises(ValidationError) as many_exc:
		await conversations.create("alice", _direct("bob", "carol"))
	assert many_exc.value.detail == "direct_requires_one_participant"

	with pytest.raises(ValidationError) as dup_exc:
		await conversations.create("alice", _direct("bob", "bob"))
	assert dup_exc.value.detail == "duplicate_participants"


@pytest.mark.asyncio
async def test_group_creation_makes_actor_owner_and_seeds_inbox(conversations, memory_repository):
	result = await conversations.create("alice", _group("bob", "carol", "bob"))
	conversation = result.conversation

	roles = {p.user_id: p.role for p in conversation.participants}
	assert roles == {"alice": "owner", "bob": "member", "carol": "member"}
	assert conversation.name == "Study group"
	entries = {e.user_id: e for e in await memory_repository.inbox_entries(conversation.id)}
	assert set(entries) == {"alice", "bob", "carol"}
	assert all(e.unread_count == 0 for e in entries.values())


@pytest.mark.asyncio
async def test_group_requires_other_participants(conversations):
	with pytest.raises(ValidationError):
		await conversations.create("alice", _group("alice"))


@pytest.mark.asyncio
async def test_create_emits_to_participant_rooms(conversations, socket_namespace):
	await conversations.create("alice", _group("bob"))
	(payload, kwargs), = _emitted(socket_namespace, "conversationCreated")
	assert kwargs["room"] == ["user:alice", "user:bob"]
	assert payload["type"] == "group"

	socket_namespace.emit.reset_mock()
	await conversations.create("alice", _direct("bob"))
	await conversations.create("bob", _direct("alice"))
	assert len(_emitted(socket_namespace, "conversationCreated")) == 1


@pytest.mark.asyncio
async def test_add_members_is_idempotent(conversations, memory_repository):
	group = (await conversations.create("alice", _group("bob"))).conversation

	added = await conversations.add_members("alice", group.id, ["bob", "carol", "carol"])
	assert added.new_members == ["carol"]
	assert {p.user_id for p in added.conversation.participants} == {"alice", "bob", "carol"}
	assert await memory_repository.get_inbox_entry("carol", group.id) is not None

	with pytest.raises(InvalidOperation) as exc:
		await conversations.add_members("alice", group.id, ["bob", "carol"])
	assert exc.value.detail == "no_new_members"
	unchanged = await memory_repository.get_conversation(group.id)
	assert unchanged.participant_ids() == ["alice", "bob", "carol"]


@pytest.mark.asyncio
async def test_add_members_requires_manager_and_group(conversations):
	group = (await conversations.create("alice", _group("bob"))).conversation
	with pytest.raises(ForbiddenError):
		await conversations.add_members("bob", group.id, ["dave"])

	direct = (await conversations.create("alice", _direct("bob"))).conversation
	with pytest.raises(InvalidOperation):
		await conversations.add_members("alice", direct.id, ["carol"])


@pytest.mark.asyncio
async def test_add_members_enqueues_group_added_job(conversations, fake_redis):
	group = (await conversations.create("alice", _group("bob"))).conversation
	await conversations.add_members("alice", group.id, ["carol"])

	entries = await fake_redis.xrange("x:messaging.notifications")
	kinds = [fields["kind"] for _entry_id, fields in entries]
	assert kinds == ["members_added"]
	assert entries[0][1]["user_ids"] == "carol"


@pytest.mark.asyncio
async def test_owner_cannot_be_removed_or_leave(conversations):
	group = (await conversations.create("alice", _group("bob", "carol"))).conversation
	await conversations.update_member_role("alice", group.id, "bob", "admin")

	with pytest.raises(ForbiddenError) as remove_exc:
		await conversations.remove_member("bob", group.id, "alice")
	assert remove_exc.value.detail == "cannot_remove_owner"

	with pytest.raises(InvalidOperation) as leave_exc:
		await conversations.leave("alice", group.id)
	assert leave_exc.value.detail == "owner_cannot_leave"


@pytest.mark.asyncio
async def test_admin_cannot_remove_another_admin(conversations):
	group = (await conversations.create("alice", _group("bob", "carol"))).conversation
	await conversations.update_member_role("alice", group.id, "bob", "admin")
	await conversations.update_member_role("alice", group.id, "carol", "admin")

	with pytest.raises(ForbiddenError) as exc:
		await conversations.remove_member("bob", group.id, "carol")
	assert exc.value.detail == "cannot_remove_admin"


@pytest.mark.asyncio
async def test_ownership_transfer_keeps_single_owner(conversations):
	group = (await conversations.create("alice", _group("bob", "carol"))).conversation

	result = await conversations.update_member_role("alice", group.id, "bob", "owner")
	roles = {p.user_id: p.role for p in result.conversation.participants}
	assert roles == {"alice": "admin", "bob": "owner", "carol": "member"}

	with pytest.raises(ForbiddenError):
		await conversations.update_member_role("alice", group.id, "carol", "admin")
	with pytest.raises(InvalidOperation):
		await conversations.update_member_role("bob", group.id, "bob", "member")


@pytest.mark.asyncio
async def test_removed_member_loses_access(conversations, messages, memory_repository):
	group = (await conversations.create("alice", _group("bob", "carol"))).conversation
	await messages.send("bob", group.id, _text("hi"))

	await conversations.remove_member("alice", group.id, "bob")

	assert await memory_repository.get_inbox_entry("bob", group.id) is None
	with pytest.raises(ForbiddenError):
		await messages.send("bob", group.id, _text("still here?"))
	with pytest.raises(NotFoundError):
		await conversations.get("bob", group.id)
	with pytest.raises(NotFoundError):
		await messages.history("bob", group.id)
	recent = await conversations.recent("bob")
	assert recent.conversations == []

	await messages.send("carol", group.id, _text("bye bob"))
	assert await memory_repository.get_inbox_entry("bob", group.id) is None
	assert (await memory_repository.get_inbox_entry("alice", group.id)).unread_count == 2


@pytest.mark.asyncio
async def test_remove_member_notifies_conversation(conversations, socket_namespace):
	group = (await conversations.create("alice", _group("bob"))).conversation
	await conversations.remove_member("alice", group.id, "bob")

	(payload, kwargs), = _emitted(socket_namespace, "groupMemberRemoved")
	assert kwargs["room"] == f"conversation:{group.id}"
	assert payload == {"conversationId": group.id, "userId": "bob", "removedBy": "alice"}


@pytest.fixture
def live_namespace():
	"""Namespace on a real room manager; only emits are mocked."""
	server = socketio.AsyncServer(async_mode="asgi")
	namespace = MessagingNamespace()
	server.register_namespace(namespace)
	namespace.emit = AsyncMock()
	fanout.set_namespace(namespace)
	return namespace


async def _open_channel(namespace, user_id: str) -> str:
	sid = await namespace.server.manager.connect(f"eio-{user_id}", namespace.namespace)
	await namespace.enter_room(sid, f"user:{user_id}")
	return sid


def _rooms(namespace, sid: str) -> list:
	return namespace.server.manager.get_rooms(sid, namespace.namespace)


@pytest.mark.asyncio
async def test_membership_changes_move_live_channels(conversations, live_namespace):
	alice = await _open_channel(live_namespace, "alice")
	bob = await _open_channel(live_namespace, "bob")
	group = (await conversations.create("alice", _group("carol"))).conversation
	room = f"conversation:{group.id}"
	assert room in _rooms(live_namespace, alice)
	assert room not in _rooms(live_namespace, bob)

	await conversations.add_members("alice", group.id, ["bob"])
	assert room in _rooms(live_namespace, bob)

	await conversations.remove_member("alice", group.id, "bob")
	assert room not in _rooms(live_namespace, bob)
	assert "user:bob" in _rooms(live_namespace, bob)

	await conversations.delete("alice", group.id)
	assert room not in _rooms(live_namespace, alice)


@pytest.mark.asyncio
async def test_member_leave_keeps_group(conversations, memory_repository):
	group = (await conversations.create("alice", _group("bob", "carol"))).conversation
	result = await conversations.leave("carol", group.id)
	assert result.message == "left_conversation"

	remaining = await memory_repository.get_conversation(group.id)
	assert remaining.participant_ids() == ["alice", "bob"]
	assert await memory_repository.get_inbox_entry("carol", group.id) is None


@pytest.mark.asyncio
async def test_direct_leave_purges_history_for_both(conversations, messages, memory_repository, socket_namespace):
	direct = (await conversations.create("alice", _direct("bob"))).conversation
	sent = []
	for index in range(5):
		sender = "alice" if index % 2 == 0 else "bob"
		sent.append((await messages.send(sender, direct.id, _text(f"m{index}"))).message.id)

	result = await conversations.leave("bob", direct.id)
	assert result.message == "conversation_deleted"

	assert await memory_repository.get_conversation(direct.id) is None
	for message_id in sent:
		assert await memory_repository.get_message(message_id) is None
	assert await memory_repository.inbox_entries(direct.id) == []
	(payload, kwargs), = _emitted(socket_namespace, "conversationDeleted")
	assert kwargs["room"] == ["user:alice", "user:bob"]
	socket_namespace.close_room.assert_awaited_once_with(f"conversation:{direct.id}")

	fresh = (await conversations.create("alice", _direct("bob"))).conversation
	assert fresh.id != direct.id
	assert fresh.metadata.total_messages == 0


@pytest.mark.asyncio
async def test_delete_group_requires_owner_and_cascades(conversations, messages, memory_repository):
	group = (await conversations.create("alice", _group("bob"))).conversation
	message = (await messages.send("bob", group.id, _text("hello"))).message

	with pytest.raises(ForbiddenError):
		await conversations.delete("bob", group.id)

	await conversations.delete("alice", group.id)
	assert await memory_repository.get_conversation(group.id) is None
	assert await memory_repository.get_message(message.id) is None
	assert await memory_repository.list_inbox("bob") == []
	with pytest.raises(NotFoundError):
		await conversations.get("alice", group.id)


@pytest.mark.asyncio
async def test_clear_history_resets_counters(conversations, messages, memory_repository):
	direct = (await conversations.create("alice", _direct("bob"))).conversation
	for _ in range(3):
		await messages.send("bob", direct.id, _text("ping"))

	result = await conversations.clear("alice", direct.id)
	assert result.messages_deleted == 3

	entry = await memory_repository.get_inbox_entry("alice", direct.id)
	assert entry.unread_count == 0
	assert entry.last_read_message_id is None
	history = await messages.history("alice", direct.id)
	assert history.messages == []
	assert (await memory_repository.get_conversation(direct.id)).last_message_id is None


@pytest.mark.asyncio
async def test_clear_group_requires_manager(conversations):
	group = (await conversations.create("alice", _group("bob"))).conversation
	with pytest.raises(ForbiddenError):
		await conversations.clear("bob", group.id)


@pytest.mark.asyncio
async def test_update_group_details(conversations):
	group = (await conversations.create("alice", _group("bob"))).conversation

	result = await conversations.update(
		"alice",
		group.id,
		schemas.ConversationUpdateRequest(name="  Renamed  ", description="exam prep"),
	)
	assert result.conversation.name == "Renamed"
	assert result.conversation.description == "exam prep"

	with pytest.raises(ValidationError):
		await conversations.update("alice", group.id, schemas.ConversationUpdateRequest())
	with pytest.raises(ValidationError):
		await conversations.update("alice", group.id, schemas.ConversationUpdateRequest(name=" "))
	with pytest.raises(ForbiddenError):
		await conversations.update("bob", group.id, schemas.ConversationUpdateRequest(name="Mine"))


@pytest.mark.asyncio
async def test_recent_orders_pinned_first(conversations, messages):
	first = (await conversations.create("alice", _direct("bob"))).conversation
	second = (await conversations.create("alice", _direct("carol"))).conversation
	await messages.send("carol", second.id, _text("newest"))

	recent = await conversations.recent("alice")
	assert [item.conversation.id for item in recent.conversations] == [second.id, first.id]
	assert recent.conversations[0].unread_count == 1
	assert recent.conversations[0].last_message.content == "newest"

	await conversations.update_recent("alice", first.id, schemas.InboxSettingsRequest(is_pinned=True))
	recent = await conversations.recent("alice")
	assert [item.conversation.id for item in recent.conversations] == [first.id, second.id]


@pytest.mark.asyncio
async def test_update_recent_mute_settings(conversations):
	direct = (await conversations.create("alice", _direct("bob"))).conversation
	until = datetime.now(timezone.utc) + timedelta(hours=1)

	muted = await conversations.update_recent("alice", direct.id, schemas.InboxSettingsRequest(muted_until=until))
	assert muted.conversation.is_muted is True
	assert muted.conversation.muted_until == until

	unmuted = await conversations.update_recent("alice", direct.id, schemas.InboxSettingsRequest(is_muted=False))
	assert unmuted.conversation.is_muted is False
	assert unmuted.conversation.muted_until is None

	with pytest.raises(ValidationError):
		await conversations.update_recent("alice", direct.id, schemas.InboxSettingsRequest())
	with pytest.raises(NotFoundError):
		await conversations.update_recent("carol", direct.id, schemas.InboxSettingsRequest(is_pinned=True))


@pytest.mark.asyncio
async def test_group_removed_from_recent_returns_on_next_message(conversations, messages, memory_repository):
	group = (await conversations.create("alice", _group("bob"))).conversation

	result = await conversations.remove_from_recent("bob", group.id)
	assert result.message == "removed_from_recent"
	assert (await conversations.recent("bob")).conversations == []
	assert (await memory_repository.get_conversation(group.id)).is_participant("bob")

	await messages.send("alice", group.id, _text("you there?"))
	entry = await memory_repository.get_inbox_entry("bob", group.id)
	assert entry is not None
	assert entry.unread_count == 1


@pytest.mark.asyncio
async def test_direct_removed_from_recent_is_purged(conversations, memory_repository):
	direct = (await conversations.create("alice", _direct("bob"))).conversation
	result = await conversations.remove_from_recent("alice", direct.id)
	assert result.message == "conversation_deleted"
	assert await memory_repository.get_conversation(direct.id) is None


@pytest.mark.asyncio
async def test_group_capacity_is_enforced(conversations, monkeypatch):
	from portal.settings import settings

	monkeypatch.setattr(settings, "group_max_participants", 3)
	group = (await conversations.create("alice", _group("bob", "carol"))).conversation
	with pytest.raises(InvalidOperation) as exc:
		await conversations.add_members("alice", group.id, ["dave"])
	assert exc.value.detail == "group_full"


@pytest.mark.asyncio
async def test_membership_ids_only_lists_active_memberships(conversations):
	group = (await conversations.create("alice", _group("bob"))).conversation
	direct = (await conversations.create("alice", _direct("carol"))).conversation
	await conversations.delete("alice", direct.id)

	assert await conversations.membership_ids("alice") == [group.id]
	assert await conversations.membership_ids("carol") == []
