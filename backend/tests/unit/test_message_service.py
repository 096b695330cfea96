import asyncio

import pytest

from portal.domain.messaging import schemas
from portal.domain.messaging.conversations import ConversationService
from portal.domain.messaging.exceptions import ForbiddenError, InvalidOperation, NotFoundError, ValidationError
from portal.domain.messaging.messages import MessageService
from portal.domain.messaging.presence import PresenceTracker


def _emitted(namespace, event: str) -> list:
	return [(call.args[1], call.kwargs) for call in namespace.emit.await_args_list if call.args[0] == event]


def _text(content: str, **extra) -> schemas.SendMessageRequest:
	return schemas.SendMessageRequest(content=content, **extra)


@pytest.fixture
def conversations():
	return ConversationService()


@pytest.fixture
def messages():
	return MessageService()


async def _direct(conversations, actor: str = "alice", peer: str = "bob") -> str:
	request = schemas.ConversationCreateRequest(type="direct", participants=[peer])
	return (await conversations.create(actor, request)).conversation.id


async def _group(conversations, actor: str, *members: str) -> str:
	request = schemas.ConversationCreateRequest(type="group", participants=list(members), name="Lab 4")
	return (await conversations.create(actor, request)).conversation.id


@pytest.mark.asyncio
async def test_unread_counts_follow_sends_and_reads(conversations, messages, memory_repository):
	cid = await _direct(conversations)

	first = (await messages.send("alice", cid, _text("hey"))).message
	second = (await messages.send("bob", cid, _text("hi"))).message
	third = (await messages.send("bob", cid, _text("how are you"))).message

	alice = await memory_repository.get_inbox_entry("alice", cid)
	bob = await memory_repository.get_inbox_entry("bob", cid)
	assert alice.unread_count == 2
	assert alice.last_read_message_id == first.id
	assert bob.unread_count == 0
	assert bob.last_read_message_id == third.id

	read = await messages.mark_read("alice", cid)
	assert read.message_ids == [second.id, third.id]
	assert read.last_read_message_id == third.id
	assert read.unread_count == 0
	stored = await memory_repository.get_message(second.id)
	assert stored.status == "read"
	assert stored.is_read_by("alice")


@pytest.mark.asyncio
async def test_mark_read_up_to_a_message(conversations, messages, memory_repository):
	cid = await _direct(conversations)
	sent = [(await messages.send("bob", cid, _text(f"m{i}"))).message for i in range(4)]

	read = await messages.mark_read("alice", cid, sent[1].id)
	assert read.message_ids == [sent[0].id, sent[1].id]
	assert read.unread_count == 2
	assert (await memory_repository.get_inbox_entry("alice", cid)).last_read_message_id == sent[1].id

	again = await messages.mark_read("alice", cid, sent[1].id)
	assert again.message_ids == []
	assert again.unread_count == 2


@pytest.mark.asyncio
async def test_stale_read_does_not_move_pointer_back(conversations, messages, memory_repository):
	cid = await _direct(conversations)
	sent = [(await messages.send("alice", cid, _text(f"m{i}"))).message for i in range(3)]

	full = await messages.mark_read("bob", cid)
	assert full.unread_count == 0
	assert full.last_read_message_id == sent[2].id

	late = await messages.mark_read("bob", cid, sent[0].id)
	assert late.message_ids == []
	assert late.unread_count == 0
	assert late.last_read_message_id == sent[2].id
	entry = await memory_repository.get_inbox_entry("bob", cid)
	assert (entry.last_read_message_id, entry.last_read_seq, entry.unread_count) == (sent[2].id, sent[2].seq, 0)

	newer = (await messages.send("alice", cid, _text("m3"))).message
	assert (await memory_repository.get_inbox_entry("bob", cid)).unread_count == 1
	await messages.mark_read("bob", cid, newer.id)
	assert (await memory_repository.get_inbox_entry("bob", cid)).last_read_seq == newer.seq


@pytest.mark.asyncio
async def test_own_send_advances_read_position(conversations, messages, memory_repository):
	cid = await _direct(conversations)
	first = (await messages.send("bob", cid, _text("ping"))).message
	reply = (await messages.send("alice", cid, _text("pong"))).message

	read = await messages.mark_read("alice", cid, first.id)

	assert read.last_read_message_id == reply.id
	assert read.unread_count == 0


@pytest.mark.asyncio
async def test_mark_read_rejects_foreign_message(conversations, messages):
	cid = await _direct(conversations)
	other = await _direct(conversations, "alice", "carol")
	foreign = (await messages.send("carol", other, _text("elsewhere"))).message

	with pytest.raises(NotFoundError):
		await messages.mark_read("alice", cid, foreign.id)


@pytest.mark.asyncio
async def test_concurrent_sends_keep_counters_consistent(conversations, messages, memory_repository):
	cid = await _group(conversations, "alice", "bob", "carol")

	results = await asyncio.gather(*(messages.send("bob", cid, _text(f"burst {i}")) for i in range(10)))

	seqs = sorted(result.message.seq for result in results)
	assert seqs == list(range(1, 11))
	conversation = await memory_repository.get_conversation(cid)
	assert conversation.total_messages == 10
	assert (await memory_repository.get_inbox_entry("alice", cid)).unread_count == 10
	assert (await memory_repository.get_inbox_entry("carol", cid)).unread_count == 10
	assert (await memory_repository.get_inbox_entry("bob", cid)).unread_count == 0


@pytest.mark.asyncio
async def test_send_checks_membership_and_content(conversations, messages):
	cid = await _direct(conversations)

	with pytest.raises(ForbiddenError):
		await messages.send("mallory", cid, _text("let me in"))
	with pytest.raises(NotFoundError):
		await messages.send("alice", "missing-conversation", _text("hello?"))
	with pytest.raises(ValidationError):
		await messages.send("alice", cid, _text("   "))

	attachment = schemas.AttachmentIn(type="image", url="https://cdn.example/cat.png")
	result = await messages.send("alice", cid, schemas.SendMessageRequest(attachments=[attachment]))
	assert result.message.content is None
	assert result.message.attachments[0].url == "https://cdn.example/cat.png"


@pytest.mark.asyncio
async def test_reply_and_mentions_are_scoped_to_conversation(conversations, messages):
	cid = await _group(conversations, "alice", "bob")
	other = await _direct(conversations, "alice", "carol")
	original = (await messages.send("alice", cid, _text("question"))).message
	foreign = (await messages.send("alice", other, _text("elsewhere"))).message

	reply = await messages.send("bob", cid, _text("answer", reply_to=original.id, mentions=["alice", "carol"]))
	assert reply.message.reply_to == original.id
	assert reply.message.mentions == ["alice"]

	with pytest.raises(ValidationError) as exc:
		await messages.send("bob", cid, _text("bad reply", reply_to=foreign.id))
	assert exc.value.detail == "invalid_reply_to"


@pytest.mark.asyncio
async def test_send_fans_out_and_marks_delivered(conversations, messages, socket_namespace):
	cid = await _direct(conversations)
	await PresenceTracker().connect("bob", "sid-bob")
	socket_namespace.emit.reset_mock()

	result = await messages.send("alice", cid, _text("ping"), skip_sid="sid-alice")

	assert result.message.status == "delivered"
	(payload, kwargs), = _emitted(socket_namespace, "newMessage")
	assert kwargs == {"room": f"conversation:{cid}", "skip_sid": "sid-alice"}
	assert payload["content"] == "ping"
	rooms = sorted(kwargs["room"] for _payload, kwargs in _emitted(socket_namespace, "inboxUpdated"))
	assert rooms == ["user:alice", "user:bob"]


@pytest.mark.asyncio
async def test_send_stays_sent_when_recipient_offline(conversations, messages, socket_namespace):
	cid = await _direct(conversations)
	result = await messages.send("alice", cid, _text("anyone?"))
	assert result.message.status == "sent"


@pytest.mark.asyncio
async def test_send_survives_fanout_failure(conversations, messages, socket_namespace, memory_repository):
	cid = await _direct(conversations)
	socket_namespace.emit.side_effect = RuntimeError("socket gone")

	result = await messages.send("alice", cid, _text("still stored"))

	assert (await memory_repository.get_message(result.message.id)).content == "still stored"
	assert (await memory_repository.get_inbox_entry("bob", cid)).unread_count == 1


@pytest.mark.asyncio
async def test_send_enqueues_notification_job(conversations, messages, fake_redis):
	cid = await _direct(conversations)
	message = (await messages.send("alice", cid, _text("queued"))).message

	entries = await fake_redis.xrange("x:messaging.notifications")
	assert len(entries) == 1
	job = entries[0][1]
	assert job["kind"] == "message"
	assert job["message_id"] == message.id
	assert job["actor_id"] == "alice"


@pytest.mark.asyncio
async def test_edit_only_by_sender_and_keeps_history(conversations, messages):
	cid = await _direct(conversations)
	message = (await messages.send("alice", cid, _text("draft"))).message

	with pytest.raises(ForbiddenError):
		await messages.edit("bob", message.id, "hijack")

	edited = (await messages.edit("alice", message.id, "final")).message
	assert edited.content == "final"
	assert edited.is_edited is True
	assert [record.content for record in edited.edit_history] == ["draft"]


@pytest.mark.asyncio
async def test_retract_is_idempotent_and_blocks_edits(conversations, messages, socket_namespace):
	cid = await _direct(conversations)
	message = (await messages.send("alice", cid, _text("oops"))).message

	retracted = (await messages.retract("alice", message.id)).message
	assert retracted.is_deleted is True
	assert retracted.content is None
	again = (await messages.retract("alice", message.id)).message
	assert again.is_deleted is True
	assert len(_emitted(socket_namespace, "messageDeleted")) == 1

	with pytest.raises(InvalidOperation):
		await messages.edit("alice", message.id, "undo")
	with pytest.raises(ForbiddenError):
		await messages.retract("bob", message.id)


@pytest.mark.asyncio
async def test_history_pagination(conversations, messages):
	cid = await _direct(conversations)
	for i in range(25):
		await messages.send("alice", cid, _text(f"m{i}"))

	page = await messages.history("bob", cid, page=2, limit=10, sort_by="seq", sort_order="asc")
	assert [m.seq for m in page.messages] == list(range(11, 21))
	assert page.pagination.total == 25
	assert page.pagination.total_pages == 3
	assert page.pagination.has_next_page is True
	assert page.pagination.has_prev_page is True

	newest = await messages.history("bob", cid, limit=5)
	assert [m.seq for m in newest.messages] == [25, 24, 23, 22, 21]

	with pytest.raises(ValidationError):
		await messages.history("bob", cid, page=0)
	with pytest.raises(ValidationError):
		await messages.history("bob", cid, sort_by="sender")


@pytest.mark.asyncio
async def test_history_hidden_from_outsiders(conversations, messages):
	cid = await _direct(conversations)
	with pytest.raises(NotFoundError):
		await messages.history("mallory", cid)


@pytest.mark.asyncio
async def test_message_context_window(conversations, messages):
	cid = await _direct(conversations)
	sent = [(await messages.send("bob", cid, _text(f"m{i}"))).message for i in range(11)]

	context = await messages.context("alice", sent[5].id, context_size=4)
	assert context.target_message_id == sent[5].id
	assert [m.seq for m in context.messages] == [4, 5, 6, 7, 8]

	edge = await messages.context("alice", sent[0].id, context_size=4)
	assert [m.seq for m in edge.messages] == [1, 2, 3]

	with pytest.raises(NotFoundError):
		await messages.context("alice", sent[0].id, conversation_id="another")
	with pytest.raises(ValidationError):
		await messages.context("alice", sent[0].id, context_size=-1)


@pytest.mark.asyncio
async def test_reactions_toggle(conversations, messages):
	cid = await _direct(conversations)
	message = (await messages.send("alice", cid, _text("nice"))).message

	reacted = (await messages.toggle_reaction("bob", message.id, "👍")).message
	assert [(r.emoji, r.users) for r in reacted.reactions] == [("👍", ["bob"])]

	cleared = (await messages.toggle_reaction("bob", message.id, "👍")).message
	assert cleared.reactions == []

	with pytest.raises(ValidationError):
		await messages.toggle_reaction("bob", message.id, "  ")


@pytest.mark.asyncio
async def test_pins_in_groups_need_a_manager(conversations, messages):
	cid = await _group(conversations, "alice", "bob")
	message = (await messages.send("bob", cid, _text("slides link"))).message

	with pytest.raises(ForbiddenError):
		await messages.toggle_pin("bob", message.id)

	pinned = (await messages.toggle_pin("alice", message.id)).message
	assert pinned.is_pinned is True
	listed = await messages.list_pinned("bob", cid)
	assert [m.id for m in listed.messages] == [message.id]

	unpinned = (await messages.toggle_pin("alice", message.id)).message
	assert unpinned.is_pinned is False


@pytest.mark.asyncio
async def test_forward_keeps_first_origin(conversations, messages, memory_repository):
	source = await _direct(conversations, "alice", "bob")
	middle = await _direct(conversations, "alice", "carol")
	target = await _direct(conversations, "carol", "dave")
	original = (await messages.send("bob", source, _text("pass it on"))).message

	forwarded = (await messages.forward("alice", original.id, middle)).message
	assert forwarded.content == "pass it on"
	assert forwarded.forward_info.original_message_id == original.id
	assert forwarded.forward_info.original_conversation_id == source
	assert (await memory_repository.get_inbox_entry("carol", middle)).unread_count == 1

	again = (await messages.forward("carol", forwarded.id, target)).message
	assert again.forward_info.original_message_id == original.id
	assert again.forward_info.forwarded_by == "carol"

	with pytest.raises(ForbiddenError):
		await messages.forward("alice", original.id, target)


@pytest.mark.asyncio
async def test_typing_is_relayed_and_rate_limited(conversations, messages, socket_namespace, monkeypatch):
	from portal.settings import settings

	cid = await _direct(conversations)
	monkeypatch.setattr(settings, "typing_limit_per_minute", 2)

	assert await messages.typing("alice", cid, active=True, skip_sid="sid-a") is True
	assert await messages.typing("alice", cid, active=True, skip_sid="sid-a") is True
	assert await messages.typing("alice", cid, active=True, skip_sid="sid-a") is False
	assert await messages.typing("alice", cid, active=False, skip_sid="sid-a") is True

	assert len(_emitted(socket_namespace, "userTyping")) == 2
	(payload, kwargs), = _emitted(socket_namespace, "userStoppedTyping")
	assert payload == {"conversationId": cid, "userId": "alice"}
	assert kwargs["skip_sid"] == "sid-a"


@pytest.mark.asyncio
async def test_read_resets_then_next_message_counts_again(conversations, messages, memory_repository):
	cid = await _direct(conversations)
	await messages.send("alice", cid, _text("hi"))
	assert (await memory_repository.get_inbox_entry("bob", cid)).unread_count == 1
	assert (await memory_repository.get_inbox_entry("alice", cid)).unread_count == 0

	await messages.mark_read("bob", cid)
	assert (await memory_repository.get_inbox_entry("bob", cid)).unread_count == 0

	await messages.send("alice", cid, _text("one more"))
	assert (await memory_repository.get_inbox_entry("bob", cid)).unread_count == 1


@pytest.mark.asyncio
async def test_concurrent_senders_do_not_lose_increments(conversations, messages, memory_repository):
	cid = await _group(conversations, "owner", "x", "y", "z")

	await asyncio.gather(
		messages.send("x", cid, _text("from x")),
		messages.send("y", cid, _text("from y")),
	)

	assert (await memory_repository.get_inbox_entry("owner", cid)).unread_count == 2
	assert (await memory_repository.get_inbox_entry("z", cid)).unread_count == 2
	assert (await memory_repository.get_inbox_entry("x", cid)).unread_count in (0, 1)
	assert (await memory_repository.get_inbox_entry("y", cid)).unread_count in (0, 1)
	assert (await memory_repository.get_conversation(cid)).total_messages == 2
