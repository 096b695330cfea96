import pytest

from portal.domain.messaging import schemas
from portal.domain.messaging.conversations import ConversationService
from portal.domain.messaging.exceptions import ValidationError
from portal.domain.messaging.presence import PresenceTracker
from portal.settings import settings


def _status_emits(namespace) -> list:
	return [(call.args[1], call.kwargs) for call in namespace.emit.await_args_list if call.args[0] == "userStatus"]


@pytest.fixture
def tracker():
	return PresenceTracker(ttl_seconds=60)


@pytest.mark.asyncio
async def test_connect_marks_user_online(tracker, fake_redis):
	presence = await tracker.connect("alice", "sid-1")

	assert presence.status == "online"
	assert await tracker.is_online("alice")
	stored = await fake_redis.hgetall("presence:user:alice")
	assert stored["status"] == "online"
	assert stored["socket_id"] == "sid-1"
	assert 0 < await fake_redis.ttl("presence:user:alice") <= 60


@pytest.mark.asyncio
async def test_last_connection_wins(tracker):
	await tracker.connect("alice", "sid-old")
	await tracker.connect("alice", "sid-new")

	assert await tracker.disconnect("alice", "sid-old") is None
	assert await tracker.is_online("alice")
	assert (await tracker.get("alice")).socket_id == "sid-new"

	offline = await tracker.disconnect("alice", "sid-new")
	assert offline.status == "offline"
	assert not await tracker.is_online("alice")
	current = await tracker.get("alice")
	assert current.status == "offline"
	assert current.socket_id is None
	assert current.last_seen is not None


@pytest.mark.asyncio
async def test_unknown_user_reads_as_offline(tracker):
	presence = await tracker.get("nobody")
	assert presence.status == "offline"
	assert presence.last_seen is None
	assert await tracker.disconnect("nobody", "sid-x") is None


@pytest.mark.asyncio
async def test_set_status_requires_connection_and_valid_value(tracker):
	with pytest.raises(ValidationError) as offline_exc:
		await tracker.set_status("alice", "dnd")
	assert offline_exc.value.detail == "not_connected"

	await tracker.connect("alice", "sid-1")
	with pytest.raises(ValidationError):
		await tracker.set_status("alice", "offline")

	updated = await tracker.set_status("alice", "DND")
	assert updated.status == "dnd"
	assert (await tracker.get("alice")).status == "dnd"
	assert await tracker.is_online("alice")


@pytest.mark.asyncio
async def test_online_among(tracker):
	await tracker.connect("alice", "sid-a")
	await tracker.connect("carol", "sid-c")
	assert await tracker.online_among(["alice", "bob", "carol", "alice"]) == {"alice", "carol"}
	assert await tracker.online_among([]) == set()


@pytest.mark.asyncio
async def test_broadcast_reaches_peers_only(tracker, socket_namespace):
	conversations = ConversationService()
	created = await conversations.create("alice", schemas.ConversationCreateRequest(type="direct", participants=["bob"]))
	cid = created.conversation.id
	socket_namespace.emit.reset_mock()

	await tracker.connect("alice", "sid-a")

	(payload, kwargs), = _status_emits(socket_namespace)
	assert payload["userId"] == "alice"
	assert payload["status"] == "online"
	assert kwargs["room"] == sorted([f"conversation:{cid}", "user:alice"])


@pytest.mark.asyncio
async def test_broadcast_global_scope(tracker, socket_namespace):
	settings.presence_broadcast_scope = "global"
	await tracker.connect("alice", "sid-a")

	(payload, kwargs), = _status_emits(socket_namespace)
	assert kwargs["room"] is None
	assert payload["status"] == "online"


@pytest.mark.asyncio
async def test_heartbeat_refreshes_bound_channel(tracker, fake_redis):
	await tracker.connect("alice", "sid-1")
	await fake_redis.expire("presence:user:alice", 5)

	assert await tracker.heartbeat("alice", "sid-1") is True
	assert 5 < await fake_redis.ttl("presence:user:alice") <= 60
	assert (await tracker.get("alice")).status == "online"


@pytest.mark.asyncio
async def test_heartbeat_from_replaced_channel_is_ignored(tracker):
	await tracker.connect("alice", "sid-old")
	await tracker.connect("alice", "sid-new")

	assert await tracker.heartbeat("alice", "sid-old") is False
	assert (await tracker.get("alice")).socket_id == "sid-new"


@pytest.mark.asyncio
async def test_expired_record_is_not_reported_online(tracker, fake_redis):
	await tracker.connect("alice", "sid-a")
	await tracker.connect("carol", "sid-c")
	await fake_redis.delete("presence:user:alice")

	assert await tracker.online_among(["alice", "carol"]) == {"carol"}
	assert not await tracker.is_online("alice")
	assert await fake_redis.smembers("presence:online") == {"carol"}


@pytest.mark.asyncio
async def test_disconnect_after_expiry_clears_online_set(tracker, fake_redis):
	await tracker.connect("alice", "sid-a")
	await fake_redis.delete("presence:user:alice")

	assert await tracker.disconnect("alice", "sid-a") is None
	assert not await fake_redis.sismember("presence:online", "alice")
	assert (await tracker.get("alice")).status == "offline"


@pytest.mark.asyncio
async def test_heartbeat_rebinds_expired_record(tracker, fake_redis, socket_namespace):
	await tracker.connect("alice", "sid-a")
	await fake_redis.delete("presence:user:alice")
	socket_namespace.emit.reset_mock()

	assert await tracker.heartbeat("alice", "sid-a") is True

	current = await tracker.get("alice")
	assert (current.status, current.socket_id) == ("online", "sid-a")
	assert await tracker.online_among(["alice"]) == {"alice"}
	(payload, _), = _status_emits(socket_namespace)
	assert payload["status"] == "online"
