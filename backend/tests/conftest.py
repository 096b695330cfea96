from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
import socketio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

from portal.domain.messaging import fanout
from portal.domain.messaging.memory import MemoryRepository
from portal.domain.messaging.repo import set_repository
from portal.domain.messaging.sockets import MessagingNamespace
from portal.infra import postgres
from portal.main import app
from portal.settings import settings


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from portal.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Dev mode (X-User-Id headers accepted) with the in-memory store."""
	original_env = settings.environment
	original_store = settings.messaging_store
	original_scope = settings.presence_broadcast_scope
	settings.environment = "dev"
	settings.messaging_store = "memory"
	try:
		yield
	finally:
		settings.environment = original_env
		settings.messaging_store = original_store
		settings.presence_broadcast_scope = original_scope


@pytest.fixture(autouse=True)
def memory_repository():
	repository = MemoryRepository()
	set_repository(repository)
	try:
		yield repository
	finally:
		set_repository(None)


@pytest.fixture(autouse=True)
def detached_fanout():
	"""Tests start without a live namespace; `socket_namespace` attaches one."""
	previous = fanout.get_namespace()
	fanout.set_namespace(None)
	try:
		yield
	finally:
		fanout.set_namespace(previous)


@pytest.fixture
def socket_namespace():
	server = socketio.AsyncServer(async_mode="asgi")
	namespace = MessagingNamespace()
	server.register_namespace(namespace)
	namespace.emit = AsyncMock()
	namespace.enter_room = AsyncMock()
	namespace.leave_room = AsyncMock()
	namespace.close_room = AsyncMock()
	fanout.set_namespace(namespace)
	return namespace


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
