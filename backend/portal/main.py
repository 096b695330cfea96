"""FastAPI application entrypoint.

`socket_app` is the ASGI callable to serve: Socket.IO traffic is handled by the
messaging namespace and everything else falls through to the FastAPI app.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from portal.api import conversations, messages, notifications, ops
from portal.api.errors import install_error_handlers
from portal.domain.messaging.notifications import NotificationDispatcher
from portal.domain.messaging.sockets import MessagingNamespace, set_namespace
from portal.infra import postgres
from portal.infra.migrations import apply_migrations
from portal.obs import init as obs_init
from portal.obs import logging as obs_logging
from portal.settings import settings

_LOG = obs_logging.get_logger("portal")


@asynccontextmanager
async def lifespan(app: FastAPI):
	if settings.messaging_store == "postgres":
		pool = await postgres.init_pool()
		if settings.postgres_auto_migrate:
			await apply_migrations(pool)
	worker_tasks: list[asyncio.Task] = []
	worker_instances: list[NotificationDispatcher] = []
	if settings.notification_workers_enabled:
		dispatcher = NotificationDispatcher()
		worker_instances.append(dispatcher)
		worker_tasks.append(asyncio.create_task(dispatcher.run_forever(), name="messaging-notification-dispatcher"))
	app.state.messaging_workers = worker_instances
	_LOG.info("app.started", extra={"store": settings.messaging_store, "workers": len(worker_tasks)})
	try:
		yield
	finally:
		for instance in worker_instances:
			instance.stop()
		if worker_tasks:
			for task in worker_tasks:
				task.cancel()
			await asyncio.gather(*worker_tasks, return_exceptions=True)
		await postgres.close_pool()


app = FastAPI(title="Portal Messaging", lifespan=lifespan)
install_error_handlers(app)
obs_init(app)

allow_origins = list(getattr(settings, "cors_allow_origins", []))
if not allow_origins:
	allow_origins = ["http://localhost:3000"] if settings.is_dev() else []

# Starlette disallows wildcard '*' with allow_credentials=True.
if "*" in allow_origins:
	allow_origins = ["http://localhost:3000", "http://127.0.0.1:3000"] if settings.is_dev() else []

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

# Use the same allowed origins for Socket.IO as for the REST API
sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
messaging_namespace = MessagingNamespace()
sio.register_namespace(messaging_namespace)
set_namespace(messaging_namespace)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)

app.include_router(conversations.router)
app.include_router(messages.router)
app.include_router(notifications.router)
app.include_router(ops.router)
