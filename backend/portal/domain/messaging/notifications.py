"""Notification gateway: durable jobs on a Redis stream, consumed off the hot path.

The send path only appends a job (`XADD`). `NotificationDispatcher` reads the stream,
decides who is eligible at processing time, stores Notification records, emits them
to the recipient's personal room and hands them to the push gateway.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Sequence

import httpx
import ulid

from portal.domain.messaging import fanout, models, policy, schemas
from portal.domain.messaging.exceptions import NotFoundError
from portal.domain.messaging.presence import PresenceTracker, presence_tracker
from portal.domain.messaging.repo import get_repository
from portal.infra.redis import redis_client
from portal.obs import logging as obs_logging
from portal.obs import metrics as obs_metrics
from portal.settings import settings

_LOG = obs_logging.get_logger("portal.messaging.notifications")

JOB_MESSAGE = "message"
JOB_MEMBERS_ADDED = "members_added"

TYPE_MESSAGE = "message"
TYPE_MENTION = "mention"
TYPE_GROUP_ADDED = "group_added"

_PREVIEW_LENGTH = 120


def _cursor_key(stream: str) -> str:
	return f"{stream}:cursor"


def _preview(message: models.Message) -> str:
	if message.content:
		text = message.content
		return text if len(text) <= _PREVIEW_LENGTH else text[: _PREVIEW_LENGTH - 3] + "..."
	if message.attachments:
		return f"[{message.attachments[0].type}]"
	return ""


class NotificationGateway:
	"""Producer side: append jobs to the notification stream."""

	def __init__(self, *, stream: str | None = None) -> None:
		self.stream = stream or settings.notification_stream

	async def _enqueue(self, job: Dict[str, str]) -> Optional[str]:
		job["enqueued_at"] = datetime.now(timezone.utc).isoformat()
		try:
			entry_id = await redis_client.xadd(self.stream, job)
		except Exception:
			_LOG.exception("notifications.enqueue_failed", extra={"kind": job.get("kind")})
			obs_metrics.inc_notification_job("enqueue_failed")
			return None
		obs_metrics.inc_notification_job("enqueued")
		return entry_id

	async def message_sent(self, message: models.Message) -> Optional[str]:
		return await self._enqueue(
			{
				"kind": JOB_MESSAGE,
				"conversation_id": message.conversation_id,
				"message_id": message.id,
				"actor_id": message.sender_id,
			}
		)

	async def members_added(self, conversation_id: str, actor_id: str, user_ids: Sequence[str]) -> Optional[str]:
		if not user_ids:
			return None
		return await self._enqueue(
			{
				"kind": JOB_MEMBERS_ADDED,
				"conversation_id": conversation_id,
				"actor_id": actor_id,
				"user_ids": ",".join(user_ids),
			}
		)


class HttpPushGateway:
	"""Posts push requests to an external delivery service over HTTP."""

	def __init__(self, *, url: str | None = None, timeout: float | None = None, http: httpx.AsyncClient | None = None) -> None:
		self.url = url if url is not None else settings.push_gateway_url
		self.timeout = timeout or settings.push_gateway_timeout_seconds
		self._http = http

	async def send(self, notification: models.Notification) -> bool:
		if not self.url:
			obs_metrics.inc_push_delivery("skipped")
			return False
		body = {
			"user_id": notification.user_id,
			"title": notification.title,
			"body": notification.body,
			"data": {**notification.data, "notification_id": notification.id},
		}
		try:
			if self._http is not None:
				response = await self._http.post(self.url, json=body, timeout=self.timeout)
			else:
				async with httpx.AsyncClient(timeout=self.timeout) as client:
					response = await client.post(self.url, json=body)
			response.raise_for_status()
		except httpx.HTTPError:
			_LOG.warning("notifications.push_failed", extra={"notification_id": notification.id}, exc_info=True)
			obs_metrics.inc_push_delivery("failed")
			return False
		obs_metrics.inc_push_delivery("sent")
		return True


class NotificationDispatcher:
	"""Consumes notification jobs and materialises Notification records."""

	def __init__(
		self,
		*,
		stream: str | None = None,
		push_gateway: HttpPushGateway | None = None,
		presence: PresenceTracker | None = None,
		batch_size: int | None = None,
		poll_interval: float | None = None,
		block_ms: int | None = 1000,
	) -> None:
		self.stream = stream or settings.notification_stream
		self.push_gateway = push_gateway or HttpPushGateway()
		self.presence = presence or presence_tracker
		self.batch_size = batch_size or settings.notification_batch_size
		self.poll_interval = poll_interval if poll_interval is not None else settings.notification_poll_interval_seconds
		self.block_ms = block_ms
		self._last_id: str | None = None
		self._running = False

	async def run_forever(self) -> None:
		self._running = True
		while self._running:
			try:
				processed = await self.process_once()
			except asyncio.CancelledError:
				raise
			except Exception:
				_LOG.exception("notifications.poll_failed")
				processed = 0
			if processed == 0:
				await asyncio.sleep(self.poll_interval)

	def stop(self) -> None:
		self._running = False

	async def process_once(self) -> int:
		if self._last_id is None:
			self._last_id = await redis_client.get(_cursor_key(self.stream)) or "0-0"
		messages = await redis_client.xread(
			streams={self.stream: self._last_id},
			count=self.batch_size,
			block=self.block_ms,
		)
		if not messages:
			return 0
		processed = 0
		for _stream_name, entries in messages:
			for entry_id, payload in entries:
				try:
					await self.handle_job(dict(payload))
					obs_metrics.inc_notification_job("processed")
				except Exception:
					_LOG.exception("notifications.job_failed", extra={"entry_id": entry_id})
					obs_metrics.inc_notification_job("failed")
				self._last_id = entry_id
				processed += 1
		await redis_client.set(_cursor_key(self.stream), self._last_id)
		return processed

	async def handle_job(self, job: Mapping[str, str]) -> List[models.Notification]:
		kind = job.get("kind")
		if kind == JOB_MESSAGE:
			return await self._handle_message(job)
		if kind == JOB_MEMBERS_ADDED:
			return await self._handle_members_added(job)
		_LOG.warning("notifications.unknown_job", extra={"kind": kind})
		return []

	async def _handle_message(self, job: Mapping[str, str]) -> List[models.Notification]:
		repository = get_repository()
		message = await repository.get_message(job.get("message_id", ""))
		if message is None or message.is_retracted:
			obs_metrics.inc_notification_job("skipped")
			return []
		conversation = await repository.get_conversation(message.conversation_id)
		if conversation is None or not conversation.is_active:
			obs_metrics.inc_notification_job("skipped")
			return []
		recipients = [uid for uid in conversation.participant_ids() if uid != message.sender_id]
		eligible = await self.eligible_recipients(conversation.id, recipients)
		title = conversation.name if conversation.is_group and conversation.name else "New message"
		created: List[models.Notification] = []
		for user_id in eligible:
			kind = TYPE_MENTION if user_id in message.mentions else TYPE_MESSAGE
			notification = models.Notification(
				id=str(ulid.new()),
				user_id=user_id,
				type=kind,
				title=title,
				body=_preview(message),
				created_at=datetime.now(timezone.utc),
				data={"conversationId": conversation.id, "messageId": message.id},
				actor_id=message.sender_id,
				conversation_id=conversation.id,
				message_id=message.id,
			)
			created.append(await self._deliver(notification))
		return created

	async def _handle_members_added(self, job: Mapping[str, str]) -> List[models.Notification]:
		repository = get_repository()
		conversation = await repository.get_conversation(job.get("conversation_id", ""))
		if conversation is None or not conversation.is_active:
			obs_metrics.inc_notification_job("skipped")
			return []
		user_ids = [uid for uid in (job.get("user_ids") or "").split(",") if uid and conversation.is_participant(uid)]
		online = await self.presence.online_among(user_ids)
		created: List[models.Notification] = []
		for user_id in user_ids:
			if user_id in online:
				continue
			notification = models.Notification(
				id=str(ulid.new()),
				user_id=user_id,
				type=TYPE_GROUP_ADDED,
				title=conversation.name or "New group",
				body="You were added to a group conversation",
				created_at=datetime.now(timezone.utc),
				data={"conversationId": conversation.id},
				actor_id=job.get("actor_id"),
				conversation_id=conversation.id,
			)
			created.append(await self._deliver(notification))
		return created

	async def eligible_recipients(self, conversation_id: str, recipients: Sequence[str]) -> List[str]:
		"""Recipients that are offline and have not muted the conversation."""
		if not recipients:
			return []
		now = datetime.now(timezone.utc)
		entries = {entry.user_id: entry for entry in await get_repository().inbox_entries(conversation_id)}
		online = await self.presence.online_among(recipients)
		eligible: List[str] = []
		for user_id in recipients:
			if user_id in online:
				continue
			entry = entries.get(user_id)
			if entry is not None and entry.is_muted_at(now):
				continue
			eligible.append(user_id)
		return eligible

	async def _deliver(self, notification: models.Notification) -> models.Notification:
		stored = await get_repository().insert_notification(notification)
		await fanout.to_user(stored.user_id, "notification", schemas.NotificationDTO.from_model(stored).wire())
		await self.push_gateway.send(stored)
		return stored


class NotificationService:
	"""Read side used by the REST surface."""

	async def list(self, actor_id: str, *, limit: int = 20, unread_only: bool = False) -> schemas.NotificationListResponse:
		actor = policy.require_actor(actor_id)
		limit = max(1, min(limit, settings.messages_max_page_size))
		items = await get_repository().list_notifications(actor, limit=limit, unread_only=unread_only)
		return schemas.NotificationListResponse(notifications=[schemas.NotificationDTO.from_model(n) for n in items])

	async def mark_read(self, actor_id: str, notification_id: str) -> schemas.NotificationEnvelope:
		actor = policy.require_actor(actor_id)
		notification_id = policy.clean_id(notification_id, field="notification_id")
		updated = await get_repository().mark_notification_read(actor, notification_id, datetime.now(timezone.utc))
		if updated is None:
			raise NotFoundError("notification_not_found")
		return schemas.NotificationEnvelope(notification=schemas.NotificationDTO.from_model(updated))

	async def unread_count(self, actor_id: str) -> schemas.UnreadCountResponse:
		actor = policy.require_actor(actor_id)
		return schemas.UnreadCountResponse(count=await get_repository().count_unread_notifications(actor))


notification_gateway = NotificationGateway()
notification_service = NotificationService()
