"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


REQUEST_COUNTER = Counter(
	"portal_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"portal_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"portal_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"portal_socketio_events_total",
	"Socket.IO events handled or emitted per namespace",
	["namespace", "event"],
)

SOCKET_ERRORS = Counter(
	"portal_socketio_errors_total",
	"Socket.IO handler errors reported to the invoking client",
	["event", "code"],
)

CONVERSATIONS_CREATED = Counter(
	"portal_conversations_created_total",
	"Conversations created",
	["type", "result"],
)

MESSAGES_SENT = Counter(
	"portal_messages_sent_total",
	"Messages persisted",
	["transport"],
)

MESSAGES_EDITED = Counter(
	"portal_messages_edited_total",
	"Messages edited",
)

MESSAGES_RETRACTED = Counter(
	"portal_messages_retracted_total",
	"Messages retracted by their sender",
)

CONVERSATIONS_PURGED = Counter(
	"portal_conversations_purged_total",
	"Conversations hard-deleted with their messages",
	["reason"],
)

READ_MARKS = Counter(
	"portal_read_marks_total",
	"MarkRead operations",
)

FANOUT_FAILURES = Counter(
	"portal_fanout_failures_total",
	"Real-time fan-out attempts that raised",
	["event"],
)

NOTIFICATION_JOBS = Counter(
	"portal_notification_jobs_total",
	"Notification jobs by stage",
	["stage"],
)

PUSH_DELIVERIES = Counter(
	"portal_push_deliveries_total",
	"Push gateway deliveries",
	["result"],
)

PRESENCE_ONLINE = Gauge(
	"portal_presence_online_users",
	"Users currently bound to a live channel",
)

REDIS_UP = Gauge("portal_redis_up", "Redis reachability (1 up, 0 down)")
POSTGRES_UP = Gauge("portal_postgres_up", "Postgres reachability (1 up, 0 down)")


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def socket_error(event: str, code: str) -> None:
	SOCKET_ERRORS.labels(event=event, code=code).inc()


def inc_conversation_created(kind: str, *, created: bool = True) -> None:
	CONVERSATIONS_CREATED.labels(type=kind, result="created" if created else "existing").inc()


def inc_message_sent(transport: str) -> None:
	MESSAGES_SENT.labels(transport=transport).inc()


def inc_message_edited() -> None:
	MESSAGES_EDITED.inc()


def inc_message_retracted() -> None:
	MESSAGES_RETRACTED.inc()


def inc_conversation_purged(reason: str) -> None:
	CONVERSATIONS_PURGED.labels(reason=reason).inc()


def inc_read_mark() -> None:
	READ_MARKS.inc()


def inc_fanout_failure(event: str) -> None:
	FANOUT_FAILURES.labels(event=event).inc()


def inc_notification_job(stage: str) -> None:
	NOTIFICATION_JOBS.labels(stage=stage).inc()


def inc_push_delivery(result: str) -> None:
	PUSH_DELIVERIES.labels(result=result).inc()


def set_presence_online(count: int) -> None:
	PRESENCE_ONLINE.set(count)


def mark_redis(ok: bool) -> None:
	REDIS_UP.set(1 if ok else 0)


def mark_postgres(ok: bool) -> None:
	POSTGRES_UP.set(1 if ok else 0)
