"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNTER = Counter(
	"chatwire_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"chatwire_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"chatwire_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"chatwire_socketio_events_total",
	"Socket.IO events handled or emitted per namespace",
	["namespace", "event"],
)

CHAT_MESSAGES = Counter(
	"chatwire_chat_messages_total",
	"Chat message writes by action",
	["action"],
)

CHAT_READ_UPDATES = Counter(
	"chatwire_chat_read_total",
	"Chat summaries reset to zero unread",
)

FANOUT_DELIVERIES = Counter(
	"chatwire_fanout_deliveries_total",
	"Fan-out push attempts per connection by result",
	["event", "result"],
)

FANOUT_LATENCY = Histogram(
	"chatwire_fanout_duration_seconds",
	"Time spent fanning out one change event",
	buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.0),
)

PRESENCE_ONLINE = Gauge(
	"chatwire_presence_online_users",
	"Users with at least one live connection",
)

PRESENCE_TRANSITIONS = Counter(
	"chatwire_presence_transitions_total",
	"Presence online/offline transitions",
	["online"],
)

TYPING_SIGNALS = Counter(
	"chatwire_typing_signals_total",
	"Typing signals stored, cleared or expired",
	["action"],
)

RATE_LIMIT_REJECTS = Counter(
	"chatwire_rate_limit_rejects_total",
	"Writes rejected by the send throttle",
	["kind"],
)

CHANGE_FEED_EVENTS = Counter(
	"chatwire_change_feed_events_total",
	"Change events dispatched to subscribers",
	["kind"],
)

REDIS_UP = Gauge("chatwire_redis_up", "Redis readiness (1 = ok)")
STORE_UP = Gauge("chatwire_store_up", "Conversation store readiness (1 = ok)")
STORE_LATENCY = Histogram(
	"chatwire_store_ping_seconds",
	"Conversation store readiness probe latency",
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def inc_chat_message(action: str) -> None:
	CHAT_MESSAGES.labels(action=action).inc()


def inc_chat_read() -> None:
	CHAT_READ_UPDATES.inc()


def inc_fanout(event: str, result: str) -> None:
	FANOUT_DELIVERIES.labels(event=event, result=result).inc()


def set_presence_online(count: int) -> None:
	PRESENCE_ONLINE.set(float(count))


def inc_presence_transition(online: bool) -> None:
	PRESENCE_TRANSITIONS.labels(online="true" if online else "false").inc()


def inc_typing(action: str) -> None:
	TYPING_SIGNALS.labels(action=action).inc()


def inc_rate_limit_reject(kind: str) -> None:
	RATE_LIMIT_REJECTS.labels(kind=kind).inc()


def inc_change_event(kind: str) -> None:
	CHANGE_FEED_EVENTS.labels(kind=kind).inc()


def mark_redis(ok: bool) -> None:
	REDIS_UP.set(1 if ok else 0)


def mark_store(ok: bool, *, latency_seconds: float | None = None) -> None:
	STORE_UP.set(1 if ok else 0)
	if latency_seconds is not None:
		STORE_LATENCY.observe(latency_seconds)


def observe_fanout(elapsed_seconds: float) -> None:
	FANOUT_LATENCY.observe(elapsed_seconds)
