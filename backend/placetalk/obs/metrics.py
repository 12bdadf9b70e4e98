"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, Summary

REQUEST_COUNTER = Counter(
	"placetalk_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"placetalk_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

HEARTBEATS = Counter(
	"placetalk_discovery_heartbeats_total",
	"Heartbeats processed by candidate path",
	["path"],
)

HEARTBEAT_RESULTS = Summary(
	"placetalk_discovery_results",
	"Pins returned per heartbeat",
)

HEARTBEAT_FAILURES = Counter(
	"placetalk_discovery_failures_total",
	"Heartbeats failed because the durable store was unavailable",
)

CANDIDATES_DROPPED = Counter(
	"placetalk_discovery_candidates_dropped_total",
	"Candidates dropped during precise filtering",
	["reason"],
)

FIRST_DISCOVERIES = Counter(
	"placetalk_discovery_first_total",
	"First discoveries of a pin by a user",
)

INDEX_WRITES = Counter(
	"placetalk_index_writes_total",
	"Fast proximity index writes",
	["op", "result"],
)

CACHE_FALLBACKS = Counter(
	"placetalk_index_fallbacks_total",
	"Heartbeats that fell back to the direct store query",
	["reason"],
)

PINS_CREATED = Counter(
	"placetalk_pins_created_total",
	"Pins created",
	["category"],
)

PINS_REMOVED = Counter(
	"placetalk_pins_removed_total",
	"Pins soft-deleted",
	["reason"],
)

PIN_EXTENSIONS = Counter(
	"placetalk_pins_extended_total",
	"Pins whose lifetime was extended by the reconciler",
)

INTERACTIONS = Counter(
	"placetalk_interactions_total",
	"Pin interactions recorded",
	["kind", "result"],
)

EVENTS_PUBLISHED = Counter(
	"placetalk_events_published_total",
	"Pin lifecycle events dispatched",
	["event"],
)

BACKGROUND_TASK_FAILURES = Counter(
	"placetalk_background_task_failures_total",
	"Fire-and-forget tasks that raised",
	["name"],
)

REDIS_UP = Gauge("placetalk_redis_up", "Redis availability (1=up,0=down)")
REDIS_LATENCY = Summary("placetalk_redis_latency_seconds", "Redis ping latency (seconds)")

POSTGRES_UP = Gauge("placetalk_postgres_up", "Postgres availability (1=up,0=down)")
POSTGRES_LATENCY = Summary("placetalk_postgres_latency_seconds", "Postgres ping latency (seconds)")

BACKGROUND_RUNS = Counter(
	"placetalk_jobs_runs_total",
	"Background job executions",
	["name", "result"],
)

BACKGROUND_DURATION = Histogram(
	"placetalk_jobs_duration_seconds",
	"Background job duration",
	["name"],
	buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 15.0, 30.0, 60.0),
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def inc_heartbeat(path: str) -> None:
	HEARTBEATS.labels(path=path).inc()


def observe_heartbeat_results(count: int) -> None:
	HEARTBEAT_RESULTS.observe(count)


def inc_heartbeat_failure() -> None:
	HEARTBEAT_FAILURES.inc()


def inc_candidate_dropped(reason: str) -> None:
	CANDIDATES_DROPPED.labels(reason=reason).inc()


def inc_first_discovery(count: int = 1) -> None:
	FIRST_DISCOVERIES.inc(count)


def inc_index_write(op: str, result: str) -> None:
	INDEX_WRITES.labels(op=op, result=result).inc()


def inc_cache_fallback(reason: str) -> None:
	CACHE_FALLBACKS.labels(reason=reason).inc()


def inc_pin_created(category: str) -> None:
	PINS_CREATED.labels(category=category).inc()


def inc_pin_removed(reason: str, count: int = 1) -> None:
	if count:
		PINS_REMOVED.labels(reason=reason).inc(count)


def inc_pin_extended(count: int = 1) -> None:
	if count:
		PIN_EXTENSIONS.inc(count)


def inc_interaction(kind: str, result: str) -> None:
	INTERACTIONS.labels(kind=kind, result=result).inc()


def inc_event(event: str) -> None:
	EVENTS_PUBLISHED.labels(event=event).inc()


def inc_background_task_failure(name: str) -> None:
	BACKGROUND_TASK_FAILURES.labels(name=name).inc()


def mark_redis(ok: bool, *, latency_seconds: float | None = None) -> None:
	REDIS_UP.set(1 if ok else 0)
	if latency_seconds is not None:
		REDIS_LATENCY.observe(latency_seconds)


def mark_postgres(ok: bool, *, latency_seconds: float | None = None) -> None:
	POSTGRES_UP.set(1 if ok else 0)
	if latency_seconds is not None:
		POSTGRES_LATENCY.observe(latency_seconds)


def record_job_run(name: str, *, result: str, duration_seconds: float | None = None) -> None:
	BACKGROUND_RUNS.labels(name=name, result=result).inc()
	if duration_seconds is not None:
		BACKGROUND_DURATION.labels(name=name).observe(duration_seconds)
