"""Liveness and readiness probes.

Readiness is gated by the durable pin store only. The fast proximity index and
the lifecycle worker are reported as well, but a failure there marks the
service ``degraded`` rather than unready: heartbeats fall back to the store and
a missed reconciliation tick is caught up by the next one.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Dict, Optional, Tuple

import asyncpg

from placetalk.domain.pins import container
from placetalk.infra import postgres
from placetalk.infra.redis import redis_client
from placetalk.obs import metrics
from placetalk.settings import settings

LOGGER = logging.getLogger(__name__)

# Checks whose failure makes the instance unready.
_GATING = ("store", "migrations")
# Ticks missed before the lifecycle worker counts as stalled.
_STALE_TICKS = 3


def _failed(exc: BaseException) -> Dict[str, Any]:
	return {"ok": False, "error": exc.__class__.__name__}


async def _fast_index_status(timeout: float) -> Dict[str, Any]:
	if not settings.cache_enabled:
		return {"ok": True, "enabled": False}
	try:
		latency = await redis_client.probe(timeout)
	except Exception as exc:
		metrics.mark_redis(False)
		LOGGER.warning("fast index probe failed", exc_info=True)
		return _failed(exc)
	metrics.mark_redis(True, latency_seconds=latency)
	return {"ok": True, "enabled": True, "latency_ms": round(latency * 1000, 2)}


async def _store_status(timeout: float) -> Tuple[Dict[str, Any], Optional[asyncpg.Pool]]:
	if not settings.uses_postgres():
		return {"ok": True, "backend": "memory"}, None
	try:
		pool = await postgres.get_pool()
		started = perf_counter()
		async with pool.acquire() as conn:
			# Fails on a database without the pins schema.
			await asyncio.wait_for(conn.fetchval("SELECT 1 FROM pins LIMIT 1"), timeout=timeout)
	except Exception as exc:
		metrics.mark_postgres(False)
		LOGGER.warning("pin store probe failed", exc_info=True)
		return _failed(exc), None
	latency = perf_counter() - started
	metrics.mark_postgres(True, latency_seconds=latency)
	return {"ok": True, "backend": "postgres", "latency_ms": round(latency * 1000, 2)}, pool


async def _migration_status(pool: Optional[asyncpg.Pool]) -> Dict[str, Any]:
	required = settings.health_min_migration
	if pool is None:
		return {"ok": False, "error": "store_unavailable", "required": required}
	try:
		async with pool.acquire() as conn:
			applied = await conn.fetchval("SELECT max(version) FROM schema_migrations")
	except Exception as exc:
		return _failed(exc)
	if applied is None:
		return {"ok": False, "error": "no_migrations", "required": required}
	# Versions are the zero-padded migration file prefixes, so string order is numeric order.
	return {"ok": str(applied) >= required, "version": str(applied), "required": required}


def _lifecycle_status(now: datetime) -> Dict[str, Any]:
	if not settings.lifecycle_worker_enabled:
		return {"ok": True, "enabled": False}
	reconciler = container.get_reconciler()
	last = reconciler.last_tick_at
	if last is None:
		return {"ok": True, "enabled": True, "last_tick": None}
	age = (now - last).total_seconds()
	stale = age > settings.lifecycle_interval_seconds * _STALE_TICKS
	return {
		"ok": bool(reconciler.last_tick_ok) and not stale,
		"enabled": True,
		"last_tick": last.isoformat(),
		"age_seconds": round(age, 1),
	}


async def liveness() -> Dict[str, Any]:
	return {"status": "ok", "service": settings.service_name, "commit": settings.git_commit}


async def readiness() -> Tuple[int, Dict[str, Any]]:
	store_state, pool = await _store_status(timeout=0.3)
	checks: Dict[str, Any] = {
		"store": store_state,
		"fast_index": await _fast_index_status(timeout=0.2),
		"lifecycle": _lifecycle_status(datetime.now(timezone.utc)),
	}
	if settings.uses_postgres():
		checks["migrations"] = await _migration_status(pool)

	ready = all(checks[name]["ok"] for name in _GATING if name in checks)
	if not ready:
		status = "unavailable"
	elif all(state["ok"] for state in checks.values()):
		status = "ok"
	else:
		status = "degraded"
	return (200 if ready else 503), {"status": status, "checks": checks}
