"""asyncpg pool lifecycle and the ``guarded`` wrapper every store call goes through."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

import asyncpg

from placetalk.domain.errors import StoreUnavailable
from placetalk.settings import settings

T = TypeVar("T")

_pool: Optional[asyncpg.pool.Pool] = None

# Outage-like failures; anything else (bad SQL, constraint violations) propagates as-is.
_UNAVAILABLE_ERRORS = (
	asyncpg.PostgresConnectionError,
	asyncpg.InterfaceError,
	asyncpg.exceptions.CannotConnectNowError,
	asyncpg.exceptions.TooManyConnectionsError,
	asyncpg.exceptions.QueryCanceledError,
	OSError,
	asyncio.TimeoutError,
)


def _pool_options() -> dict:
	return {
		"dsn": settings.postgres_url.replace("localhost", "127.0.0.1"),
		"min_size": settings.postgres_min_pool_size,
		"max_size": settings.postgres_max_pool_size,
		"ssl": "require" if settings.postgres_ssl else "disable",
		"command_timeout": settings.store_timeout_seconds,
	}


async def init_pool() -> asyncpg.pool.Pool:
	global _pool
	if _pool is None:
		try:
			_pool = await asyncpg.create_pool(**_pool_options())
		except _UNAVAILABLE_ERRORS as exc:
			raise StoreUnavailable(f"pool: {exc.__class__.__name__}") from exc
	return _pool


def set_pool(pool: Optional[asyncpg.pool.Pool]) -> None:
	global _pool
	_pool = pool


async def get_pool() -> asyncpg.pool.Pool:
	if _pool is None:
		return await init_pool()
	return _pool


async def close_pool() -> None:
	global _pool
	if _pool is not None:
		await _pool.close()
		_pool = None


async def guarded(awaitable: Awaitable[T], *, op: str, timeout: float | None = None) -> T:
	"""Await a store call under the store timeout; outages surface as StoreUnavailable."""
	if timeout is None:
		timeout = settings.store_timeout_seconds
	try:
		return await asyncio.wait_for(awaitable, timeout=timeout)
	except _UNAVAILABLE_ERRORS as exc:
		raise StoreUnavailable(f"{op}: {exc.__class__.__name__}") from exc
