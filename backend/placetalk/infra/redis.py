"""Shared Redis handle for the fast proximity index and the pin event streams.

Modules import ``redis_client`` once; tests and the app factory swap the
connection underneath it (fakeredis, a per-test client) via ``set_redis_client``.
"""

from __future__ import annotations

import asyncio
import time

import redis.asyncio as redis

from placetalk.settings import settings


def _connect(url: str) -> redis.Redis:
	# Socket waits share the cache timeout.
	return redis.from_url(
		url,
		decode_responses=True,
		socket_timeout=settings.cache_timeout_seconds,
		socket_connect_timeout=settings.cache_timeout_seconds,
	)


class RedisProxy:
	"""Forwards to a swappable client; adds stream trimming and a latency probe."""

	def __init__(self, client: redis.Redis):
		self._client: redis.Redis = client

	def set_client(self, client: redis.Redis) -> None:
		self._client = client

	@property
	def client(self) -> redis.Redis:
		return self._client

	async def xadd(self, name, fields, *, maxlen: int | None = None, approximate: bool = True, **kwargs):
		if maxlen is None:
			maxlen = settings.event_stream_maxlen
		return await self._client.xadd(name, fields, maxlen=maxlen, approximate=approximate, **kwargs)

	async def probe(self, timeout: float) -> float:
		"""PING within ``timeout``; returns the round trip in seconds."""
		started = time.perf_counter()
		await asyncio.wait_for(self._client.ping(), timeout=timeout)
		return time.perf_counter() - started

	def __getattr__(self, item):
		return getattr(self._client, item)


redis_client: RedisProxy = RedisProxy(_connect(settings.redis_url))


def set_redis_client(client: redis.Redis) -> None:
	redis_client.set_client(client)
