"""Geospatial index writer for the Redis geohash buckets.

Each bucket is a Redis set ``geo:<geohash>`` holding the ids of pins believed
active in that cell. Writes are idempotent set operations and best-effort:
any Redis failure is logged and counted, never raised.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from redis.exceptions import RedisError

from placetalk.domain.geo import geohash
from placetalk.domain.pins.models import Pin
from placetalk.infra.redis import RedisProxy
from placetalk.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

BUCKET_PREFIX = "geo"

_CACHE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


def bucket_key(bucket: str) -> str:
	return f"{BUCKET_PREFIX}:{bucket}"


class GeoIndexWriter:
	"""Adds and removes pins from their geohash bucket."""

	def __init__(
		self,
		redis: RedisProxy,
		*,
		precision: int,
		ceiling_seconds: int,
		timeout: float,
		enabled: bool = True,
	) -> None:
		self._redis = redis
		self._precision = precision
		self._ceiling = max(1, int(ceiling_seconds))
		self._timeout = timeout
		self._enabled = enabled

	@property
	def enabled(self) -> bool:
		return self._enabled

	def key_for(self, pin: Pin) -> str:
		return bucket_key(geohash.encode(pin.lat, pin.lon, self._precision))

	def ttl_for(self, pin: Pin, *, now: Optional[datetime] = None) -> int:
		"""Remaining lifetime in seconds, or the ceiling for pins that never expire."""
		if pin.expires_at is None:
			return self._ceiling
		now = now or datetime.now(timezone.utc)
		remaining = int((pin.expires_at - now).total_seconds())
		return max(1, min(remaining, self._ceiling))

	async def index_pin(self, pin: Pin, *, now: Optional[datetime] = None) -> bool:
		if not self._enabled:
			return False
		key = self.key_for(pin)
		ttl = self.ttl_for(pin, now=now)
		try:
			await asyncio.wait_for(self._add(key, pin.id, ttl), timeout=self._timeout)
		except _CACHE_ERRORS:
			obs_metrics.inc_index_write("add", "error")
			logger.warning("index add failed pin=%s bucket=%s", pin.id, key, exc_info=True)
			return False
		obs_metrics.inc_index_write("add", "ok")
		return True

	async def _add(self, key: str, pin_id: str, ttl: int) -> None:
		# NX sets a TTL on a fresh bucket; GT only ever lengthens an existing one.
		async with self._redis.pipeline(transaction=True) as pipe:
			pipe.sadd(key, pin_id)
			pipe.expire(key, ttl, nx=True)
			pipe.expire(key, ttl, gt=True)
			await pipe.execute()

	async def repair(self, pins: list[Pin], *, now: Optional[datetime] = None) -> list[Pin]:
		"""Re-index pins missing from their bucket or whose bucket will lapse too early.

		Returns the pins that were re-indexed; a cache failure repairs nothing.
		"""
		if not self._enabled or not pins:
			return []
		keys = [self.key_for(pin) for pin in pins]
		try:
			state = await asyncio.wait_for(self._bucket_state(keys, pins), timeout=self._timeout)
		except _CACHE_ERRORS:
			obs_metrics.inc_index_write("repair", "error")
			logger.warning("index repair read failed pins=%d", len(pins), exc_info=True)
			return []
		repaired: list[Pin] = []
		for pin, (member, ttl) in zip(pins, state):
			# A bucket past half its intended lifetime is refreshed before it can lapse.
			if member and ttl >= self.ttl_for(pin, now=now) // 2:
				continue
			if await self.index_pin(pin, now=now):
				repaired.append(pin)
		if repaired:
			obs_metrics.inc_index_write("repair", "ok")
		return repaired

	async def _bucket_state(self, keys: list[str], pins: list[Pin]) -> list[tuple[bool, int]]:
		async with self._redis.pipeline(transaction=False) as pipe:
			for key, pin in zip(keys, pins):
				pipe.sismember(key, pin.id)
				pipe.ttl(key)
			results = await pipe.execute()
		return [(bool(results[i]), int(results[i + 1])) for i in range(0, len(results), 2)]

	async def remove_pin(self, pin: Pin) -> bool:
		if not self._enabled:
			return False
		key = self.key_for(pin)
		try:
			await asyncio.wait_for(self._redis.srem(key, pin.id), timeout=self._timeout)
		except _CACHE_ERRORS:
			obs_metrics.inc_index_write("remove", "error")
			logger.warning("index remove failed pin=%s bucket=%s", pin.id, key, exc_info=True)
			return False
		obs_metrics.inc_index_write("remove", "ok")
		return True
