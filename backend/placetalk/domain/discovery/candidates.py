"""Candidate retrieval for heartbeats.

The cached source reads the geohash buckets around the user that the discovery
radius reaches and loads the referenced pins from the durable store. Any cache
problem degrades to the direct store query; a store outage is never hidden.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from redis.exceptions import RedisError

from placetalk.domain.errors import CacheUnavailable
from placetalk.domain.geo import geohash
from placetalk.domain.pins.index_writer import bucket_key
from placetalk.domain.pins.models import Pin
from placetalk.domain.pins.repository import PinRepository
from placetalk.infra.redis import RedisProxy
from placetalk.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

_CACHE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


@dataclass(slots=True)
class Candidates:
	pins: list[Pin] = field(default_factory=list)
	# "cache", "direct", or "fallback" when the cache could not be used
	path: str = "direct"


class CandidateSource(Protocol):
	path: str

	async def candidates(self, lat: float, lon: float, *, now: datetime) -> Candidates:
		...


class DirectQueryCandidateSource:
	"""Bounded radius query against the durable store."""

	path = "direct"

	def __init__(self, repository: PinRepository, *, radius_m: float, limit: int) -> None:
		self._repo = repository
		self._radius_m = radius_m
		self._limit = limit

	async def candidates(self, lat: float, lon: float, *, now: datetime) -> Candidates:
		pins = await self._repo.nearby_recent(lat, lon, radius_m=self._radius_m, now=now, limit=self._limit)
		return Candidates(pins=pins, path=self.path)


class CachedCandidateSource:
	"""Geohash bucket lookup that defers to ``fallback`` whenever the buckets cannot be trusted.

	Only buckets whose cell comes within the discovery radius are read. An empty
	bucket does not exist in Redis, so a missing reachable bucket is either empty
	or lost (expired, failed write); both are answered by the direct query.
	"""

	path = "cache"

	def __init__(
		self,
		redis: RedisProxy,
		repository: PinRepository,
		*,
		precision: int,
		radius_m: float,
		fallback: DirectQueryCandidateSource,
		timeout: float,
	) -> None:
		self._redis = redis
		self._repo = repository
		self._precision = precision
		self._radius_m = float(radius_m)
		self._fallback = fallback
		self._timeout = timeout

	async def candidates(self, lat: float, lon: float, *, now: datetime) -> Candidates:
		if not geohash.block_covers(lat, lon, self._radius_m, self._precision):
			obs_metrics.inc_cache_fallback("uncovered")
			return await self._direct(lat, lon, now=now)
		keys = [bucket_key(bucket) for bucket in geohash.reachable_buckets(lat, lon, self._radius_m, self._precision)]
		try:
			buckets = await self._read_buckets(keys)
		except CacheUnavailable:
			logger.warning("bucket read failed, using direct query", exc_info=True)
			obs_metrics.inc_cache_fallback("error")
			return await self._direct(lat, lon, now=now)
		missing = [key for key, members in buckets.items() if not members]
		if missing:
			obs_metrics.inc_cache_fallback("cold" if len(missing) == len(keys) else "partial")
			return await self._direct(lat, lon, now=now)
		ids: set[str] = set()
		for members in buckets.values():
			ids.update(members)
		return Candidates(pins=await self._repo.get_many(sorted(ids)), path=self.path)

	async def _read_buckets(self, keys: list[str]) -> dict[str, set[str]]:
		try:
			results = await asyncio.wait_for(self._smembers(keys), timeout=self._timeout)
		except _CACHE_ERRORS as exc:
			raise CacheUnavailable(f"bucket read: {exc.__class__.__name__}") from exc
		return {key: {str(member) for member in members or ()} for key, members in zip(keys, results)}

	async def _smembers(self, keys: list[str]) -> list:
		async with self._redis.pipeline(transaction=False) as pipe:
			for key in keys:
				pipe.smembers(key)
			return await pipe.execute()

	async def _direct(self, lat: float, lon: float, *, now: datetime) -> Candidates:
		result = await self._fallback.candidates(lat, lon, now=now)
		result.path = "fallback"
		return result
