"""Proximity query engine: turns a heartbeat into the set of discoverable pins."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from placetalk.domain.discovery.candidates import CandidateSource
from placetalk.domain.errors import StoreUnavailable
from placetalk.domain.geo.geohash import haversine, validate_coordinate
from placetalk.domain.pins.events import PinEventBus, PinFirstDiscovered
from placetalk.domain.pins.models import DiscoveredPin, DiscoveryResult, Pin
from placetalk.domain.pins.notify import NotifyPreferenceService
from placetalk.domain.pins.repository import PinRepository
from placetalk.infra import tasks
from placetalk.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


class ProximityQueryEngine:
	def __init__(
		self,
		source: CandidateSource,
		repository: PinRepository,
		*,
		radius_m: float,
		events: PinEventBus,
		notify: Optional[NotifyPreferenceService] = None,
		tz: str = "UTC",
	) -> None:
		self._source = source
		self._repo = repository
		self._radius_m = float(radius_m)
		self._events = events
		self._notify = notify
		self._tz = ZoneInfo(tz)

	@property
	def radius_m(self) -> float:
		return self._radius_m

	async def process_heartbeat(
		self,
		user_id: str,
		lat: float,
		lon: float,
		*,
		now: Optional[datetime] = None,
	) -> DiscoveryResult:
		"""Return the pins discoverable from (lat, lon), nearest first.

		Raises InvalidCoordinate for out-of-range input and StoreUnavailable when
		the durable store cannot be read. An empty result is not an error.
		"""
		validate_coordinate(lat, lon)
		now = now or datetime.now(timezone.utc)
		started = time.perf_counter()
		try:
			candidates = await self._source.candidates(lat, lon, now=now)
		except StoreUnavailable:
			obs_metrics.inc_heartbeat_failure()
			logger.warning("heartbeat failed: store unavailable user=%s", user_id)
			raise
		obs_metrics.inc_heartbeat(candidates.path)

		local_time = now.astimezone(self._tz).time().replace(tzinfo=None)
		ranked = self._filter(candidates.pins, lat, lon, now=now, local_time=local_time)
		ranked.sort(key=lambda item: item[0])

		found: list[DiscoveredPin] = []
		for distance, pin in ranked:
			rounded = int(round(distance))
			first = await self._record_discovery(user_id, pin, distance_m=rounded, now=now)
			found.append(
				DiscoveredPin(
					pin=pin,
					distance_m=rounded,
					deprioritized=pin.deprioritized,
					first_discovery=first,
				)
			)
		await self._annotate_notify(user_id, found, now=now)

		obs_metrics.observe_heartbeat_results(len(found))
		logger.debug(
			"heartbeat user=%s path=%s candidates=%d returned=%d elapsed_ms=%.1f",
			user_id,
			candidates.path,
			len(candidates.pins),
			len(found),
			(time.perf_counter() - started) * 1000,
		)
		return DiscoveryResult(pins=found, timestamp=now)

	def _filter(
		self,
		pins: list[Pin],
		lat: float,
		lon: float,
		*,
		now: datetime,
		local_time,
	) -> list[tuple[float, Pin]]:
		kept: list[tuple[float, Pin]] = []
		seen: set[str] = set()
		for pin in pins:
			if pin.id in seen:
				continue
			seen.add(pin.id)
			try:
				distance = haversine(lat, lon, float(pin.lat), float(pin.lon))
				discoverable = pin.is_discoverable(now=now, local_time=local_time)
			except (TypeError, ValueError):
				obs_metrics.inc_candidate_dropped("malformed")
				logger.warning("dropping malformed candidate pin=%s", pin.id, exc_info=True)
				continue
			if distance >= self._radius_m:
				obs_metrics.inc_candidate_dropped("distance")
				continue
			if not discoverable:
				obs_metrics.inc_candidate_dropped("inactive")
				continue
			kept.append((distance, pin))
		return kept

	async def _record_discovery(self, user_id: str, pin: Pin, *, distance_m: int, now: datetime) -> bool:
		try:
			first = await self._repo.record_discovery(user_id, pin.id, distance_m=distance_m, now=now)
		except StoreUnavailable:
			logger.warning("discovery record failed user=%s pin=%s", user_id, pin.id, exc_info=True)
			return False
		if first:
			obs_metrics.inc_first_discovery()
			tasks.spawn(
				self._repo.apply_counter_delta(pin.id, "pass_through_count", 1, now=now),
				name=f"pass_through:{pin.id}",
			)
			self._events.publish(PinFirstDiscovered(user_id=user_id, pin_id=pin.id, distance_m=distance_m, at=now))
		return first

	async def _annotate_notify(self, user_id: str, found: list[DiscoveredPin], *, now: datetime) -> None:
		if self._notify is None or not found:
			return
		try:
			muted = await self._notify.suppressed(user_id, [item.pin.id for item in found], now=now)
		except StoreUnavailable:
			logger.warning("notify preferences unavailable user=%s", user_id)
			return
		for item in found:
			item.should_notify = item.pin.id not in muted
