"""Periodic lifecycle reconciliation: extend popular pins, remove reported and expired ones,
and put lost or ageing entries back into the geohash buckets.

Each store pass is a single bulk conditional update and every pass is an independent
failure domain; a failing pass is logged and the tick moves on.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from placetalk.domain.pins.events import PinEventBus, PinRemoved
from placetalk.domain.pins.index_writer import GeoIndexWriter
from placetalk.domain.pins.models import Pin, RemovalReason, TickReport
from placetalk.domain.pins.repository import PinRepository
from placetalk.obs import logging as obs_logging
from placetalk.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

JOB_NAME = "pin_lifecycle"


class LifecycleReconciler:
	def __init__(
		self,
		repository: PinRepository,
		index: GeoIndexWriter,
		events: PinEventBus,
		*,
		like_threshold: int,
		report_threshold: int,
		extension: timedelta,
		repair_batch: int = 500,
	) -> None:
		self._repo = repository
		self._index = index
		self._events = events
		self._like_threshold = like_threshold
		self._report_threshold = report_threshold
		self._extension = extension
		self._repair_batch = max(1, int(repair_batch))
		self._repair_cursor: Optional[str] = None
		self.last_tick_at: Optional[datetime] = None
		self.last_tick_ok: Optional[bool] = None

	async def run_once(self, *, now: Optional[datetime] = None) -> TickReport:
		now = now or datetime.now(timezone.utc)
		started = time.perf_counter()
		report = TickReport()

		with obs_logging.job_context(JOB_NAME):
			extended = await self._pass("extend", report, self._extend, now)
			if extended is not None:
				report.extended = extended
			deleted = await self._pass("dislike_deletion", report, self._delete_reported, now)
			if deleted is not None:
				report.deleted = deleted
			expired = await self._pass("expiry", report, self._expire, now)
			if expired is not None:
				report.expired = expired
			repaired = await self._pass("index_repair", report, self._repair_index, now)
			if repaired is not None:
				report.repaired = repaired

		self.last_tick_at = datetime.now(timezone.utc)
		self.last_tick_ok = not report.failed_passes
		result = "error" if report.failed_passes else "ok"
		obs_metrics.record_job_run(JOB_NAME, result=result, duration_seconds=time.perf_counter() - started)
		if report.extended or report.removed or report.repaired or report.failed_passes:
			logger.info(
				"lifecycle tick extended=%d deleted=%d expired=%d repaired=%d failed=%s",
				len(report.extended),
				len(report.deleted),
				len(report.expired),
				len(report.repaired),
				",".join(report.failed_passes) or "-",
			)
		return report

	async def _pass(
		self,
		name: str,
		report: TickReport,
		func: Callable[[datetime], Awaitable[list[Pin]]],
		now: datetime,
	) -> Optional[list[Pin]]:
		try:
			return await func(now)
		except Exception:
			logger.exception("lifecycle pass failed: %s", name)
			obs_metrics.record_job_run(f"{JOB_NAME}.{name}", result="error")
			report.failed_passes.append(name)
			return None

	async def _extend(self, now: datetime) -> list[Pin]:
		pins = await self._repo.extend_liked(like_threshold=self._like_threshold, extension=self._extension, now=now)
		obs_metrics.inc_pin_extended(len(pins))
		for pin in pins:
			await self._index.index_pin(pin, now=now)
		return pins

	async def _delete_reported(self, now: datetime) -> list[Pin]:
		pins = await self._repo.delete_reported(report_threshold=self._report_threshold, now=now)
		await self._removed(pins, RemovalReason.DISLIKE_DELETION, now)
		return pins

	async def _expire(self, now: datetime) -> list[Pin]:
		pins = await self._repo.expire_due(now=now)
		await self._removed(pins, RemovalReason.EXPIRY, now)
		return pins

	async def _removed(self, pins: list[Pin], reason: RemovalReason, now: datetime) -> None:
		obs_metrics.inc_pin_removed(reason.value, len(pins))
		for pin in pins:
			await self._index.remove_pin(pin)
			self._events.publish(PinRemoved(pin_id=pin.id, owner_id=pin.owner_id, reason=reason, at=now))

	async def _repair_index(self, now: datetime) -> list[Pin]:
		"""Walk one page of active pins per tick, wrapping around at the end of the store."""
		pins = await self._repo.list_active(now=now, after=self._repair_cursor, limit=self._repair_batch)
		self._repair_cursor = pins[-1].id if len(pins) == self._repair_batch else None
		return await self._index.repair(pins, now=now)
