"""Likes, reports and hides on pins.

Counters are only ever changed through the repository's relative updates; a
repeated interaction is a successful no-op that reports the current counters.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from placetalk.domain.errors import AlreadyRecorded, NotFound
from placetalk.domain.pins.models import InteractionKind, PinCounters
from placetalk.domain.pins.repository import PinRepository
from placetalk.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


class InteractionService:
	def __init__(self, repository: PinRepository) -> None:
		self._repo = repository

	async def record_interaction(
		self,
		user_id: str,
		pin_id: str,
		kind: InteractionKind | str,
		*,
		now: Optional[datetime] = None,
	) -> PinCounters:
		kind = InteractionKind(kind)
		now = now or datetime.now(timezone.utc)
		try:
			counters = await self._repo.apply_vote(user_id, pin_id, kind, now=now)
		except AlreadyRecorded:
			obs_metrics.inc_interaction(kind.value, "noop")
			return await self._current(pin_id, now=now)
		except NotFound:
			obs_metrics.inc_interaction(kind.value, "not_found")
			raise
		obs_metrics.inc_interaction(kind.value, "ok")
		logger.info("interaction recorded pin=%s kind=%s", pin_id, kind.value)
		return counters

	async def hide_pin(self, user_id: str, pin_id: str, *, now: Optional[datetime] = None) -> PinCounters:
		now = now or datetime.now(timezone.utc)
		try:
			counters = await self._repo.record_hide(user_id, pin_id, now=now)
		except AlreadyRecorded:
			obs_metrics.inc_interaction("hide", "noop")
			return await self._current(pin_id, now=now)
		obs_metrics.inc_interaction("hide", "ok")
		return counters

	async def _current(self, pin_id: str, *, now: datetime) -> PinCounters:
		pin = await self._repo.get(pin_id)
		if pin is None or pin.is_deleted:
			raise NotFound(pin_id)
		return pin.counters(changed=False)
