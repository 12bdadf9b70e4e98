"""Pin creation and owner-facing pin operations.

Creation is a dual write: the durable store insert is authoritative and must
succeed, the geohash bucket insert is best-effort and never fails creation.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timezone
from typing import Optional
from uuid import uuid4

from placetalk.domain.errors import NotFound
from placetalk.domain.geo.geohash import validate_coordinate
from placetalk.domain.pins.events import PinEventBus, PinRemoved
from placetalk.domain.pins.index_writer import GeoIndexWriter
from placetalk.domain.pins.models import Pin, PinCategory, RemovalReason, TtlPolicy
from placetalk.domain.pins.repository import PinRepository
from placetalk.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


class PinService:
	def __init__(self, repository: PinRepository, index: GeoIndexWriter, events: PinEventBus) -> None:
		self._repo = repository
		self._index = index
		self._events = events

	async def create_pin(
		self,
		owner_id: str,
		lat: float,
		lon: float,
		category: PinCategory | str = PinCategory.NORMAL,
		ttl_policy: Optional[TtlPolicy] = None,
		*,
		title: str = "",
		directions: str = "",
		details: Optional[str] = None,
		visible_from: Optional[time] = None,
		visible_to: Optional[time] = None,
		now: Optional[datetime] = None,
	) -> Pin:
		validate_coordinate(lat, lon)
		category = PinCategory(category)
		policy = ttl_policy or TtlPolicy.for_category(category)
		now = now or datetime.now(timezone.utc)
		pin = Pin(
			id=str(uuid4()),
			owner_id=owner_id,
			lat=float(lat),
			lon=float(lon),
			category=category,
			created_at=now,
			expires_at=policy.expires_at(now),
			title=title,
			directions=directions,
			details=details,
			visible_from=visible_from,
			visible_to=visible_to,
			updated_at=now,
		)
		stored = await self._repo.insert(pin)
		await self._index.index_pin(stored, now=now)
		obs_metrics.inc_pin_created(category.value)
		logger.info(
			"pin created id=%s category=%s expires_at=%s",
			stored.id,
			category.value,
			stored.expires_at.isoformat() if stored.expires_at else "never",
		)
		return stored

	async def get_pin(self, pin_id: str, *, now: Optional[datetime] = None) -> Pin:
		now = now or datetime.now(timezone.utc)
		pin = await self._repo.get(pin_id)
		# Deleted and expired pins are indistinguishable from missing ones.
		if pin is None or not pin.is_active(now=now):
			raise NotFound(pin_id)
		return pin

	async def list_user_pins(self, owner_id: str) -> list[Pin]:
		return await self._repo.list_by_owner(owner_id)

	async def delete_pin(self, owner_id: str, pin_id: str, *, now: Optional[datetime] = None) -> Pin:
		now = now or datetime.now(timezone.utc)
		removed = await self._repo.soft_delete(pin_id, owner_id=owner_id, reason=RemovalReason.MANUAL, now=now)
		if removed is None:
			raise NotFound(pin_id)
		await self._index.remove_pin(removed)
		obs_metrics.inc_pin_removed(RemovalReason.MANUAL.value)
		self._events.publish(
			PinRemoved(pin_id=removed.id, owner_id=removed.owner_id, reason=RemovalReason.MANUAL, at=now)
		)
		logger.info("pin deleted id=%s reason=manual", removed.id)
		return removed
