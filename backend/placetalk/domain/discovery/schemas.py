"""Pydantic schemas for discovery endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from placetalk.domain.pins.models import DiscoveryResult, PinCategory


class HeartbeatRequest(BaseModel):
	"""GPS fix reported by the client; ranges are checked by the engine."""

	lat: float
	lon: float


class DiscoveredPinOut(BaseModel):
	id: str
	title: str
	directions: str
	category: PinCategory
	lat: float
	lon: float
	distance_m: int = Field(ge=0)
	deprioritized: bool
	first_discovery: bool
	should_notify: bool
	like_count: int
	report_count: int
	expires_at: datetime | None = None


class HeartbeatResponse(BaseModel):
	pins: list[DiscoveredPinOut]
	count: int
	timestamp: datetime

	@classmethod
	def from_result(cls, result: DiscoveryResult) -> "HeartbeatResponse":
		return cls(
			pins=[
				DiscoveredPinOut(
					id=item.pin.id,
					title=item.pin.title,
					directions=item.pin.directions,
					category=item.pin.category,
					lat=item.pin.lat,
					lon=item.pin.lon,
					distance_m=item.distance_m,
					deprioritized=item.deprioritized,
					first_discovery=item.first_discovery,
					should_notify=item.should_notify,
					like_count=item.pin.like_count,
					report_count=item.pin.report_count,
					expires_at=item.pin.expires_at,
				)
				for item in result.pins
			],
			count=result.count,
			timestamp=result.timestamp,
		)
