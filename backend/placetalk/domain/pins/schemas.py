"""Pydantic schemas for pin endpoints."""

from __future__ import annotations

from datetime import datetime, time
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from placetalk.domain.pins.models import Pin, PinCategory, PinCounters


class PinCreateRequest(BaseModel):
	"""Coordinates are range-checked by the domain so they surface as invalid_coordinate."""

	lat: float
	lon: float
	category: PinCategory = PinCategory.NORMAL
	title: str = Field(default="", max_length=120)
	directions: str = Field(default="", max_length=500)
	details: Optional[str] = Field(default=None, max_length=2000)
	visible_from: Optional[time] = None
	visible_to: Optional[time] = None
	# Overrides the category default; 0 means the pin never expires by time.
	ttl_hours: Optional[float] = Field(default=None, ge=0, le=24 * 365)

	@model_validator(mode="after")
	def _window_pair(self) -> "PinCreateRequest":
		if (self.visible_from is None) != (self.visible_to is None):
			raise ValueError("visible_from and visible_to must be set together")
		return self


class PinOut(BaseModel):
	id: str
	owner_id: str
	lat: float
	lon: float
	category: PinCategory
	title: str
	directions: str
	details: Optional[str] = None
	like_count: int
	report_count: int
	pass_through_count: int
	hide_count: int
	extension_count: int
	created_at: datetime
	expires_at: Optional[datetime] = None
	visible_from: Optional[time] = None
	visible_to: Optional[time] = None
	is_deleted: bool = False
	removal_reason: Optional[str] = None

	@classmethod
	def from_pin(cls, pin: Pin) -> "PinOut":
		return cls(
			id=pin.id,
			owner_id=pin.owner_id,
			lat=pin.lat,
			lon=pin.lon,
			category=pin.category,
			title=pin.title,
			directions=pin.directions,
			details=pin.details,
			like_count=pin.like_count,
			report_count=pin.report_count,
			pass_through_count=pin.pass_through_count,
			hide_count=pin.hide_count,
			extension_count=pin.extension_count,
			created_at=pin.created_at,
			expires_at=pin.expires_at,
			visible_from=pin.visible_from,
			visible_to=pin.visible_to,
			is_deleted=pin.is_deleted,
			removal_reason=pin.removal_reason.value if pin.removal_reason else None,
		)


class CountersOut(BaseModel):
	pin_id: str
	like_count: int
	report_count: int
	pass_through_count: int
	hide_count: int
	changed: bool

	@classmethod
	def from_counters(cls, counters: PinCounters) -> "CountersOut":
		return cls(
			pin_id=counters.pin_id,
			like_count=counters.like_count,
			report_count=counters.report_count,
			pass_through_count=counters.pass_through_count,
			hide_count=counters.hide_count,
			changed=counters.changed,
		)


class NotifyPreferenceOut(BaseModel):
	pin_id: str
	is_muted: bool
	next_notify_at: Optional[datetime] = None
