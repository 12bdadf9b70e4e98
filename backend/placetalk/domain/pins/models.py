"""Domain models for pins, discoveries and engagement counters."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Optional

from placetalk.settings import settings


class PinCategory(str, Enum):
	NORMAL = "normal"
	COMMUNITY = "community"
	PRIVATE = "private"


class InteractionKind(str, Enum):
	LIKE = "like"
	UNLIKE = "unlike"
	REPORT = "report"
	UNREPORT = "unreport"

	@property
	def vote(self) -> str:
		"""The stored vote this interaction sets or clears."""
		if self in (InteractionKind.LIKE, InteractionKind.UNLIKE):
			return "like"
		return "report"

	@property
	def is_retraction(self) -> bool:
		return self in (InteractionKind.UNLIKE, InteractionKind.UNREPORT)


class RemovalReason(str, Enum):
	DISLIKE_DELETION = "dislike_deletion"
	EXPIRY = "expiry"
	MANUAL = "manual"


# Counter columns that may be adjusted with relative updates.
COUNTER_FIELDS = ("like_count", "report_count", "pass_through_count", "hide_count")


@dataclass(slots=True, frozen=True)
class TtlPolicy:
	"""Lifetime applied at creation; ``None`` means the pin never expires by time."""

	lifetime: Optional[timedelta]

	@classmethod
	def for_category(cls, category: PinCategory) -> "TtlPolicy":
		hours = {
			PinCategory.NORMAL: settings.pin_ttl_hours_normal,
			PinCategory.PRIVATE: settings.pin_ttl_hours_private,
			PinCategory.COMMUNITY: settings.pin_ttl_hours_community,
		}[category]
		if hours is None:
			return cls(lifetime=None)
		return cls(lifetime=timedelta(hours=float(hours)))

	@classmethod
	def from_hours(cls, hours: float) -> "TtlPolicy":
		return cls(lifetime=timedelta(hours=hours))

	@classmethod
	def never(cls) -> "TtlPolicy":
		return cls(lifetime=None)

	def expires_at(self, created_at: datetime) -> Optional[datetime]:
		if self.lifetime is None:
			return None
		return created_at + self.lifetime


@dataclass(slots=True)
class Pin:
	id: str
	owner_id: str
	lat: float
	lon: float
	category: PinCategory
	created_at: datetime
	expires_at: Optional[datetime] = None
	title: str = ""
	directions: str = ""
	details: Optional[str] = None
	like_count: int = 0
	report_count: int = 0
	pass_through_count: int = 0
	hide_count: int = 0
	extension_count: int = 0
	is_deleted: bool = False
	removal_reason: Optional[RemovalReason] = None
	deleted_at: Optional[datetime] = None
	visible_from: Optional[time] = None
	visible_to: Optional[time] = None
	updated_at: Optional[datetime] = None

	def is_active(self, *, now: datetime) -> bool:
		"""Not soft-deleted and not past its expiry."""
		if self.is_deleted:
			return False
		return self.expires_at is None or self.expires_at > now

	def in_visibility_window(self, local_time: time) -> bool:
		if self.visible_from is None or self.visible_to is None:
			return True
		start, end = self.visible_from, self.visible_to
		if start <= end:
			return start <= local_time <= end
		# Window wraps midnight, e.g. 22:00-04:00
		return local_time >= start or local_time <= end

	def is_discoverable(self, *, now: datetime, local_time: time) -> bool:
		return self.is_active(now=now) and self.in_visibility_window(local_time)

	@property
	def deprioritized(self) -> bool:
		return self.report_count > 0 and self.like_count < self.report_count * 0.5

	def counters(self, *, changed: bool = True) -> "PinCounters":
		return PinCounters(
			pin_id=self.id,
			like_count=self.like_count,
			report_count=self.report_count,
			pass_through_count=self.pass_through_count,
			hide_count=self.hide_count,
			changed=changed,
		)

	def copy(self) -> "Pin":
		return replace(self)


@dataclass(slots=True)
class PinCounters:
	"""Engagement counters returned after an interaction."""

	pin_id: str
	like_count: int
	report_count: int
	pass_through_count: int = 0
	hide_count: int = 0
	changed: bool = True


@dataclass(slots=True)
class DiscoveryRecord:
	user_id: str
	pin_id: str
	distance_m: int
	first_discovered_at: datetime


@dataclass(slots=True)
class DiscoveredPin:
	pin: Pin
	distance_m: int
	deprioritized: bool = False
	first_discovery: bool = False
	should_notify: bool = True


@dataclass(slots=True)
class DiscoveryResult:
	pins: list[DiscoveredPin] = field(default_factory=list)
	timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

	@property
	def count(self) -> int:
		return len(self.pins)


@dataclass(slots=True)
class NotifyPreference:
	user_id: str
	pin_id: str
	is_muted: bool = False
	next_notify_at: Optional[datetime] = None
	last_interaction_at: Optional[datetime] = None

	def allows(self, *, now: datetime) -> bool:
		if self.is_muted:
			return False
		if self.next_notify_at is not None:
			return now >= self.next_notify_at
		return True


@dataclass(slots=True)
class TickReport:
	"""Outcome of one lifecycle reconciliation tick."""

	extended: list[Pin] = field(default_factory=list)
	deleted: list[Pin] = field(default_factory=list)
	expired: list[Pin] = field(default_factory=list)
	repaired: list[Pin] = field(default_factory=list)
	failed_passes: list[str] = field(default_factory=list)

	@property
	def removed(self) -> list[Pin]:
		return [*self.deleted, *self.expired]
