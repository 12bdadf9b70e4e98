"""Durable pin store contract and an in-process implementation.

Every mutation is expressed as a guarded conditional update so concurrent
callers (interaction writes, heartbeats, reconciler ticks) cannot lose
updates. The in-memory store serialises mutations behind one asyncio lock,
the Postgres store relies on single-statement ``UPDATE ... WHERE`` guards and
unique constraints.
"""

from __future__ import annotations

import asyncio
import math
from datetime import datetime, timedelta
from typing import Iterable, Protocol, Sequence

from placetalk.domain.errors import AlreadyRecorded, NotFound
from placetalk.domain.geo.geohash import bounding_box, haversine
from placetalk.domain.pins.models import (
    COUNTER_FIELDS,
    DiscoveryRecord,
    InteractionKind,
    Pin,
    PinCounters,
    RemovalReason,
)


class PinRepository(Protocol):
    async def insert(self, pin: Pin) -> Pin:
        ...

    async def get(self, pin_id: str) -> Pin | None:
        ...

    async def get_many(self, pin_ids: Sequence[str]) -> list[Pin]:
        ...

    async def list_by_owner(self, owner_id: str) -> list[Pin]:
        ...

    async def list_active(self, *, now: datetime, after: str | None, limit: int) -> list[Pin]:
        """Active pins ordered by id, starting after ``after``; pages through the whole store."""
        ...

    async def nearby_recent(
        self, lat: float, lon: float, *, radius_m: float, now: datetime, limit: int
    ) -> list[Pin]:
        """Active pins within ``radius_m``, newest first, at most ``limit`` rows."""
        ...

    async def soft_delete(self, pin_id: str, *, owner_id: str | None, reason: RemovalReason, now: datetime) -> Pin | None:
        ...

    async def extend_liked(self, *, like_threshold: int, extension: timedelta, now: datetime) -> list[Pin]:
        ...

    async def delete_reported(self, *, report_threshold: int, now: datetime) -> list[Pin]:
        ...

    async def expire_due(self, *, now: datetime) -> list[Pin]:
        ...

    async def record_discovery(self, user_id: str, pin_id: str, *, distance_m: int, now: datetime) -> bool:
        """Insert the (user, pin) discovery once; True only for the first insert."""
        ...

    async def get_discovery(self, user_id: str, pin_id: str) -> DiscoveryRecord | None:
        ...

    async def apply_vote(self, user_id: str, pin_id: str, kind: InteractionKind, *, now: datetime) -> PinCounters:
        """Set or clear the user's vote and adjust counters; raises NotFound / AlreadyRecorded."""
        ...

    async def apply_counter_delta(self, pin_id: str, field: str, delta: int, *, now: datetime) -> PinCounters | None:
        ...

    async def record_hide(self, user_id: str, pin_id: str, *, now: datetime) -> PinCounters:
        ...


def _opposite(vote: str) -> str:
    return "report" if vote == "like" else "like"


def _vote_column(vote: str) -> str:
    return "like_count" if vote == "like" else "report_count"


class InMemoryPinRepository(PinRepository):
    """Simple repository implementation for development and tests."""

    def __init__(self) -> None:
        self._pins: dict[str, Pin] = {}
        self._discoveries: dict[tuple[str, str], DiscoveryRecord] = {}
        self._votes: dict[tuple[str, str], str] = {}
        self._hides: set[tuple[str, str]] = set()
        self._lock = asyncio.Lock()

    async def insert(self, pin: Pin) -> Pin:
        async with self._lock:
            self._pins[pin.id] = pin.copy()
            return pin.copy()

    async def get(self, pin_id: str) -> Pin | None:
        pin = self._pins.get(pin_id)
        return pin.copy() if pin else None

    async def get_many(self, pin_ids: Sequence[str]) -> list[Pin]:
        return [self._pins[pid].copy() for pid in pin_ids if pid in self._pins]

    async def list_by_owner(self, owner_id: str) -> list[Pin]:
        pins = [pin.copy() for pin in self._pins.values() if pin.owner_id == owner_id and not pin.is_deleted]
        return sorted(pins, key=lambda pin: pin.created_at, reverse=True)

    async def list_active(self, *, now: datetime, after: str | None, limit: int) -> list[Pin]:
        pins = sorted(
            (pin for pin in self._pins.values() if pin.is_active(now=now) and (after is None or pin.id > after)),
            key=lambda pin: pin.id,
        )
        return [pin.copy() for pin in pins[: max(0, limit)]]

    async def nearby_recent(
        self, lat: float, lon: float, *, radius_m: float, now: datetime, limit: int
    ) -> list[Pin]:
        min_lat, max_lat, min_lon, max_lon = bounding_box(lat, lon, radius_m)
        found = [
            pin.copy()
            for pin in self._pins.values()
            if pin.is_active(now=now)
            and min_lat <= pin.lat <= max_lat
            and min_lon <= pin.lon <= max_lon
            and haversine(lat, lon, pin.lat, pin.lon) < radius_m
        ]
        found.sort(key=lambda pin: pin.created_at, reverse=True)
        return found[: max(0, limit)]

    async def soft_delete(self, pin_id: str, *, owner_id: str | None, reason: RemovalReason, now: datetime) -> Pin | None:
        async with self._lock:
            pin = self._pins.get(pin_id)
            if pin is None or pin.is_deleted:
                return None
            if owner_id is not None and pin.owner_id != owner_id:
                return None
            self._mark_deleted(pin, reason, now)
            return pin.copy()

    async def extend_liked(self, *, like_threshold: int, extension: timedelta, now: datetime) -> list[Pin]:
        if like_threshold <= 0:
            return []
        extended: list[Pin] = []
        async with self._lock:
            for pin in self._pins.values():
                if pin.is_deleted or pin.expires_at is None or pin.expires_at <= now:
                    continue
                if pin.like_count < like_threshold:
                    continue
                earned = math.floor(pin.like_count / like_threshold)
                if pin.extension_count >= earned:
                    continue
                pin.expires_at = pin.expires_at + extension * (earned - pin.extension_count)
                pin.extension_count = earned
                pin.updated_at = now
                extended.append(pin.copy())
        return extended

    async def delete_reported(self, *, report_threshold: int, now: datetime) -> list[Pin]:
        deleted: list[Pin] = []
        async with self._lock:
            for pin in self._pins.values():
                if not pin.is_deleted and pin.report_count >= report_threshold:
                    self._mark_deleted(pin, RemovalReason.DISLIKE_DELETION, now)
                    deleted.append(pin.copy())
        return deleted

    async def expire_due(self, *, now: datetime) -> list[Pin]:
        expired: list[Pin] = []
        async with self._lock:
            for pin in self._pins.values():
                if not pin.is_deleted and pin.expires_at is not None and pin.expires_at <= now:
                    self._mark_deleted(pin, RemovalReason.EXPIRY, now)
                    expired.append(pin.copy())
        return expired

    async def record_discovery(self, user_id: str, pin_id: str, *, distance_m: int, now: datetime) -> bool:
        async with self._lock:
            key = (user_id, pin_id)
            if key in self._discoveries:
                return False
            self._discoveries[key] = DiscoveryRecord(
                user_id=user_id, pin_id=pin_id, distance_m=distance_m, first_discovered_at=now
            )
            return True

    async def get_discovery(self, user_id: str, pin_id: str) -> DiscoveryRecord | None:
        return self._discoveries.get((user_id, pin_id))

    def discoveries(self) -> Iterable[DiscoveryRecord]:
        return list(self._discoveries.values())

    async def apply_vote(self, user_id: str, pin_id: str, kind: InteractionKind, *, now: datetime) -> PinCounters:
        async with self._lock:
            pin = self._pins.get(pin_id)
            if pin is None or not pin.is_active(now=now):
                raise NotFound(pin_id)
            key = (user_id, pin_id)
            current = self._votes.get(key)
            vote = kind.vote
            column = _vote_column(vote)
            if kind.is_retraction:
                if current != vote:
                    raise AlreadyRecorded(f"no {vote} to retract")
                del self._votes[key]
                setattr(pin, column, max(getattr(pin, column) - 1, 0))
            elif current is None:
                self._votes[key] = vote
                setattr(pin, column, getattr(pin, column) + 1)
            elif current == vote:
                raise AlreadyRecorded(f"already {vote}d")
            else:
                # Flip the existing vote
                self._votes[key] = vote
                other = _vote_column(_opposite(vote))
                setattr(pin, column, getattr(pin, column) + 1)
                setattr(pin, other, max(getattr(pin, other) - 1, 0))
            pin.updated_at = now
            return pin.counters()

    async def apply_counter_delta(self, pin_id: str, field: str, delta: int, *, now: datetime) -> PinCounters | None:
        if field not in COUNTER_FIELDS:
            raise ValueError(f"unknown counter {field}")
        async with self._lock:
            pin = self._pins.get(pin_id)
            if pin is None:
                return None
            setattr(pin, field, max(getattr(pin, field) + delta, 0))
            pin.updated_at = now
            return pin.counters()

    async def record_hide(self, user_id: str, pin_id: str, *, now: datetime) -> PinCounters:
        async with self._lock:
            pin = self._pins.get(pin_id)
            if pin is None or pin.is_deleted:
                raise NotFound(pin_id)
            key = (user_id, pin_id)
            if key in self._hides:
                raise AlreadyRecorded("already hidden")
            self._hides.add(key)
            pin.hide_count += 1
            pin.updated_at = now
            return pin.counters()

    @staticmethod
    def _mark_deleted(pin: Pin, reason: RemovalReason, now: datetime) -> None:
        pin.is_deleted = True
        pin.removal_reason = reason
        pin.deleted_at = now
        pin.updated_at = now
