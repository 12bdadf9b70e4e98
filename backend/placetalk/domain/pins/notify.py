"""Per-user notification preferences for discovered pins (mute and cooldown)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable, Protocol, Sequence

from placetalk.domain.pins.models import NotifyPreference


class NotifyRepository(Protocol):
    async def upsert(self, preference: NotifyPreference) -> NotifyPreference:
        ...

    async def get(self, user_id: str, pin_id: str) -> NotifyPreference | None:
        ...

    async def list_for_user(self, user_id: str) -> Sequence[NotifyPreference]:
        ...

    async def suppressed(self, user_id: str, pin_ids: Sequence[str], *, now: datetime) -> set[str]:
        """Pin ids the user muted or is still cooling down on."""
        ...


class InMemoryNotifyRepository(NotifyRepository):
    def __init__(self) -> None:
        self._items: dict[tuple[str, str], NotifyPreference] = {}

    async def upsert(self, preference: NotifyPreference) -> NotifyPreference:
        self._items[(preference.user_id, preference.pin_id)] = preference
        return preference

    async def get(self, user_id: str, pin_id: str) -> NotifyPreference | None:
        return self._items.get((user_id, pin_id))

    async def list_for_user(self, user_id: str) -> Sequence[NotifyPreference]:
        return [item for (uid, _), item in self._items.items() if uid == user_id]

    async def suppressed(self, user_id: str, pin_ids: Sequence[str], *, now: datetime) -> set[str]:
        result: set[str] = set()
        for pin_id in pin_ids:
            item = self._items.get((user_id, pin_id))
            if item is not None and not item.allows(now=now):
                result.add(pin_id)
        return result


class NotifyPreferenceService:
    """Mark pins good (cooldown), bad (mute forever) or unmute them."""

    def __init__(self, repository: NotifyRepository, *, cooldown: timedelta) -> None:
        self._repo = repository
        self._cooldown = cooldown

    async def mark_good(self, user_id: str, pin_id: str, *, now: datetime | None = None) -> NotifyPreference:
        now = now or datetime.now(timezone.utc)
        return await self._repo.upsert(
            NotifyPreference(
                user_id=user_id,
                pin_id=pin_id,
                is_muted=False,
                next_notify_at=now + self._cooldown,
                last_interaction_at=now,
            )
        )

    async def mark_bad(self, user_id: str, pin_id: str, *, now: datetime | None = None) -> NotifyPreference:
        now = now or datetime.now(timezone.utc)
        existing = await self._repo.get(user_id, pin_id)
        return await self._repo.upsert(
            NotifyPreference(
                user_id=user_id,
                pin_id=pin_id,
                is_muted=True,
                next_notify_at=existing.next_notify_at if existing else None,
                last_interaction_at=now,
            )
        )

    async def unmute(self, user_id: str, pin_id: str) -> NotifyPreference:
        existing = await self._repo.get(user_id, pin_id)
        return await self._repo.upsert(
            NotifyPreference(
                user_id=user_id,
                pin_id=pin_id,
                is_muted=False,
                next_notify_at=None,
                last_interaction_at=existing.last_interaction_at if existing else None,
            )
        )

    async def should_notify(self, user_id: str, pin_id: str, *, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        existing = await self._repo.get(user_id, pin_id)
        return existing is None or existing.allows(now=now)

    async def suppressed(self, user_id: str, pin_ids: Iterable[str], *, now: datetime) -> set[str]:
        ids = list(pin_ids)
        if not ids:
            return set()
        return await self._repo.suppressed(user_id, ids, now=now)

    async def list_for_user(self, user_id: str) -> Sequence[NotifyPreference]:
        return await self._repo.list_for_user(user_id)
