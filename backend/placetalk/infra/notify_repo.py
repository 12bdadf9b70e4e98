"""PostgreSQL persistence for per-user pin notification preferences."""

from __future__ import annotations

from datetime import datetime
from typing import Sequence

import asyncpg

from placetalk.domain.pins.models import NotifyPreference
from placetalk.domain.pins.notify import NotifyRepository
from placetalk.infra.postgres import guarded


def _row_to_preference(row: asyncpg.Record) -> NotifyPreference:
    return NotifyPreference(
        user_id=str(row["user_id"]),
        pin_id=str(row["pin_id"]),
        is_muted=bool(row["is_muted"]),
        next_notify_at=row["next_notify_at"],
        last_interaction_at=row["last_interaction_at"],
    )


class PostgresNotifyRepository(NotifyRepository):
    """Stores preferences in pin_notify_preferences."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def upsert(self, preference: NotifyPreference) -> NotifyPreference:
        row = await guarded(
            self._pool.fetchrow(
                """
                INSERT INTO pin_notify_preferences (user_id, pin_id, is_muted, next_notify_at, last_interaction_at)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (user_id, pin_id) DO UPDATE
                SET is_muted = EXCLUDED.is_muted,
                    next_notify_at = EXCLUDED.next_notify_at,
                    last_interaction_at = EXCLUDED.last_interaction_at
                RETURNING user_id, pin_id, is_muted, next_notify_at, last_interaction_at
                """,
                preference.user_id,
                preference.pin_id,
                preference.is_muted,
                preference.next_notify_at,
                preference.last_interaction_at,
            ),
            op="notify.upsert",
        )
        return _row_to_preference(row)

    async def get(self, user_id: str, pin_id: str) -> NotifyPreference | None:
        row = await guarded(
            self._pool.fetchrow(
                """
                SELECT user_id, pin_id, is_muted, next_notify_at, last_interaction_at
                FROM pin_notify_preferences
                WHERE user_id = $1 AND pin_id = $2
                """,
                user_id,
                pin_id,
            ),
            op="notify.get",
        )
        return _row_to_preference(row) if row else None

    async def list_for_user(self, user_id: str) -> Sequence[NotifyPreference]:
        rows = await guarded(
            self._pool.fetch(
                """
                SELECT user_id, pin_id, is_muted, next_notify_at, last_interaction_at
                FROM pin_notify_preferences
                WHERE user_id = $1
                ORDER BY last_interaction_at DESC NULLS LAST
                """,
                user_id,
            ),
            op="notify.list",
        )
        return [_row_to_preference(row) for row in rows]

    async def suppressed(self, user_id: str, pin_ids: Sequence[str], *, now: datetime) -> set[str]:
        rows = await guarded(
            self._pool.fetch(
                """
                SELECT pin_id
                FROM pin_notify_preferences
                WHERE user_id = $1
                  AND pin_id = ANY($2::text[])
                  AND (is_muted = TRUE OR (next_notify_at IS NOT NULL AND next_notify_at > $3))
                """,
                user_id,
                list(pin_ids),
                now,
            ),
            op="notify.suppressed",
        )
        return {str(row["pin_id"]) for row in rows}
