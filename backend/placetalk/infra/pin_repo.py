"""PostgreSQL persistence for pins, discoveries, votes and hides."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Sequence

import asyncpg

from placetalk.domain.errors import AlreadyRecorded, NotFound
from placetalk.domain.geo import geohash
from placetalk.domain.pins.models import (
    COUNTER_FIELDS,
    DiscoveryRecord,
    InteractionKind,
    Pin,
    PinCategory,
    PinCounters,
    RemovalReason,
)
from placetalk.domain.pins.repository import PinRepository
from placetalk.infra.postgres import guarded
from placetalk.settings import settings

_PIN_COLUMNS = """
    id, owner_id, lat, lon, category, title, directions, details,
    like_count, report_count, pass_through_count, hide_count, extension_count,
    is_deleted, removal_reason, deleted_at, visible_from, visible_to,
    created_at, updated_at, expires_at
"""

_COUNTER_COLUMNS = "id, like_count, report_count, pass_through_count, hide_count"

# Only these names are ever interpolated into SQL.
_COLUMN_FOR_FIELD = {name: name for name in COUNTER_FIELDS}
_COLUMN_FOR_VOTE = {"like": "like_count", "report": "report_count"}


def _row_to_pin(row: asyncpg.Record) -> Pin:
    reason = row["removal_reason"]
    return Pin(
        id=str(row["id"]),
        owner_id=str(row["owner_id"]),
        lat=float(row["lat"]),
        lon=float(row["lon"]),
        category=PinCategory(str(row["category"])),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        title=str(row["title"] or ""),
        directions=str(row["directions"] or ""),
        details=row["details"],
        like_count=int(row["like_count"]),
        report_count=int(row["report_count"]),
        pass_through_count=int(row["pass_through_count"]),
        hide_count=int(row["hide_count"]),
        extension_count=int(row["extension_count"]),
        is_deleted=bool(row["is_deleted"]),
        removal_reason=RemovalReason(reason) if reason else None,
        deleted_at=row["deleted_at"],
        visible_from=row["visible_from"],
        visible_to=row["visible_to"],
        updated_at=row["updated_at"],
    )


def _row_to_counters(row: asyncpg.Record, *, changed: bool = True) -> PinCounters:
    return PinCounters(
        pin_id=str(row["id"]),
        like_count=int(row["like_count"]),
        report_count=int(row["report_count"]),
        pass_through_count=int(row["pass_through_count"]),
        hide_count=int(row["hide_count"]),
        changed=changed,
    )


class PostgresPinRepository(PinRepository):
    """Pins live in ``pins``; every mutation is one conditional statement."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def insert(self, pin: Pin) -> Pin:
        row = await guarded(
            self._pool.fetchrow(
                f"""
                INSERT INTO pins (
                    id, owner_id, lat, lon, geohash, category, title, directions, details,
                    visible_from, visible_to, created_at, updated_at, expires_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $12, $13)
                RETURNING {_PIN_COLUMNS}
                """,
                pin.id,
                pin.owner_id,
                pin.lat,
                pin.lon,
                geohash.encode(pin.lat, pin.lon, settings.geohash_precision),
                pin.category.value,
                pin.title,
                pin.directions,
                pin.details,
                pin.visible_from,
                pin.visible_to,
                pin.created_at,
                pin.expires_at,
            ),
            op="pins.insert",
        )
        if row is None:  # pragma: no cover - asyncpg always returns a row for RETURNING
            raise RuntimeError("Failed to insert pin")
        return _row_to_pin(row)

    async def get(self, pin_id: str) -> Pin | None:
        row = await guarded(
            self._pool.fetchrow(f"SELECT {_PIN_COLUMNS} FROM pins WHERE id = $1", pin_id),
            op="pins.get",
        )
        return _row_to_pin(row) if row else None

    async def get_many(self, pin_ids: Sequence[str]) -> list[Pin]:
        if not pin_ids:
            return []
        rows = await guarded(
            self._pool.fetch(f"SELECT {_PIN_COLUMNS} FROM pins WHERE id = ANY($1::text[])", list(pin_ids)),
            op="pins.get_many",
        )
        return [_row_to_pin(row) for row in rows]

    async def list_by_owner(self, owner_id: str) -> list[Pin]:
        rows = await guarded(
            self._pool.fetch(
                f"""
                SELECT {_PIN_COLUMNS}
                FROM pins
                WHERE owner_id = $1 AND is_deleted = FALSE
                ORDER BY created_at DESC
                """,
                owner_id,
            ),
            op="pins.list_by_owner",
        )
        return [_row_to_pin(row) for row in rows]

    async def list_active(self, *, now: datetime, after: str | None, limit: int) -> list[Pin]:
        rows = await guarded(
            self._pool.fetch(
                f"""
                SELECT {_PIN_COLUMNS}
                FROM pins
                WHERE is_deleted = FALSE
                  AND (expires_at IS NULL OR expires_at > $1)
                  AND ($2::text IS NULL OR id > $2::text)
                ORDER BY id
                LIMIT $3
                """,
                now,
                after,
                limit,
            ),
            op="pins.list_active",
        )
        return [_row_to_pin(row) for row in rows]

    async def nearby_recent(
        self, lat: float, lon: float, *, radius_m: float, now: datetime, limit: int
    ) -> list[Pin]:
        min_lat, max_lat, min_lon, max_lon = geohash.bounding_box(lat, lon, radius_m)
        rows = await guarded(
            self._pool.fetch(
                f"""
                SELECT {_PIN_COLUMNS}
                FROM (
                    SELECT *,
                        2 * 6371000 * ASIN(LEAST(1.0, SQRT(
                            POWER(SIN(RADIANS(lat - $1::float8) / 2), 2)
                            + COS(RADIANS($1::float8)) * COS(RADIANS(lat))
                            * POWER(SIN(RADIANS(lon - $2::float8) / 2), 2)
                        ))) AS distance_m
                    FROM pins
                    WHERE is_deleted = FALSE
                      AND (expires_at IS NULL OR expires_at > $3)
                      AND lat BETWEEN $4 AND $5
                      AND lon BETWEEN $6 AND $7
                ) AS nearby
                WHERE distance_m < $8
                ORDER BY created_at DESC
                LIMIT $9
                """,
                lat,
                lon,
                now,
                min_lat,
                max_lat,
                min_lon,
                max_lon,
                float(radius_m),
                max(0, int(limit)),
            ),
            op="pins.nearby_recent",
        )
        return [_row_to_pin(row) for row in rows]

    async def soft_delete(self, pin_id: str, *, owner_id: str | None, reason: RemovalReason, now: datetime) -> Pin | None:
        row = await guarded(
            self._pool.fetchrow(
                f"""
                UPDATE pins
                SET is_deleted = TRUE, removal_reason = $3, deleted_at = $4, updated_at = $4
                WHERE id = $1 AND is_deleted = FALSE AND ($2::text IS NULL OR owner_id = $2::text)
                RETURNING {_PIN_COLUMNS}
                """,
                pin_id,
                owner_id,
                reason.value,
                now,
            ),
            op="pins.soft_delete",
        )
        return _row_to_pin(row) if row else None

    async def extend_liked(self, *, like_threshold: int, extension: timedelta, now: datetime) -> list[Pin]:
        if like_threshold <= 0:
            return []
        # SET expressions see the pre-update row, so the deficit is computed once.
        rows = await guarded(
            self._pool.fetch(
                f"""
                UPDATE pins
                SET expires_at = expires_at + make_interval(
                        secs => $2::float8 * (FLOOR(like_count::numeric / $1::int)::int - extension_count)
                    ),
                    extension_count = FLOOR(like_count::numeric / $1::int)::int,
                    updated_at = $3
                WHERE is_deleted = FALSE
                  AND expires_at IS NOT NULL
                  AND expires_at > $3
                  AND like_count >= $1::int
                  AND extension_count < FLOOR(like_count::numeric / $1::int)::int
                RETURNING {_PIN_COLUMNS}
                """,
                like_threshold,
                extension.total_seconds(),
                now,
            ),
            op="pins.extend_liked",
        )
        return [_row_to_pin(row) for row in rows]

    async def delete_reported(self, *, report_threshold: int, now: datetime) -> list[Pin]:
        rows = await guarded(
            self._pool.fetch(
                f"""
                UPDATE pins
                SET is_deleted = TRUE, removal_reason = $2, deleted_at = $3, updated_at = $3
                WHERE is_deleted = FALSE AND report_count >= $1
                RETURNING {_PIN_COLUMNS}
                """,
                report_threshold,
                RemovalReason.DISLIKE_DELETION.value,
                now,
            ),
            op="pins.delete_reported",
        )
        return [_row_to_pin(row) for row in rows]

    async def expire_due(self, *, now: datetime) -> list[Pin]:
        rows = await guarded(
            self._pool.fetch(
                f"""
                UPDATE pins
                SET is_deleted = TRUE, removal_reason = $1, deleted_at = $2, updated_at = $2
                WHERE is_deleted = FALSE AND expires_at IS NOT NULL AND expires_at <= $2
                RETURNING {_PIN_COLUMNS}
                """,
                RemovalReason.EXPIRY.value,
                now,
            ),
            op="pins.expire_due",
        )
        return [_row_to_pin(row) for row in rows]

    async def record_discovery(self, user_id: str, pin_id: str, *, distance_m: int, now: datetime) -> bool:
        inserted = await guarded(
            self._pool.fetchval(
                """
                INSERT INTO discoveries (user_id, pin_id, distance_m, first_discovered_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (user_id, pin_id) DO NOTHING
                RETURNING pin_id
                """,
                user_id,
                pin_id,
                int(distance_m),
                now,
            ),
            op="discoveries.insert",
        )
        return inserted is not None

    async def get_discovery(self, user_id: str, pin_id: str) -> DiscoveryRecord | None:
        row = await guarded(
            self._pool.fetchrow(
                """
                SELECT user_id, pin_id, distance_m, first_discovered_at
                FROM discoveries
                WHERE user_id = $1 AND pin_id = $2
                """,
                user_id,
                pin_id,
            ),
            op="discoveries.get",
        )
        if row is None:
            return None
        return DiscoveryRecord(
            user_id=str(row["user_id"]),
            pin_id=str(row["pin_id"]),
            distance_m=int(row["distance_m"]),
            first_discovered_at=row["first_discovered_at"],
        )

    async def apply_vote(self, user_id: str, pin_id: str, kind: InteractionKind, *, now: datetime) -> PinCounters:
        return await guarded(self._apply_vote(user_id, pin_id, kind, now), op="pin_votes.apply")

    async def _apply_vote(self, user_id: str, pin_id: str, kind: InteractionKind, now: datetime) -> PinCounters:
        vote = kind.vote
        column = _COLUMN_FOR_VOTE[vote]
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                active = await conn.fetchval(
                    """
                    SELECT 1 FROM pins
                    WHERE id = $1 AND is_deleted = FALSE AND (expires_at IS NULL OR expires_at > $2)
                    """,
                    pin_id,
                    now,
                )
                if active is None:
                    raise NotFound(pin_id)

                if kind.is_retraction:
                    removed = await conn.fetchval(
                        "DELETE FROM pin_votes WHERE user_id = $1 AND pin_id = $2 AND kind = $3 RETURNING kind",
                        user_id,
                        pin_id,
                        vote,
                    )
                    if removed is None:
                        raise AlreadyRecorded(f"no {vote} to retract")
                    row = await conn.fetchrow(
                        f"""
                        UPDATE pins SET {column} = GREATEST({column} - 1, 0), updated_at = $2
                        WHERE id = $1
                        RETURNING {_COUNTER_COLUMNS}
                        """,
                        pin_id,
                        now,
                    )
                    return _row_to_counters(row)

                inserted = await conn.fetchval(
                    """
                    INSERT INTO pin_votes (user_id, pin_id, kind, created_at, updated_at)
                    VALUES ($1, $2, $3, $4, $4)
                    ON CONFLICT (user_id, pin_id) DO NOTHING
                    RETURNING kind
                    """,
                    user_id,
                    pin_id,
                    vote,
                    now,
                )
                if inserted is not None:
                    row = await conn.fetchrow(
                        f"""
                        UPDATE pins SET {column} = {column} + 1, updated_at = $2
                        WHERE id = $1
                        RETURNING {_COUNTER_COLUMNS}
                        """,
                        pin_id,
                        now,
                    )
                    return _row_to_counters(row)

                flipped = await conn.fetchval(
                    """
                    UPDATE pin_votes SET kind = $3, updated_at = $4
                    WHERE user_id = $1 AND pin_id = $2 AND kind <> $3
                    RETURNING kind
                    """,
                    user_id,
                    pin_id,
                    vote,
                    now,
                )
                if flipped is None:
                    raise AlreadyRecorded(f"already {vote}d")
                other = _COLUMN_FOR_VOTE["report" if vote == "like" else "like"]
                row = await conn.fetchrow(
                    f"""
                    UPDATE pins
                    SET {column} = {column} + 1, {other} = GREATEST({other} - 1, 0), updated_at = $2
                    WHERE id = $1
                    RETURNING {_COUNTER_COLUMNS}
                    """,
                    pin_id,
                    now,
                )
                return _row_to_counters(row)

    async def apply_counter_delta(self, pin_id: str, field: str, delta: int, *, now: datetime) -> PinCounters | None:
        column = _COLUMN_FOR_FIELD.get(field)
        if column is None:
            raise ValueError(f"unknown counter {field}")
        row = await guarded(
            self._pool.fetchrow(
                f"""
                UPDATE pins SET {column} = GREATEST({column} + $2, 0), updated_at = $3
                WHERE id = $1
                RETURNING {_COUNTER_COLUMNS}
                """,
                pin_id,
                int(delta),
                now,
            ),
            op="pins.counter_delta",
        )
        return _row_to_counters(row) if row else None

    async def record_hide(self, user_id: str, pin_id: str, *, now: datetime) -> PinCounters:
        return await guarded(self._record_hide(user_id, pin_id, now), op="pin_hides.insert")

    async def _record_hide(self, user_id: str, pin_id: str, now: datetime) -> PinCounters:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                exists = await conn.fetchval("SELECT 1 FROM pins WHERE id = $1 AND is_deleted = FALSE", pin_id)
                if exists is None:
                    raise NotFound(pin_id)
                inserted = await conn.fetchval(
                    """
                    INSERT INTO pin_hides (user_id, pin_id, created_at)
                    VALUES ($1, $2, $3)
                    ON CONFLICT (user_id, pin_id) DO NOTHING
                    RETURNING pin_id
                    """,
                    user_id,
                    pin_id,
                    now,
                )
                if inserted is None:
                    raise AlreadyRecorded("already hidden")
                row = await conn.fetchrow(
                    f"""
                    UPDATE pins SET hide_count = hide_count + 1, updated_at = $2
                    WHERE id = $1
                    RETURNING {_COUNTER_COLUMNS}
                    """,
                    pin_id,
                    now,
                )
                return _row_to_counters(row)
