"""Lightweight service container shared by the pin and discovery modules."""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

import asyncpg
from redis.asyncio import Redis

from placetalk.domain.discovery.candidates import (
    CachedCandidateSource,
    CandidateSource,
    DirectQueryCandidateSource,
)
from placetalk.domain.discovery.service import ProximityQueryEngine
from placetalk.domain.pins.events import PinEventBus
from placetalk.domain.pins.index_writer import GeoIndexWriter
from placetalk.domain.pins.interactions import InteractionService
from placetalk.domain.pins.lifecycle import LifecycleReconciler
from placetalk.domain.pins.notify import InMemoryNotifyRepository, NotifyPreferenceService, NotifyRepository
from placetalk.domain.pins.repository import InMemoryPinRepository, PinRepository
from placetalk.domain.pins.service import PinService
from placetalk.infra.notify_repo import PostgresNotifyRepository
from placetalk.infra.pin_repo import PostgresPinRepository
from placetalk.infra.redis import RedisProxy, redis_client
from placetalk.settings import settings

_repository: PinRepository
_notify_repository: NotifyRepository
_redis_proxy: RedisProxy
_events: PinEventBus
_index: GeoIndexWriter
_pin_service: PinService
_engine: ProximityQueryEngine
_interactions: InteractionService
_notify: NotifyPreferenceService
_reconciler: LifecycleReconciler


def _build_source(repository: PinRepository, redis_proxy: RedisProxy) -> CandidateSource:
    direct = DirectQueryCandidateSource(
        repository,
        radius_m=settings.discovery_radius_m,
        limit=settings.fallback_query_limit,
    )
    if not settings.cache_enabled:
        return direct
    return CachedCandidateSource(
        redis_proxy,
        repository,
        precision=settings.geohash_precision,
        radius_m=settings.discovery_radius_m,
        fallback=direct,
        timeout=settings.cache_timeout_seconds,
    )


def configure(
    *,
    repository: Optional[PinRepository] = None,
    notify_repository: Optional[NotifyRepository] = None,
    redis_proxy: Optional[RedisProxy] = None,
    events: Optional[PinEventBus] = None,
) -> None:
    """(Re)build every service from the current settings."""
    global _repository, _notify_repository, _redis_proxy, _events, _index
    global _pin_service, _engine, _interactions, _notify, _reconciler

    _repository = repository or InMemoryPinRepository()
    _notify_repository = notify_repository or InMemoryNotifyRepository()
    _redis_proxy = redis_proxy or redis_client
    _events = events or PinEventBus(_redis_proxy)
    _index = GeoIndexWriter(
        _redis_proxy,
        precision=settings.geohash_precision,
        ceiling_seconds=settings.bucket_ttl_ceiling_seconds,
        timeout=settings.cache_timeout_seconds,
        enabled=settings.cache_enabled,
    )
    _notify = NotifyPreferenceService(_notify_repository, cooldown=timedelta(days=settings.notify_cooldown_days))
    _pin_service = PinService(_repository, _index, _events)
    _engine = ProximityQueryEngine(
        _build_source(_repository, _redis_proxy),
        _repository,
        radius_m=settings.discovery_radius_m,
        events=_events,
        notify=_notify,
        tz=settings.visibility_timezone,
    )
    _interactions = InteractionService(_repository)
    _reconciler = LifecycleReconciler(
        _repository,
        _index,
        _events,
        like_threshold=settings.like_threshold,
        report_threshold=settings.report_threshold,
        extension=timedelta(hours=settings.extension_hours),
        repair_batch=settings.index_repair_batch,
    )


def configure_memory(redis_conn: Redis | RedisProxy | None = None) -> None:
    proxy = None
    if redis_conn is not None:
        proxy = redis_conn if isinstance(redis_conn, RedisProxy) else RedisProxy(redis_conn)
    configure(redis_proxy=proxy)


def configure_postgres(pool: asyncpg.Pool, redis_conn: Redis | RedisProxy | None = None) -> None:
    proxy = None
    if redis_conn is not None:
        proxy = redis_conn if isinstance(redis_conn, RedisProxy) else RedisProxy(redis_conn)
    configure(
        repository=PostgresPinRepository(pool),
        notify_repository=PostgresNotifyRepository(pool),
        redis_proxy=proxy,
    )


def get_repository() -> PinRepository:
    return _repository


def get_events() -> PinEventBus:
    return _events


def get_index_writer() -> GeoIndexWriter:
    return _index


def get_pin_service() -> PinService:
    return _pin_service


def get_engine() -> ProximityQueryEngine:
    return _engine


def get_interaction_service() -> InteractionService:
    return _interactions


def get_notify_service() -> NotifyPreferenceService:
    return _notify


def get_reconciler() -> LifecycleReconciler:
    return _reconciler


configure_memory()
