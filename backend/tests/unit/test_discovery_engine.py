import asyncio
from datetime import datetime, time, timedelta, timezone

import pytest

from placetalk.domain.discovery.candidates import DirectQueryCandidateSource
from placetalk.domain.discovery.service import ProximityQueryEngine
from placetalk.domain.errors import InvalidCoordinate, StoreUnavailable
from placetalk.domain.geo import geohash
from placetalk.domain.pins import container
from placetalk.domain.pins.events import PinEventBus, PinFirstDiscovered
from placetalk.domain.pins.index_writer import bucket_key
from placetalk.domain.pins.models import InteractionKind, PinCategory
from placetalk.domain.pins.repository import InMemoryPinRepository
from placetalk.infra import tasks

TOKYO = (35.6762, 139.6503)
# ~200 m due north of TOKYO
TOKYO_200M_NORTH = (TOKYO[0] + 200 / 111_195, TOKYO[1])


class _UnavailableRepository(InMemoryPinRepository):
    async def nearby_recent(self, *args, **kwargs):
        raise StoreUnavailable("pins.nearby_recent: TimeoutError")


@pytest.mark.asyncio
async def test_heartbeat_at_pin_discovers_it():
    now = datetime.now(timezone.utc)
    pin = await container.get_pin_service().create_pin("owner", *TOKYO, now=now)
    result = await container.get_engine().process_heartbeat("walker", *TOKYO, now=now)
    assert result.count == 1
    found = result.pins[0]
    assert found.pin.id == pin.id
    assert found.distance_m == 0
    assert found.first_discovery is True
    assert found.deprioritized is False


@pytest.mark.asyncio
async def test_heartbeat_200m_away_finds_nothing():
    now = datetime.now(timezone.utc)
    await container.get_pin_service().create_pin("owner", *TOKYO, now=now)
    result = await container.get_engine().process_heartbeat("walker", *TOKYO_200M_NORTH, now=now)
    assert result.count == 0
    assert result.pins == []


@pytest.mark.asyncio
async def test_cache_and_fallback_paths_agree(fake_redis):
    now = datetime.now(timezone.utc)
    service = container.get_pin_service()
    near = await service.create_pin("owner", TOKYO[0] + 20 / 111_195, TOKYO[1], now=now)
    await service.create_pin("owner", TOKYO[0] + 60 / 111_195, TOKYO[1], now=now)
    engine = container.get_engine()

    cached = await engine.process_heartbeat("walker-a", *TOKYO, now=now)
    await fake_redis.flushall()
    fallback = await engine.process_heartbeat("walker-b", *TOKYO, now=now)

    assert [item.pin.id for item in cached.pins] == [near.id]
    assert [item.pin.id for item in fallback.pins] == [near.id]


@pytest.mark.asyncio
async def test_pin_missing_from_its_bucket_is_found_beside_a_live_neighbour(fake_redis):
    now = datetime.now(timezone.utc)
    service = container.get_pin_service()
    lost = await service.create_pin("owner", *TOKYO, now=now)
    await fake_redis.delete(bucket_key(geohash.encode(*TOKYO, 7)))
    north = geohash.neighbors(geohash.encode(*TOKYO, 7))[1]
    await service.create_pin("owner", *geohash.cell_center(north), now=now)

    result = await container.get_engine().process_heartbeat("viewer", *TOKYO, now=now)

    assert [item.pin.id for item in result.pins] == [lost.id]


@pytest.mark.asyncio
async def test_first_discovery_is_recorded_once_with_distance():
    now = datetime.now(timezone.utc)
    pin = await container.get_pin_service().create_pin("owner", TOKYO[0] + 12 / 111_195, TOKYO[1], now=now)
    engine = container.get_engine()
    repo = container.get_repository()
    assert await repo.get_discovery("walker", pin.id) is None

    await engine.process_heartbeat("walker", *TOKYO, now=now)
    await engine.process_heartbeat("walker", TOKYO[0] + 12 / 111_195, TOKYO[1], now=now + timedelta(minutes=5))

    record = await repo.get_discovery("walker", pin.id)
    assert record.distance_m == 12
    assert record.first_discovered_at == now


@pytest.mark.asyncio
async def test_results_are_ranked_by_distance():
    now = datetime.now(timezone.utc)
    service = container.get_pin_service()
    far = await service.create_pin("owner", TOKYO[0] + 40 / 111_195, TOKYO[1], now=now)
    close = await service.create_pin("owner", TOKYO[0] + 5 / 111_195, TOKYO[1], now=now)
    result = await container.get_engine().process_heartbeat("walker", *TOKYO, now=now)
    assert [item.pin.id for item in result.pins] == [close.id, far.id]
    assert result.pins[0].distance_m == 5
    assert result.pins[1].distance_m == 40


@pytest.mark.asyncio
async def test_repeat_heartbeats_are_idempotent():
    now = datetime.now(timezone.utc)
    pin = await container.get_pin_service().create_pin("owner", *TOKYO, now=now)
    engine = container.get_engine()
    first = await engine.process_heartbeat("walker", *TOKYO, now=now)
    second = await engine.process_heartbeat("walker", *TOKYO, now=now)
    assert [item.pin.id for item in first.pins] == [item.pin.id for item in second.pins]
    assert first.pins[0].first_discovery is True
    assert second.pins[0].first_discovery is False
    records = [r for r in container.get_repository().discoveries() if r.pin_id == pin.id]
    assert len(records) == 1


@pytest.mark.asyncio
async def test_concurrent_heartbeats_fire_first_discovery_once(fake_redis):
    now = datetime.now(timezone.utc)
    pin = await container.get_pin_service().create_pin("owner", *TOKYO, now=now)
    fired: list[PinFirstDiscovered] = []

    async def on_first(event):
        fired.append(event)

    container.get_events().subscribe(PinFirstDiscovered, on_first)
    engine = container.get_engine()
    results = await asyncio.gather(
        engine.process_heartbeat("walker", *TOKYO, now=now),
        engine.process_heartbeat("walker", *TOKYO, now=now),
    )
    await tasks.drain(timeout=1.0)

    assert sum(1 for result in results if result.pins[0].first_discovery) == 1
    assert [event.pin_id for event in fired] == [pin.id]
    assert await fake_redis.xlen("x:discovery.first") == 1
    stored = await container.get_repository().get(pin.id)
    assert stored.pass_through_count == 1


@pytest.mark.asyncio
async def test_reported_pin_is_deprioritized_not_hidden():
    now = datetime.now(timezone.utc)
    pin = await container.get_pin_service().create_pin("owner", *TOKYO, now=now)
    await container.get_interaction_service().record_interaction("critic", pin.id, InteractionKind.REPORT)
    result = await container.get_engine().process_heartbeat("walker", *TOKYO, now=now)
    assert result.count == 1
    assert result.pins[0].deprioritized is True


@pytest.mark.asyncio
async def test_liked_and_reported_pin_keeps_priority():
    now = datetime.now(timezone.utc)
    pin = await container.get_pin_service().create_pin("owner", *TOKYO, now=now)
    interactions = container.get_interaction_service()
    await interactions.record_interaction("critic", pin.id, InteractionKind.REPORT)
    await interactions.record_interaction("fan", pin.id, InteractionKind.LIKE)
    result = await container.get_engine().process_heartbeat("walker", *TOKYO, now=now)
    assert result.pins[0].deprioritized is False


@pytest.mark.asyncio
async def test_expired_and_deleted_pins_are_not_discovered():
    now = datetime.now(timezone.utc)
    service = container.get_pin_service()
    expired = await service.create_pin("owner", *TOKYO, now=now - timedelta(hours=80))
    deleted = await service.create_pin("owner", *TOKYO, now=now)
    await service.delete_pin("owner", deleted.id, now=now)
    result = await container.get_engine().process_heartbeat("walker", *TOKYO, now=now)
    assert expired.id not in [item.pin.id for item in result.pins]
    assert result.count == 0


@pytest.mark.asyncio
async def test_community_pin_never_expires():
    created = datetime.now(timezone.utc) - timedelta(days=365)
    pin = await container.get_pin_service().create_pin("owner", *TOKYO, PinCategory.COMMUNITY, now=created)
    assert pin.expires_at is None
    result = await container.get_engine().process_heartbeat("walker", *TOKYO)
    assert [item.pin.id for item in result.pins] == [pin.id]


@pytest.mark.asyncio
async def test_visibility_window_is_enforced():
    now = datetime(2024, 5, 1, 23, 30, tzinfo=timezone.utc)
    service = container.get_pin_service()
    night = await service.create_pin(
        "owner", *TOKYO, PinCategory.COMMUNITY, visible_from=time(22, 0), visible_to=time(4, 0), now=now
    )
    day = await service.create_pin(
        "owner", *TOKYO, PinCategory.COMMUNITY, visible_from=time(9, 0), visible_to=time(17, 0), now=now
    )
    result = await container.get_engine().process_heartbeat("walker", *TOKYO, now=now)
    ids = [item.pin.id for item in result.pins]
    assert night.id in ids
    assert day.id not in ids


@pytest.mark.asyncio
async def test_muted_pin_is_returned_without_notification():
    now = datetime.now(timezone.utc)
    pin = await container.get_pin_service().create_pin("owner", *TOKYO, now=now)
    await container.get_notify_service().mark_bad("walker", pin.id, now=now)
    result = await container.get_engine().process_heartbeat("walker", *TOKYO, now=now)
    assert result.count == 1
    assert result.pins[0].should_notify is False


@pytest.mark.asyncio
async def test_invalid_coordinates_are_rejected():
    with pytest.raises(InvalidCoordinate):
        await container.get_engine().process_heartbeat("walker", 95.0, 0.0)


@pytest.mark.asyncio
async def test_store_outage_fails_the_heartbeat():
    repo = _UnavailableRepository()
    engine = ProximityQueryEngine(
        DirectQueryCandidateSource(repo, radius_m=50, limit=200),
        repo,
        radius_m=50,
        events=PinEventBus(),
    )
    with pytest.raises(StoreUnavailable):
        await engine.process_heartbeat("walker", *TOKYO)
