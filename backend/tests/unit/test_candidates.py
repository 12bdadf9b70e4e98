from datetime import datetime, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from placetalk.domain.discovery.candidates import CachedCandidateSource, DirectQueryCandidateSource
from placetalk.domain.errors import CacheUnavailable
from placetalk.domain.geo import geohash
from placetalk.domain.pins import container
from placetalk.domain.pins.index_writer import bucket_key
from placetalk.domain.pins.models import RemovalReason
from placetalk.infra.redis import RedisProxy, redis_client

TOKYO = (35.6762, 139.6503)
# Middle of TOKYO's cell: a 50 m circle here reaches no neighbouring bucket.
CENTER = geohash.cell_center(geohash.encode(*TOKYO, 7))
METER_LAT = 1 / 111_195


class _BrokenPipeline:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def smembers(self, key):
        return self

    async def execute(self):
        raise RedisConnectionError("down")


class _BrokenRedis:
    def pipeline(self, transaction=True):
        return _BrokenPipeline()


def _sources(redis=redis_client, *, precision=7):
    repo = container.get_repository()
    direct = DirectQueryCandidateSource(repo, radius_m=50, limit=200)
    cached = CachedCandidateSource(redis, repo, precision=precision, radius_m=50, fallback=direct, timeout=1.0)
    return direct, cached


def _north_edge():
    """A viewer 10 m inside the north edge of CENTER's cell and a point 10 m across it."""
    _, max_lat, _, _ = geohash.cell_bounds(geohash.encode(*CENTER, 7))
    return (max_lat - 10 * METER_LAT, CENTER[1]), (max_lat + 10 * METER_LAT, CENTER[1])


@pytest.mark.asyncio
async def test_cache_path_returns_indexed_pins():
    now = datetime.now(timezone.utc)
    pin = await container.get_pin_service().create_pin("owner", *CENTER, now=now)
    _, cached = _sources()
    result = await cached.candidates(*CENTER, now=now)
    assert result.path == "cache"
    assert [candidate.id for candidate in result.pins] == [pin.id]


def test_only_buckets_within_radius_are_read():
    assert geohash.reachable_buckets(*CENTER, 50) == [geohash.encode(*CENTER, 7)]
    viewer, _ = _north_edge()
    center, north = geohash.neighbors(geohash.encode(*CENTER, 7))[:2]
    assert geohash.reachable_buckets(*viewer, 50) == [center, north]


@pytest.mark.asyncio
async def test_cache_path_reads_reachable_neighbour_bucket():
    now = datetime.now(timezone.utc)
    service = container.get_pin_service()
    viewer, across = _north_edge()
    inside = await service.create_pin("owner", *viewer, now=now)
    neighbour = await service.create_pin("owner", *across, now=now)
    _, cached = _sources()
    result = await cached.candidates(*viewer, now=now)
    assert result.path == "cache"
    assert {candidate.id for candidate in result.pins} == {inside.id, neighbour.id}


@pytest.mark.asyncio
async def test_cold_cache_falls_back_to_direct_query(fake_redis):
    now = datetime.now(timezone.utc)
    pin = await container.get_pin_service().create_pin("owner", *TOKYO, now=now)
    await fake_redis.flushall()
    _, cached = _sources()
    result = await cached.candidates(*TOKYO, now=now)
    assert result.path == "fallback"
    assert [candidate.id for candidate in result.pins] == [pin.id]


@pytest.mark.asyncio
async def test_lost_center_bucket_with_live_neighbour_falls_back(fake_redis):
    now = datetime.now(timezone.utc)
    service = container.get_pin_service()
    viewer, across = _north_edge()
    lost = await service.create_pin("owner", *viewer, now=now)
    await fake_redis.delete(bucket_key(geohash.encode(*viewer, 7)))
    await service.create_pin("owner", *across, now=now)
    _, cached = _sources()
    result = await cached.candidates(*viewer, now=now)
    assert result.path == "fallback"
    assert lost.id in [candidate.id for candidate in result.pins]


@pytest.mark.asyncio
async def test_lost_neighbour_bucket_falls_back(fake_redis):
    now = datetime.now(timezone.utc)
    service = container.get_pin_service()
    viewer, across = _north_edge()
    await service.create_pin("owner", *viewer, now=now)
    lost = await service.create_pin("owner", *across, now=now)
    await fake_redis.delete(bucket_key(geohash.encode(*across, 7)))
    _, cached = _sources()
    result = await cached.candidates(*viewer, now=now)
    assert result.path == "fallback"
    assert lost.id in [candidate.id for candidate in result.pins]


@pytest.mark.asyncio
async def test_radius_wider_than_bucket_block_uses_direct_query():
    now = datetime.now(timezone.utc)
    pin = await container.get_pin_service().create_pin("owner", *CENTER, now=now)
    assert not geohash.block_covers(*CENTER, 50, precision=9)
    _, cached = _sources(precision=9)
    result = await cached.candidates(*CENTER, now=now)
    assert result.path == "fallback"
    assert [candidate.id for candidate in result.pins] == [pin.id]


@pytest.mark.asyncio
async def test_cache_error_falls_back_to_direct_query():
    now = datetime.now(timezone.utc)
    pin = await container.get_pin_service().create_pin("owner", *TOKYO, now=now)
    _, cached = _sources(RedisProxy(_BrokenRedis()))
    result = await cached.candidates(*TOKYO, now=now)
    assert result.path == "fallback"
    assert [candidate.id for candidate in result.pins] == [pin.id]


@pytest.mark.asyncio
async def test_bucket_read_error_surfaces_as_cache_unavailable():
    _, cached = _sources(RedisProxy(_BrokenRedis()))
    with pytest.raises(CacheUnavailable):
        await cached._read_buckets([bucket_key(geohash.encode(*TOKYO, 7))])


@pytest.mark.asyncio
async def test_stale_bucket_entries_are_returned_as_candidates_only():
    now = datetime.now(timezone.utc)
    service = container.get_pin_service()
    pin = await service.create_pin("owner", *CENTER, now=now)
    # Soft delete behind the cache's back: the bucket still lists the pin.
    await container.get_repository().soft_delete(pin.id, owner_id=None, reason=RemovalReason.MANUAL, now=now)
    _, cached = _sources()
    result = await cached.candidates(*CENTER, now=now)
    assert result.path == "cache"
    assert result.pins[0].is_deleted is True


@pytest.mark.asyncio
async def test_direct_query_excludes_inactive_and_distant_pins():
    now = datetime.now(timezone.utc)
    service = container.get_pin_service()
    near = await service.create_pin("owner", *TOKYO, now=now)
    await service.create_pin("owner", TOKYO[0] + 0.01, TOKYO[1], now=now)
    gone = await service.create_pin("owner", *TOKYO, now=now)
    await service.delete_pin("owner", gone.id, now=now)
    direct, _ = _sources()
    result = await direct.candidates(*TOKYO, now=now)
    assert result.path == "direct"
    assert [candidate.id for candidate in result.pins] == [near.id]
