from datetime import datetime, timedelta, timezone

import pytest

from placetalk.domain.pins import container
from placetalk.domain.pins.events import PinRemoved
from placetalk.domain.pins.lifecycle import LifecycleReconciler
from placetalk.domain.pins.models import InteractionKind, PinCategory, RemovalReason, TtlPolicy
from placetalk.domain.pins.repository import InMemoryPinRepository
from placetalk.infra import tasks

TOKYO = (35.6762, 139.6503)


async def _pin_with_votes(kind: InteractionKind, votes: int, *, now: datetime, category=PinCategory.NORMAL):
    pin = await container.get_pin_service().create_pin("owner", *TOKYO, category, now=now)
    interactions = container.get_interaction_service()
    for index in range(votes):
        await interactions.record_interaction(f"user-{index}", pin.id, kind, now=now)
    return pin


@pytest.mark.asyncio
async def test_six_likes_earn_two_extensions_in_one_tick():
    now = datetime.now(timezone.utc)
    pin = await _pin_with_votes(InteractionKind.LIKE, 6, now=now)
    report = await container.get_reconciler().run_once(now=now)
    stored = await container.get_repository().get(pin.id)
    assert [extended.id for extended in report.extended] == [pin.id]
    assert stored.extension_count == 2
    assert stored.expires_at == pin.expires_at + timedelta(hours=48)


@pytest.mark.asyncio
async def test_extension_is_monotonic_and_catches_up():
    now = datetime.now(timezone.utc)
    pin = await _pin_with_votes(InteractionKind.LIKE, 3, now=now)
    reconciler = container.get_reconciler()
    await reconciler.run_once(now=now)
    after_first = await container.get_repository().get(pin.id)
    assert after_first.extension_count == 1

    # No new likes: a second tick changes nothing.
    report = await reconciler.run_once(now=now)
    assert report.extended == []
    unchanged = await container.get_repository().get(pin.id)
    assert unchanged.expires_at == after_first.expires_at

    interactions = container.get_interaction_service()
    for index in range(3, 6):
        await interactions.record_interaction(f"user-{index}", pin.id, InteractionKind.LIKE, now=now)
    await reconciler.run_once(now=now)
    caught_up = await container.get_repository().get(pin.id)
    assert caught_up.extension_count == 2
    assert caught_up.expires_at == after_first.expires_at + timedelta(hours=24)


@pytest.mark.asyncio
async def test_unlikes_never_reduce_extensions():
    now = datetime.now(timezone.utc)
    pin = await _pin_with_votes(InteractionKind.LIKE, 3, now=now)
    reconciler = container.get_reconciler()
    await reconciler.run_once(now=now)
    await container.get_interaction_service().record_interaction("user-0", pin.id, InteractionKind.UNLIKE, now=now)
    await reconciler.run_once(now=now)
    stored = await container.get_repository().get(pin.id)
    assert stored.like_count == 2
    assert stored.extension_count == 1


@pytest.mark.asyncio
async def test_non_expiring_pins_are_not_extended():
    now = datetime.now(timezone.utc)
    pin = await _pin_with_votes(InteractionKind.LIKE, 3, now=now, category=PinCategory.COMMUNITY)
    await container.get_reconciler().run_once(now=now)
    stored = await container.get_repository().get(pin.id)
    assert stored.expires_at is None
    assert stored.extension_count == 0


@pytest.mark.asyncio
async def test_reported_pin_is_deleted_and_evicted(fake_redis):
    now = datetime.now(timezone.utc)
    pin = await _pin_with_votes(InteractionKind.REPORT, 3, now=now)
    bucket = container.get_index_writer().key_for(pin)
    assert await fake_redis.sismember(bucket, pin.id)

    report = await container.get_reconciler().run_once(now=now)
    await tasks.drain(timeout=1.0)

    stored = await container.get_repository().get(pin.id)
    assert stored.is_deleted is True
    assert stored.removal_reason == RemovalReason.DISLIKE_DELETION
    assert [deleted.id for deleted in report.deleted] == [pin.id]
    assert not await fake_redis.sismember(bucket, pin.id)
    result = await container.get_engine().process_heartbeat("walker", *TOKYO, now=now)
    assert result.count == 0
    entries = await fake_redis.xrange("x:pins.removed")
    assert [fields["reason"] for _, fields in entries] == ["dislike_deletion"]


@pytest.mark.asyncio
async def test_deletion_wins_over_extension_in_same_tick():
    now = datetime.now(timezone.utc)
    pin = await container.get_pin_service().create_pin("owner", *TOKYO, now=now)
    interactions = container.get_interaction_service()
    for index in range(3):
        await interactions.record_interaction(f"fan-{index}", pin.id, InteractionKind.LIKE, now=now)
        await interactions.record_interaction(f"critic-{index}", pin.id, InteractionKind.REPORT, now=now)
    report = await container.get_reconciler().run_once(now=now)
    stored = await container.get_repository().get(pin.id)
    assert [p.id for p in report.extended] == [pin.id]
    assert stored.is_deleted is True
    assert stored.removal_reason == RemovalReason.DISLIKE_DELETION


@pytest.mark.asyncio
async def test_expired_pin_is_soft_deleted_regardless_of_likes():
    now = datetime.now(timezone.utc)
    created = now - timedelta(hours=1)
    pin = await container.get_pin_service().create_pin(
        "owner", *TOKYO, PinCategory.NORMAL, TtlPolicy(lifetime=timedelta(minutes=30)), now=created
    )
    removed: list[PinRemoved] = []

    async def on_removed(event):
        removed.append(event)

    container.get_events().subscribe(PinRemoved, on_removed)
    report = await container.get_reconciler().run_once(now=now)
    await tasks.drain(timeout=1.0)

    stored = await container.get_repository().get(pin.id)
    assert stored.is_deleted is True
    assert stored.removal_reason == RemovalReason.EXPIRY
    assert [expired.id for expired in report.expired] == [pin.id]
    assert [(event.pin_id, event.reason) for event in removed] == [(pin.id, RemovalReason.EXPIRY)]


@pytest.mark.asyncio
async def test_deleted_pins_stay_deleted():
    now = datetime.now(timezone.utc)
    pin = await _pin_with_votes(InteractionKind.REPORT, 3, now=now)
    reconciler = container.get_reconciler()
    await reconciler.run_once(now=now)
    report = await reconciler.run_once(now=now + timedelta(days=10))
    assert report.removed == []
    stored = await container.get_repository().get(pin.id)
    assert stored.removal_reason == RemovalReason.DISLIKE_DELETION


class _BrokenExtensionRepository(InMemoryPinRepository):
    async def extend_liked(self, **kwargs):
        raise RuntimeError("extension query failed")


@pytest.mark.asyncio
async def test_failed_pass_does_not_block_later_passes():
    now = datetime.now(timezone.utc)
    repo = _BrokenExtensionRepository()
    container.configure(repository=repo)
    reported = await _pin_with_votes(InteractionKind.REPORT, 3, now=now)
    stale = await container.get_pin_service().create_pin(
        "owner", *TOKYO, PinCategory.NORMAL, TtlPolicy(lifetime=timedelta(minutes=1)), now=now - timedelta(hours=1)
    )

    reconciler = LifecycleReconciler(
        repo,
        container.get_index_writer(),
        container.get_events(),
        like_threshold=3,
        report_threshold=3,
        extension=timedelta(hours=24),
    )
    report = await reconciler.run_once(now=now)

    assert report.failed_passes == ["extend"]
    assert reconciler.last_tick_ok is False
    assert reconciler.last_tick_at is not None
    assert [pin.id for pin in report.deleted] == [reported.id]
    assert [pin.id for pin in report.expired] == [stale.id]


@pytest.mark.asyncio
async def test_extended_pin_is_reindexed(fake_redis):
    now = datetime.now(timezone.utc)
    pin = await _pin_with_votes(InteractionKind.LIKE, 3, now=now)
    bucket = container.get_index_writer().key_for(pin)
    before = await fake_redis.ttl(bucket)
    await container.get_reconciler().run_once(now=now)
    after = await fake_redis.ttl(bucket)
    assert await fake_redis.sismember(bucket, pin.id)
    assert after > before


@pytest.mark.asyncio
async def test_tick_puts_lost_pin_back_into_its_bucket(fake_redis):
    now = datetime.now(timezone.utc)
    pin = await container.get_pin_service().create_pin("owner", *TOKYO, now=now)
    bucket = container.get_index_writer().key_for(pin)
    await fake_redis.delete(bucket)

    report = await container.get_reconciler().run_once(now=now)

    assert [repaired.id for repaired in report.repaired] == [pin.id]
    assert await fake_redis.sismember(bucket, pin.id)


@pytest.mark.asyncio
async def test_tick_refreshes_bucket_of_non_expiring_pin_before_it_lapses(fake_redis):
    now = datetime.now(timezone.utc)
    pin = await container.get_pin_service().create_pin("owner", *TOKYO, PinCategory.COMMUNITY, now=now)
    bucket = container.get_index_writer().key_for(pin)
    await fake_redis.expire(bucket, 3600)

    await container.get_reconciler().run_once(now=now)

    assert await fake_redis.ttl(bucket) > 29 * 24 * 3600


@pytest.mark.asyncio
async def test_repair_pages_through_active_pins(fake_redis):
    now = datetime.now(timezone.utc)
    service = container.get_pin_service()
    pins = [await service.create_pin("owner", *TOKYO, now=now) for _ in range(3)]
    await fake_redis.flushall()
    reconciler = LifecycleReconciler(
        container.get_repository(),
        container.get_index_writer(),
        container.get_events(),
        like_threshold=3,
        report_threshold=3,
        extension=timedelta(hours=24),
        repair_batch=2,
    )
    ordered = sorted(pin.id for pin in pins)

    first = await reconciler.run_once(now=now)
    second = await reconciler.run_once(now=now)
    third = await reconciler.run_once(now=now)

    assert [pin.id for pin in first.repaired] == ordered[:2]
    assert [pin.id for pin in second.repaired] == ordered[2:]
    assert third.repaired == []
    assert await fake_redis.scard(container.get_index_writer().key_for(pins[0])) == 3
