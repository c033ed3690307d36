"""Tests for the two-tier deduplication store."""

import asyncio
from decimal import Decimal

import pytest

from funnelcast.core.dedup import ClaimMetadata, DedupStore, MemoryDedupTier
from funnelcast.core.types import DeliveryChannel, EventKind

CAPI = DeliveryChannel.CAPI
PIXEL = DeliveryChannel.PIXEL
META = ClaimMetadata(event_kind=EventKind.PURCHASE, logical_key="pur:tx-42", value=Decimal("19.90"), currency="BRL")
EVENT = "a" * 64


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class BrokenSession:
    async def __aenter__(self):
        raise OSError("connection refused")

    async def __aexit__(self, *exc):
        return False


def broken_factory():
    return BrokenSession()


def _store(session_factory=None, **kwargs) -> DedupStore:
    return DedupStore(MemoryDedupTier(), session_factory, **kwargs)


class TestMemoryTier:
    def test_check_and_set(self):
        tier = MemoryDedupTier()
        assert tier.try_claim(EVENT, CAPI) is True
        assert tier.try_claim(EVENT, CAPI) is False

    def test_channels_are_independent(self):
        tier = MemoryDedupTier()
        assert tier.try_claim(EVENT, CAPI) is True
        assert tier.try_claim(EVENT, PIXEL) is True

    def test_release(self):
        tier = MemoryDedupTier()
        tier.try_claim(EVENT, CAPI)
        tier.release(EVENT, CAPI)
        assert tier.try_claim(EVENT, CAPI) is True

    def test_ttl(self):
        clock = FakeClock()
        tier = MemoryDedupTier(ttl_seconds=600, clock=clock)
        tier.try_claim(EVENT, CAPI)
        clock.now += 601
        assert tier.contains(EVENT, CAPI) is False
        assert tier.try_claim(EVENT, CAPI) is True

    def test_bounded(self):
        tier = MemoryDedupTier(max_entries=3)
        for i in range(5):
            tier.try_claim(f"event-{i}", CAPI)
        assert len(tier) == 3
        assert tier.contains("event-0", CAPI) is False
        assert tier.contains("event-4", CAPI) is True

    def test_purge_expired(self):
        clock = FakeClock()
        tier = MemoryDedupTier(ttl_seconds=10, clock=clock)
        tier.try_claim("old", CAPI)
        clock.now += 11
        tier.try_claim("new", CAPI)
        assert tier.purge_expired() == 1
        assert len(tier) == 1


@pytest.mark.asyncio
async def test_memory_only_store():
    store = _store()
    assert (await store.claim(EVENT, CAPI, META)).claimed is True
    second = await store.claim(EVENT, CAPI, META)
    assert second.claimed is False
    assert second.reason == "duplicate"


@pytest.mark.asyncio
async def test_concurrent_claims_single_winner(session_factory):
    store = _store(session_factory)
    results = await asyncio.gather(*(store.claim(EVENT, CAPI, META) for _ in range(20)))
    assert sum(r.claimed for r in results) == 1


@pytest.mark.asyncio
async def test_durable_tier_arbitrates_across_processes(session_factory):
    # Two stores with separate memory tiers model two worker processes.
    worker_a = _store(session_factory)
    worker_b = _store(session_factory)
    assert (await worker_a.claim(EVENT, CAPI, META)).claimed is True
    result = await worker_b.claim(EVENT, CAPI, META)
    assert result.claimed is False
    assert result.reason == "duplicate"
    # The loser remembers it in memory too.
    assert worker_b.memory.contains(EVENT, CAPI)


@pytest.mark.asyncio
async def test_release_allows_reclaim_elsewhere(session_factory):
    worker_a = _store(session_factory)
    worker_b = _store(session_factory)
    await worker_a.claim(EVENT, CAPI, META)
    await worker_a.release(EVENT, CAPI)
    assert (await worker_b.claim(EVENT, CAPI, META)).claimed is True


@pytest.mark.asyncio
async def test_stale_unconfirmed_claim_can_be_reclaimed(session_factory):
    crashed = _store(session_factory)
    await crashed.claim(EVENT, CAPI, META)
    survivor = _store(session_factory, stale_claim_seconds=0)
    assert (await survivor.claim(EVENT, CAPI, META)).claimed is True


@pytest.mark.asyncio
async def test_confirmed_claim_is_never_stale(session_factory):
    worker_a = _store(session_factory)
    await worker_a.claim(EVENT, CAPI, META)
    await worker_a.confirm(EVENT, CAPI, ack_id="AbCdEf123")
    worker_b = _store(session_factory, stale_claim_seconds=0)
    assert (await worker_b.claim(EVENT, CAPI, META)).claimed is False


@pytest.mark.asyncio
async def test_durable_unavailable_memory_decides():
    store = _store(broken_factory)
    assert (await store.claim(EVENT, CAPI, META)).claimed is True
    assert (await store.claim(EVENT, CAPI, META)).claimed is False
    # confirm/release swallow the outage as well
    await store.confirm(EVENT, CAPI, ack_id="x")
    await store.release(EVENT, CAPI)


@pytest.mark.asyncio
async def test_purge_expired(session_factory):
    clock = FakeClock()
    store = DedupStore(MemoryDedupTier(ttl_seconds=10, clock=clock), session_factory, durable_ttl_seconds=-1)
    await store.claim(EVENT, CAPI, META)
    clock.now += 11
    assert await store.purge_expired() == (1, 1)


@pytest.mark.asyncio
async def test_stats(session_factory):
    store = _store(session_factory)
    await store.claim("a" * 64, CAPI, META)
    await store.claim("b" * 64, CAPI, META)
    await store.confirm("a" * 64, CAPI, ack_id="trace")
    stats = await store.stats()
    assert stats["memory_cache_size"] == 2
    assert stats["memory_cache_max"] == 10_000
    assert stats["database_stats"]["total_entries"] == 2
    assert stats["database_stats"]["confirmed_entries"] == 1
