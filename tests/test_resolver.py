"""Tests for identity resolution across cache, durable store and trigger."""

from unittest.mock import AsyncMock

import pytest

from funnelcast.core.identity import IdentitySnapshot
from funnelcast.core.identity_cache import IdentityCache
from funnelcast.core.identity_store import IdentityStore
from funnelcast.core.resolver import IdentityResolver
from funnelcast.core.types import Quality

FBC = "fb.1.1700000000000.IwAR2abc"
FBP = "fb.1.1700000000000.1234567890"


@pytest.mark.asyncio
async def test_unknown_user_resolves_to_empty_snapshot():
    resolver = IdentityResolver(IdentityCache())
    snapshot = await resolver.resolve("ghost")
    assert snapshot.is_empty
    assert snapshot.quality is Quality.FALLBACK


@pytest.mark.asyncio
async def test_evidence_merged_and_cached():
    cache = IdentityCache()
    resolver = IdentityResolver(cache)
    await resolver.resolve("u-1", IdentitySnapshot(click_cookie=FBC))
    snapshot = await resolver.resolve("u-1", IdentitySnapshot(client_ip="177.10.20.30"))
    assert snapshot.click_cookie == FBC
    assert snapshot.client_ip == "177.10.20.30"
    assert cache.get("u-1") == snapshot


@pytest.mark.asyncio
async def test_durable_store_survives_restart(session_factory):
    store = IdentityStore(session_factory)
    await IdentityResolver(IdentityCache(), store).resolve("u-1", IdentitySnapshot(click_cookie=FBC, utm_campaign="launch"))

    # New process: empty cache, same database.
    snapshot = await IdentityResolver(IdentityCache(), store).resolve("u-1")
    assert snapshot.click_cookie == FBC
    assert snapshot.utm_campaign == "launch"
    assert snapshot.quality is Quality.REAL


@pytest.mark.asyncio
async def test_quality_upgrade_written_durably(session_factory):
    store = IdentityStore(session_factory)
    resolver = IdentityResolver(IdentityCache(), store)
    await resolver.resolve("u-1", IdentitySnapshot(client_ip="177.10.20.30"))
    assert (await store.load("u-1")).quality is Quality.FALLBACK

    await resolver.resolve("u-1", IdentitySnapshot(referral_cookie=FBP))
    stored = await store.load("u-1")
    assert stored.quality is Quality.REAL
    assert stored.referral_cookie == FBP
    assert stored.client_ip == "177.10.20.30"


@pytest.mark.asyncio
async def test_real_cache_skips_durable_read():
    store = AsyncMock(spec=IdentityStore)
    store.load.return_value = None
    resolver = IdentityResolver(IdentityCache(), store)
    await resolver.resolve("u-1", IdentitySnapshot(click_cookie=FBC))
    store.load.reset_mock()

    await resolver.resolve("u-1", IdentitySnapshot(client_ip="177.10.20.30"))
    store.load.assert_not_called()


@pytest.mark.asyncio
async def test_no_write_without_improvement():
    store = AsyncMock(spec=IdentityStore)
    store.load.return_value = None
    resolver = IdentityResolver(IdentityCache(), store)
    await resolver.resolve("u-1", IdentitySnapshot(click_cookie=FBC))
    await resolver.resolve("u-1", IdentitySnapshot(client_ip="177.10.20.30"))
    assert store.save.await_count == 1


@pytest.mark.asyncio
async def test_store_outage_does_not_break_resolution():
    store = AsyncMock(spec=IdentityStore)
    store.load.side_effect = OSError("connection refused")
    store.save.side_effect = OSError("connection refused")
    resolver = IdentityResolver(IdentityCache(), store)
    snapshot = await resolver.resolve("u-1", IdentitySnapshot(click_cookie=FBC))
    assert snapshot.click_cookie == FBC


@pytest.mark.asyncio
async def test_expired_durable_identity_ignored(session_factory):
    store = IdentityStore(session_factory, retention_days=-1)
    await store.save("u-1", IdentitySnapshot(click_cookie=FBC))
    assert await store.load("u-1") is None
    assert await store.purge_expired() == 1
