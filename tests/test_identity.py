"""Tests for identity snapshots and the merge precedence rule."""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from funnelcast.core.identity import IdentitySnapshot, build_snapshot, merge
from funnelcast.core.types import Quality

FBC = "fb.1.1700000000000.IwAR2abc"
FBC_NEW = "fb.1.1700000999000.IwAR2new"
FBP = "fb.1.1700000000000.1234567890"
CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
T0 = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class TestBuildSnapshot:
    def test_naive_observed_at_taken_as_utc(self):
        snapshot = build_snapshot(fbp=FBP, observed_at=datetime(2026, 10, 19, 10, 0))
        assert snapshot.updated_at == datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)

    def test_keeps_genuine_evidence(self):
        snap = build_snapshot(fbc=FBC, fbp=FBP, client_ip="177.10.20.30", user_agent=CHROME_UA, observed_at=T0)
        assert snap.click_cookie == FBC
        assert snap.referral_cookie == FBP
        assert snap.client_ip == "177.10.20.30"
        assert snap.user_agent == CHROME_UA
        assert snap.updated_at == T0
        assert snap.quality is Quality.REAL

    def test_scrubs_placeholders_and_server_values(self):
        snap = build_snapshot(
            fbc="FALLBACK",
            fbp="fb.1.FALLBACK",
            client_ip="127.0.0.1",
            user_agent="axios/1.6.2",
        )
        assert snap.is_empty
        assert snap.quality is Quality.FALLBACK

    def test_device_fields_alone_are_fallback(self):
        snap = build_snapshot(client_ip="177.10.20.30", user_agent=CHROME_UA)
        assert not snap.is_empty
        assert snap.quality is Quality.FALLBACK

    def test_fbclid_promoted_to_click_cookie(self):
        snap = build_snapshot(fbclid="IwAR2xyz", observed_at=T0)
        assert snap.click_cookie == f"fb.1.{int(T0.timestamp() * 1000)}.IwAR2xyz"
        assert snap.quality is Quality.REAL

    def test_real_fbc_beats_fbclid(self):
        assert build_snapshot(fbc=FBC, fbclid="IwAR2xyz").click_cookie == FBC

    def test_blank_campaign_tags_dropped(self):
        snap = build_snapshot(utm_source="  ", utm_campaign=" black-friday ")
        assert snap.utm_source is None
        assert snap.utm_campaign == "black-friday"
        assert snap.has_campaign

    def test_evidence_flags_never_carry_values(self):
        flags = build_snapshot(fbc=FBC, client_ip="177.10.20.30").evidence_flags()
        assert flags == {"fbc": True, "fbp": False, "ip": True, "ua": False, "utm": False}


class TestMerge:
    def test_none_cases(self):
        snap = IdentitySnapshot(client_ip="177.10.20.30")
        assert merge(None, None) == IdentitySnapshot()
        assert merge(None, snap) is snap
        assert merge(snap, None) is snap

    def test_real_never_downgraded_by_fallback(self):
        current = IdentitySnapshot(click_cookie=FBC, user_agent=CHROME_UA)
        incoming = IdentitySnapshot(client_ip="177.10.20.30", user_agent="Other/1.0")
        result = merge(current, incoming)
        assert result.quality is Quality.REAL
        assert result.click_cookie == FBC
        assert result.user_agent == CHROME_UA           # current wins
        assert result.client_ip == "177.10.20.30"       # gap filled

    def test_incoming_real_wins(self):
        current = IdentitySnapshot(click_cookie=FBC, referral_cookie=FBP, client_ip="177.10.20.30")
        incoming = IdentitySnapshot(click_cookie=FBC_NEW, client_ip="8.8.8.8")
        result = merge(current, incoming)
        assert result.click_cookie == FBC_NEW
        assert result.client_ip == "8.8.8.8"
        assert result.referral_cookie == FBP            # absent never overwrites

    def test_fallback_on_fallback_prefers_incoming(self):
        current = IdentitySnapshot(client_ip="177.10.20.30", user_agent=CHROME_UA)
        incoming = IdentitySnapshot(client_ip="8.8.8.8")
        result = merge(current, incoming)
        assert result.client_ip == "8.8.8.8"
        assert result.user_agent == CHROME_UA

    def test_campaign_propagates_without_quality_upgrade(self):
        current = IdentitySnapshot(click_cookie=FBC, utm_source="fb", utm_campaign="launch")
        incoming = IdentitySnapshot(utm_campaign="downsell")
        result = merge(current, incoming)
        assert result.utm_campaign == "downsell"
        assert result.utm_source == "fb"
        assert result.click_cookie == FBC

    def test_empty_campaign_keeps_current(self):
        current = IdentitySnapshot(utm_source="fb", utm_campaign="launch")
        result = merge(current, IdentitySnapshot(client_ip="8.8.8.8"))
        assert result.campaign == current.campaign

    def test_updated_at_is_the_later(self):
        current = IdentitySnapshot(client_ip="8.8.8.8", updated_at=T0 + timedelta(minutes=5))
        incoming = IdentitySnapshot(user_agent=CHROME_UA, updated_at=T0)
        assert merge(current, incoming).updated_at == T0 + timedelta(minutes=5)

    def test_naive_and_aware_timestamps_merge(self):
        current = IdentitySnapshot(client_ip="8.8.8.8", updated_at=T0)
        incoming = IdentitySnapshot(user_agent=CHROME_UA, updated_at=(T0 + timedelta(minutes=1)).replace(tzinfo=None))
        merged = merge(current, incoming)
        assert merged.updated_at == T0 + timedelta(minutes=1)
        assert merged.updated_at.tzinfo is not None

    def test_merge_is_pure(self):
        current = IdentitySnapshot(click_cookie=FBC)
        incoming = IdentitySnapshot(click_cookie=FBC_NEW)
        merge(current, incoming)
        assert current.click_cookie == FBC
        assert incoming.click_cookie == FBC_NEW


_VARIANTS = [
    IdentitySnapshot(),
    IdentitySnapshot(click_cookie=FBC),
    IdentitySnapshot(referral_cookie=FBP),
    IdentitySnapshot(client_ip="177.10.20.30"),
    IdentitySnapshot(user_agent=CHROME_UA, utm_campaign="a"),
    IdentitySnapshot(click_cookie=FBC_NEW, referral_cookie=FBP, utm_campaign="b"),
]


@pytest.mark.parametrize("current,incoming", list(itertools.product(_VARIANTS, repeat=2)))
def test_quality_never_decreases(current, incoming):
    result = merge(current, incoming)
    if current.quality is Quality.REAL or incoming.quality is Quality.REAL:
        assert result.quality is Quality.REAL
    for name in ("click_cookie", "referral_cookie", "client_ip", "user_agent"):
        if getattr(current, name) or getattr(incoming, name):
            assert getattr(result, name) is not None
