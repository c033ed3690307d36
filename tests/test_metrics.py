"""Tests for the funnel metrics recorder."""

from datetime import datetime, timedelta, timezone

import pytest

from funnelcast.core.metrics import FunnelMetricsRecorder, counter_name
from funnelcast.core.types import DeliveryChannel, EventKind, Outcome


class BrokenSession:
    async def __aenter__(self):
        raise OSError("database is down")

    async def __aexit__(self, *exc):
        return False


@pytest.mark.parametrize("kind,outcome,expected", [
    (EventKind.INITIATE_CHECKOUT, Outcome.SENT, "ic_sent"),
    (EventKind.INITIATE_CHECKOUT, Outcome.DUPLICATE, "ic_dup"),
    (EventKind.PURCHASE, Outcome.SENT, "purchase_sent"),
    (EventKind.PURCHASE, Outcome.FAILED, "purchase_fail"),
    (EventKind.LEAD, Outcome.FAILED, "lead_fail"),
    (EventKind.LEAD, Outcome.REJECTED, "lead_rejected"),
])
def test_counter_name(kind, outcome, expected):
    assert counter_name(kind, outcome) == expected


def test_every_combination_has_a_name():
    names = {counter_name(k, o) for k in EventKind for o in Outcome}
    assert len(names) == len(EventKind) * len(Outcome)


@pytest.mark.asyncio
async def test_record_increments(session_factory):
    recorder = FunnelMetricsRecorder(session_factory)
    assert await recorder.record(Outcome.SENT, EventKind.PURCHASE) is True
    assert await recorder.record(Outcome.SENT, EventKind.PURCHASE) is True
    await recorder.record(Outcome.DUPLICATE, EventKind.PURCHASE)
    await recorder.record(Outcome.SENT, EventKind.PURCHASE, DeliveryChannel.PIXEL)

    today = await recorder.today()
    assert today["capi"] == {"purchase_sent": 2, "purchase_dup": 1}
    assert today["pixel"] == {"purchase_sent": 1}


@pytest.mark.asyncio
async def test_record_never_raises():
    recorder = FunnelMetricsRecorder(lambda: BrokenSession())
    assert await recorder.record(Outcome.SENT, EventKind.LEAD) is False
    assert await recorder.record(Outcome.SENT, EventKind.LEAD) is False
    assert recorder.degraded is True


@pytest.mark.asyncio
async def test_recovers_after_outage(session_factory):
    recorder = FunnelMetricsRecorder(lambda: BrokenSession())
    await recorder.record(Outcome.SENT, EventKind.LEAD)
    recorder._session_factory = session_factory
    assert await recorder.record(Outcome.SENT, EventKind.LEAD) is True
    assert recorder.degraded is False


@pytest.mark.asyncio
async def test_daily_counters_window(session_factory):
    recorder = FunnelMetricsRecorder(session_factory)
    now = datetime.now(timezone.utc)
    await recorder.record(Outcome.SENT, EventKind.PURCHASE, occurred_at=now)
    await recorder.record(Outcome.SENT, EventKind.PURCHASE, occurred_at=now - timedelta(days=20))

    recent = await recorder.daily_counters(14)
    assert len(recent) == 1
    assert recent[0]["event_name"] == "purchase_sent"
    assert recent[0]["date"] == now.date().isoformat()
    assert len(await recorder.daily_counters(30)) == 2


@pytest.mark.asyncio
async def test_daily_counters_clamped(session_factory):
    recorder = FunnelMetricsRecorder(session_factory)
    await recorder.record(Outcome.SENT, EventKind.LEAD, occurred_at=datetime.now(timezone.utc) - timedelta(days=100))
    await recorder.record(Outcome.SENT, EventKind.LEAD)
    assert len(await recorder.daily_counters(0)) == 1       # clamped up to 1 day
    assert len(await recorder.daily_counters(5000)) == 1    # clamped down to 90 days


@pytest.mark.asyncio
async def test_purge_older_than(session_factory):
    recorder = FunnelMetricsRecorder(session_factory)
    now = datetime.now(timezone.utc)
    await recorder.record(Outcome.SENT, EventKind.LEAD, occurred_at=now - timedelta(days=100))
    await recorder.record(Outcome.SENT, EventKind.LEAD, occurred_at=now)
    assert await recorder.purge_older_than(90) == 1
    assert len(await recorder.daily_counters(90)) == 1
