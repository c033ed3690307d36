"""
Funnel Metrics Recorder — daily counters per (date, event_name, channel).

event_name = "<kind prefix>_<outcome>", e.g. purchase_sent, ic_dup,
lead_fail, purchase_rejected.

record() never raises. Observability must not take the pipeline down with
it, so store errors are logged once per outage and swallowed.
"""

from datetime import date, datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from funnelcast.core.types import DeliveryChannel, EventKind, Outcome
from funnelcast.models.database import upsert_insert
from funnelcast.models.tables import FunnelCounter

import structlog

logger = structlog.get_logger()

MAX_DAYS = 90


def counter_name(kind: EventKind, outcome: Outcome) -> str:
    return f"{kind.counter_prefix}_{outcome.value}"


class FunnelMetricsRecorder:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._degraded = False

    @property
    def degraded(self) -> bool:
        return self._degraded

    async def record(
        self,
        outcome: Outcome,
        kind: EventKind,
        channel: DeliveryChannel = DeliveryChannel.CAPI,
        occurred_at: datetime | None = None,
    ) -> bool:
        occurred_at = occurred_at or datetime.now(timezone.utc)
        if occurred_at.tzinfo is not None:
            occurred_at = occurred_at.astimezone(timezone.utc)
        event_date = occurred_at.date()
        name = counter_name(kind, outcome)
        try:
            async with self._session_factory() as session:
                stmt = upsert_insert(session, FunnelCounter).values(
                    event_date=event_date,
                    event_name=name,
                    channel=channel.value,
                    total=1,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["event_date", "event_name", "channel"],
                    set_={"total": FunnelCounter.total + 1},
                )
                await session.execute(stmt)
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            if not self._degraded:
                logger.warning("funnel_metrics_unavailable", event_name=name, error=str(exc))
            self._degraded = True
            return False

        if self._degraded:
            logger.info("funnel_metrics_recovered")
            self._degraded = False
        return True

    async def daily_counters(self, days: int = 14) -> list[dict]:
        days = max(1, min(int(days), MAX_DAYS))
        since = datetime.now(timezone.utc).date() - timedelta(days=days - 1)
        async with self._session_factory() as session:
            stmt = (
                select(FunnelCounter)
                .where(FunnelCounter.event_date >= since)
                .order_by(FunnelCounter.event_date.desc(), FunnelCounter.event_name, FunnelCounter.channel)
            )
            rows = (await session.execute(stmt)).scalars().all()
        return [
            {
                "date": row.event_date.isoformat(),
                "event_name": row.event_name,
                "channel": row.channel,
                "total": row.total,
            }
            for row in rows
        ]

    async def today(self) -> dict[str, dict[str, int]]:
        """{channel: {event_name: total}} for the current UTC day."""
        today = datetime.now(timezone.utc).date()
        async with self._session_factory() as session:
            stmt = select(FunnelCounter).where(FunnelCounter.event_date == today)
            rows = (await session.execute(stmt)).scalars().all()
        result: dict[str, dict[str, int]] = {}
        for row in rows:
            result.setdefault(row.channel, {})[row.event_name] = row.total
        return result

    async def purge_older_than(self, days: int) -> int:
        cutoff: date = datetime.now(timezone.utc).date() - timedelta(days=days)
        async with self._session_factory() as session:
            result = await session.execute(delete(FunnelCounter).where(FunnelCounter.event_date < cutoff))
            await session.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info("funnel_counters_purged", removed=removed, cutoff=cutoff.isoformat())
        return removed
