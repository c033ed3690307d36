"""
Conversion ledger — one row per logical conversion, keyed by event_id.

Lifecycle:
  ready     → written when a trigger arrives (and again after a transient
              failure, so the fallback sweep picks it up)
  sent      → delivered and acknowledged
  failed    → permanent failure, or out of sweep attempts
  rejected  → payload builder refused the event

Raw customer PII lives here only until the row is terminal.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from funnelcast.core.payload import CustomerInfo, LineItem
from funnelcast.core.types import ActionSource, EventKind, LedgerStatus
from funnelcast.models.database import upsert_insert
from funnelcast.models.tables import ConversionRecord

import structlog

logger = structlog.get_logger()

TERMINAL = (LedgerStatus.SENT, LedgerStatus.FAILED, LedgerStatus.REJECTED)


class ConversionLedger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], max_attempts: int = 5):
        self._session_factory = session_factory
        self.max_attempts = max_attempts

    async def record_ready(
        self,
        *,
        event_id: str,
        kind: EventKind,
        user_id: str,
        occurred_at: datetime,
        transaction_id: str | None = None,
        value: Decimal | None = None,
        currency: str | None = None,
        contents: tuple[LineItem, ...] = (),
        customer: CustomerInfo | None = None,
        event_source_url: str | None = None,
        action_source: ActionSource | None = None,
    ) -> None:
        """Insert the row, or enrich a still-ready row with newly known fields."""
        now = datetime.now(timezone.utc)
        values = dict(
            transaction_id=transaction_id,
            value=value,
            currency=currency,
            contents=[item.to_dict() for item in contents] or None,
            customer=customer.to_dict() if customer else None,
            event_source_url=event_source_url,
            action_source=action_source.value if action_source else None,
        )
        async with self._session_factory() as session:
            stmt = upsert_insert(session, ConversionRecord).values(
                event_id=event_id,
                event_kind=kind.value,
                user_id=str(user_id),
                occurred_at=occurred_at,
                status=LedgerStatus.READY.value,
                attempts=0,
                created_at=now,
                updated_at=now,
                **values,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["event_id"],
                set_={
                    key: func.coalesce(getattr(stmt.excluded, key), getattr(ConversionRecord, key))
                    for key in values
                },
                where=ConversionRecord.status == LedgerStatus.READY.value,
            )
            await session.execute(stmt)
            await session.commit()

    async def get(self, event_id: str) -> ConversionRecord | None:
        async with self._session_factory() as session:
            result = await session.execute(select(ConversionRecord).where(ConversionRecord.event_id == event_id))
            return result.scalar_one_or_none()

    async def _settle(self, event_id: str, status: LedgerStatus, **values) -> None:
        if status in TERMINAL:
            values["customer"] = None
        async with self._session_factory() as session:
            await session.execute(
                update(ConversionRecord)
                .where(ConversionRecord.event_id == event_id)
                .values(
                    status=status.value,
                    attempts=ConversionRecord.attempts + 1,
                    updated_at=datetime.now(timezone.utc),
                    **values,
                )
            )
            await session.commit()

    async def mark_sent(self, event_id: str, ack_id: str | None = None) -> None:
        await self._settle(event_id, LedgerStatus.SENT, ack_id=ack_id, last_error=None)

    async def mark_rejected(self, event_id: str, reason: str) -> None:
        await self._settle(event_id, LedgerStatus.REJECTED, last_error=reason)

    async def mark_failed(self, event_id: str, error: str | None, *, permanent: bool) -> LedgerStatus:
        """Transient failures stay ready until the attempt ceiling is hit."""
        row = await self.get(event_id)
        attempts = (row.attempts if row else 0) + 1
        status = LedgerStatus.FAILED if permanent or attempts >= self.max_attempts else LedgerStatus.READY
        await self._settle(event_id, status, last_error=error)
        return status

    async def due_for_retry(self, *, min_age_seconds: int, limit: int) -> list[ConversionRecord]:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=min_age_seconds)
        async with self._session_factory() as session:
            stmt = (
                select(ConversionRecord)
                .where(
                    ConversionRecord.status == LedgerStatus.READY.value,
                    ConversionRecord.updated_at <= cutoff,
                    ConversionRecord.attempts < self.max_attempts,
                )
                .order_by(ConversionRecord.updated_at)
                .limit(limit)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def status_counts(self) -> dict[str, int]:
        async with self._session_factory() as session:
            stmt = select(ConversionRecord.status, func.count()).group_by(ConversionRecord.status)
            rows = (await session.execute(stmt)).all()
        return {status: count for status, count in rows}
