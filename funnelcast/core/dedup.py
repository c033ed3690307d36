"""
Deduplication Store — two-tier claim ledger for (event_id, channel).

Tiers, consulted in order:
  1. Memory  — check-and-set under a lock, TTL 10 min, LRU bounded.
               Catches the common near-simultaneous double-fire for free.
  2. Durable — INSERT ... ON CONFLICT DO NOTHING RETURNING on
               UNIQUE(event_id, channel). Final arbiter across processes
               and restarts: the loser of any race is told "duplicate".

A claim is provisional until confirm() (delivery succeeded) or release()
(delivery failed / payload rejected, so a later trigger or the sweep may
try again). An unconfirmed durable claim older than stale_claim_seconds is
treated as abandoned (process died mid-delivery) and can be re-claimed.

If the durable tier is unreachable the memory tier decides alone; that is
logged, not raised.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from funnelcast.core.types import DeliveryChannel, EventKind
from funnelcast.models.database import upsert_insert
from funnelcast.models.tables import DedupRecord

import structlog

logger = structlog.get_logger()

DUPLICATE = "duplicate"


@dataclass(frozen=True)
class ClaimMetadata:
    event_kind: EventKind
    logical_key: str | None = None
    value: Decimal | None = None
    currency: str | None = None


@dataclass(frozen=True)
class ClaimResult:
    claimed: bool
    reason: str | None = None


class MemoryDedupTier:
    """In-process (event_id, channel) → expiry map. Thread-safe."""

    def __init__(
        self,
        ttl_seconds: int = 600,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, float] = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def key(event_id: str, channel: DeliveryChannel) -> str:
        return f"{event_id}_{channel.value}"

    def try_claim(self, event_id: str, channel: DeliveryChannel) -> bool:
        """Atomic check-and-set. True if this caller now holds the claim."""
        key = self.key(event_id, channel)
        with self._lock:
            now = self._clock()
            expires = self._entries.get(key)
            if expires is not None and expires > now:
                return False
            self._entries[key] = now + self.ttl_seconds
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
            return True

    def release(self, event_id: str, channel: DeliveryChannel) -> None:
        with self._lock:
            self._entries.pop(self.key(event_id, channel), None)

    def contains(self, event_id: str, channel: DeliveryChannel) -> bool:
        with self._lock:
            expires = self._entries.get(self.key(event_id, channel))
            return expires is not None and expires > self._clock()

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, exp in self._entries.items() if exp <= now]
            for k in expired:
                del self._entries[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class DedupStore:
    def __init__(
        self,
        memory: MemoryDedupTier,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        durable_ttl_seconds: int = 86400 * 7,
        stale_claim_seconds: int = 600,
    ):
        self.memory = memory
        self._session_factory = session_factory
        self.durable_ttl = timedelta(seconds=durable_ttl_seconds)
        self.stale_claim = timedelta(seconds=stale_claim_seconds)

    async def claim(
        self,
        event_id: str,
        channel: DeliveryChannel,
        metadata: ClaimMetadata,
    ) -> ClaimResult:
        if not self.memory.try_claim(event_id, channel):
            logger.info("dedup_hit", tier="memory", event_id=event_id[:16], channel=channel.value)
            return ClaimResult(claimed=False, reason=DUPLICATE)

        if self._session_factory is None:
            return ClaimResult(claimed=True)

        try:
            won = await self._durable_claim(event_id, channel, metadata)
        except (SQLAlchemyError, OSError) as exc:
            logger.warning(
                "dedup_durable_unavailable",
                event_id=event_id[:16],
                channel=channel.value,
                error=str(exc),
            )
            return ClaimResult(claimed=True)

        if not won:
            # Keep the memory entry: the next double-fire stops at tier 1.
            logger.info("dedup_hit", tier="durable", event_id=event_id[:16], channel=channel.value)
            return ClaimResult(claimed=False, reason=DUPLICATE)
        return ClaimResult(claimed=True)

    async def _durable_claim(self, event_id: str, channel: DeliveryChannel, metadata: ClaimMetadata) -> bool:
        now = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            # Expired or abandoned claims for this key no longer count.
            await session.execute(
                delete(DedupRecord).where(
                    DedupRecord.event_id == event_id,
                    DedupRecord.channel == channel.value,
                    or_(
                        DedupRecord.expires_at < now,
                        and_(
                            DedupRecord.confirmed_at.is_(None),
                            DedupRecord.claimed_at < now - self.stale_claim,
                        ),
                    ),
                )
            )
            stmt = (
                upsert_insert(session, DedupRecord)
                .values(
                    event_id=event_id,
                    channel=channel.value,
                    logical_key=metadata.logical_key,
                    event_kind=metadata.event_kind.value,
                    value=metadata.value,
                    currency=metadata.currency,
                    claimed_at=now,
                    expires_at=now + self.durable_ttl,
                )
                .on_conflict_do_nothing(index_elements=["event_id", "channel"])
                .returning(DedupRecord.id)
            )
            result = await session.execute(stmt)
            inserted = result.scalar_one_or_none()
            await session.commit()
        return inserted is not None

    async def confirm(self, event_id: str, channel: DeliveryChannel, ack_id: str | None = None) -> None:
        """Delivery succeeded: the claim becomes permanent until expiry."""
        if self._session_factory is None:
            return
        now = datetime.now(timezone.utc)
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(DedupRecord)
                    .where(DedupRecord.event_id == event_id, DedupRecord.channel == channel.value)
                    .values(confirmed_at=now, ack_id=ack_id, expires_at=now + self.durable_ttl)
                )
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("dedup_confirm_failed", event_id=event_id[:16], error=str(exc))

    async def release(self, event_id: str, channel: DeliveryChannel) -> None:
        """Drop an unconfirmed claim so the event can be attempted again."""
        self.memory.release(event_id, channel)
        if self._session_factory is None:
            return
        try:
            async with self._session_factory() as session:
                await session.execute(
                    delete(DedupRecord).where(
                        DedupRecord.event_id == event_id,
                        DedupRecord.channel == channel.value,
                        DedupRecord.confirmed_at.is_(None),
                    )
                )
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("dedup_release_failed", event_id=event_id[:16], error=str(exc))

    async def purge_expired(self) -> tuple[int, int]:
        memory_removed = self.memory.purge_expired()
        durable_removed = 0
        if self._session_factory is not None:
            now = datetime.now(timezone.utc)
            async with self._session_factory() as session:
                result = await session.execute(delete(DedupRecord).where(DedupRecord.expires_at < now))
                await session.commit()
            durable_removed = result.rowcount or 0
        if memory_removed or durable_removed:
            logger.info("dedup_purged", memory=memory_removed, durable=durable_removed)
        return memory_removed, durable_removed

    async def stats(self) -> dict:
        stats = {
            "memory_cache_size": len(self.memory),
            "memory_cache_max": self.memory.max_entries,
            "database_stats": None,
        }
        if self._session_factory is None:
            return stats
        now = datetime.now(timezone.utc)
        try:
            async with self._session_factory() as session:
                stmt = select(
                    func.count().label("total"),
                    func.count(DedupRecord.confirmed_at).label("confirmed"),
                    func.count().filter(DedupRecord.expires_at < now).label("expired"),
                )
                row = (await session.execute(stmt)).one()
            stats["database_stats"] = {
                "total_entries": row.total,
                "confirmed_entries": row.confirmed,
                "expired_entries": row.expired,
            }
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("dedup_stats_failed", error=str(exc))
        return stats
