"""
Durable identity storage — identity_snapshots table.

Slower than the cache but survives restarts and is shared by every worker.
The resolver only writes here when a merge improved quality, so the table
holds each user's best evidence rather than their latest.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from funnelcast.core.identity import CAMPAIGN_FIELDS, DEVICE_FIELDS, STRONG_FIELDS, IdentitySnapshot, as_utc
from funnelcast.models.database import upsert_insert
from funnelcast.models.tables import IdentityRecord

import structlog

logger = structlog.get_logger()

_SNAPSHOT_COLUMNS = STRONG_FIELDS + DEVICE_FIELDS + CAMPAIGN_FIELDS


class IdentityStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], retention_days: int = 7):
        self._session_factory = session_factory
        self.retention = timedelta(days=retention_days)

    async def load(self, user_id: str) -> IdentitySnapshot | None:
        now = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            stmt = select(IdentityRecord).where(IdentityRecord.user_id == str(user_id))
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
        if row is None or as_utc(row.expires_at) <= now:
            return None
        return IdentitySnapshot(
            **{col: getattr(row, col) for col in _SNAPSHOT_COLUMNS},
            updated_at=as_utc(row.updated_at),
        )

    async def save(self, user_id: str, snapshot: IdentitySnapshot) -> None:
        now = datetime.now(timezone.utc)
        values = {col: getattr(snapshot, col) for col in _SNAPSHOT_COLUMNS}
        values.update(
            quality=snapshot.quality.value,
            updated_at=snapshot.updated_at or now,
            expires_at=now + self.retention,
        )
        async with self._session_factory() as session:
            stmt = upsert_insert(session, IdentityRecord).values(user_id=str(user_id), **values)
            stmt = stmt.on_conflict_do_update(index_elements=["user_id"], set_=values)
            await session.execute(stmt)
            await session.commit()
        logger.debug("identity_saved", quality=snapshot.quality.value, **snapshot.evidence_flags())

    async def purge_expired(self) -> int:
        now = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            result = await session.execute(delete(IdentityRecord).where(IdentityRecord.expires_at < now))
            await session.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info("identity_store_purged", removed=removed)
        return removed
