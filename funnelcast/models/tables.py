"""
Database models — the durable side of the pipeline.

Design principles:
  - identity_snapshots is mutable (one row per user, upserted)
  - dedup_entries is the cross-process arbiter: UNIQUE(event_id, channel)
  - funnel_counters is append-only increments (purged by age only)
  - conversion_ledger holds the flags the fallback sweep reads
"""

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

class IdentityRecord(Base):
    """Durable copy of a user's best-known identity snapshot."""
    __tablename__ = "identity_snapshots"

    user_id = Column(String(64), primary_key=True)

    click_cookie = Column(Text, nullable=True)          # _fbc
    referral_cookie = Column(Text, nullable=True)       # _fbp
    client_ip = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)

    utm_source = Column(String(255), nullable=True)
    utm_medium = Column(String(255), nullable=True)
    utm_campaign = Column(String(255), nullable=True)
    utm_term = Column(String(255), nullable=True)
    utm_content = Column(String(255), nullable=True)

    quality = Column(String(10), nullable=False, default="fallback")
    updated_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)


# ---------------------------------------------------------------------------
# Dedup ledger
# ---------------------------------------------------------------------------

class DedupRecord(Base):
    """One row per claimed (event_id, channel). Insert-if-absent = claim."""
    __tablename__ = "dedup_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(64), nullable=False)
    channel = Column(String(10), nullable=False)
    logical_key = Column(String(255), nullable=True)    # transaction id or user:bucket
    event_kind = Column(String(30), nullable=False)
    value = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=True)
    ack_id = Column(String(255), nullable=True)         # platform trace id on success
    claimed_at = Column(DateTime(timezone=True), nullable=False)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("event_id", "channel", name="uq_dedup_event_channel"),
        Index("ix_dedup_entries_expires", "expires_at"),
        Index("ix_dedup_entries_logical_key", "logical_key"),
    )


# ---------------------------------------------------------------------------
# Funnel counters
# ---------------------------------------------------------------------------

class FunnelCounter(Base):
    __tablename__ = "funnel_counters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_date = Column(Date, nullable=False)
    event_name = Column(String(50), nullable=False)     # e.g. purchase_sent, ic_dup
    channel = Column(String(10), nullable=False, default="capi")
    total = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("event_date", "event_name", "channel", name="uq_funnel_counters_key"),
    )


# ---------------------------------------------------------------------------
# Conversion ledger (fallback sweep flags)
# ---------------------------------------------------------------------------

class ConversionRecord(Base):
    """
    One row per logical conversion. Written as "ready" when a trigger
    arrives; flipped to sent/failed/rejected by the outcome handler.
    The fallback sweep re-drives rows still "ready".
    """
    __tablename__ = "conversion_ledger"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(64), nullable=False, unique=True, index=True)
    event_kind = Column(String(30), nullable=False)
    user_id = Column(String(64), nullable=False, index=True)
    transaction_id = Column(String(255), nullable=True, index=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False)

    value = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=True)
    contents = Column(JSONType, nullable=True)          # line items
    customer = Column(JSONType, nullable=True)          # raw PII, cleared once terminal
    event_source_url = Column(Text, nullable=True)
    action_source = Column(String(20), nullable=True)

    status = Column(String(10), nullable=False, default="ready")
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    ack_id = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_conversion_ledger_status_updated", "status", "updated_at"),
    )
