"""Initial schema: identity snapshots, dedup claims, funnel counters, conversion ledger

Revision ID: conversion_pipeline_001
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "conversion_pipeline_001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "identity_snapshots",
        sa.Column("user_id", sa.String(64), primary_key=True),
        sa.Column("click_cookie", sa.Text, nullable=True),
        sa.Column("referral_cookie", sa.Text, nullable=True),
        sa.Column("client_ip", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.Text, nullable=True),
        sa.Column("utm_source", sa.String(255), nullable=True),
        sa.Column("utm_medium", sa.String(255), nullable=True),
        sa.Column("utm_campaign", sa.String(255), nullable=True),
        sa.Column("utm_term", sa.String(255), nullable=True),
        sa.Column("utm_content", sa.String(255), nullable=True),
        sa.Column("quality", sa.String(10), nullable=False, server_default="fallback"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False, index=True),
    )

    op.create_table(
        "dedup_entries",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(64), nullable=False),
        sa.Column("channel", sa.String(10), nullable=False),
        sa.Column("logical_key", sa.String(255), nullable=True),
        sa.Column("event_kind", sa.String(30), nullable=False),
        sa.Column("value", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("ack_id", sa.String(255), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("event_id", "channel", name="uq_dedup_event_channel"),
    )
    op.create_index("ix_dedup_entries_expires", "dedup_entries", ["expires_at"])
    op.create_index("ix_dedup_entries_logical_key", "dedup_entries", ["logical_key"])

    op.create_table(
        "funnel_counters",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_date", sa.Date, nullable=False),
        sa.Column("event_name", sa.String(50), nullable=False),
        sa.Column("channel", sa.String(10), nullable=False, server_default="capi"),
        sa.Column("total", sa.Integer, nullable=False, server_default="0"),
        sa.UniqueConstraint("event_date", "event_name", "channel", name="uq_funnel_counters_key"),
    )

    op.create_table(
        "conversion_ledger",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(64), nullable=False, unique=True, index=True),
        sa.Column("event_kind", sa.String(30), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False, index=True),
        sa.Column("transaction_id", sa.String(255), nullable=True, index=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("value", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("contents", postgresql.JSONB, nullable=True),
        sa.Column("customer", postgresql.JSONB, nullable=True),
        sa.Column("event_source_url", sa.Text, nullable=True),
        sa.Column("action_source", sa.String(20), nullable=True),
        sa.Column("status", sa.String(10), nullable=False, server_default="ready"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("ack_id", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_conversion_ledger_status_updated", "conversion_ledger", ["status", "updated_at"])


def downgrade() -> None:
    op.drop_table("conversion_ledger")
    op.drop_table("funnel_counters")
    op.drop_table("dedup_entries")
    op.drop_table("identity_snapshots")
