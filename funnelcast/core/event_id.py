"""
Event-Id Assigner — the same logical event always gets the same id.

Format (sha256 hex, 64 chars):
  Purchase          → sha256("pur:" + transaction_id)
  Intent / Lead     → sha256("<kind>:<user_id>:<bucket_start>")

- transaction_id  → trimmed, lower-cased (gateways disagree on case)
- bucket_start    → occurred_at floored to the bucket width (unix seconds)

Purchases are keyed on the gateway's transaction id, so a browser pixel,
the payment webhook and the sweep all converge on one id even across
restarts. Intent events have no external key; collapsing re-signals that
land in the same window is the best available approximation.
"""

import hashlib
from datetime import datetime, timezone

from funnelcast.core.types import EventKind


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def normalize_transaction_id(transaction_id) -> str | None:
    if transaction_id is None:
        return None
    value = str(transaction_id).strip().lower()
    return value or None


class EventIdAssigner:
    def __init__(self, bucket_seconds: int = 300):
        if bucket_seconds <= 0:
            raise ValueError("bucket_seconds must be positive")
        self.bucket_seconds = bucket_seconds

    def bucket_start(self, occurred_at: datetime) -> int:
        if occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)
        ts = int(occurred_at.timestamp())
        return ts - (ts % self.bucket_seconds)

    def logical_key(self, kind: EventKind, semantic_key, occurred_at: datetime) -> str:
        """Human-readable key the id is derived from (stored for audit)."""
        if kind is EventKind.PURCHASE:
            tx = normalize_transaction_id(semantic_key)
            if tx is None:
                raise ValueError("Purchase events need a transaction id")
            return f"pur:{tx}"
        key = str(semantic_key).strip() if semantic_key is not None else ""
        if not key:
            raise ValueError(f"{kind.value} events need a semantic key (user id)")
        return f"{kind.value.lower()}:{key}:{self.bucket_start(occurred_at)}"

    def assign(self, kind: EventKind, semantic_key, occurred_at: datetime | None = None) -> str:
        occurred_at = occurred_at or datetime.now(timezone.utc)
        return _sha256(self.logical_key(kind, semantic_key, occurred_at))
