"""
Closed vocabularies shared across the pipeline.

Every place that switches on one of these (payload mapping, counter names,
ledger status) handles all members explicitly.
"""

from enum import Enum


class EventKind(str, Enum):
    INITIATE_CHECKOUT = "InitiateCheckout"
    PURCHASE = "Purchase"
    LEAD = "Lead"

    @property
    def counter_prefix(self) -> str:
        if self is EventKind.INITIATE_CHECKOUT:
            return "ic"
        if self is EventKind.PURCHASE:
            return "purchase"
        if self is EventKind.LEAD:
            return "lead"
        raise ValueError(f"Unhandled event kind: {self!r}")

    @property
    def time_bucketed(self) -> bool:
        """Kinds without a natural external key get a user+time-bucket id."""
        return self is not EventKind.PURCHASE


class DeliveryChannel(str, Enum):
    CAPI = "capi"    # server-side Conversions API (delivered by this service)
    PIXEL = "pixel"  # browser-side pixel (fired by the page, recorded here)


class Outcome(str, Enum):
    SENT = "sent"
    DUPLICATE = "dup"
    FAILED = "fail"
    REJECTED = "rejected"


class Quality(str, Enum):
    REAL = "real"
    FALLBACK = "fallback"


class ActionSource(str, Enum):
    WEBSITE = "website"
    CHAT = "chat"
    SYSTEM_GENERATED = "system_generated"
    OTHER = "other"


class TriggerSource(str, Enum):
    BROWSER = "browser"
    WEBHOOK = "webhook"
    BOT = "bot"
    SWEEP = "sweep"


class LedgerStatus(str, Enum):
    READY = "ready"
    SENT = "sent"
    FAILED = "failed"
    REJECTED = "rejected"


class FunnelcastError(Exception):
    """Base exception for caller contract violations."""


class ConfigurationError(FunnelcastError):
    """Raised at wiring time when a required setting is missing."""
