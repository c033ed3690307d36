"""
Payload Builder — canonical identity + event semantics → wire payload.

Wire shape (Conversions API):
  {
    "data": [{
      "event_name", "event_time", "event_id", "action_source",
      "event_source_url"?, "user_data": {...}, "custom_data": {...}
    }],
    "test_event_code"?            # only when configured explicitly
  }

user_data only carries keys that have a value. The platform treats an
explicit null differently from a missing key, so absent data is omitted.

Personal fields (em, ph, fn, ln, external_id, ct, st, zp, country) are
normalized and then SHA-256 hashed. A value already in 64-hex form is
passed through as-is.

Rejections are returned, never raised: the pipeline decides what to do
with an unfit event.
"""

import hashlib
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable

from funnelcast.core.event_id import normalize_transaction_id
from funnelcast.core.identity import CAMPAIGN_FIELDS, IdentitySnapshot
from funnelcast.core.types import ActionSource, EventKind

_HASHED_RE = re.compile(r"^[a-f0-9]{64}$")
_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_NON_DIGIT_RE = re.compile(r"\D+")
_NON_LETTER_RE = re.compile(r"[^a-z]")

CENT = Decimal("0.01")
# Numeric(12, 2) columns
MAX_STORABLE_VALUE = Decimal("9999999999.99")


class RejectionReason(str, Enum):
    INSUFFICIENT_IDENTITY = "insufficient_identity"
    INVALID_VALUE = "invalid_value"
    INVALID_CURRENCY = "invalid_currency"
    MISSING_TRANSACTION_ID = "missing_transaction_id"
    EVENT_TOO_OLD = "event_too_old"


# ---------------------------------------------------------------------------
# Input types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CustomerInfo:
    """Raw customer PII as reported by a trigger. Hashed only on the way out."""
    email: str | None = None
    phone: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    document: str | None = None      # CPF / tax id → external_id
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    country: str | None = None

    def to_dict(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if v}

    @classmethod
    def from_dict(cls, data: dict | None) -> "CustomerInfo | None":
        if not data:
            return None
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__})


@dataclass(frozen=True)
class LineItem:
    id: str
    quantity: int = 1
    item_price: Decimal | None = None

    def to_wire(self) -> dict:
        item = {"id": str(self.id), "quantity": int(self.quantity)}
        if self.item_price is not None:
            item["item_price"] = float(self.item_price)
        return item

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "quantity": int(self.quantity),
            "item_price": str(self.item_price) if self.item_price is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LineItem":
        price = data.get("item_price")
        return cls(
            id=str(data["id"]),
            quantity=int(data.get("quantity") or 1),
            item_price=Decimal(str(price)) if price is not None else None,
        )


@dataclass(frozen=True)
class ConversionEvent:
    kind: EventKind
    event_id: str
    occurred_at: datetime
    identity: IdentitySnapshot
    action_source: ActionSource = ActionSource.WEBSITE
    customer: CustomerInfo | None = None
    value: Decimal | None = None
    currency: str | None = None
    transaction_id: str | None = None
    contents: tuple[LineItem, ...] = ()
    event_source_url: str | None = None
    custom_data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BuildResult:
    payload: dict | None = None
    rejection: RejectionReason | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.payload is not None


# ---------------------------------------------------------------------------
# Normalization + hashing
# ---------------------------------------------------------------------------

def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _already_hashed(value: str) -> bool:
    return bool(_HASHED_RE.match(value.strip().lower()))


def _digits(value: str | None) -> str:
    return _NON_DIGIT_RE.sub("", value or "")


def normalize_email(value: str | None) -> str | None:
    value = (value or "").strip().lower()
    return value if "@" in value else None


def normalize_phone(value: str | None, default_country_code: str = "55") -> str | None:
    """E.164 without the plus sign. Local numbers get the default country code."""
    raw = (value or "").strip()
    digits = _digits(raw)
    if not digits:
        return None
    if raw.startswith("+"):
        return digits
    if digits.startswith("00"):
        return digits[2:] or None
    digits = digits.lstrip("0")
    if len(digits) <= 11:
        digits = default_country_code + digits
    return digits


def normalize_name(value: str | None) -> str | None:
    decomposed = unicodedata.normalize("NFKD", (value or "").strip().lower())
    ascii_only = "".join(c for c in decomposed if not unicodedata.combining(c))
    return _NON_LETTER_RE.sub("", ascii_only) or None


def normalize_document(value: str | None) -> str | None:
    return _digits(value) or None


def normalize_zip(value: str | None) -> str | None:
    """CEP 01310-100 → 01310100; other formats just lose spaces and dashes."""
    return re.sub(r"[\s-]", "", (value or "").strip().lower()) or None


def _hashed(value: str | None, normalizer: Callable[[str], str | None]) -> str | None:
    if not value or not value.strip():
        return None
    if _already_hashed(value):
        return value.strip().lower()
    normalized = normalizer(value)
    return sha256_hex(normalized) if normalized else None


def normalize_currency(value: str | None) -> str | None:
    """ISO-4217 code, upper-cased, or None."""
    currency = (value or "").strip().upper()
    return currency if _CURRENCY_RE.match(currency) else None


def parse_value(value) -> Decimal | None:
    """Decimal with at most two places, or None if not a usable amount."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
        if not amount.is_finite() or amount != amount.quantize(CENT):
            return None
    except (InvalidOperation, ValueError):
        return None
    return amount


def storable_value(value) -> Decimal | None:
    """A parsed amount that fits the ledger columns, else None."""
    amount = parse_value(value)
    if amount is None or abs(amount) > MAX_STORABLE_VALUE:
        return None
    return amount


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

class PayloadBuilder:
    def __init__(
        self,
        *,
        test_event_code: str | None = None,
        min_identity_fields: int = 2,
        max_purchase_value: Decimal = Decimal("10000.00"),
        max_event_age_days: int = 7,
        default_country_code: str = "55",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.test_event_code = test_event_code or None
        self.min_identity_fields = min_identity_fields
        self.max_purchase_value = max_purchase_value
        self.max_event_age = timedelta(days=max_event_age_days)
        self.default_country_code = default_country_code
        self._clock = clock

    def user_data(self, identity: IdentitySnapshot, customer: CustomerInfo | None) -> dict:
        customer = customer or CustomerInfo()
        hashed = {
            "em": _hashed(customer.email, normalize_email),
            "ph": _hashed(customer.phone, lambda v: normalize_phone(v, self.default_country_code)),
            "fn": _hashed(customer.first_name, normalize_name),
            "ln": _hashed(customer.last_name, normalize_name),
            "external_id": _hashed(customer.document, normalize_document),
            "ct": _hashed(customer.city, normalize_name),
            "st": _hashed(customer.state, normalize_name),
            "zp": _hashed(customer.zip_code, normalize_zip),
            "country": _hashed(customer.country, normalize_name),
        }
        data = {key: [value] for key, value in hashed.items() if value}

        plain = {
            "fbc": identity.click_cookie,
            "fbp": identity.referral_cookie,
            "client_ip_address": identity.client_ip,
            "client_user_agent": identity.user_agent,
        }
        data.update({key: value for key, value in plain.items() if value})
        return data

    def build(self, event: ConversionEvent) -> BuildResult:
        now = self._clock()
        occurred_at = event.occurred_at
        if occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)
        if occurred_at < now - self.max_event_age:
            return BuildResult(rejection=RejectionReason.EVENT_TOO_OLD, detail=occurred_at.isoformat())
        occurred_at = min(occurred_at, now)

        user_data = self.user_data(event.identity, event.customer)
        if len(user_data) < self.min_identity_fields:
            return BuildResult(
                rejection=RejectionReason.INSUFFICIENT_IDENTITY,
                detail=f"{len(user_data)} identity field(s)",
            )

        custom_data = {k: v for k, v in (event.custom_data or {}).items() if v not in (None, "")}
        for tag in CAMPAIGN_FIELDS:
            value = getattr(event.identity, tag)
            if value:
                custom_data[tag] = value

        if event.kind is EventKind.PURCHASE:
            rejection = self._purchase_data(event, custom_data)
            if rejection is not None:
                return rejection
        elif event.kind in (EventKind.INITIATE_CHECKOUT, EventKind.LEAD):
            amount = parse_value(event.value)
            currency = normalize_currency(event.currency)
            if amount is not None and amount > 0 and currency:
                custom_data["value"] = float(amount)
                custom_data["currency"] = currency
        else:
            raise ValueError(f"Unhandled event kind: {event.kind!r}")

        wire_event = {
            "event_name": event.kind.value,
            "event_time": int(occurred_at.timestamp()),
            "event_id": event.event_id,
            "action_source": event.action_source.value,
            "user_data": user_data,
            "custom_data": custom_data,
        }
        if event.event_source_url:
            wire_event["event_source_url"] = event.event_source_url.strip()

        payload = {"data": [wire_event]}
        if self.test_event_code:
            payload["test_event_code"] = self.test_event_code
        return BuildResult(payload=payload)

    def _purchase_data(self, event: ConversionEvent, custom_data: dict) -> BuildResult | None:
        amount = parse_value(event.value)
        if amount is None or amount <= 0 or amount > self.max_purchase_value:
            return BuildResult(rejection=RejectionReason.INVALID_VALUE, detail=str(event.value))

        currency = normalize_currency(event.currency)
        if currency is None:
            return BuildResult(rejection=RejectionReason.INVALID_CURRENCY, detail=event.currency)

        transaction_id = normalize_transaction_id(event.transaction_id)
        if transaction_id is None:
            return BuildResult(rejection=RejectionReason.MISSING_TRANSACTION_ID)

        contents = list(event.contents) or [
            LineItem(id=str(event.transaction_id).strip(), quantity=1, item_price=amount)
        ]
        custom_data.update(
            value=float(amount),
            currency=currency,
            order_id=str(event.transaction_id).strip(),
            content_type="product",
            contents=[item.to_wire() for item in contents],
            num_items=sum(item.quantity for item in contents),
        )
        return None
