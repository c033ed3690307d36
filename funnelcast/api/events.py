"""
Trigger ingestion — browser pixel calls and bot-originated events.

Security:
  - Browser endpoint: publishable OR secret key, rate limited per IP
  - Bot endpoint: secret key only
  - Fire-and-observe: the response carries the event id, delivery happens
    in the background and is reported through counters and logs
"""

from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from funnelcast.api.deps import get_pipeline
from funnelcast.core.identity import IdentitySnapshot, build_snapshot
from funnelcast.core.payload import CustomerInfo
from funnelcast.core.pipeline import ConversionPipeline, Trigger
from funnelcast.core.types import ActionSource, DeliveryChannel, EventKind, TriggerSource
from funnelcast.middleware.auth import AuthContext, require_auth, require_secret_key
from funnelcast.middleware.rate_limit import get_real_ip, rate_limit_ip

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/v1/events", tags=["events"])


# --- Request schemas ---

class TrackingFields(BaseModel):
    fbc: str | None = None
    fbp: str | None = None
    fbclid: str | None = None
    client_ip: str | None = None
    user_agent: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_term: str | None = None
    utm_content: str | None = None

    def to_snapshot(self, observed_at: datetime | None = None, **defaults) -> IdentitySnapshot:
        evidence = self.model_dump(include=set(TrackingFields.model_fields))
        for key, value in defaults.items():
            evidence[key] = evidence.get(key) or value
        return build_snapshot(**evidence, observed_at=observed_at)


class CustomerPayload(BaseModel):
    email: str | None = None
    phone: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    document: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    country: str | None = None

    def to_customer(self) -> CustomerInfo:
        return CustomerInfo(**self.model_dump())


class BrowserEventPayload(TrackingFields):
    event_name: Literal["InitiateCheckout", "Purchase", "Lead"]
    user_id: str = Field(min_length=1, max_length=64)
    transaction_id: str | None = Field(default=None, max_length=255)
    value: Decimal | None = None
    currency: str | None = None
    event_source_url: str | None = None
    occurred_at: datetime | None = None
    pixel_fired: bool = False  # page fired the browser pixel with the same event id


class BotEventPayload(TrackingFields):
    event_name: Literal["InitiateCheckout", "Lead"]
    user_id: str = Field(min_length=1, max_length=64)
    value: Decimal | None = None
    currency: str | None = None
    customer: CustomerPayload | None = None
    event_source_url: str | None = None
    action_source: Literal["website", "chat", "system_generated", "other"] = "chat"
    occurred_at: datetime | None = None


# --- Endpoints ---

@router.post("/browser", status_code=202)
async def ingest_browser_event(
    payload: BrowserEventPayload,
    request: Request,
    auth: AuthContext = Depends(require_auth),
    pipeline: ConversionPipeline = Depends(get_pipeline),
):
    rate_limit_ip(request)

    kind = EventKind(payload.event_name)
    if kind is EventKind.PURCHASE and not (payload.transaction_id or "").strip():
        raise HTTPException(status_code=400, detail="Purchase events require transaction_id.")

    evidence = payload.to_snapshot(
        observed_at=payload.occurred_at,
        fbc=request.cookies.get("_fbc"),
        fbp=request.cookies.get("_fbp"),
        client_ip=get_real_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    trigger = Trigger(
        kind=kind,
        user_id=payload.user_id,
        source=TriggerSource.BROWSER,
        occurred_at=payload.occurred_at or datetime.now(timezone.utc),
        evidence=evidence,
        value=payload.value,
        currency=payload.currency,
        transaction_id=payload.transaction_id,
        event_source_url=payload.event_source_url,
        action_source=ActionSource.WEBSITE,
    )
    event_id = pipeline.submit(trigger)
    if payload.pixel_fired:
        pipeline.submit(replace(trigger, channel=DeliveryChannel.PIXEL))

    logger.info("browser_event", kind=kind.value, event_id=event_id[:16] if event_id else None, key_type=auth.key_type.value)
    return {"status": "ok", "event_id": event_id}


@router.post("/bot", status_code=202)
async def ingest_bot_event(
    payload: BotEventPayload,
    auth: AuthContext = Depends(require_secret_key),
    pipeline: ConversionPipeline = Depends(get_pipeline),
):
    kind = EventKind(payload.event_name)
    event_id = pipeline.submit(Trigger(
        kind=kind,
        user_id=payload.user_id,
        source=TriggerSource.BOT,
        occurred_at=payload.occurred_at,
        evidence=payload.to_snapshot(observed_at=payload.occurred_at),
        customer=payload.customer.to_customer() if payload.customer else None,
        value=payload.value,
        currency=payload.currency,
        event_source_url=payload.event_source_url,
        action_source=ActionSource(payload.action_source),
    ))

    logger.info("bot_event", kind=kind.value, event_id=event_id[:16] if event_id else None)
    return {"status": "ok", "event_id": event_id}
