"""
Payment webhook receiver.

The gateway's signature check happens upstream (reverse proxy / gateway
adapter); this endpoint trusts callers holding the secret key. Always
answers 200 for well-formed bodies so the gateway does not retry: redelivery
is the fallback sweep's job, not the gateway's.
"""

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from funnelcast.api.deps import get_pipeline
from funnelcast.api.events import CustomerPayload, TrackingFields
from funnelcast.core.payload import LineItem
from funnelcast.core.pipeline import ConversionPipeline, Trigger
from funnelcast.core.types import ActionSource, EventKind, Outcome, TriggerSource
from funnelcast.middleware.auth import AuthContext, require_secret_key

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])

PAID = "paid"

_RESPONSE_STATUS = {
    Outcome.SENT: "ok",
    Outcome.DUPLICATE: "duplicate",
    Outcome.REJECTED: "rejected",
    Outcome.FAILED: "failed",
}


class LineItemPayload(BaseModel):
    id: str
    quantity: int = Field(default=1, ge=1)
    item_price: Decimal | None = None


class PaymentWebhookPayload(TrackingFields):
    transaction_id: str = Field(min_length=1, max_length=255)
    status: str
    user_id: str = Field(min_length=1, max_length=64)
    value: Decimal
    currency: str = "BRL"
    customer: CustomerPayload | None = None
    items: list[LineItemPayload] = []
    event_source_url: str | None = None
    paid_at: datetime | None = None


@router.post("/payment", status_code=200)
async def webhook_payment(
    payload: PaymentWebhookPayload,
    auth: AuthContext = Depends(require_secret_key),
    pipeline: ConversionPipeline = Depends(get_pipeline),
):
    status = payload.status.strip().lower()
    if status != PAID:
        logger.debug("payment_webhook_ignored", status=status)
        return {"status": "ignored", "reason": f"status_{status}"}

    result = await pipeline.process(Trigger(
        kind=EventKind.PURCHASE,
        user_id=payload.user_id,
        source=TriggerSource.WEBHOOK,
        occurred_at=payload.paid_at,
        evidence=payload.to_snapshot(observed_at=payload.paid_at),
        customer=payload.customer.to_customer() if payload.customer else None,
        value=payload.value,
        currency=payload.currency,
        transaction_id=payload.transaction_id,
        contents=tuple(
            LineItem(id=item.id, quantity=item.quantity, item_price=item.item_price)
            for item in payload.items
        ),
        event_source_url=payload.event_source_url,
        action_source=ActionSource.WEBSITE,
    ))

    response = {"status": _RESPONSE_STATUS[result.outcome], "event_id": result.event_id}
    if result.reason:
        response["reason"] = result.reason
    return response
