"""
Conversion pipeline — every trigger takes the same path:

  ledger(ready) → resolve identity → assign event_id → claim
      → build payload → deliver → _handle_outcome

_handle_outcome is the only place that reacts to a result:
  sent       → confirm claim, ledger sent
  duplicate  → nothing to undo
  rejected   → release claim, ledger rejected
  fail       → release claim, ledger ready (transient) or failed
and it always records the funnel counter.

The fallback sweep re-drives ledger rows still "ready". It carries no
evidence of its own; identity comes from whatever the resolver has.
"""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from funnelcast.config import Settings
from funnelcast.core.dedup import ClaimMetadata, DedupStore, MemoryDedupTier
from funnelcast.core.delivery import Credentials, DeliveryClient, DeliveryResult
from funnelcast.core.event_id import EventIdAssigner, normalize_transaction_id
from funnelcast.core.evidence import mask
from funnelcast.core.identity import IdentitySnapshot, as_utc
from funnelcast.core.identity_cache import IdentityCache
from funnelcast.core.identity_store import IdentityStore
from funnelcast.core.ledger import ConversionLedger
from funnelcast.core.metrics import FunnelMetricsRecorder
from funnelcast.core.payload import (
    ConversionEvent,
    CustomerInfo,
    LineItem,
    PayloadBuilder,
    RejectionReason,
    normalize_currency,
    storable_value,
)
from funnelcast.core.resolver import IdentityResolver
from funnelcast.core.types import (
    ActionSource,
    ConfigurationError,
    DeliveryChannel,
    EventKind,
    LedgerStatus,
    Outcome,
    TriggerSource,
)

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class Trigger:
    kind: EventKind
    user_id: str
    source: TriggerSource
    occurred_at: datetime | None = None
    evidence: IdentitySnapshot | None = None
    customer: CustomerInfo | None = None
    value: Decimal | None = None
    currency: str | None = None
    transaction_id: str | None = None
    contents: tuple[LineItem, ...] = ()
    event_source_url: str | None = None
    action_source: ActionSource = ActionSource.WEBSITE
    custom_data: dict[str, Any] = field(default_factory=dict)
    channel: DeliveryChannel = DeliveryChannel.CAPI


@dataclass(frozen=True)
class PipelineOutcome:
    event_id: str | None
    outcome: Outcome
    reason: str | None = None
    ack_id: str | None = None
    attempts: int = 0


class ConversionPipeline:
    def __init__(
        self,
        *,
        resolver: IdentityResolver,
        assigner: EventIdAssigner,
        dedup: DedupStore,
        builder: PayloadBuilder,
        delivery: DeliveryClient,
        credentials: Credentials,
        metrics: FunnelMetricsRecorder | None = None,
        ledger: ConversionLedger | None = None,
        sweep_min_age_seconds: int = 120,
        sweep_batch_size: int = 100,
    ):
        self.resolver = resolver
        self.assigner = assigner
        self.dedup = dedup
        self.builder = builder
        self.delivery = delivery
        self.credentials = credentials
        self.metrics = metrics
        self.ledger = ledger
        self.sweep_min_age_seconds = sweep_min_age_seconds
        self.sweep_batch_size = sweep_batch_size
        self._tasks: set[asyncio.Task] = set()

    # -- ids -----------------------------------------------------------------

    def event_id_for(self, trigger: Trigger) -> str | None:
        """None when a purchase has no transaction id to key on."""
        occurred_at = as_utc(trigger.occurred_at) or datetime.now(timezone.utc)
        if trigger.kind is EventKind.PURCHASE:
            if normalize_transaction_id(trigger.transaction_id) is None:
                return None
            return self.assigner.assign(trigger.kind, trigger.transaction_id, occurred_at)
        return self.assigner.assign(trigger.kind, trigger.user_id, occurred_at)

    # -- main flow -----------------------------------------------------------

    async def process(self, trigger: Trigger) -> PipelineOutcome:
        trigger = _stamped(trigger)

        event_id = self.event_id_for(trigger)
        if event_id is None:
            return await self._handle_outcome(
                trigger, None, Outcome.REJECTED, reason=RejectionReason.MISSING_TRANSACTION_ID.value
            )

        if trigger.channel is DeliveryChannel.PIXEL:
            return await self._record_pixel_fire(trigger, event_id)

        if self.ledger is not None and trigger.source is not TriggerSource.SWEEP:
            await self._ledger_call("record_ready", self.ledger.record_ready(
                event_id=event_id,
                kind=trigger.kind,
                user_id=trigger.user_id,
                occurred_at=trigger.occurred_at,
                transaction_id=trigger.transaction_id,
                value=storable_value(trigger.value),
                currency=normalize_currency(trigger.currency),
                contents=trigger.contents,
                customer=trigger.customer,
                event_source_url=trigger.event_source_url,
                action_source=trigger.action_source,
            ), event_id)

        identity = await self.resolver.resolve(trigger.user_id, trigger.evidence)

        claim = await self.dedup.claim(event_id, trigger.channel, self._claim_metadata(trigger))
        if not claim.claimed:
            return await self._handle_outcome(trigger, event_id, Outcome.DUPLICATE, reason=claim.reason)

        build = self.builder.build(ConversionEvent(
            kind=trigger.kind,
            event_id=event_id,
            occurred_at=trigger.occurred_at,
            identity=identity,
            action_source=trigger.action_source,
            customer=trigger.customer,
            value=trigger.value,
            currency=trigger.currency,
            transaction_id=trigger.transaction_id,
            contents=trigger.contents,
            event_source_url=trigger.event_source_url,
            custom_data=trigger.custom_data,
        ))
        if not build.ok:
            return await self._handle_outcome(trigger, event_id, Outcome.REJECTED, reason=build.rejection.value)

        result = await self.delivery.deliver(build.payload, self.credentials)
        outcome = Outcome.SENT if result.success else Outcome.FAILED
        return await self._handle_outcome(trigger, event_id, outcome, reason=result.error, delivery=result)

    def _claim_metadata(self, trigger: Trigger) -> ClaimMetadata:
        key = trigger.transaction_id if trigger.kind is EventKind.PURCHASE else trigger.user_id
        return ClaimMetadata(
            event_kind=trigger.kind,
            logical_key=self.assigner.logical_key(trigger.kind, key, trigger.occurred_at)[:255],
            value=storable_value(trigger.value),
            currency=normalize_currency(trigger.currency),
        )

    async def _record_pixel_fire(self, trigger: Trigger, event_id: str) -> PipelineOutcome:
        """The page already fired the browser pixel; claim and count it, nothing to deliver."""
        claim = await self.dedup.claim(event_id, DeliveryChannel.PIXEL, self._claim_metadata(trigger))
        if not claim.claimed:
            return await self._handle_outcome(trigger, event_id, Outcome.DUPLICATE, reason=claim.reason)
        return await self._handle_outcome(trigger, event_id, Outcome.SENT)

    async def _handle_outcome(
        self,
        trigger: Trigger,
        event_id: str | None,
        outcome: Outcome,
        *,
        reason: str | None = None,
        delivery: DeliveryResult | None = None,
    ) -> PipelineOutcome:
        ledger_status = None
        ack_id = delivery.ack_id if delivery else None
        # Pixel fires are counted, not delivered: the ledger tracks server sends only.
        ledger = self.ledger if trigger.channel is DeliveryChannel.CAPI else None

        if outcome is Outcome.SENT:
            await self.dedup.confirm(event_id, trigger.channel, ack_id)
            if ledger is not None:
                await self._ledger_call("mark_sent", ledger.mark_sent(event_id, ack_id), event_id)
                ledger_status = LedgerStatus.SENT

        elif outcome is Outcome.FAILED:
            await self.dedup.release(event_id, trigger.channel)
            if ledger is not None:
                permanent = not delivery.exhausted
                ledger_status = await self._ledger_call(
                    "mark_failed", ledger.mark_failed(event_id, reason, permanent=permanent), event_id
                )

        elif outcome is Outcome.REJECTED:
            if event_id is not None:
                await self.dedup.release(event_id, trigger.channel)
                if ledger is not None:
                    await self._ledger_call("mark_rejected", ledger.mark_rejected(event_id, reason), event_id)
                    ledger_status = LedgerStatus.REJECTED

        elif outcome is Outcome.DUPLICATE:
            # Another trigger owns this event. A sweep still counts the attempt
            # so a row whose claim is held elsewhere can't cycle forever.
            if ledger is not None and trigger.source is TriggerSource.SWEEP:
                ledger_status = await self._ledger_call(
                    "mark_failed", ledger.mark_failed(event_id, reason, permanent=False), event_id
                )

        else:
            raise ValueError(f"Unhandled outcome: {outcome!r}")

        if self.metrics is not None:
            await self.metrics.record(outcome, trigger.kind, trigger.channel, trigger.occurred_at)

        log = logger.warning if outcome in (Outcome.FAILED, Outcome.REJECTED) else logger.info
        log(
            "conversion_" + outcome.name.lower(),
            event_id=event_id[:16] if event_id else None,
            kind=trigger.kind.value,
            source=trigger.source.value,
            channel=trigger.channel.value,
            user=mask(trigger.user_id),
            reason=reason,
            ack_id=ack_id,
            attempts=delivery.attempts if delivery else 0,
            ledger=ledger_status.value if isinstance(ledger_status, LedgerStatus) else None,
        )
        return PipelineOutcome(
            event_id=event_id,
            outcome=outcome,
            reason=reason,
            ack_id=ack_id,
            attempts=delivery.attempts if delivery else 0,
        )

    async def _ledger_call(self, op: str, call, event_id: str):
        try:
            return await call
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("ledger_write_failed", op=op, event_id=event_id[:16], error=str(exc))
            return None

    # -- fire-and-observe ----------------------------------------------------

    def submit(self, trigger: Trigger) -> str | None:
        """Schedule process() and return the event id right away."""
        trigger = _stamped(trigger)
        event_id = self.event_id_for(trigger)

        task = asyncio.create_task(self.process(trigger))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return event_id

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("conversion_task_crashed", error=str(exc), error_type=type(exc).__name__)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        if not self._tasks:
            return
        pending = list(self._tasks)
        logger.info("pipeline_draining", tasks=len(pending))
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            logger.warning("pipeline_drain_timeout", cancelled=len(not_done))

    # -- fallback sweep ------------------------------------------------------

    async def run_fallback_sweep(self, limit: int | None = None) -> dict[str, int]:
        if self.ledger is None:
            return {}
        rows = await self.ledger.due_for_retry(
            min_age_seconds=self.sweep_min_age_seconds,
            limit=limit or self.sweep_batch_size,
        )
        counts = {outcome.value: 0 for outcome in Outcome}
        for row in rows:
            outcome = await self.process(trigger_from_ledger(row))
            counts[outcome.outcome.value] += 1
        if rows:
            logger.info("fallback_sweep_done", rows=len(rows), **counts)
        return counts


def _stamped(trigger: Trigger) -> Trigger:
    """Every trigger carries an aware UTC occurred_at from here on."""
    occurred_at = as_utc(trigger.occurred_at) or datetime.now(timezone.utc)
    if occurred_at is trigger.occurred_at:
        return trigger
    return replace(trigger, occurred_at=occurred_at)


def trigger_from_ledger(row) -> Trigger:
    return Trigger(
        kind=EventKind(row.event_kind),
        user_id=row.user_id,
        source=TriggerSource.SWEEP,
        occurred_at=as_utc(row.occurred_at),
        customer=CustomerInfo.from_dict(row.customer),
        value=row.value,
        currency=row.currency,
        transaction_id=row.transaction_id,
        contents=tuple(LineItem.from_dict(item) for item in row.contents or ()),
        event_source_url=row.event_source_url,
        action_source=ActionSource(row.action_source) if row.action_source else ActionSource.SYSTEM_GENERATED,
    )


def build_pipeline(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    **overrides,
) -> ConversionPipeline:
    """Wire every component from settings. overrides replace built parts (tests)."""
    if not settings.graph_base_url:
        raise ConfigurationError("FC_GRAPH_BASE_URL must be set")
    identity_store = (
        IdentityStore(session_factory, retention_days=settings.identity_store_retention_days)
        if session_factory is not None else None
    )
    parts = dict(
        resolver=IdentityResolver(
            IdentityCache(
                ttl_seconds=settings.identity_cache_ttl_seconds,
                max_users=settings.identity_cache_max_users,
            ),
            identity_store,
        ),
        assigner=EventIdAssigner(bucket_seconds=settings.event_bucket_seconds),
        dedup=DedupStore(
            MemoryDedupTier(
                ttl_seconds=settings.dedup_memory_ttl_seconds,
                max_entries=settings.dedup_memory_max_entries,
            ),
            session_factory,
            durable_ttl_seconds=settings.dedup_durable_ttl_seconds,
            stale_claim_seconds=settings.dedup_stale_claim_seconds,
        ),
        builder=PayloadBuilder(
            test_event_code=settings.test_event_code,
            min_identity_fields=settings.min_identity_fields,
            max_purchase_value=settings.max_purchase_value,
            max_event_age_days=settings.max_event_age_days,
            default_country_code=settings.default_phone_country_code,
        ),
        delivery=DeliveryClient(
            settings.graph_base_url,
            timeout_seconds=settings.delivery_timeout_seconds,
            max_attempts=settings.delivery_max_attempts,
            backoff_seconds=settings.delivery_backoff_seconds,
            max_elapsed_seconds=settings.delivery_max_elapsed_seconds,
        ),
        credentials=Credentials(settings.pixel_id, settings.access_token),
        metrics=FunnelMetricsRecorder(session_factory) if session_factory is not None else None,
        ledger=(
            ConversionLedger(session_factory, max_attempts=settings.sweep_max_attempts)
            if session_factory is not None else None
        ),
        sweep_min_age_seconds=settings.sweep_min_age_seconds,
        sweep_batch_size=settings.sweep_batch_size,
    )
    parts.update(overrides)
    if not parts["credentials"].configured:
        logger.warning("delivery_credentials_missing", pixel_id=bool(settings.pixel_id))
    return ConversionPipeline(**parts)
