"""
Delivery Client — POST a built payload to the Conversions API.

    POST {graph_base_url}/{destination_id}/events
    Authorization: Bearer <access_token>

Classification:
  2xx                    → success, ack_id = fbtrace_id
  429, 5xx               → retryable
  timeout / transport    → retryable
  other 4xx              → permanent, carries the platform's error message
  missing credentials    → permanent configuration_error, no network call

Retryable failures are retried up to max_attempts with the configured
backoff, inside a total elapsed budget. Once attempts run out the result
is final (success=False, retryable=False, exhausted=True) and the ledger
row is left for the fallback sweep.
"""

import asyncio
import time
from dataclasses import dataclass, replace
from typing import Awaitable, Callable

import httpx
import structlog

logger = structlog.get_logger()

CONFIGURATION_ERROR = "configuration_error"


@dataclass(frozen=True)
class Credentials:
    destination_id: str | None
    access_token: str | None

    @property
    def configured(self) -> bool:
        return bool(self.destination_id and self.access_token)


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    ack_id: str | None = None
    events_received: int | None = None
    error: str | None = None
    status_code: int | None = None
    retryable: bool = False
    exhausted: bool = False
    attempts: int = 0


class DeliveryClient:
    def __init__(
        self,
        base_url: str = "https://graph.facebook.com/v18.0",
        *,
        timeout_seconds: float = 5.0,
        max_attempts: int = 3,
        backoff_seconds: tuple[float, ...] = (0.2, 0.5, 1.0),
        max_elapsed_seconds: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.backoff_seconds = tuple(backoff_seconds) or (0.0,)
        self.max_elapsed_seconds = max_elapsed_seconds
        self._transport = transport
        self._sleep = sleep
        self._clock = clock

    def _delay(self, attempt: int) -> float:
        return self.backoff_seconds[min(attempt - 1, len(self.backoff_seconds) - 1)]

    async def deliver(self, payload: dict, credentials: Credentials) -> DeliveryResult:
        event_ids = [e.get("event_id", "")[:16] for e in payload.get("data", [])]

        if not credentials.configured:
            logger.error("delivery_configuration_error", event_ids=event_ids)
            return DeliveryResult(success=False, error=CONFIGURATION_ERROR)

        url = f"{self.base_url}/{credentials.destination_id}/events"
        headers = {"Authorization": f"Bearer {credentials.access_token}"}
        started = self._clock()

        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            attempt = 0
            while True:
                attempt += 1
                result = replace(await self._attempt(client, url, headers, payload), attempts=attempt)

                if result.success:
                    logger.info(
                        "delivery_sent",
                        event_ids=event_ids,
                        attempts=attempt,
                        fbtrace_id=result.ack_id,
                        events_received=result.events_received,
                    )
                    return result

                if not result.retryable:
                    logger.warning(
                        "delivery_rejected",
                        event_ids=event_ids,
                        status_code=result.status_code,
                        error=result.error,
                    )
                    return result

                delay = self._delay(attempt)
                elapsed = self._clock() - started
                if attempt >= self.max_attempts or elapsed + delay > self.max_elapsed_seconds:
                    logger.error(
                        "delivery_exhausted",
                        event_ids=event_ids,
                        attempts=attempt,
                        status_code=result.status_code,
                        error=result.error,
                    )
                    return replace(result, retryable=False, exhausted=True)

                logger.info(
                    "delivery_retry",
                    event_ids=event_ids,
                    attempt=attempt,
                    delay=delay,
                    error=result.error,
                )
                await self._sleep(delay)

    async def _attempt(self, client: httpx.AsyncClient, url: str, headers: dict, payload: dict) -> DeliveryResult:
        try:
            response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            return DeliveryResult(success=False, error=f"timeout: {exc.__class__.__name__}", retryable=True)
        except httpx.TransportError as exc:
            return DeliveryResult(success=False, error=f"network_error: {exc}", retryable=True)

        if response.is_success:
            body = _json_or_empty(response)
            return DeliveryResult(
                success=True,
                ack_id=body.get("fbtrace_id"),
                events_received=body.get("events_received"),
                status_code=response.status_code,
            )

        body = _json_or_empty(response)
        error = body.get("error") if isinstance(body.get("error"), dict) else {}
        message = error.get("message") or response.text or response.reason_phrase
        retryable = response.status_code == 429 or response.status_code >= 500
        return DeliveryResult(
            success=False,
            error=message,
            status_code=response.status_code,
            retryable=retryable,
        )


def _json_or_empty(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
