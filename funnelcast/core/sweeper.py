"""
Maintenance sweeper — background loop started from the app lifespan.

Each tick:
  1. purge expired dedup claims (memory + durable)
  2. purge expired identities (cache + durable)
  3. purge funnel counters past retention
  4. re-drive ledger rows still "ready" (fallback sweep)

A failing step is logged and skipped; the loop keeps going.
"""

import asyncio

from funnelcast.core.pipeline import ConversionPipeline

import structlog

logger = structlog.get_logger()


class MaintenanceSweeper:
    def __init__(
        self,
        pipeline: ConversionPipeline,
        interval_seconds: float = 300,
        counters_retention_days: int = 90,
    ):
        self.pipeline = pipeline
        self.interval_seconds = interval_seconds
        self.counters_retention_days = counters_retention_days
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    async def _purge_dedup(self):
        return await self.pipeline.dedup.purge_expired()

    async def _purge_identities(self):
        resolver = self.pipeline.resolver
        removed = resolver.cache.purge_expired()
        if resolver.store is not None:
            removed += await resolver.store.purge_expired()
        return removed

    async def _purge_counters(self):
        if self.pipeline.metrics is None:
            return 0
        return await self.pipeline.metrics.purge_older_than(self.counters_retention_days)

    async def _fallback_sweep(self):
        return await self.pipeline.run_fallback_sweep()

    async def run_once(self) -> dict:
        steps = {
            "dedup": self._purge_dedup,
            "identity": self._purge_identities,
            "counters": self._purge_counters,
            "fallback": self._fallback_sweep,
        }
        report = {}
        for name, step in steps.items():
            try:
                report[name] = await step()
            except Exception as exc:
                logger.error("maintenance_step_failed", step=name, error=str(exc), error_type=type(exc).__name__)
                report[name] = None
        return report

    async def _loop(self):
        logger.info("maintenance_sweeper_started", interval=self.interval_seconds)
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
                break
            except asyncio.TimeoutError:
                pass
            await self.run_once()
        logger.info("maintenance_sweeper_stopped")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
