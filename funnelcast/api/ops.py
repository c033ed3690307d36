"""
Operational endpoints — funnel counters, dedup stats, manual sweep.

All require the secret key.
"""

from fastapi import APIRouter, Depends, HTTPException, Query

from funnelcast.api.deps import get_pipeline
from funnelcast.core.pipeline import ConversionPipeline
from funnelcast.middleware.auth import AuthContext, require_secret_key

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/v1", tags=["ops"])


def _metrics(pipeline: ConversionPipeline):
    if pipeline.metrics is None:
        raise HTTPException(status_code=503, detail="Funnel metrics need a database.")
    return pipeline.metrics


@router.get("/metrics/daily")
async def daily_metrics(
    days: int = Query(default=14),
    auth: AuthContext = Depends(require_secret_key),
    pipeline: ConversionPipeline = Depends(get_pipeline),
):
    rows = await _metrics(pipeline).daily_counters(days)
    return {"days": max(1, min(days, 90)), "counters": rows}


@router.get("/metrics/today")
async def today_metrics(
    auth: AuthContext = Depends(require_secret_key),
    pipeline: ConversionPipeline = Depends(get_pipeline),
):
    return {"counters": await _metrics(pipeline).today()}


@router.get("/metrics/dedup")
async def dedup_metrics(
    auth: AuthContext = Depends(require_secret_key),
    pipeline: ConversionPipeline = Depends(get_pipeline),
):
    stats = await pipeline.dedup.stats()
    if pipeline.ledger is not None:
        stats["ledger"] = await pipeline.ledger.status_counts()
    stats["in_flight"] = pipeline.in_flight
    return stats


@router.post("/sweep")
async def run_sweep(
    limit: int | None = Query(default=None, ge=1, le=1000),
    auth: AuthContext = Depends(require_secret_key),
    pipeline: ConversionPipeline = Depends(get_pipeline),
):
    counts = await pipeline.run_fallback_sweep(limit)
    logger.info("manual_sweep", **counts)
    return {"status": "ok", "outcomes": counts}
