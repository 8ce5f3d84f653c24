"""
Roof KPI Hub — Reports Router
===============================
Runs the analytics engine over job records posted by the caller.

Endpoints:
  POST /api/reports          - Full report (summary, funnels, AR, warnings)
  POST /api/reports/funnel   - Funnel results and data-quality warnings only
  POST /api/reports/ar       - AR buckets only

Malformed records abort the request with 422 and name the record.
date_from/date_to limit the funnel to jobs settled in that window; AR
always covers every posted job.
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from scripts.ar_aggregator import compute_ar
from scripts.job_records import normalize_jobs
from scripts.kpi_report import funnel_for, parse_date_bound, run_engine_async, window_jobs
from scripts.lib.config import EngineConfig, load_engine_config
from scripts.lib.errors import ConfigError, MalformedRecordError
from scripts.lib.logger import setup_logger
from scripts.lib.utils import cents_to_dollars
from scripts.report_assembler import report_to_dict

logger = setup_logger("reports_router")

router = APIRouter(prefix="/api/reports", tags=["reports"])


# ─── Request Models ───────────────────────────────────────────

class ReportRequest(BaseModel):
    jobs: List[Dict[str, Any]] = Field(default_factory=list, description="Raw JobNimbus job objects")
    date_from: Optional[str] = Field(None, description="forever | ytd | today | YYYY-MM-DD")
    date_to: Optional[str] = Field(None, description="forever | today | YYYY-MM-DD")


# ─── Helpers ──────────────────────────────────────────────────

def _engine_config(request: Request) -> EngineConfig:
    config = getattr(request.app.state, "engine_config", None)
    if config is not None:
        return config
    try:
        config = load_engine_config()
    except ConfigError as e:
        logger.error("Engine config unavailable: %s", e)
        raise HTTPException(status_code=500, detail=e.to_dict())
    request.app.state.engine_config = config
    return config


def _malformed(e: MalformedRecordError) -> HTTPException:
    logger.warning("Rejected job batch: %s", e)
    return HTTPException(status_code=422, detail=e.to_dict())


def _date_bound(value: Optional[str]):
    try:
        return parse_date_bound(value)
    except ValueError as e:
        raise HTTPException(status_code=422, detail={"code": "INVALID_DATE", "message": str(e)})


# ─── Endpoints ────────────────────────────────────────────────

@router.post("")
async def full_report(body: ReportRequest, request: Request):
    """Assemble the full KPI + AR report for the posted jobs."""
    config = _engine_config(request)
    try:
        report = await run_engine_async(
            body.jobs, config,
            date_from=_date_bound(body.date_from),
            date_to=_date_bound(body.date_to),
        )
    except MalformedRecordError as e:
        raise _malformed(e)
    except ConfigError as e:
        raise HTTPException(status_code=422, detail=e.to_dict())
    return report_to_dict(report)


@router.post("/funnel")
async def funnel_report(body: ReportRequest, request: Request):
    """Funnel statistics per scope plus data-quality warnings."""
    config = _engine_config(request)
    date_from = _date_bound(body.date_from)
    date_to = _date_bound(body.date_to)
    try:
        jobs = await asyncio.to_thread(normalize_jobs, body.jobs, config)
    except MalformedRecordError as e:
        raise _malformed(e)
    except ConfigError as e:
        raise HTTPException(status_code=422, detail=e.to_dict())

    jobs = window_jobs(jobs, config, date_from, date_to)
    funnel = await asyncio.to_thread(funnel_for, jobs, config)
    return funnel.model_dump(mode="json")


@router.post("/ar")
async def ar_report(body: ReportRequest, request: Request):
    """AR buckets by current status, amounts in dollars."""
    config = _engine_config(request)
    try:
        jobs = await asyncio.to_thread(normalize_jobs, body.jobs, config)
    except MalformedRecordError as e:
        raise _malformed(e)
    except ConfigError as e:
        raise HTTPException(status_code=422, detail=e.to_dict())

    buckets = await asyncio.to_thread(compute_ar, jobs, config.ar_status_order)
    return {
        "buckets": [
            {
                "status": bucket.status,
                "job_count": bucket.job_count,
                "zero_amount_count": bucket.zero_amount_count,
                "total_amount_due": cents_to_dollars(bucket.total_amount_due),
            }
            for bucket in buckets
        ],
        "totals": {
            "job_count": len(jobs),
            "total_amount_due": cents_to_dollars(sum(b.total_amount_due for b in buckets)),
        },
    }
