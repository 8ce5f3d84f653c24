"""
Roof KPI Hub — Report Runner
==============================
Loads a JobNimbus job export, normalizes it, runs the funnel calculator
and the AR aggregator side by side, and writes the assembled report.

Steps:
    1. Load      — engine config (YAML) and raw job export (JSON)
    2. Normalize — raw dicts -> JobRecords (any malformed record aborts)
    3. Compute   — funnel + AR ledger in parallel worker threads
    4. Assemble  — one renderer-agnostic report
    5. Write     — JSON to data/processed/ (or stdout with -o -)

Usage:
    python -m scripts.kpi_report --input data/raw/jobnimbus_jobs.json
    python -m scripts.kpi_report --input jobs.json --from ytd --to today
    python -m scripts.kpi_report --input jobs.json -o -
"""
from __future__ import annotations

import argparse
import asyncio
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence

from dotenv import load_dotenv

from models.job_models import FunnelComputation, JobRecord, Report, format_days, format_rate
from scripts.ar_aggregator import compute_ar
from scripts.funnel_calculator import compute_funnel, default_scopes, settled_at
from scripts.job_records import load_raw_jobs, normalize_jobs
from scripts.lib.config import EngineConfig, load_engine_config
from scripts.lib.errors import HubError, MalformedRecordError
from scripts.lib.logger import setup_logger
from scripts.lib.utils import atomic_write_json
from scripts.report_assembler import assemble_report, report_to_dict, report_to_json

PROJECT_ROOT = Path(__file__).resolve().parent.parent
PROCESSED_DIR = PROJECT_ROOT / "data" / "processed"
DEFAULT_OUTPUT = PROCESSED_DIR / "kpi_report.json"

load_dotenv(PROJECT_ROOT / ".env")

logger = setup_logger("kpi_report")


# ---------------------------------------------------------------------------
# Date window
# ---------------------------------------------------------------------------

def parse_date_bound(value: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Parse a --from/--to value.

    "forever" (or empty) means unbounded, "ytd" is Jan 1 of the current year,
    "today" is now, anything else must be YYYY-MM-DD (midnight UTC).
    """
    now = now or datetime.now(timezone.utc)
    if not value or value == "forever":
        return None
    if value == "ytd":
        return datetime(now.year, 1, 1, tzinfo=timezone.utc)
    if value == "today":
        return now
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        raise ValueError(
            f"Invalid date '{value}'. Use 'forever', 'ytd', 'today', or YYYY-MM-DD."
        ) from None


def filter_settled_between(
    jobs: Iterable[JobRecord],
    config: EngineConfig,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> List[JobRecord]:
    """Keep jobs that settled inside the window.

    A job settles when it reaches the last milestone or is lost, whichever
    comes first. Jobs that have not settled are never kept.
    """
    kept = []
    for job in jobs:
        settled = settled_at(job, config.milestones, config.loss)
        if settled is None:
            continue
        if date_from is not None and settled < date_from:
            continue
        if date_to is not None and settled > date_to:
            continue
        kept.append(job)
    return kept


def window_jobs(
    jobs: Sequence[JobRecord],
    config: EngineConfig,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> List[JobRecord]:
    """The funnel's jobs: all of them, or the settled ones when a window is set."""
    if date_from is None and date_to is None:
        return list(jobs)
    kept = filter_settled_between(jobs, config, date_from, date_to)
    logger.info(
        "Funnel window %s .. %s keeps %d of %d jobs",
        date_from.isoformat() if date_from else "the beginning of time",
        date_to.isoformat() if date_to else "the end of time",
        len(kept), len(jobs),
    )
    return kept


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def funnel_for(jobs: Sequence[JobRecord], config: EngineConfig) -> FunnelComputation:
    """Funnel per rep, plus loss stats and job kinds when the config asks for them."""
    return compute_funnel(
        jobs, config.milestones, default_scopes,
        loss=config.loss,
        job_kinds=config.job_kinds,
    )


async def run_engine_async(
    raw_jobs: Sequence[Any],
    config: EngineConfig,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    as_of: Optional[datetime] = None,
) -> Report:
    """
    Normalize, compute funnel and AR concurrently, and assemble the report.

    Raises MalformedRecordError before any statistics are computed if a
    record is corrupt.
    """
    start = time.time()
    jobs = await asyncio.to_thread(normalize_jobs, raw_jobs, config)
    funnel_jobs = window_jobs(jobs, config, date_from, date_to)

    funnel, ar_buckets = await asyncio.gather(
        asyncio.to_thread(funnel_for, funnel_jobs, config),
        asyncio.to_thread(compute_ar, jobs, config.ar_status_order),
    )

    report = assemble_report(funnel, ar_buckets, jobs, as_of=as_of)
    logger.info(
        "Report assembled in %.2fs: %d sections, %d warning(s)",
        time.time() - start, len(report.sections), len(funnel.warnings),
    )
    return report


def run_engine(
    raw_jobs: Sequence[Any],
    config: EngineConfig,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    as_of: Optional[datetime] = None,
) -> Report:
    """Synchronous wrapper around run_engine_async."""
    return asyncio.run(run_engine_async(raw_jobs, config, date_from, date_to, as_of))


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _log_headline(report: Report) -> None:
    """Log the global funnel and the warnings count, kept apart."""
    funnel = report.sections.get("global funnel")
    if funnel is not None:
        for row in funnel.rows:
            logger.info(
                "  %-20s -> %-20s %5d/%-5d %9s  %s",
                row["from_milestone"], row["to_milestone"],
                row["advanced_count"], row["entered_count"],
                format_rate(row["conversion_rate"]), format_days(row["average_days"]),
            )
    summary = report.sections["summary"].rows[0]
    logger.info("AR total due: $%.2f across %d status(es)", summary["ar_total_due"], summary["ar_status_count"])
    if summary["warning_count"]:
        logger.warning("%d data quality warning(s); see the '%s' section",
                       summary["warning_count"], "data quality warnings")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Roof KPI Hub: sales funnel and AR report")
    parser.add_argument("--input", "-i", required=True, help="JobNimbus job export (JSON)")
    parser.add_argument("--config", "-c", default=None, help="Engine config YAML")
    parser.add_argument("--from", dest="date_from", default="forever",
                        help="Count jobs settled from: forever, ytd, today, or YYYY-MM-DD")
    parser.add_argument("--to", dest="date_to", default="forever",
                        help="Count jobs settled up to: forever, today, or YYYY-MM-DD")
    parser.add_argument("--output", "-o", default=str(DEFAULT_OUTPUT),
                        help="Report path, or '-' for stdout")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        date_from = parse_date_bound(args.date_from)
        date_to = parse_date_bound(args.date_to)
    except ValueError as e:
        parser.error(str(e))

    try:
        config = load_engine_config(args.config)
        raw_jobs = load_raw_jobs(args.input)
        report = run_engine(raw_jobs, config, date_from, date_to)
    except MalformedRecordError as e:
        logger.error("Report aborted, record %s is malformed: %s", e.record_id, e.reason)
        return 1
    except HubError as e:
        logger.error("Report failed: %s", e)
        return 1

    _log_headline(report)

    if args.output == "-":
        sys.stdout.write(report_to_json(report) + "\n")
        return 0

    if not atomic_write_json(report_to_dict(report), args.output):
        return 1
    logger.info("Report saved to %s", args.output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
