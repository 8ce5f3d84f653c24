"""
Report Assembler
=================
Combines funnel results and the AR ledger into one renderer-agnostic
Report: an ordered mapping of named sections, each a table of typed
columns and rows.

Sections, in order:
    summary                  - headline counts and AR total
    global funnel            - company-wide milestone conversions
    rep:<name> funnel        - one per sales rep, by name
    kind:<kind> funnel       - one per job kind, when job kinds are configured
    loss by scope            - loss rate per scope, when a loss rule is configured
    AR by status             - one row per AR bucket
    AR jobs                  - one row per job, grouped like the buckets
    data quality warnings    - non-fatal anomalies found in the funnel

Pure: no I/O and no wall-clock reads. `as_of` defaults to the latest
timestamp in the data, so the same input always yields the same report.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from models.job_models import (
    ARBucket,
    ColumnType,
    FunnelComputation,
    FunnelResult,
    JobKind,
    JobRecord,
    Report,
    ReportColumn,
    ReportSection,
)
from scripts.ar_aggregator import ar_job_rows
from scripts.funnel_calculator import GLOBAL_SCOPE, KIND_SCOPE_PREFIX, kind_scope
from scripts.lib.utils import cents_to_dollars

SUMMARY_SECTION = "summary"
GLOBAL_FUNNEL_SECTION = "global funnel"
LOSS_SECTION = "loss by scope"
AR_SECTION = "AR by status"
AR_JOBS_SECTION = "AR jobs"
WARNINGS_SECTION = "data quality warnings"

RATE_PRECISION = 4
DAYS_PRECISION = 2


def _columns(*pairs: Tuple[str, ColumnType]) -> List[ReportColumn]:
    return [ReportColumn(name=name, type=col_type) for name, col_type in pairs]


SUMMARY_COLUMNS = _columns(
    ("job_count", ColumnType.INTEGER),
    ("assigned_job_count", ColumnType.INTEGER),
    ("unassigned_job_count", ColumnType.INTEGER),
    ("representative_count", ColumnType.INTEGER),
    ("warning_count", ColumnType.INTEGER),
    ("ar_status_count", ColumnType.INTEGER),
    ("ar_total_due", ColumnType.MONEY),
    ("as_of", ColumnType.DATETIME),
)

FUNNEL_COLUMNS = _columns(
    ("from_milestone", ColumnType.STRING),
    ("to_milestone", ColumnType.STRING),
    ("entered_count", ColumnType.INTEGER),
    ("advanced_count", ColumnType.INTEGER),
    ("conversion_rate", ColumnType.RATE),
    ("average_days", ColumnType.DAYS),
    ("bypassed", ColumnType.STRING),
)

LOSS_COLUMNS = _columns(
    ("scope", ColumnType.STRING),
    ("base_milestone", ColumnType.STRING),
    ("base_count", ColumnType.INTEGER),
    ("lost_count", ColumnType.INTEGER),
    ("loss_rate", ColumnType.RATE),
    ("average_days_to_loss", ColumnType.DAYS),
)

AR_COLUMNS = _columns(
    ("status", ColumnType.STRING),
    ("job_count", ColumnType.INTEGER),
    ("zero_amount_count", ColumnType.INTEGER),
    ("total_amount_due", ColumnType.MONEY),
)

AR_JOB_COLUMNS = _columns(
    ("job_id", ColumnType.STRING),
    ("job_number", ColumnType.STRING),
    ("job_name", ColumnType.STRING),
    ("status", ColumnType.STRING),
    ("representative", ColumnType.STRING),
    ("amount_due", ColumnType.MONEY),
    ("days_in_status", ColumnType.DAYS),
)

WARNING_COLUMNS = _columns(
    ("job_id", ColumnType.STRING),
    ("kind", ColumnType.STRING),
    ("from_milestone", ColumnType.STRING),
    ("to_milestone", ColumnType.STRING),
    ("message", ColumnType.STRING),
)


KIND_TITLES = {
    kind_scope(JobKind.INSURANCE_WITH_CONTINGENCY): "Insurance Jobs with Contingency",
    kind_scope(JobKind.INSURANCE_WITHOUT_CONTINGENCY): "Insurance Jobs without Contingency",
    kind_scope(JobKind.RETAIL): "Retail Jobs",
}


def funnel_section_name(scope: str) -> str:
    if scope == GLOBAL_SCOPE:
        return GLOBAL_FUNNEL_SECTION
    if scope.startswith(KIND_SCOPE_PREFIX):
        return f"{scope} funnel"
    return f"rep:{scope} funnel"


def _scope_title(scope: str) -> str:
    if scope == GLOBAL_SCOPE:
        return "Global"
    if scope in KIND_TITLES:
        return KIND_TITLES[scope]
    return f"Sales Rep {scope}"


def _round_or_na(value: Optional[float], digits: int) -> Optional[float]:
    return None if value is None else round(value, digits)


def latest_timestamp(jobs: Sequence[JobRecord]) -> Optional[datetime]:
    """Snapshot time of the data set: the latest history timestamp."""
    return max((entry.timestamp for job in jobs for entry in job.status_history), default=None)


def _funnel_section(result: FunnelResult) -> ReportSection:
    title = f"Funnel: {_scope_title(result.scope)}"
    rows = [
        {
            "from_milestone": pair.from_milestone,
            "to_milestone": pair.to_milestone,
            "entered_count": pair.entered_count,
            "advanced_count": pair.advanced_count,
            "conversion_rate": _round_or_na(pair.conversion_rate, RATE_PRECISION),
            "average_days": _round_or_na(pair.average_days, DAYS_PRECISION),
            "bypassed": pair.bypassed,
        }
        for pair in result.pairs
    ]
    return ReportSection(title=f"{title} ({result.job_count} jobs)", columns=FUNNEL_COLUMNS, rows=rows)


def _loss_section(funnel: FunnelComputation) -> Optional[ReportSection]:
    rows = [
        {
            "scope": scope,
            "base_milestone": result.loss.base_milestone,
            "base_count": result.loss.base_count,
            "lost_count": result.loss.lost_count,
            "loss_rate": _round_or_na(result.loss.loss_rate, RATE_PRECISION),
            "average_days_to_loss": _round_or_na(result.loss.average_days_to_loss, DAYS_PRECISION),
        }
        for scope, result in funnel.results.items()
        if result.loss is not None
    ]
    if not rows:
        return None
    return ReportSection(title="Lost Jobs by Scope", columns=LOSS_COLUMNS, rows=rows)


def _summary_section(
    funnel: FunnelComputation,
    ar_buckets: Sequence[ARBucket],
    jobs: Sequence[JobRecord],
    as_of: Optional[datetime],
) -> ReportSection:
    assigned = sum(1 for job in jobs if job.representative)
    representatives = {job.representative for job in jobs if job.representative}
    row = {
        "job_count": len(jobs),
        "assigned_job_count": assigned,
        "unassigned_job_count": len(jobs) - assigned,
        "representative_count": len(representatives),
        "warning_count": len(funnel.warnings),
        "ar_status_count": len(ar_buckets),
        "ar_total_due": cents_to_dollars(sum(bucket.total_amount_due for bucket in ar_buckets)),
        "as_of": as_of.isoformat() if as_of else None,
    }
    return ReportSection(title="Summary", columns=SUMMARY_COLUMNS, rows=[row])


def assemble_report(
    funnel: FunnelComputation,
    ar_buckets: Sequence[ARBucket],
    jobs: Sequence[JobRecord],
    as_of: Optional[datetime] = None,
) -> Report:
    """
    Build the full report.

    Args:
        funnel: Output of compute_funnel.
        ar_buckets: Output of compute_ar.
        jobs: The normalized jobs both were computed from.
        as_of: Reference time for days-in-status; defaults to the latest
            timestamp in `jobs`.

    Returns:
        Report with sections in a fixed order.
    """
    as_of = as_of or latest_timestamp(jobs)

    sections: Dict[str, ReportSection] = {
        SUMMARY_SECTION: _summary_section(funnel, ar_buckets, jobs, as_of),
    }

    for scope, result in funnel.results.items():
        sections[funnel_section_name(scope)] = _funnel_section(result)

    loss = _loss_section(funnel)
    if loss is not None:
        sections[LOSS_SECTION] = loss

    sections[AR_SECTION] = ReportSection(
        title="Accounts Receivable by Status",
        columns=AR_COLUMNS,
        rows=[
            {
                "status": bucket.status,
                "job_count": bucket.job_count,
                "zero_amount_count": bucket.zero_amount_count,
                "total_amount_due": cents_to_dollars(bucket.total_amount_due),
            }
            for bucket in ar_buckets
        ],
    )

    sections[AR_JOBS_SECTION] = ReportSection(
        title="Accounts Receivable Jobs",
        columns=AR_JOB_COLUMNS,
        rows=ar_job_rows(jobs, ar_buckets, as_of) if as_of else [],
    )

    sections[WARNINGS_SECTION] = ReportSection(
        title=f"Data Quality Warnings ({len(funnel.warnings)})",
        columns=WARNING_COLUMNS,
        rows=[warning.model_dump(mode="json") for warning in funnel.warnings],
    )

    return Report(as_of=as_of, sections=sections)


def report_to_dict(report: Report) -> Dict[str, Any]:
    """JSON-safe dict with fields in declaration order."""
    return report.model_dump(mode="json")


def report_to_json(report: Report, indent: int = 2) -> str:
    return json.dumps(report_to_dict(report), indent=indent, ensure_ascii=False)
