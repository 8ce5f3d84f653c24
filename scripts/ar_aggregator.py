"""
Accounts-Receivable Aggregator
===============================
Groups jobs by current status and sums what is still owed.

Every status seen in the input gets exactly one bucket, including
buckets whose total is $0: the ledger filters by status, never by
amount. Buckets come out in the configured canonical status order,
with unlisted statuses following in first-seen order.

Exports:
    compute_ar, ar_job_rows
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from models.job_models import ARBucket, JobRecord
from scripts.lib.logger import setup_logger
from scripts.lib.utils import cents_to_dollars, to_days

logger = setup_logger(__name__)


def _bucket_order(jobs: Sequence[JobRecord], status_order: Optional[Sequence[str]]) -> List[str]:
    """Observed statuses, canonical ones first, the rest in first-seen order."""
    observed = list(dict.fromkeys(job.current_status for job in jobs))
    if not status_order:
        return observed
    observed_set = set(observed)
    canonical = [status for status in status_order if status in observed_set]
    canonical_set = set(canonical)
    return canonical + [status for status in observed if status not in canonical_set]


def compute_ar(jobs: Sequence[JobRecord], status_order: Optional[Sequence[str]] = None) -> List[ARBucket]:
    """
    Aggregate amount due by current status.

    Args:
        jobs: Normalized job records.
        status_order: Optional canonical ordering of statuses.

    Returns:
        One ARBucket per distinct current status, deterministically ordered.
    """
    counts: Dict[str, int] = {}
    zero_counts: Dict[str, int] = {}
    totals: Dict[str, int] = {}
    for job in jobs:
        status = job.current_status
        counts[status] = counts.get(status, 0) + 1
        totals[status] = totals.get(status, 0) + job.amount_due
        if job.amount_due == 0:
            zero_counts[status] = zero_counts.get(status, 0) + 1

    buckets = [
        ARBucket(
            status=status,
            job_count=counts[status],
            zero_amount_count=zero_counts.get(status, 0),
            total_amount_due=totals[status],
        )
        for status in _bucket_order(jobs, status_order)
    ]

    logger.info(
        "AR ledger: %d jobs in %d status bucket(s), $%.2f due",
        len(jobs), len(buckets), cents_to_dollars(sum(b.total_amount_due for b in buckets)),
    )
    return buckets


def ar_job_rows(
    jobs: Sequence[JobRecord],
    buckets: Sequence[ARBucket],
    as_of: datetime,
) -> List[Dict[str, Any]]:
    """Per-job receivable rows, grouped in bucket order.

    Days in status are measured from when the job reached its current
    status to `as_of`. Within a bucket, jobs keep their input order.
    """
    by_status: Dict[str, List[JobRecord]] = {bucket.status: [] for bucket in buckets}
    for job in jobs:
        by_status.setdefault(job.current_status, []).append(job)

    rows: List[Dict[str, Any]] = []
    for status, status_jobs in by_status.items():
        for job in status_jobs:
            rows.append({
                "job_id": job.id,
                "job_number": job.job_number,
                "job_name": job.job_name,
                "status": status,
                "representative": job.representative,
                "amount_due": cents_to_dollars(job.amount_due),
                "days_in_status": round(to_days(as_of - job.current_status_since), 1),
            })
    return rows
