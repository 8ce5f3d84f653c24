"""Builders for job records and raw JobNimbus payloads used across tests."""

from datetime import datetime, timedelta, timezone

from models.job_models import JobRecord, StatusEntry

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def at(days: float) -> datetime:
    """T0 shifted by a number of days."""
    return T0 + timedelta(days=days)


def epoch(days: float) -> int:
    """T0 shifted by days, as JobNimbus epoch seconds."""
    return int(at(days).timestamp())


def make_job(job_id, history, representative=None, amount_due=0, **kwargs) -> JobRecord:
    """Build a JobRecord from (status, days-after-T0) pairs, kept in given order."""
    return JobRecord(
        id=job_id,
        representative=representative,
        status_history=tuple(StatusEntry(status=s, timestamp=at(d)) for s, d in history),
        amount_due=amount_due,
        **kwargs,
    )


def raw_job(job_id, history, **fields) -> dict:
    """A raw JobNimbus job dict from (status, days-after-T0) pairs."""
    return {
        "jnid": job_id,
        "status_history": [{"status": s, "timestamp": epoch(d)} for s, d in history],
        **fields,
    }


def flat_job(job_id, status, changed, created=None, dates=None, **fields) -> dict:
    """A flat JobNimbus job: current status, creation time and named date fields.

    `dates` maps JobNimbus date field names to days after T0.
    """
    return {
        "jnid": job_id,
        "status_name": status,
        "date_status_change": epoch(changed),
        "date_created": epoch(changed if created is None else created),
        **{name: epoch(days) for name, days in (dates or {}).items()},
        **fields,
    }
