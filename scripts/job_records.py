"""
Job Record Normalization
=========================
Turns raw JobNimbus job dicts into immutable JobRecord snapshots.

Normalization rules:
  - status history is sorted by timestamp ascending; ties keep source
    order (stable sort), never the status label
  - flat date fields listed in the config (e.g. "Install Date") become
    extra history entries, appended after the explicit history
  - "date_created" becomes an entry labelled with the configured
    created_status, ahead of everything else
  - the top-level "status_name" becomes the last entry, dated by
    "date_status_change", so it is the current status unless a later
    dated entry exists
  - a JobNimbus timestamp of 0 means "no date" and is dropped
  - a job with no history left is a MalformedRecordError, which aborts
    the whole batch

Exports:
    normalize_job, normalize_jobs, load_raw_jobs, check_status_labels
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from models.job_models import JobRecord, StatusEntry
from scripts.lib.config import EngineConfig
from scripts.lib.errors import ConfigError, DataFetchError, MalformedRecordError
from scripts.lib.logger import setup_logger
from scripts.lib.utils import parse_timestamp, to_cents

logger = setup_logger(__name__)

# Raw field names, first match wins
ID_KEYS = ("jnid", "id")
REP_KEYS = ("sales_rep_name", "representative")
HISTORY_KEYS = ("status_history", "history")
STATUS_KEYS = ("status", "status_name")
TIMESTAMP_KEYS = ("timestamp", "date", "date_status_change")
AMOUNT_DUE_KEYS = ("amount_due", "approved_invoice_due")
CONTRACT_KEYS = ("contract_amount", "approved_estimate_total")
RECEIVED_KEYS = ("amount_received",)
STATUS_NAME_KEYS = ("status_name",)
STATUS_DATE_KEYS = ("date_status_change", "status_mod_date", "date_updated", "date_created")
CREATED_KEYS = ("date_created",)
INSURANCE_FLAG_KEYS = ("Insurance Job?", "insurance")
INSURANCE_COMPANY_KEYS = ("Insurance Company", "insurance_company")
CLAIM_NUMBER_KEYS = ("Claim #", "claim_number")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _first(raw: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _nonempty_str(value: Any) -> Optional[str]:
    """JobNimbus uses "" for unset text fields."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _money(raw: Mapping[str, Any], keys: Sequence[str], record_id: str, job_number: Optional[str]) -> int:
    value = _first(raw, keys)
    try:
        cents = to_cents(value)
    except ValueError as e:
        raise MalformedRecordError(record_id, f"{keys[0]}: {e}", job_number) from e
    if cents < 0:
        raise MalformedRecordError(record_id, f"{keys[0]} is negative ({value})", job_number)
    return cents


def _timestamp(value: Any, what: str, record_id: str, job_number: Optional[str]) -> Optional[datetime]:
    try:
        return parse_timestamp(value)
    except (ValueError, TypeError, OverflowError, OSError) as e:
        raise MalformedRecordError(
            record_id, f"{what} has a bad timestamp: {e}", job_number,
        ) from e


def _flag(value: Any) -> bool:
    """JobNimbus checkboxes arrive as bools, 0/1, or "true"/"yes" text."""
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "y", "1")
    return bool(value)


def _history_entries(
    raw: Mapping[str, Any],
    config: Optional[EngineConfig],
    record_id: str,
    job_number: Optional[str],
) -> List[StatusEntry]:
    """Collect entries in tie-break order.

    Creation first, then the explicit history in source order, then
    date-field entries, then the job's current status.
    """
    entries: List[StatusEntry] = []

    if config is not None and config.created_status:
        created = _timestamp(_first(raw, CREATED_KEYS), "date_created", record_id, job_number)
        if created is not None:
            entries.append(StatusEntry(status=config.created_status, timestamp=created))

    history = _first(raw, HISTORY_KEYS) or []
    if not isinstance(history, list):
        raise MalformedRecordError(record_id, "status_history must be a list", job_number)

    for position, item in enumerate(history):
        if not isinstance(item, Mapping):
            raise MalformedRecordError(
                record_id, f"history entry {position} is not an object", job_number,
            )
        status = _nonempty_str(_first(item, STATUS_KEYS))
        if status is None:
            raise MalformedRecordError(
                record_id, f"history entry {position} has no status", job_number,
            )
        ts = _timestamp(_first(item, TIMESTAMP_KEYS), f"history entry {position}", record_id, job_number)
        if ts is None:
            raise MalformedRecordError(
                record_id, f"history entry {position} has no timestamp", job_number,
            )
        entries.append(StatusEntry(status=status, timestamp=ts))

    date_fields = config.date_fields if config else {}
    for field_name, status in date_fields.items():
        ts = _timestamp(raw.get(field_name), f"'{field_name}'", record_id, job_number)
        if ts is not None:
            entries.append(StatusEntry(status=status, timestamp=ts))

    current = _nonempty_str(_first(raw, STATUS_NAME_KEYS))
    if current is not None:
        changed = None
        for key in STATUS_DATE_KEYS:
            changed = _timestamp(raw.get(key), key, record_id, job_number)
            if changed is not None:
                break
        if changed is None:
            raise MalformedRecordError(
                record_id, f"status '{current}' has no date_status_change", job_number,
            )
        entries.append(StatusEntry(status=current, timestamp=changed))

    return entries


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def normalize_job(raw: Any, config: Optional[EngineConfig] = None, position: int = 0) -> JobRecord:
    """Normalize one raw job dict into a JobRecord.

    `position` is the record's index in the batch, used to name records that
    have no id.
    """
    if not isinstance(raw, Mapping):
        raise MalformedRecordError(f"<record {position}>", "record is not an object")

    record_id = _nonempty_str(_first(raw, ID_KEYS))
    if record_id is None:
        raise MalformedRecordError(f"<record {position}>", "record has no 'jnid' or 'id'")
    job_number = _nonempty_str(raw.get("number"))

    entries = _history_entries(raw, config, record_id, job_number)
    if not entries:
        raise MalformedRecordError(record_id, "status history is empty", job_number)

    # sorted() is stable, so equal timestamps keep their source order
    entries = sorted(entries, key=lambda entry: entry.timestamp)

    return JobRecord(
        id=record_id,
        representative=_nonempty_str(_first(raw, REP_KEYS)),
        status_history=tuple(entries),
        amount_due=_money(raw, AMOUNT_DUE_KEYS, record_id, job_number),
        contract_amount=_money(raw, CONTRACT_KEYS, record_id, job_number),
        amount_received=_money(raw, RECEIVED_KEYS, record_id, job_number),
        job_number=job_number,
        job_name=_nonempty_str(raw.get("name")),
        insurance=_flag(_first(raw, INSURANCE_FLAG_KEYS)),
        insurance_company=_nonempty_str(_first(raw, INSURANCE_COMPANY_KEYS)),
        insurance_claim_number=_nonempty_str(_first(raw, CLAIM_NUMBER_KEYS)),
    )


def normalize_jobs(raw_records: Iterable[Any], config: Optional[EngineConfig] = None) -> List[JobRecord]:
    """Normalize a batch. Any malformed record aborts the whole batch."""
    jobs: List[JobRecord] = []
    seen_ids: Dict[str, int] = {}
    for position, raw in enumerate(raw_records):
        job = normalize_job(raw, config, position)
        if job.id in seen_ids:
            raise MalformedRecordError(
                job.id,
                f"duplicate job id (also record {seen_ids[job.id]})",
                job.job_number,
            )
        seen_ids[job.id] = position
        jobs.append(job)

    if config is not None and config.strict_labels:
        check_status_labels(jobs, config)

    logger.info("Normalized %d job records", len(jobs))
    return jobs


def check_status_labels(jobs: Iterable[JobRecord], config: EngineConfig) -> None:
    """Fail fast when a history uses a status label the config doesn't know."""
    known = config.known_labels()
    unmapped: Dict[str, str] = {}
    for job in jobs:
        for entry in job.status_history:
            if entry.status not in known and entry.status not in unmapped:
                unmapped[entry.status] = job.id
    if unmapped:
        labels = sorted(unmapped)
        raise ConfigError(
            f"{len(labels)} unmapped status label(s): {', '.join(labels)}",
            unmapped_labels=labels,
            example_jobs={label: unmapped[label] for label in labels},
        )


def load_raw_jobs(path: str | Path) -> List[Dict[str, Any]]:
    """Load a JobNimbus export from disk.

    Accepts the API response shape ``{"count": N, "results": [...]}`` or a
    bare list of job objects.
    """
    path = Path(path)
    if not path.exists():
        raise DataFetchError(f"Job export not found: {path}", source=str(path))

    logger.info("Loading jobs from %s", path)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as e:
        raise DataFetchError(f"Job export is not valid JSON: {e}", source=str(path)) from e

    if isinstance(data, dict):
        results = data.get("results")
        count = data.get("count")
        if not isinstance(results, list):
            raise DataFetchError("Job export has no 'results' list", source=str(path))
        if count is not None and count != len(results):
            logger.warning(
                "Export reports count=%s but holds %d results; using the results",
                count, len(results),
            )
        return results
    if isinstance(data, list):
        return data
    raise DataFetchError("Job export must be a list or an object with 'results'", source=str(path))
