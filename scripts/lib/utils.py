"""
Utility functions for Roof KPI Hub.
Atomic file writes, timestamp parsing, and money helpers.

Usage:
    from scripts.lib.utils import atomic_write_json, parse_timestamp, to_cents
"""
import json
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from pathlib import Path
from typing import Any, Dict, Optional

from scripts.lib.logger import setup_logger

logger = setup_logger(__name__)

SECONDS_PER_DAY = 86400.0


def atomic_write_json(data: Dict, file_path: str | Path, indent: int = 2) -> bool:
    """
    Write JSON data to file atomically using temp file + rename.
    Prevents a half-written report if the program crashes during write.

    Args:
        data: Dictionary to serialize as JSON.
        file_path: Target file path.
        indent: JSON indentation level.

    Returns:
        True if successful, False otherwise.
    """
    file_path = Path(file_path)
    temp_path = file_path.with_suffix(file_path.suffix + ".tmp")

    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=indent, default=str)

        os.replace(temp_path, file_path)
        logger.debug("Atomically wrote JSON to %s", file_path)
        return True

    except (OSError, TypeError, ValueError) as e:
        logger.error("Failed to write JSON to %s: %s", file_path, e)
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                logger.debug("Could not remove temp file %s", temp_path)
        return False


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a JobNimbus timestamp into a timezone-aware UTC datetime.

    Accepts epoch seconds (int/float or numeric string), ISO-8601 strings
    (with or without a trailing Z), and datetime objects. JobNimbus sends 0
    for an unset date, so 0 and empty values return None.

    Raises ValueError for a value that is present but cannot be parsed.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"not a timestamp: {value!r}")
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        if value == 0:
            return None
        return datetime.fromtimestamp(value, tz=timezone.utc)

    text = str(value).strip()
    try:
        epoch = float(text)
    except ValueError:
        epoch = None
    if epoch is not None:
        return parse_timestamp(epoch)

    dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def to_cents(value: Any) -> int:
    """Convert a dollar amount (number or numeric string) to integer cents.

    Missing values count as zero. Raises ValueError for non-numeric input.
    """
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ValueError(f"not a monetary amount: {value!r}")
    try:
        amount = Decimal(str(value).replace(",", "").replace("$", "").strip())
    except InvalidOperation:
        raise ValueError(f"not a monetary amount: {value!r}") from None
    if not amount.is_finite():
        raise ValueError(f"not a monetary amount: {value!r}")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_dollars(cents: int) -> float:
    """Integer cents to a two-decimal dollar float for reporting."""
    return round(cents / 100.0, 2)


def to_days(delta: timedelta) -> float:
    """Express a timedelta in fractional days."""
    return delta.total_seconds() / SECONDS_PER_DAY
