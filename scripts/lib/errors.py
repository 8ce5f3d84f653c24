"""
Custom error classes for Roof KPI Hub.
Structured error handling with error codes across all modules.

Hierarchy:
    HubError
    ├── DataError
    │   ├── ConfigError
    │   ├── MalformedRecordError
    │   └── DataFetchError
"""


class HubError(Exception):
    """Base exception for all Roof KPI Hub errors."""

    def __init__(self, message: str, code: str = "UNKNOWN", details: dict = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code}] {message}")

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


# --- Data Errors ---

class DataError(HubError):
    """Base class for data processing errors."""
    pass


class ConfigError(DataError):
    """Engine configuration is missing or invalid."""

    def __init__(self, message: str, config_path: str = None, **kwargs):
        super().__init__(
            message, code="CONFIG_ERROR",
            details={"config_path": config_path, **kwargs},
        )


class MalformedRecordError(DataError):
    """A job record fails structural validation.

    Fatal to the whole computation: no partial report is produced.
    """

    def __init__(self, record_id: str, reason: str, job_number: str = None):
        self.record_id = record_id
        self.reason = reason
        label = record_id
        if job_number:
            label = f"{record_id} (#{job_number})"
        super().__init__(
            f"Malformed job record {label}: {reason}",
            code="MALFORMED_RECORD",
            details={"record_id": record_id, "job_number": job_number, "reason": reason},
        )


class DataFetchError(DataError):
    """Failed to load a job export from storage."""

    def __init__(self, message: str, source: str = None):
        super().__init__(
            message, code="DATA_FETCH_FAILED", details={"source": source},
        )

