"""
Roof KPI Hub — Job & Report Pydantic Models
=============================================

Immutable snapshots the analytics engine reads and produces:
job records with their status history, milestone definitions,
loss and job-kind rules, funnel and loss statistics, AR buckets,
data-quality warnings, and the renderer-agnostic report structure.

Not-applicable statistics (zero denominators) are None, never 0.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


NOT_APPLICABLE_TEXT = "N/A"


# ─── Job Records ────────────────────────────────────────────

class StatusEntry(BaseModel):
    """One status transition in a job's history."""
    model_config = ConfigDict(frozen=True)

    status: str
    timestamp: datetime


class JobRecord(BaseModel):
    """A normalized job. `status_history` is ascending by timestamp."""
    model_config = ConfigDict(frozen=True)

    id: str
    representative: Optional[str] = None
    status_history: Tuple[StatusEntry, ...]
    amount_due: int = Field(0, ge=0, description="Amount due in cents")
    contract_amount: int = Field(0, ge=0, description="Contract amount in cents")
    amount_received: int = Field(0, ge=0, description="Amount received in cents")
    job_number: Optional[str] = None
    job_name: Optional[str] = None
    insurance: bool = False
    insurance_company: Optional[str] = None
    insurance_claim_number: Optional[str] = None

    @field_validator("status_history")
    @classmethod
    def _history_not_empty(cls, value: Tuple[StatusEntry, ...]) -> Tuple[StatusEntry, ...]:
        if not value:
            raise ValueError("status_history must not be empty")
        return value

    @computed_field
    @property
    def current_status(self) -> str:
        return self.status_history[-1].status

    @property
    def current_status_since(self) -> datetime:
        return self.status_history[-1].timestamp

    @property
    def display_name(self) -> str:
        if self.job_number:
            return f"{self.id} (#{self.job_number})"
        return self.id


# ─── Milestones ─────────────────────────────────────────────

class Milestone(BaseModel):
    """A funnel stage matched by a closed set of raw status labels."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    labels: FrozenSet[str]
    implicit: bool = Field(False, description="Reached at the first history entry when no label matches")
    optional: bool = Field(False, description="Jobs may bypass this stage")

    @field_validator("labels", mode="before")
    @classmethod
    def _clean_labels(cls, value: Any) -> FrozenSet[str]:
        if isinstance(value, str):
            value = [value]
        cleaned = frozenset(str(label).strip() for label in value if str(label).strip())
        if not cleaned:
            raise ValueError("a milestone needs at least one status label")
        return cleaned

    def matches(self, status: str) -> bool:
        return status in self.labels


class LossRule(BaseModel):
    """
    How lost jobs are recognized and counted.

    `labels` mark a job as lost. The loss rate is taken over jobs that
    reached `base_milestone`; a loss recorded after reaching
    `cutoff_milestone` is flagged as invalid.
    """
    model_config = ConfigDict(frozen=True)

    labels: FrozenSet[str]
    base_milestone: str
    cutoff_milestone: Optional[str] = None

    @field_validator("labels", mode="before")
    @classmethod
    def _clean_labels(cls, value: Any) -> FrozenSet[str]:
        if isinstance(value, str):
            value = [value]
        cleaned = frozenset(str(label).strip() for label in value if str(label).strip())
        if not cleaned:
            raise ValueError("a loss rule needs at least one status label")
        return cleaned

    def matches(self, status: str) -> bool:
        return status in self.labels


class JobKind(str, Enum):
    INSURANCE_WITH_CONTINGENCY = "insurance_with_contingency"
    INSURANCE_WITHOUT_CONTINGENCY = "insurance_without_contingency"
    RETAIL = "retail"


class JobKindRule(BaseModel):
    """Splits jobs into insurance and retail kinds around the contingency stage."""
    model_config = ConfigDict(frozen=True)

    contingency_milestone: str


# ─── Funnel Results ─────────────────────────────────────────

class MilestonePairStats(BaseModel):
    """
    Conversion between two milestones within one scope.

    Adjacent milestones normally; `bypassed` names the optional milestone
    in between for jobs that went around it.
    """
    model_config = ConfigDict(frozen=True)

    from_milestone: str
    to_milestone: str
    entered_count: int = 0
    advanced_count: int = 0
    conversion_rate: Optional[float] = None
    average_days: Optional[float] = None
    bypassed: Optional[str] = None


class LossStats(BaseModel):
    """Jobs lost after reaching the base milestone, within one scope."""
    model_config = ConfigDict(frozen=True)

    base_milestone: str
    base_count: int = 0
    lost_count: int = 0
    loss_rate: Optional[float] = None
    average_days_to_loss: Optional[float] = None


class FunnelResult(BaseModel):
    """All pair statistics for one scope ("global", a rep, or a job kind)."""
    model_config = ConfigDict(frozen=True)

    scope: str
    job_count: int = 0
    pairs: List[MilestonePairStats] = Field(default_factory=list)
    loss: Optional[LossStats] = None

    def pair(self, from_milestone: str, to_milestone: str) -> Optional[MilestonePairStats]:
        for stats in self.pairs:
            if stats.from_milestone == from_milestone and stats.to_milestone == to_milestone:
                return stats
        return None


class WarningKind(str, Enum):
    OUT_OF_ORDER = "out_of_order"
    SKIPPED_MILESTONE = "skipped_milestone"
    INVALID_LOSS = "invalid_loss"
    CONTINGENCY_WITHOUT_INSURANCE = "contingency_without_insurance"
    INCONSISTENT_INSURANCE_INFO = "inconsistent_insurance_info"


class DataQualityWarning(BaseModel):
    """Non-fatal anomaly found while computing the funnel."""
    model_config = ConfigDict(frozen=True)

    job_id: str
    kind: WarningKind
    from_milestone: Optional[str] = None
    to_milestone: Optional[str] = None
    message: str


class FunnelComputation(BaseModel):
    """Funnel results keyed by scope, plus the warnings collected."""
    model_config = ConfigDict(frozen=True)

    results: Dict[str, FunnelResult] = Field(default_factory=dict)
    warnings: List[DataQualityWarning] = Field(default_factory=list)

    @property
    def global_result(self) -> Optional[FunnelResult]:
        return self.results.get("global")


# ─── Accounts Receivable ────────────────────────────────────

class ARBucket(BaseModel):
    """Jobs sharing one current status, with their summed amount due."""
    model_config = ConfigDict(frozen=True)

    status: str
    job_count: int = 0
    zero_amount_count: int = 0
    total_amount_due: int = Field(0, description="Sum of amount due in cents")


# ─── Report ─────────────────────────────────────────────────

class ColumnType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    MONEY = "money"
    RATE = "rate"
    DAYS = "days"
    DATETIME = "datetime"


class ReportColumn(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type: ColumnType


class ReportSection(BaseModel):
    """A titled table: typed columns and rows keyed by column name."""
    title: str
    columns: List[ReportColumn] = Field(default_factory=list)
    rows: List[Dict[str, Any]] = Field(default_factory=list)


class Report(BaseModel):
    """Renderer-agnostic output: ordered sections of tabular rows."""
    as_of: Optional[datetime] = None
    sections: Dict[str, ReportSection] = Field(default_factory=dict)


# ─── Rendering helpers ──────────────────────────────────────

def format_rate(rate: Optional[float]) -> str:
    """Render a conversion rate, keeping N/A distinct from 0%."""
    if rate is None:
        return NOT_APPLICABLE_TEXT
    return f"{rate * 100:.2f}%"


def format_days(days: Optional[float]) -> str:
    if days is None:
        return NOT_APPLICABLE_TEXT
    return f"{days:.1f} days"
