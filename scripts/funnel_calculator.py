"""
Milestone Funnel Calculator
============================
Conversion rate and average time between milestones, computed
company-wide, per sales rep and per job kind from normalized JobRecords,
plus the loss rate over jobs that reached a base milestone.

Policies:
  - a job enters a milestone at the first history entry whose status is in
    that milestone's label set (first arrival wins; later re-entries are
    ignored)
  - an implicit first milestone is reached at the job's first history
    entry when none of its labels appear
  - a job advances from M_i to M_i+1 when its first arrival at M_i+1 sits
    after its first arrival at M_i in the (stable-sorted) history
  - a first arrival at M_i+1 that precedes M_i is an ordering violation:
    the job still counts as entered, is left out of advanced, and a
    DataQualityWarning is returned (never raised)
  - an optional milestone may be bypassed: jobs that go around it are
    left out of the pairs into and out of it and counted in an extra pair
    spanning it instead
  - zero denominators give None (not applicable), never 0
  - jobs without a rep only count toward the global scope

Exports:
    compute_funnel, default_scopes, global_only, pair_specs, settled_at,
    classify_job, kind_scope, GLOBAL_SCOPE
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

from models.job_models import (
    DataQualityWarning,
    FunnelComputation,
    FunnelResult,
    JobKind,
    JobKindRule,
    JobRecord,
    LossRule,
    LossStats,
    Milestone,
    MilestonePairStats,
    WarningKind,
)
from scripts.lib.logger import setup_logger
from scripts.lib.utils import to_days

logger = setup_logger(__name__)

GLOBAL_SCOPE = "global"
KIND_SCOPE_PREFIX = "kind:"

ScopeFn = Callable[[JobRecord], Iterable[str]]
Arrival = Optional[Tuple[int, datetime]]


# ---------------------------------------------------------------------------
# Scope functions
# ---------------------------------------------------------------------------

def default_scopes(job: JobRecord) -> List[str]:
    """Global always, plus the job's rep when one is assigned."""
    if job.representative:
        return [GLOBAL_SCOPE, job.representative]
    return [GLOBAL_SCOPE]


def global_only(job: JobRecord) -> List[str]:
    return [GLOBAL_SCOPE]


def kind_scope(kind: JobKind) -> str:
    return f"{KIND_SCOPE_PREFIX}{kind.value}"


# ---------------------------------------------------------------------------
# Pair layout
# ---------------------------------------------------------------------------

class PairSpec(NamedTuple):
    start: int
    end: int
    bypassed: Optional[int] = None


def pair_specs(milestones: Sequence[Milestone]) -> List[PairSpec]:
    """Adjacent pairs in order, each optional milestone followed by the pair spanning it."""
    specs: List[PairSpec] = []
    for i in range(len(milestones) - 1):
        specs.append(PairSpec(i, i + 1))
        if milestones[i].optional and i > 0:
            specs.append(PairSpec(i - 1, i + 1, bypassed=i))
    return specs


# ---------------------------------------------------------------------------
# Per-job observation
# ---------------------------------------------------------------------------

class PairObservation(NamedTuple):
    entered: bool
    advanced: bool
    elapsed: Optional[timedelta]


NOT_ENTERED = PairObservation(entered=False, advanced=False, elapsed=None)
ENTERED_ONLY = PairObservation(entered=True, advanced=False, elapsed=None)


class LossObservation(NamedTuple):
    in_base: bool
    lost: bool
    elapsed: Optional[timedelta]


def _first_match(job: JobRecord, matches: Callable[[str], bool]) -> Arrival:
    for position, entry in enumerate(job.status_history):
        if matches(entry.status):
            return position, entry.timestamp
    return None


def _first_arrival(job: JobRecord, milestone: Milestone) -> Arrival:
    """Position and timestamp of the earliest entry matching the milestone."""
    return _first_match(job, milestone.matches)


def milestone_arrivals(job: JobRecord, milestones: Sequence[Milestone]) -> List[Arrival]:
    """First arrival per milestone. Implicit arrivals sit at position -1."""
    arrivals = []
    for milestone in milestones:
        arrival = _first_arrival(job, milestone)
        if arrival is None and milestone.implicit:
            arrival = (-1, job.status_history[0].timestamp)
        arrivals.append(arrival)
    return arrivals


def _observe_pair(
    job: JobRecord,
    start: Arrival,
    end: Arrival,
    from_milestone: Milestone,
    to_milestone: Milestone,
) -> Tuple[PairObservation, Optional[DataQualityWarning]]:
    if start is None:
        if end is not None:
            return NOT_ENTERED, DataQualityWarning(
                job_id=job.id,
                kind=WarningKind.SKIPPED_MILESTONE,
                from_milestone=from_milestone.name,
                to_milestone=to_milestone.name,
                message=(
                    f"Job {job.display_name} reached '{to_milestone.name}' "
                    f"without reaching '{from_milestone.name}'"
                ),
            )
        return NOT_ENTERED, None

    if end is None:
        return ENTERED_ONLY, None

    start_pos, start_ts = start
    end_pos, end_ts = end
    elapsed = end_ts - start_ts
    if end_pos < start_pos or elapsed < timedelta(0):
        return ENTERED_ONLY, DataQualityWarning(
            job_id=job.id,
            kind=WarningKind.OUT_OF_ORDER,
            from_milestone=from_milestone.name,
            to_milestone=to_milestone.name,
            message=(
                f"Job {job.display_name} reached '{to_milestone.name}' at "
                f"{end_ts.isoformat()}, before '{from_milestone.name}' at "
                f"{start_ts.isoformat()}"
            ),
        )

    return PairObservation(entered=True, advanced=True, elapsed=elapsed), None


def _observe_spec(
    job: JobRecord,
    arrivals: Sequence[Arrival],
    spec: PairSpec,
    milestones: Sequence[Milestone],
) -> Tuple[PairObservation, Optional[DataQualityWarning]]:
    if spec.bypassed is not None:
        if arrivals[spec.bypassed] is not None:
            return NOT_ENTERED, None
    else:
        if milestones[spec.start].optional and arrivals[spec.start] is None:
            return NOT_ENTERED, None
        went_around = any(arrival is not None for arrival in arrivals[spec.end + 1:])
        if milestones[spec.end].optional and arrivals[spec.end] is None and went_around:
            return NOT_ENTERED, None
    return _observe_pair(
        job, arrivals[spec.start], arrivals[spec.end],
        milestones[spec.start], milestones[spec.end],
    )


def observe_job(
    job: JobRecord,
    milestones: Sequence[Milestone],
    arrivals: Optional[Sequence[Arrival]] = None,
) -> Tuple[List[PairObservation], List[DataQualityWarning]]:
    """Observe every milestone pair for one job, in pair_specs() order."""
    if arrivals is None:
        arrivals = milestone_arrivals(job, milestones)
    observations: List[PairObservation] = []
    warnings: List[DataQualityWarning] = []
    for spec in pair_specs(milestones):
        observation, warning = _observe_spec(job, arrivals, spec, milestones)
        observations.append(observation)
        if warning is not None:
            warnings.append(warning)
    return observations, warnings


def _milestone_index(milestones: Sequence[Milestone], name: str) -> int:
    for i, milestone in enumerate(milestones):
        if milestone.name == name:
            return i
    raise KeyError(f"Unknown milestone '{name}'")


def observe_loss(
    job: JobRecord,
    milestones: Sequence[Milestone],
    arrivals: Sequence[Arrival],
    rule: LossRule,
) -> Tuple[LossObservation, List[DataQualityWarning]]:
    """Whether the job reached the base milestone and was lost after it.

    A loss dated before a milestone the job reached is out of order and
    does not count. A loss after the cutoff milestone counts but is
    flagged.
    """
    base = arrivals[_milestone_index(milestones, rule.base_milestone)]
    if base is None:
        return LossObservation(in_base=False, lost=False, elapsed=None), []

    loss = _first_match(job, rule.matches)
    if loss is None:
        return LossObservation(in_base=True, lost=False, elapsed=None), []

    loss_pos, loss_ts = loss
    loss_label = job.status_history[loss_pos].status
    later = [
        (i, arrival) for i, arrival in enumerate(arrivals)
        if arrival is not None and arrival[0] > loss_pos
    ]
    if later:
        i, (_, reached_ts) = later[-1]
        return LossObservation(in_base=True, lost=False, elapsed=None), [DataQualityWarning(
            job_id=job.id,
            kind=WarningKind.OUT_OF_ORDER,
            from_milestone=milestones[i].name,
            to_milestone=loss_label,
            message=(
                f"Job {job.display_name} was marked '{loss_label}' at "
                f"{loss_ts.isoformat()}, before reaching '{milestones[i].name}' at "
                f"{reached_ts.isoformat()}"
            ),
        )]

    warnings: List[DataQualityWarning] = []
    if rule.cutoff_milestone is not None:
        cutoff = _milestone_index(milestones, rule.cutoff_milestone)
        if any(arrival is not None for arrival in arrivals[cutoff:]):
            warnings.append(DataQualityWarning(
                job_id=job.id,
                kind=WarningKind.INVALID_LOSS,
                from_milestone=rule.cutoff_milestone,
                to_milestone=loss_label,
                message=(
                    f"Job {job.display_name} was marked '{loss_label}' after "
                    f"reaching '{rule.cutoff_milestone}'"
                ),
            ))

    return LossObservation(in_base=True, lost=True, elapsed=loss_ts - base[1]), warnings


def classify_job(
    job: JobRecord,
    milestones: Sequence[Milestone],
    arrivals: Sequence[Arrival],
    rule: JobKindRule,
) -> Tuple[JobKind, List[DataQualityWarning]]:
    """Insurance or retail, with or without the contingency stage."""
    warnings: List[DataQualityWarning] = []
    contingency = _milestone_index(milestones, rule.contingency_milestone)

    if job.insurance:
        kind = JobKind.INSURANCE_WITH_CONTINGENCY
    elif job.insurance_company or job.insurance_claim_number:
        kind = JobKind.INSURANCE_WITH_CONTINGENCY
        warnings.append(DataQualityWarning(
            job_id=job.id,
            kind=WarningKind.INCONSISTENT_INSURANCE_INFO,
            message=(
                f"Job {job.display_name} is not marked as insurance but has an "
                f"insurance company or claim number"
            ),
        ))
    else:
        kind = JobKind.RETAIL

    if arrivals[contingency] is not None:
        if kind is JobKind.RETAIL:
            kind = JobKind.INSURANCE_WITH_CONTINGENCY
            warnings.append(DataQualityWarning(
                job_id=job.id,
                kind=WarningKind.CONTINGENCY_WITHOUT_INSURANCE,
                from_milestone=rule.contingency_milestone,
                message=(
                    f"Job {job.display_name} reached '{rule.contingency_milestone}' "
                    f"but is not marked as insurance"
                ),
            ))
    elif any(arrival is not None for arrival in arrivals[contingency + 1:]):
        if kind is JobKind.INSURANCE_WITH_CONTINGENCY:
            kind = JobKind.INSURANCE_WITHOUT_CONTINGENCY

    return kind, warnings


def settled_at(
    job: JobRecord,
    milestones: Sequence[Milestone],
    loss: Optional[LossRule] = None,
) -> Optional[datetime]:
    """When the job reached the last milestone or was lost, whichever came first."""
    candidates = [_first_arrival(job, milestones[-1])]
    if loss is not None:
        candidates.append(_first_match(job, loss.matches))
    times = [arrival[1] for arrival in candidates if arrival is not None]
    return min(times) if times else None


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

class _PairTally:
    """Running counts for one milestone pair within one scope."""

    __slots__ = ("entered", "advanced", "total_elapsed")

    def __init__(self):
        self.entered = 0
        self.advanced = 0
        self.total_elapsed = timedelta(0)

    def add(self, observation: PairObservation) -> None:
        if not observation.entered:
            return
        self.entered += 1
        if observation.advanced:
            self.advanced += 1
            self.total_elapsed += observation.elapsed

    def finish(self, from_milestone: str, to_milestone: str, bypassed: Optional[str] = None) -> MilestonePairStats:
        conversion_rate = self.advanced / self.entered if self.entered else None
        average_days = to_days(self.total_elapsed / self.advanced) if self.advanced else None
        return MilestonePairStats(
            from_milestone=from_milestone,
            to_milestone=to_milestone,
            entered_count=self.entered,
            advanced_count=self.advanced,
            conversion_rate=conversion_rate,
            average_days=average_days,
            bypassed=bypassed,
        )


class _LossTally:
    __slots__ = ("base", "lost", "total_elapsed")

    def __init__(self):
        self.base = 0
        self.lost = 0
        self.total_elapsed = timedelta(0)

    def add(self, observation: LossObservation) -> None:
        if not observation.in_base:
            return
        self.base += 1
        if observation.lost:
            self.lost += 1
            self.total_elapsed += observation.elapsed

    def finish(self, base_milestone: str) -> LossStats:
        return LossStats(
            base_milestone=base_milestone,
            base_count=self.base,
            lost_count=self.lost,
            loss_rate=self.lost / self.base if self.base else None,
            average_days_to_loss=to_days(self.total_elapsed / self.lost) if self.lost else None,
        )


def _scope_order(scopes: Iterable[str]) -> List[str]:
    """Global first, then reps by name, then job kinds in declaration order."""
    scopes = set(scopes)
    kinds = [kind_scope(kind) for kind in JobKind if kind_scope(kind) in scopes]
    ordered = [GLOBAL_SCOPE] if GLOBAL_SCOPE in scopes else []
    ordered.extend(sorted(scope for scope in scopes if scope != GLOBAL_SCOPE and scope not in kinds))
    ordered.extend(kinds)
    return ordered


def compute_funnel(
    jobs: Sequence[JobRecord],
    milestones: Sequence[Milestone],
    scope_fn: ScopeFn = default_scopes,
    include_scopes: Sequence[str] = (GLOBAL_SCOPE,),
    loss: Optional[LossRule] = None,
    job_kinds: Optional[JobKindRule] = None,
) -> FunnelComputation:
    """
    Compute funnel statistics for every scope the jobs map to.

    Args:
        jobs: Normalized job records.
        milestones: Ordered funnel stages.
        scope_fn: Maps a job to the scope keys it counts toward.
        include_scopes: Scopes reported even when no job maps to them.
        loss: When given, each scope also carries LossStats.
        job_kinds: When given, each job also counts toward its kind scope
            ("kind:retail", ...) and insurance red flags are reported.

    Returns:
        FunnelComputation with results keyed by scope (global first, then
        reps by name, then job kinds) and the data-quality warnings found.
    """
    milestones = list(milestones)
    specs = pair_specs(milestones)

    tallies: Dict[str, List[_PairTally]] = {}
    loss_tallies: Dict[str, _LossTally] = defaultdict(_LossTally)
    job_counts: Dict[str, int] = defaultdict(int)

    def _tallies_for(scope: str) -> List[_PairTally]:
        if scope not in tallies:
            tallies[scope] = [_PairTally() for _ in specs]
        return tallies[scope]

    for scope in include_scopes:
        _tallies_for(scope)
    if job_kinds is not None:
        for kind in JobKind:
            _tallies_for(kind_scope(kind))

    warnings: List[DataQualityWarning] = []
    for job in jobs:
        arrivals = milestone_arrivals(job, milestones)
        observations, job_warnings = observe_job(job, milestones, arrivals)
        scopes = list(scope_fn(job))

        loss_observation = None
        if loss is not None:
            loss_observation, loss_warnings = observe_loss(job, milestones, arrivals, loss)
            job_warnings.extend(loss_warnings)
        if job_kinds is not None:
            kind, kind_warnings = classify_job(job, milestones, arrivals, job_kinds)
            job_warnings.extend(kind_warnings)
            scopes.append(kind_scope(kind))

        for warning in job_warnings:
            logger.warning("Data quality: %s", warning.message)
        warnings.extend(job_warnings)

        # a scope listed twice for one job still counts the job once
        for scope in dict.fromkeys(scopes):
            job_counts[scope] += 1
            for tally, observation in zip(_tallies_for(scope), observations):
                tally.add(observation)
            if loss_observation is not None:
                loss_tallies[scope].add(loss_observation)

    results: Dict[str, FunnelResult] = {}
    for scope in _scope_order(tallies):
        results[scope] = FunnelResult(
            scope=scope,
            job_count=job_counts[scope],
            pairs=[
                tally.finish(
                    milestones[spec.start].name,
                    milestones[spec.end].name,
                    milestones[spec.bypassed].name if spec.bypassed is not None else None,
                )
                for tally, spec in zip(tallies[scope], specs)
            ],
            loss=loss_tallies[scope].finish(loss.base_milestone) if loss is not None else None,
        )

    logger.info(
        "Funnel computed for %d jobs across %d scope(s), %d milestone pair(s), %d warning(s)",
        len(jobs), len(results), len(specs), len(warnings),
    )
    return FunnelComputation(results=results, warnings=warnings)
