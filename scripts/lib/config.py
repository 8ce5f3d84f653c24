"""
Engine configuration for Roof KPI Hub.

Loads the milestone funnel, loss and job-kind rules, and the AR status
ordering from YAML (configs/kpi_config.yaml by default, or
KPI_CONFIG_PATH from .env) and validates it once at startup.

Usage:
    from scripts.lib.config import load_engine_config
    config = load_engine_config()
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

from models.job_models import JobKindRule, LossRule, Milestone
from scripts.lib.errors import ConfigError
from scripts.lib.logger import setup_logger

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "configs" / "kpi_config.yaml"

load_dotenv(PROJECT_ROOT / ".env")

logger = setup_logger(__name__)


class EngineConfig(BaseModel):
    """Validated engine configuration."""

    milestones: List[Milestone] = Field(..., min_length=1)
    ar_status_order: Optional[List[str]] = None
    date_fields: Dict[str, str] = Field(default_factory=dict)
    created_status: Optional[str] = None
    loss: Optional[LossRule] = None
    job_kinds: Optional[JobKindRule] = None
    known_statuses: List[str] = Field(default_factory=list)
    strict_labels: bool = False

    @model_validator(mode="after")
    def _check_milestones(self) -> "EngineConfig":
        seen_names = set()
        label_owner: Dict[str, str] = {}
        for milestone in self.milestones:
            if milestone.name in seen_names:
                raise ValueError(f"duplicate milestone name '{milestone.name}'")
            seen_names.add(milestone.name)
            for label in milestone.labels:
                owner = label_owner.get(label)
                if owner is not None:
                    raise ValueError(
                        f"status label '{label}' maps to both '{owner}' and '{milestone.name}'"
                    )
                label_owner[label] = milestone.name

        last = len(self.milestones) - 1
        for i, milestone in enumerate(self.milestones):
            if milestone.implicit and i != 0:
                raise ValueError(f"only the first milestone can be implicit, not '{milestone.name}'")
            if milestone.optional:
                if i in (0, last):
                    raise ValueError(f"the first and last milestones cannot be optional ('{milestone.name}')")
                if self.milestones[i - 1].optional:
                    raise ValueError(
                        f"optional milestones '{self.milestones[i - 1].name}' and "
                        f"'{milestone.name}' cannot be adjacent"
                    )

        if self.loss is not None:
            for name in (self.loss.base_milestone, self.loss.cutoff_milestone):
                if name is not None and name not in seen_names:
                    raise ValueError(f"loss rule names unknown milestone '{name}'")
            shared = sorted(self.loss.labels & set(label_owner))
            if shared:
                raise ValueError(f"loss label '{shared[0]}' is also a label of '{label_owner[shared[0]]}'")
        if self.job_kinds is not None and self.job_kinds.contingency_milestone not in seen_names:
            raise ValueError(
                f"job_kinds names unknown milestone '{self.job_kinds.contingency_milestone}'"
            )

        if self.ar_status_order is not None:
            if len(set(self.ar_status_order)) != len(self.ar_status_order):
                raise ValueError("ar_status_order contains duplicate statuses")
        return self

    def known_labels(self) -> set:
        """Every status label the config accounts for."""
        labels = set(self.known_statuses)
        labels.update(self.ar_status_order or [])
        labels.update(self.date_fields.values())
        if self.created_status:
            labels.add(self.created_status)
        if self.loss is not None:
            labels.update(self.loss.labels)
        for milestone in self.milestones:
            labels.update(milestone.labels)
        return labels


def build_engine_config(data: Dict[str, Any], source: str = None) -> EngineConfig:
    """Validate a raw config mapping into an EngineConfig."""
    if not isinstance(data, dict):
        raise ConfigError("Config must be a mapping", config_path=source)
    try:
        return EngineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid engine config: {e.error_count()} error(s)",
            config_path=source,
            errors=[err["msg"] for err in e.errors()],
        ) from e


def load_engine_config(path: str | Path = None) -> EngineConfig:
    """
    Load and validate the engine config.

    Args:
        path: YAML file. Defaults to KPI_CONFIG_PATH, then
            configs/kpi_config.yaml.

    Returns:
        EngineConfig ready to hand to the calculators.
    """
    config_path = Path(path or os.getenv("KPI_CONFIG_PATH") or DEFAULT_CONFIG_PATH)
    if not config_path.exists():
        raise ConfigError(f"Config not found: {config_path}", config_path=str(config_path))

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Config is not valid YAML: {e}", config_path=str(config_path)) from e

    config = build_engine_config(data, source=str(config_path))
    logger.info(
        "Loaded %d milestones from %s (strict_labels=%s)",
        len(config.milestones), config_path.name, config.strict_labels,
    )
    return config
