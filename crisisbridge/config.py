"""
Deployment Configuration for CrisisBridge.

Every numeric knob of the subsystem -- fusion weights, suppression
thresholds, false-positive discounts, channel lifetimes, monitoring
thresholds -- lives in a validated pydantic model here.  The reference
values reproduce the behavior the detection rules were calibrated against;
deployments adjust them through YAML rather than code.

The fusion weights in particular are empirical.  A deployment that adds a
richer knowledge base may want to raise the contextual weight; one serving
a population that writes late at night may want to lower the behavioral
weight.  Weights must sum to 1.0 so that combined confidence stays in [0, 1].

DISCLAIMER: These settings tune routing heuristics only.  They do not
define clinical protocols or diagnostic criteria.
"""

from __future__ import annotations

import math
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Detection settings
# ---------------------------------------------------------------------------

class FusionWeights(BaseModel):
    """Relative weights of the four signal extractors."""

    lexical: float = Field(default=0.4, ge=0, le=1)
    structural: float = Field(default=0.2, ge=0, le=1)
    contextual: float = Field(default=0.2, ge=0, le=1)
    behavioral: float = Field(default=0.2, ge=0, le=1)

    @field_validator("behavioral")
    @classmethod
    def weights_sum_to_one(cls, v: float, info) -> float:
        others = [info.data.get(k) for k in ("lexical", "structural", "contextual")]
        if all(o is not None for o in others):
            total = sum(others) + v
            if not math.isclose(total, 1.0, abs_tol=1e-6):
                raise ValueError(f"fusion weights must sum to 1.0, got {total:.3f}")
        return v


class FilterDiscounts(BaseModel):
    """Multiplicative confidence discounts applied by the false-positive filter."""

    negation: float = Field(default=0.3, gt=0, le=1)
    low_historical_risk: float = Field(default=0.7, gt=0, le=1)
    professional_context: float = Field(default=0.5, gt=0, le=1)
    hypothetical_content: float = Field(default=0.4, gt=0, le=1)


class DetectionSettings(BaseModel):
    """Thresholds and weights for the detection pipeline."""

    fusion_weights: FusionWeights = Field(default_factory=FusionWeights)
    filter_discounts: FilterDiscounts = Field(default_factory=FilterDiscounts)
    min_confidence: float = Field(
        default=0.3,
        ge=0,
        le=1,
        description=(
            "Combined confidence below which no assessment is produced, "
            "both after fusion and after false-positive filtering."
        ),
    )
    historical_check_min_confidence: float = Field(
        default=0.7,
        ge=0,
        le=1,
        description="The historical-risk filter only runs above this confidence.",
    )
    low_historical_risk: float = Field(default=0.3, ge=0, le=1)
    history_window: int = Field(
        default=5,
        gt=0,
        description="How many recent conversation turns the contextual extractor inspects.",
    )
    repeated_turn_threshold: float = Field(default=0.5, ge=0, le=1)
    repeated_turn_min_count: int = Field(default=2, gt=0)
    knowledge_base_limit: int = Field(default=3, gt=0)
    knowledge_base_timeout_seconds: float = Field(default=2.0, gt=0)
    fail_safe_confidence: float = Field(default=0.1, ge=0, le=1)


# ---------------------------------------------------------------------------
# Matching and channel settings
# ---------------------------------------------------------------------------

class MatchingSettings(BaseModel):
    max_results: int = Field(default=5, gt=0)
    base_response_minutes: float = Field(default=5.0, ge=0)
    next_slot_fallback_minutes: float = Field(
        default=30.0,
        ge=0,
        description="Assumed wait when no upcoming schedule slot can be found.",
    )
    default_languages: list[str] = Field(default_factory=lambda: ["English"])


class ChannelSettings(BaseModel):
    ttl_hours: float = Field(default=24.0, gt=0)
    max_message_chars: int = Field(default=10_000, gt=0)
    key_rotation_days: int = Field(default=365, gt=0)
    key_retention_days: int = Field(
        default=2555,
        gt=0,
        description="Superseded keys stay available for decryption this long (7 years).",
    )
    rotation_warning_days: int = Field(default=30, ge=0)


# ---------------------------------------------------------------------------
# Monitoring thresholds
# ---------------------------------------------------------------------------

class MonitoringThresholds(BaseModel):
    """Thresholds that raise safety alerts when breached."""

    high_risk_score: float = Field(default=70, ge=0, le=100)
    critical_risk_score: float = Field(default=85, ge=0, le=100)
    high_risk_fraction: float = Field(default=0.1, ge=0, le=1)
    max_response_time_minutes: float = Field(default=15, gt=0)
    max_active_escalations: int = Field(default=50, gt=0)
    min_safety_score: float = Field(default=60, ge=0, le=100)
    alert_cooldown_minutes: float = Field(default=30, ge=0)
    update_interval_seconds: float = Field(default=5.0, gt=0)
    cleanup_interval_seconds: float = Field(default=3600.0, gt=0)

    @field_validator("critical_risk_score")
    @classmethod
    def critical_above_high(cls, v: float, info) -> float:
        high = info.data.get("high_risk_score")
        if high is not None and v < high:
            raise ValueError(
                f"critical_risk_score ({v}) must be >= high_risk_score ({high})"
            )
        return v


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class CrisisBridgeConfig(BaseModel):
    """Complete deployment configuration."""

    detection: DetectionSettings = Field(default_factory=DetectionSettings)
    matching: MatchingSettings = Field(default_factory=MatchingSettings)
    channels: ChannelSettings = Field(default_factory=ChannelSettings)
    monitoring: MonitoringThresholds = Field(default_factory=MonitoringThresholds)
    retention_policy: str = Field(
        default="7_years_crisis_data",
        description="Retention tag stamped on every escalation compliance record.",
    )
    closed_record_retention_hours: float = Field(
        default=168,
        gt=0,
        description="Hours a resolved escalation or closed channel is kept in memory before cleanup drops it.",
    )
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}, got '{v}'")
        return v.upper()


DEFAULT_CONFIG = CrisisBridgeConfig()
"""Reference configuration matching the calibrated detection behavior."""


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def _read_yaml_mapping(path: str | Path) -> dict:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"Top level of {path} must be a mapping.")
    return raw


def load_config_from_yaml(path: str | Path) -> CrisisBridgeConfig:
    """Load a deployment configuration from a YAML file.

    Sections that are omitted keep their defaults.  The file may either be
    the configuration mapping itself or nest it under a ``crisisbridge``
    key::

        crisisbridge:
          detection:
            fusion_weights: {lexical: 0.5, structural: 0.2, contextual: 0.1, behavioral: 0.2}
          monitoring:
            alert_cooldown_minutes: 15

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML is not a mapping.
        pydantic.ValidationError: If any value fails validation.
    """
    raw = _read_yaml_mapping(path)
    if "crisisbridge" in raw:
        raw = raw["crisisbridge"] or {}
        if not isinstance(raw, dict):
            raise ValueError("'crisisbridge' must be a mapping.")
    return CrisisBridgeConfig.model_validate(raw)
