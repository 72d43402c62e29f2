"""
Threshold-based decision logic shared by the lite and backend tiers.
"""
from __future__ import annotations
import math
from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Dict, Literal, Mapping, Optional

from .config import ModelConfig

Action = Literal["allow", "warn", "block"]
Source = Literal["lite", "backend"]


class Decision(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    label: str
    scores: Dict[str, float] = Field(default_factory=dict)
    action: Action
    blocked: bool
    should_request_review: bool = Field(alias="shouldRequestReview")
    reason: str = ""
    source: Source

    @model_validator(mode="after")
    def _consistent(self):
        if self.blocked != (self.action == "block"):
            raise ValueError(f"blocked={self.blocked} inconsistent with action={self.action}")
        if self.should_request_review != (self.action == "warn"):
            raise ValueError(f"shouldRequestReview={self.should_request_review} inconsistent with action={self.action}")
        return self

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)

    def stamped(self, source: Source) -> "Decision":
        if self.source == source:
            return self
        return self.model_copy(update={"source": source})


def _clean(v) -> float:
    try:
        x = float(v)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(x):
        return 0.0
    return min(1.0, max(0.0, x))


def fill_scores(scores: Mapping[str, float], config: ModelConfig) -> Dict[str, float]:
    """Project arbitrary label->score pairs onto the config's labels (missing -> 0)."""
    return {label: _clean(scores.get(label, 0.0)) for label in config.labels}


def top_risk(scores: Mapping[str, float], config: ModelConfig):
    """Return (max_risk, label) over risky labels; ties go to the earliest label."""
    max_risk, top = 0.0, None
    for label in config.labels:
        if label not in config.risky_labels:
            continue
        s = scores.get(label, 0.0)
        if top is None or s > max_risk:
            max_risk, top = s, label
    return max_risk, top


def action_for(max_risk: float, config: ModelConfig) -> Action:
    thr = config.thresholds
    if max_risk >= thr.block:
        return "block"
    if max_risk >= thr.warn:
        return "warn"
    return "allow"


def decide(
    scores: Mapping[str, float],
    config: ModelConfig,
    source: Source = "lite",
    degraded: Optional[str] = None,
) -> Decision:
    full = fill_scores(scores, config)
    max_risk, top = top_risk(full, config)
    action = action_for(max_risk, config) if top is not None else "allow"
    safe = config.safe_label
    label = top if action != "allow" else safe

    # cosmetic: keep a probability-like vector when the safe score never arrived
    if safe in full and safe not in scores:
        full[safe] = max(1.0 - max_risk, 0.0)

    tier = "Lite" if source == "lite" else "Backend"
    reason = f"{tier} ({config.id}): {action} ({max_risk * 100:.1f}% {top or safe})"
    if degraded:
        reason = f"{degraded}; {reason}"
    return Decision(
        label=label,
        scores=full,
        action=action,
        blocked=action == "block",
        should_request_review=action == "warn",
        reason=reason,
        source=source,
    )


def safe_decision(config: ModelConfig, reason: str, source: Source = "lite") -> Decision:
    safe = config.safe_label
    return Decision(
        label=safe,
        scores={label: (1.0 if label == safe else 0.0) for label in config.labels},
        action="allow",
        blocked=False,
        should_request_review=False,
        reason=reason,
        source=source,
    )


def normalize_action(decision: Decision) -> Action:
    if decision.blocked:
        return "block"
    if decision.action == "warn" or decision.should_request_review:
        return "warn"
    return "allow"
