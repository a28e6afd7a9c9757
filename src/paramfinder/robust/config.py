from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any, Mapping

import math


@dataclass(slots=True, frozen=True)
class HoldoutStagePolicy:
    """Stage A: single trailing holdout screen."""

    holdout_fraction: float = 0.3
    min_holdout_bars: int = 40
    min_trades: int = 8
    min_expectancy: float = 0.0
    max_drawdown_percent: float = 35.0
    profit_factor_cap: float = 4.0
    drawdown_weight: float = 0.05


@dataclass(slots=True, frozen=True)
class WalkForwardStagePolicy:
    folds: int
    fold_drawdown_cap: float
    min_trades: int
    min_profitable_fold_ratio: float
    max_breach_rate: float
    max_combined_drawdown: float
    max_stability_penalty: float
    min_median_expectancy: float = 0.0


def _stage_b() -> WalkForwardStagePolicy:
    return WalkForwardStagePolicy(
        folds=3,
        fold_drawdown_cap=30.0,
        min_trades=10,
        min_profitable_fold_ratio=0.5,
        max_breach_rate=0.34,
        max_combined_drawdown=35.0,
        max_stability_penalty=2.5,
    )


def _stage_c() -> WalkForwardStagePolicy:
    return WalkForwardStagePolicy(
        folds=6,
        fold_drawdown_cap=25.0,
        min_trades=20,
        min_profitable_fold_ratio=0.6,
        max_breach_rate=0.20,
        max_combined_drawdown=30.0,
        max_stability_penalty=1.8,
    )


@dataclass(slots=True, frozen=True)
class CellDecisionPolicy:
    min_stage_c_survivors: int = 2
    min_pass_rate: float = 0.01
    max_dd_breach_rate: float = 0.20
    max_stability_penalty: float = 1.8
    top_fraction: float = 0.1
    pass_rate_weight: float = 0.6
    fold_ratio_weight: float = 0.2
    stability_weight: float = 0.1
    expectancy_weight: float = 0.1


@dataclass(slots=True, frozen=True)
class RobustPolicy:
    min_samples: int = 40
    max_samples: int = 240
    lookback_bars: int = 250
    warmup_fraction: float = 0.2
    min_fold_bars: int = 20
    holdout: HoldoutStagePolicy = field(default_factory=HoldoutStagePolicy)
    stage_b: WalkForwardStagePolicy = field(default_factory=_stage_b)
    stage_c: WalkForwardStagePolicy = field(default_factory=_stage_c)
    decision: CellDecisionPolicy = field(default_factory=CellDecisionPolicy)

    def sample_budget(self, max_runs: int) -> int:
        return max(self.min_samples, min(self.max_samples, int(max_runs)))

    @property
    def min_bars(self) -> int:
        """Smallest dataset that still yields every Stage C fold at full size."""
        folds = max(self.stage_b.folds, self.stage_c.folds)
        usable = folds * self.min_fold_bars
        return max(self.holdout.min_holdout_bars + 1, math.ceil(usable / (1.0 - self.warmup_fraction)))

    def validate(self) -> None:
        if not 0 < self.min_samples <= self.max_samples:
            raise ValueError("RobustPolicy requires 0 < min_samples <= max_samples.")
        if not 0.0 <= self.warmup_fraction < 1.0:
            raise ValueError("warmup_fraction must be in [0, 1).")
        if not 0.0 < self.holdout.holdout_fraction < 1.0:
            raise ValueError("holdout_fraction must be in (0, 1).")
        for name, stage in (("stage_b", self.stage_b), ("stage_c", self.stage_c)):
            if stage.folds < 1:
                raise ValueError(f"{name}.folds must be >= 1.")
        if not 0.0 < self.decision.top_fraction <= 1.0:
            raise ValueError("decision.top_fraction must be in (0, 1].")

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any] | None) -> "RobustPolicy":
        """Build a policy from a (YAML) mapping; unknown keys raise ValueError."""
        base = cls()
        if not payload:
            return base
        nested = {
            "holdout": base.holdout,
            "stage_b": base.stage_b,
            "stage_c": base.stage_c,
            "decision": base.decision,
        }
        scalar_names = {f.name for f in fields(cls)} - set(nested)
        updates: dict[str, Any] = {}
        for key, value in payload.items():
            if key in nested:
                if not isinstance(value, Mapping):
                    raise ValueError(f"robust.{key} must be a mapping.")
                updates[key] = _override(nested[key], value, prefix=f"robust.{key}")
            elif key in scalar_names:
                updates[key] = value
            else:
                raise ValueError(f"Unknown robust policy key: {key}")
        policy = replace(base, **updates)
        policy.validate()
        return policy


def _override(section: Any, values: Mapping[str, Any], *, prefix: str) -> Any:
    allowed = {f.name for f in fields(section)}
    unknown = sorted(set(values) - allowed)
    if unknown:
        raise ValueError(f"Unknown keys under {prefix}: {unknown}")
    return replace(section, **dict(values))
