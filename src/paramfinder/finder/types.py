from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Union

import math

from paramfinder.backtest.models import BacktestResult

StrategyParams = dict[str, Union[int, float]]
BacktestSettings = dict[str, Any]

FinderMode = Literal["default", "grid", "random", "robust_random_wf"]
FinderMetric = Literal[
    "netProfit",
    "profitFactor",
    "sharpeRatio",
    "netProfitPercent",
    "winRate",
    "maxDrawdownPercent",
    "expectancy",
    "averageGain",
    "totalTrades",
]

FINDER_MODES: tuple[str, ...] = ("default", "grid", "random", "robust_random_wf")
FINDER_METRICS: tuple[str, ...] = (
    "netProfit",
    "profitFactor",
    "sharpeRatio",
    "netProfitPercent",
    "winRate",
    "maxDrawdownPercent",
    "expectancy",
    "averageGain",
    "totalTrades",
)
DEFAULT_SORT_PRIORITY: tuple[str, ...] = (
    "expectancy",
    "profitFactor",
    "totalTrades",
    "maxDrawdownPercent",
    "sharpeRatio",
    "averageGain",
    "winRate",
    "netProfitPercent",
    "netProfit",
)
ROBUST_MODE = "robust_random_wf"


@dataclass(slots=True)
class FinderOptions:
    mode: FinderMode = "random"
    sort_priority: list[str] = field(default_factory=lambda: list(DEFAULT_SORT_PRIORITY))
    use_advanced_sort: bool = False
    robust_seed: Optional[float] = None
    multi_timeframe_enabled: bool = False
    timeframes: list[str] = field(default_factory=list)
    top_n: int = 10
    steps: int = 3
    range_percent: float = 35.0
    max_runs: int = 200
    trade_filter_enabled: bool = False
    min_trades: int = 0
    max_trades: int = 1_000_000

    def validate(self) -> None:
        if self.mode not in FINDER_MODES:
            raise ValueError(f"Unknown finder mode {self.mode!r}; expected one of {FINDER_MODES}.")
        unknown = [metric for metric in self.sort_priority if metric not in FINDER_METRICS]
        if unknown:
            raise ValueError(f"Unknown sort metrics: {unknown}")
        if self.top_n < 1:
            raise ValueError("top_n must be >= 1.")
        if self.max_runs < 1:
            raise ValueError("max_runs must be >= 1.")
        if self.min_trades < 0 or self.max_trades < self.min_trades:
            raise ValueError("Trade filter requires 0 <= min_trades <= max_trades.")

    @property
    def is_robust(self) -> bool:
        return self.mode == ROBUST_MODE

    def has_finite_seed(self) -> bool:
        return self.robust_seed is not None and math.isfinite(float(self.robust_seed))


@dataclass(slots=True)
class RobustMetrics:
    seed: int
    cell_seed: int
    decision: Literal["PASS", "FAIL"]
    decision_reason: str
    timeframe: str
    sampled_params: int
    stage_a_survivors: int
    stage_b_survivors: int
    stage_c_survivors: int
    pass_rate: float
    top_decile_median_oos_expectancy: float
    top_decile_median_profitable_fold_ratio: float
    median_fold_stability_penalty: float
    top_decile_median_dd_breach_rate: float
    robust_score: float
    rejection_reasons: dict[str, int] = field(default_factory=dict)
    mode: str = ROBUST_MODE


@dataclass(slots=True)
class FinderResult:
    """A ranked candidate; ``selection_result`` is the endpoint-adjusted view used for ranking."""

    key: str
    name: str
    params: StrategyParams
    result: BacktestResult
    selection_result: BacktestResult
    endpoint_adjusted: bool = False
    endpoint_removed_trades: int = 0
    timeframes: list[str] = field(default_factory=list)
    confirmation_params: Optional[dict[str, StrategyParams]] = None
    robust_metrics: Optional[RobustMetrics] = None

    def to_summary(self) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "key": self.key,
            "name": self.name,
            "params": dict(self.params),
            "timeframes": list(self.timeframes),
            "endpoint_adjusted": self.endpoint_adjusted,
            "endpoint_removed_trades": self.endpoint_removed_trades,
            "metrics": self.selection_result.to_summary(),
        }
        if self.confirmation_params:
            summary["confirmation_params"] = self.confirmation_params
        if self.robust_metrics is not None:
            summary["robust_metrics"] = {
                "mode": self.robust_metrics.mode,
                "decision": self.robust_metrics.decision,
                "robust_score": self.robust_metrics.robust_score,
                "cell_seed": self.robust_metrics.cell_seed,
            }
        return summary
