from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

import logging

from paramfinder.finder.strategies import StrategySelection, StrategyVariant, classify_strategy
from paramfinder.finder.types import BacktestSettings, FinderOptions, StrategyParams
from paramfinder.remote.sanitizer import has_snapshot_filters, sanitize_settings_for_remote

logger = logging.getLogger(__name__)

LARGE_DATASET_BARS = 500_000
VERY_LARGE_DATASET_BARS = 2_000_000
EXTREME_DATASET_BARS = 4_000_000
HEAVY_MIN_TRADES = 1_000
HEAVY_COMPACT_THRESHOLD = 50_000
DEFAULT_COMPACT_THRESHOLD = 500_000
DEFAULT_STOP_LOSS_PERCENT = 5.0
DEFAULT_TAKE_PROFIT_PERCENT = 10.0

RISK_OVERRIDE_KEYS = ("stop_loss_percent", "take_profit_percent")

ParamSetGenerator = Callable[[Mapping[str, float], FinderOptions], list[StrategyParams]]


@dataclass(slots=True, frozen=True)
class FinderDatasetFlags:
    data_size: int
    is_large_dataset: bool
    is_very_large_dataset: bool
    is_extreme_dataset: bool
    compact_backtest_threshold: int
    should_use_compact_backtest: bool
    remote_compact_mode: bool
    batch_size: int
    is_heavy_config: bool

    @property
    def yield_budget_ms(self) -> float:
        return 16.0 if self.is_heavy_config else 28.0


def compute_dataset_flags(
    data_size: int,
    settings: Mapping[str, Any],
    options: FinderOptions,
    has_confirmations: bool,
) -> FinderDatasetFlags:
    is_large = data_size > LARGE_DATASET_BARS
    is_very_large = data_size > VERY_LARGE_DATASET_BARS
    is_extreme = data_size > EXTREME_DATASET_BARS
    heavy_trade_filter = options.trade_filter_enabled and options.min_trades >= HEAVY_MIN_TRADES
    is_heavy = has_snapshot_filters(settings) or heavy_trade_filter or has_confirmations
    threshold = HEAVY_COMPACT_THRESHOLD if is_heavy else DEFAULT_COMPACT_THRESHOLD
    compact = data_size >= threshold

    if is_extreme:
        batch_size = 1
    elif is_very_large:
        batch_size = 2
    elif is_large:
        batch_size = 8
    elif is_heavy:
        batch_size = 4
    else:
        batch_size = 20

    return FinderDatasetFlags(
        data_size=data_size,
        is_large_dataset=is_large,
        is_very_large_dataset=is_very_large,
        is_extreme_dataset=is_extreme,
        compact_backtest_threshold=threshold,
        should_use_compact_backtest=compact,
        remote_compact_mode=compact,
        batch_size=batch_size,
        is_heavy_config=is_heavy,
    )


@dataclass(slots=True)
class StrategyPlan:
    key: str
    name: str
    strategy: StrategyVariant
    param_sets: list[StrategyParams]


@dataclass(slots=True, frozen=True)
class ParamJob:
    id: int
    key: str
    name: str
    params: StrategyParams
    backtest_settings: BacktestSettings
    remote_settings: BacktestSettings
    strategy: StrategyVariant


def extend_defaults_with_risk(defaults: Mapping[str, float], settings: Mapping[str, Any]) -> dict[str, float]:
    """Add stop-loss/take-profit to the searched parameters when percentage risk is on."""
    extended = dict(defaults)
    if settings.get("risk_mode") == "percentage":
        if settings.get("stop_loss_enabled"):
            extended["stop_loss_percent"] = settings.get("stop_loss_percent", DEFAULT_STOP_LOSS_PERCENT)
        if settings.get("take_profit_enabled"):
            extended["take_profit_percent"] = settings.get("take_profit_percent", DEFAULT_TAKE_PROFIT_PERCENT)
    return extended


def build_strategy_plans(
    selections: Sequence[StrategySelection],
    settings: Mapping[str, Any],
    options: FinderOptions,
    generate_param_sets: ParamSetGenerator,
) -> list[StrategyPlan]:
    plans: list[StrategyPlan] = []
    for selection in selections:
        defaults = extend_defaults_with_risk(selection.strategy.default_params, settings)
        param_sets = list(generate_param_sets(defaults, options))
        if not param_sets:
            logger.debug("No parameter sets generated for %s", selection.key)
            continue
        plans.append(
            StrategyPlan(
                key=selection.key,
                name=selection.name,
                strategy=classify_strategy(selection.strategy),
                param_sets=param_sets,
            )
        )
    return plans


class JobScheduler:
    """
    Pull-based job cursor over strategy plans.

    Jobs come out in plan declaration order with ids increasing in pull order.
    Per-job settings are copied only when the parameter set overrides the
    stop-loss or take-profit; otherwise every job shares the base dicts.
    """

    def __init__(self, plans: Sequence[StrategyPlan], settings: BacktestSettings) -> None:
        self.plans = list(plans)
        self.settings = settings
        self.remote_settings = sanitize_settings_for_remote(settings)
        self.total_runs = sum(len(plan.param_sets) for plan in self.plans)
        self._plan_index = 0
        self._param_index = 0
        self._next_job_id = 0

    @property
    def exhausted(self) -> bool:
        return self._plan_index >= len(self.plans)

    def next_job_batch(self, batch_size: int) -> list[ParamJob]:
        batch: list[ParamJob] = []
        while len(batch) < batch_size and self._plan_index < len(self.plans):
            plan = self.plans[self._plan_index]
            if self._param_index >= len(plan.param_sets):
                self._plan_index += 1
                self._param_index = 0
                continue
            params = plan.param_sets[self._param_index]
            self._param_index += 1
            batch.append(self._make_job(plan, params))
        return batch

    def _make_job(self, plan: StrategyPlan, params: StrategyParams) -> ParamJob:
        overrides = {key: params[key] for key in RISK_OVERRIDE_KEYS if key in params}
        if overrides:
            backtest_settings = {**self.settings, **overrides}
            remote_settings = {**self.remote_settings, **overrides}
        else:
            backtest_settings = self.settings
            remote_settings = self.remote_settings
        job = ParamJob(
            id=self._next_job_id,
            key=plan.key,
            name=plan.name,
            params=params,
            backtest_settings=backtest_settings,
            remote_settings=remote_settings,
            strategy=plan.strategy,
        )
        self._next_job_id += 1
        return job
