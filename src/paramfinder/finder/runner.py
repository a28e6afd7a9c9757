from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence

import asyncio
import logging
import time

import pandas as pd

from paramfinder.backtest.models import BacktestResult, PositionSizing
from paramfinder.backtest.simulator import last_bar_time, run_backtest, run_backtest_compact
from paramfinder.finder.aggregate import aggregate_finder_results
from paramfinder.finder.backends import BackendStats, LocalBackend, select_execution_backend
from paramfinder.finder.dispatcher import (
    ConfirmationPlanner,
    ResultCollector,
    RunPacer,
    run_multi_timeframe,
    run_single_timeframe,
)
from paramfinder.finder.param_space import ParamSpace
from paramfinder.finder.scheduler import JobScheduler, build_strategy_plans, compute_dataset_flags
from paramfinder.finder.strategies import ConfirmationGate, StrategySelection
from paramfinder.finder.timeframes import TimeframeDataset, TimeframeDatasetCache, resolve_run_timeframes
from paramfinder.finder.types import BacktestSettings, FinderOptions, FinderResult, StrategyParams
from paramfinder.remote.client import RemoteEngineClient
from paramfinder.remote.sanitizer import requires_local_engine
from paramfinder.robust.audit import CellAuditWriter
from paramfinder.robust.config import RobustPolicy
from paramfinder.robust.report import ClusterEntry, build_cluster_report
from paramfinder.robust.validator import (
    CellReport,
    RobustValidator,
    robust_precondition_error,
    run_robust_validation,
)

logger = logging.getLogger(__name__)

NO_COMBINATIONS_STATUS = "No valid parameter combinations generated."
NO_TIMEFRAME_DATA_STATUS = "No data available for selected timeframes."

BacktestFn = Callable[..., BacktestResult]


async def _cooperative_yield() -> None:
    await asyncio.sleep(0)


def _noop_progress(percent: float, label: str) -> None:
    return None


def _noop_status(status: str) -> None:
    return None


@dataclass(slots=True)
class FinderRunCallbacks:
    set_progress: Callable[[float, str], None] = _noop_progress
    set_status: Callable[[str], None] = _noop_status
    yield_control: Callable[[], Awaitable[None]] = _cooperative_yield


@dataclass(slots=True)
class FinderRunInput:
    """Everything one finder run needs; collaborators default to the bundled implementations."""

    data: pd.DataFrame
    selections: list[StrategySelection]
    options: FinderOptions = field(default_factory=FinderOptions)
    settings: BacktestSettings = field(default_factory=dict)
    interval: str = "1d"
    symbol: str = ""
    initial_capital: float = 10_000.0
    position_size: float = 100.0
    commission: float = 0.1
    sizing: PositionSizing = field(default_factory=PositionSizing)
    param_space: Optional[ParamSpace] = None
    confirmation_gate: Optional[ConfirmationGate] = None
    confirmation_defaults: dict[str, dict[str, float]] = field(default_factory=dict)
    randomize_confirmations: bool = False
    remote_client: Optional[RemoteEngineClient] = None
    dataset_loader: Optional[TimeframeDatasetCache] = None
    backtest_fn: BacktestFn = run_backtest
    compact_backtest_fn: BacktestFn = run_backtest_compact
    aggregate: Callable[[Sequence[BacktestResult], float], BacktestResult] = aggregate_finder_results
    robust_policy: Optional[RobustPolicy] = None
    audit_writer: Optional[CellAuditWriter] = None

    @property
    def confirmation_keys(self) -> list[str]:
        return [str(key) for key in (self.settings.get("confirmation_strategies") or [])]

    def validate(self) -> None:
        if not isinstance(self.data, pd.DataFrame):
            raise ValueError("data must be a pandas DataFrame.")
        if self.initial_capital <= 0:
            raise ValueError("initial_capital must be positive.")
        if self.position_size <= 0:
            raise ValueError("position_size must be positive.")
        if self.commission < 0:
            raise ValueError("commission must be >= 0.")
        if self.confirmation_keys and self.confirmation_gate is None:
            raise ValueError("confirmation_strategies configured without a confirmation_gate.")
        self.options.validate()


@dataclass(slots=True)
class FinderRunStats:
    total_runs: int = 0
    engine: str = "local"
    engine_reason: str = ""
    cache_id: Optional[str] = None
    timeframes: list[str] = field(default_factory=list)
    matched: int = 0
    filtered_out: int = 0
    endpoint_adjusted: int = 0
    yields: int = 0
    elapsed_ms: float = 0.0
    backend: BackendStats = field(default_factory=BackendStats)


@dataclass(slots=True)
class FinderRunOutput:
    results: list[FinderResult]
    status: str
    stats: FinderRunStats
    cells: list[CellReport] = field(default_factory=list)
    cluster_report: list[ClusterEntry] = field(default_factory=list)


async def _load_datasets(run: FinderRunInput, timeframes: Sequence[str]) -> list[TimeframeDataset]:
    if run.dataset_loader is not None:
        return await run.dataset_loader.load(
            run.symbol,
            timeframes,
            current_interval=run.interval,
            current_data=run.data,
        )
    if run.interval in timeframes and not run.data.empty:
        return [TimeframeDataset(interval=run.interval, data=run.data)]
    return []


def _confirmation_planner(run: FinderRunInput, space: ParamSpace) -> ConfirmationPlanner:
    base_params: dict[str, StrategyParams] = dict(run.settings.get("confirmation_strategy_params") or {})

    def _random_params(keys: Sequence[str], options: FinderOptions) -> dict[str, StrategyParams]:
        return space.build_random_confirmation_params(keys, options, run.confirmation_defaults)

    return ConfirmationPlanner(
        gate=run.confirmation_gate,
        strategy_keys=run.confirmation_keys,
        base_params=base_params,
        randomize=run.randomize_confirmations,
        build_random_params=_random_params,
        options=run.options,
        settings=run.settings,
    )


async def run_finder(run: FinderRunInput, callbacks: Optional[FinderRunCallbacks] = None) -> FinderRunOutput:
    """
    Search the parameter space of every selected strategy and return the top-N candidates.

    Expected terminal outcomes (nothing to run, no data, robust preconditions)
    come back as a status with an empty result list. Invalid input raises
    ValueError before any work starts.
    """

    callbacks = callbacks or FinderRunCallbacks()
    run.validate()
    options = run.options
    stats = FinderRunStats()
    started = time.perf_counter()

    def _finish(results: list[FinderResult], status: str, **extra: Any) -> FinderRunOutput:
        stats.elapsed_ms = (time.perf_counter() - started) * 1000.0
        callbacks.set_status(status)
        logger.info("Finder run finished in %.0f ms: %s", stats.elapsed_ms, status)
        return FinderRunOutput(results=results, status=status, stats=stats, **extra)

    callbacks.set_progress(5, "Preparing...")
    if options.is_robust:
        precondition = robust_precondition_error(options, bool(run.confirmation_keys))
        if precondition is not None:
            logger.warning("Robust run aborted: %s", precondition)
            return _finish([], precondition)

    space = run.param_space or ParamSpace()
    plans = build_strategy_plans(run.selections, run.settings, options, space.generate_param_sets)
    scheduler = JobScheduler(plans, run.settings)
    stats.total_runs = scheduler.total_runs
    if scheduler.total_runs == 0:
        return _finish([], NO_COMBINATIONS_STATUS)

    timeframes = resolve_run_timeframes(options, run.interval)
    multi = options.multi_timeframe_enabled and timeframes != [run.interval]
    if multi:
        datasets = await _load_datasets(run, timeframes)
        if not datasets:
            return _finish([], NO_TIMEFRAME_DATA_STATUS)
    else:
        datasets = [TimeframeDataset(interval=run.interval, data=run.data)]
    stats.timeframes = [dataset.interval for dataset in datasets]

    confirmations = _confirmation_planner(run, space)
    largest = max(len(dataset.data) for dataset in datasets)
    flags = compute_dataset_flags(largest, run.settings, options, confirmations.enabled)
    pacer = RunPacer(callbacks.yield_control, flags.yield_budget_ms)
    callbacks.set_progress(10, f"{scheduler.total_runs} runs queued")

    if options.is_robust:
        validator = RobustValidator(
            run.robust_policy,
            initial_capital=run.initial_capital,
            position_size=run.position_size,
            commission=run.commission,
            sizing=run.sizing,
            backtest_fn=run.backtest_fn,
        )
        robust = await run_robust_validation(
            datasets=datasets,
            scheduler=scheduler,
            validator=validator,
            options=options,
            pacer=pacer,
            set_progress=callbacks.set_progress,
            set_status=callbacks.set_status,
            audit_writer=run.audit_writer,
        )
        stats.endpoint_adjusted = sum(1 for item in robust.results if item.endpoint_adjusted)
        stats.yields = pacer.yields
        return _finish(
            robust.results,
            robust.status,
            cells=robust.cells,
            cluster_report=build_cluster_report(robust.cells),
        )

    collector = ResultCollector(options, last_bar_time(run.data), run.initial_capital)
    if multi:
        results, status = await run_multi_timeframe(
            datasets=datasets,
            scheduler=scheduler,
            collector=collector,
            confirmations=confirmations,
            flags=flags,
            pacer=pacer,
            backtest_fn=run.backtest_fn,
            compact_backtest_fn=run.compact_backtest_fn,
            aggregate=run.aggregate,
            initial_capital=run.initial_capital,
            position_size=run.position_size,
            commission=run.commission,
            sizing=run.sizing,
            set_progress=callbacks.set_progress,
            set_status=callbacks.set_status,
        )
    else:
        backtest_fn = run.compact_backtest_fn if flags.should_use_compact_backtest else run.backtest_fn
        local = LocalBackend(run.data, backtest_fn, run.initial_capital, run.position_size, run.commission, run.sizing)
        stats.backend = local.stats
        backend, plan = await select_execution_backend(
            local,
            run.remote_client,
            flags,
            options,
            requires_local=requires_local_engine(run.settings),
            remote_settings=scheduler.remote_settings,
        )
        stats.engine, stats.engine_reason, stats.cache_id = plan.mode, plan.reason, plan.cache_id
        logger.info("Finder engine: %s (%s)", plan.mode, plan.reason)
        callbacks.set_status(f"Running {scheduler.total_runs} runs ({plan.mode})...")
        results, status = await run_single_timeframe(
            data=run.data,
            scheduler=scheduler,
            backend=backend,
            collector=collector,
            confirmations=confirmations,
            flags=flags,
            pacer=pacer,
            set_progress=callbacks.set_progress,
            set_status=callbacks.set_status,
        )

    stats.matched = collector.matched
    stats.filtered_out = collector.filtered_out
    stats.endpoint_adjusted = collector.endpoint_adjusted
    stats.yields = pacer.yields
    return _finish(results, status)
