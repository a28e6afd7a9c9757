from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence

import logging
import math
import time

import pandas as pd

from paramfinder.backtest.metrics import normalize_result_sharpe
from paramfinder.backtest.models import BacktestResult, PositionSizing, Signal
from paramfinder.backtest.simulator import last_bar_time
from paramfinder.finder.backends import ExecutionBackend, PreparedRun
from paramfinder.finder.endpoint import build_selection_result
from paramfinder.finder.ranker import FinderResultRanker
from paramfinder.finder.scheduler import FinderDatasetFlags, JobScheduler, ParamJob
from paramfinder.finder.strategies import ConfirmationGate, EntryStrategy
from paramfinder.finder.timeframes import TimeframeDataset
from paramfinder.finder.types import FinderOptions, FinderResult, StrategyParams

logger = logging.getLogger(__name__)

UI_UPDATE_INTERVAL_MS = 120.0
RANKER_MIN_CAPACITY = 50

ProgressFn = Callable[[float, str], None]
StatusFn = Callable[[str], None]
YieldFn = Callable[[], Awaitable[None]]


class RunPacer:
    """Throttles progress callbacks and hands control back to the host between jobs."""

    def __init__(
        self,
        yield_control: YieldFn,
        yield_budget_ms: float,
        *,
        ui_interval_ms: float = UI_UPDATE_INTERVAL_MS,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._yield_control = yield_control
        self.yield_budget_ms = yield_budget_ms
        self.ui_interval_ms = ui_interval_ms
        self._clock = clock
        self._last_ui_update: Optional[float] = None
        self._slice_start = clock()
        self.yields = 0

    def should_update_ui(self, force: bool = False) -> bool:
        now = self._clock()
        if not force and self._last_ui_update is not None:
            if (now - self._last_ui_update) * 1000.0 < self.ui_interval_ms:
                return False
        self._last_ui_update = now
        return True

    async def maybe_yield(self, force: bool = False) -> None:
        if not force and (self._clock() - self._slice_start) * 1000.0 < self.yield_budget_ms:
            return
        await self._yield_control()
        self.yields += 1
        self._slice_start = self._clock()


@dataclass(slots=True)
class CandidateResult:
    key: str
    name: str
    params: StrategyParams
    result: BacktestResult
    confirmation_params: Optional[dict[str, StrategyParams]] = None
    timeframes: list[str] = field(default_factory=list)


class ResultCollector:
    """Applies the trade filter, Sharpe normalization and endpoint adjustment before ranking."""

    def __init__(
        self,
        options: FinderOptions,
        last_time: Optional[pd.Timestamp],
        initial_capital: float,
        *,
        normalize_sharpe: bool = True,
    ) -> None:
        self.options = options
        self.last_time = last_time
        self.initial_capital = initial_capital
        self.normalize_sharpe = normalize_sharpe
        self.ranker = FinderResultRanker(max(options.top_n, RANKER_MIN_CAPACITY), options.sort_priority)
        self.matched = 0
        self.endpoint_adjusted = 0
        self.filtered_out = 0

    def _within_trade_filter(self, result: BacktestResult) -> bool:
        return self.options.min_trades <= result.total_trades <= self.options.max_trades

    def insert(self, candidate: CandidateResult) -> Optional[FinderResult]:
        opts = self.options
        raw = candidate.result
        if opts.trade_filter_enabled:
            if raw.total_trades < opts.min_trades or (raw.total_trades > opts.max_trades and not raw.trades):
                self.filtered_out += 1
                return None

        result = normalize_result_sharpe(raw, self.initial_capital) if self.normalize_sharpe else raw
        adjustment = build_selection_result(result, self.last_time, self.initial_capital)
        enriched = FinderResult(
            key=candidate.key,
            name=candidate.name,
            params=candidate.params,
            result=result,
            selection_result=adjustment.result,
            endpoint_adjusted=adjustment.adjusted,
            endpoint_removed_trades=adjustment.removed_trades,
            timeframes=list(candidate.timeframes),
            confirmation_params=candidate.confirmation_params,
        )
        if opts.trade_filter_enabled and not self._within_trade_filter(enriched.result):
            self.filtered_out += 1
            return None

        self.matched += 1
        if enriched.endpoint_adjusted:
            self.endpoint_adjusted += 1
        self.ranker.offer(enriched)
        return enriched


@dataclass(slots=True)
class ConfirmationContext:
    states: Any = None
    params: Optional[dict[str, StrategyParams]] = None

    @property
    def active(self) -> bool:
        return self.states is not None


class ConfirmationPlanner:
    """
    Produces confirmation states per job.

    Fixed confirmation parameters are evaluated once per dataset; in random
    mode every job draws fresh parameters.
    """

    def __init__(
        self,
        gate: Optional[ConfirmationGate],
        strategy_keys: Sequence[str],
        base_params: dict[str, StrategyParams],
        randomize: bool,
        build_random_params: Optional[Callable[[Sequence[str], FinderOptions], dict[str, StrategyParams]]],
        options: FinderOptions,
        settings: dict[str, Any],
    ) -> None:
        self.gate = gate
        self.strategy_keys = list(strategy_keys)
        self.base_params = base_params
        self.randomize = randomize
        self.build_random_params = build_random_params
        self.options = options
        self.mode = str(settings.get("trade_filter_mode") or settings.get("entry_confirmation") or "none")
        self.trade_direction = str(settings.get("trade_direction") or "long")
        self._fixed_states: dict[int, Any] = {}

    @property
    def enabled(self) -> bool:
        return bool(self.strategy_keys) and self.gate is not None

    def job_params(self) -> Optional[dict[str, StrategyParams]]:
        if not self.enabled:
            return None
        if self.randomize:
            if self.build_random_params is None:
                return {}
            return self.build_random_params(self.strategy_keys, self.options)
        return self.base_params or None

    def context_for(self, data: pd.DataFrame, params: Optional[dict[str, StrategyParams]]) -> ConfirmationContext:
        if not self.enabled or self.gate is None:
            return ConfirmationContext()
        if self.randomize:
            return ConfirmationContext(
                states=self.gate.build_states(data, self.strategy_keys, params or {}),
                params=params,
            )
        cache_key = id(data)
        if cache_key not in self._fixed_states:
            self._fixed_states[cache_key] = self.gate.build_states(data, self.strategy_keys, self.base_params)
        return ConfirmationContext(states=self._fixed_states[cache_key], params=params)

    def filter(self, data: pd.DataFrame, signals: list[Signal], context: ConfirmationContext, job: ParamJob) -> list[Signal]:
        if not context.active or self.gate is None:
            return signals
        both = isinstance(job.strategy, EntryStrategy) or self.trade_direction in ("both", "combined")
        direction = "both" if both else self.trade_direction
        return self.gate.filter_signals(data, signals, context.states, self.mode, direction)


def _finish_status(processed: int, collector: ResultCollector, shown: int, extra: Sequence[str] = (), tail: Sequence[str] = ()) -> str:
    parts = [f"{processed} runs", *extra]
    if collector.options.trade_filter_enabled:
        parts.append(f"{collector.matched} matched")
    if collector.endpoint_adjusted > 0:
        parts.append(f"{collector.endpoint_adjusted} endpoint-adjusted")
    parts.append(f"{shown} shown")
    parts.extend(tail)
    return f"Complete. {', '.join(parts)}."


async def run_single_timeframe(
    *,
    data: pd.DataFrame,
    scheduler: JobScheduler,
    backend: ExecutionBackend,
    collector: ResultCollector,
    confirmations: ConfirmationPlanner,
    flags: FinderDatasetFlags,
    pacer: RunPacer,
    set_progress: ProgressFn,
    set_status: StatusFn,
) -> tuple[list[FinderResult], str]:
    """
    Drive every scheduled job through ``backend``.

    Signals are generated locally. A non-batched backend simulates each job as
    soon as its signals exist; a batched backend receives the whole prepared
    batch in one call.
    """

    total_runs = scheduler.total_runs
    total_batches = math.ceil(total_runs / flags.batch_size)
    processed = 0
    batch_num = 0

    while processed < total_runs:
        batch_jobs = scheduler.next_job_batch(flags.batch_size)
        if not batch_jobs:
            break
        batch_num += 1
        pending: list[PreparedRun] = []

        for job in batch_jobs:
            try:
                params = confirmations.job_params()
                context = confirmations.context_for(data, params)
                signals = job.strategy.generate_signals(data, job.params)
                signals = confirmations.filter(data, signals, context, job)
                entry_result = job.strategy.evaluate_entry(data, job.params, signals)
            except Exception as exc:
                logger.warning("Signal generation failed for %s (job %s): %s", job.key, job.id, exc)
                await pacer.maybe_yield(False)
                continue

            if entry_result is not None:
                collector.insert(CandidateResult(job.key, job.name, job.params, entry_result, context.params))
            else:
                run = PreparedRun(id=f"{job.key}-{job.id}", job=job, signals=signals, confirmation_params=context.params)
                if backend.batched:
                    pending.append(run)
                else:
                    for outcome in await backend.execute([run]):
                        collector.insert(_candidate_from(outcome.run, outcome.result))
            await pacer.maybe_yield(False)

        if pending:
            for outcome in await backend.execute(pending):
                collector.insert(_candidate_from(outcome.run, outcome.result))
            pending.clear()

        processed += len(batch_jobs)
        if pacer.should_update_ui(processed == total_runs):
            set_progress(10 + processed / total_runs * 85, f"Batch {batch_num}/{total_batches} ({processed}/{total_runs})")
            if flags.is_extreme_dataset:
                set_status(f"Processing {batch_num}/{total_batches} (ultra-memory mode)...")
            else:
                set_status(f"Processing batch {batch_num}/{total_batches}...")
        await pacer.maybe_yield(True)

    shown = collector.ranker.to_sorted_list(collector.options.top_n)
    set_progress(100, f"{total_runs}/{total_runs} runs" if total_runs > 0 else "Complete")
    tail = ["(memory-efficient mode)"] if flags.is_very_large_dataset else []
    status = _finish_status(processed, collector, len(shown), tail=tail)
    set_status(status)
    return shown, status


def _candidate_from(run: PreparedRun, result: BacktestResult) -> CandidateResult:
    return CandidateResult(
        key=run.job.key,
        name=run.job.name,
        params=run.job.params,
        result=result,
        confirmation_params=run.confirmation_params,
    )


async def run_multi_timeframe(
    *,
    datasets: Sequence[TimeframeDataset],
    scheduler: JobScheduler,
    collector: ResultCollector,
    confirmations: ConfirmationPlanner,
    flags: FinderDatasetFlags,
    pacer: RunPacer,
    backtest_fn: Callable[..., BacktestResult],
    compact_backtest_fn: Callable[..., BacktestResult],
    aggregate: Callable[[Sequence[BacktestResult], float], BacktestResult],
    initial_capital: float,
    position_size: float,
    commission: float,
    sizing: PositionSizing,
    set_progress: ProgressFn,
    set_status: StatusFn,
) -> tuple[list[FinderResult], str]:
    """Simulate each job once per timeframe locally and rank the aggregated result."""
    total_runs = scheduler.total_runs
    labels = [dataset.interval for dataset in datasets]
    # only a single simulated dataset has a last bar to adjust against
    collector.last_time = last_bar_time(datasets[0].data) if len(datasets) == 1 else None
    set_progress(12, f"Running {total_runs} runs across {len(datasets)} timeframes...")
    processed = 0

    while processed < total_runs:
        batch_jobs = scheduler.next_job_batch(flags.batch_size)
        if not batch_jobs:
            break
        for job in batch_jobs:
            job_params = confirmations.job_params()
            per_timeframe: list[BacktestResult] = []
            for dataset in datasets:
                try:
                    context = confirmations.context_for(dataset.data, job_params)
                    signals = job.strategy.generate_signals(dataset.data, job.params)
                    signals = confirmations.filter(dataset.data, signals, context, job)
                    result = job.strategy.evaluate_entry(dataset.data, job.params, signals)
                    if result is None:
                        fn = compact_backtest_fn if len(dataset.data) >= flags.compact_backtest_threshold else backtest_fn
                        result = fn(
                            dataset.data,
                            signals,
                            initial_capital,
                            position_size,
                            commission,
                            job.backtest_settings,
                            sizing,
                        )
                    per_timeframe.append(result)
                except Exception as exc:
                    logger.warning("Multi-timeframe run failed for %s @ %s: %s", job.key, dataset.interval, exc)

            if per_timeframe:
                combined = aggregate(per_timeframe, initial_capital)
                if collector.options.trade_filter_enabled and combined.total_trades < collector.options.min_trades:
                    collector.filtered_out += 1
                else:
                    collector.insert(
                        CandidateResult(
                            key=job.key,
                            name=job.name,
                            params=job.params,
                            result=combined,
                            confirmation_params=job_params,
                            timeframes=labels,
                        )
                    )

            processed += 1
            if processed % 5 == 0 or processed == total_runs:
                if pacer.should_update_ui(processed == total_runs):
                    set_progress(12 + processed / total_runs * 84, f"{processed}/{total_runs} runs ({len(datasets)} TF)")
                    set_status(f"Processing {processed}/{total_runs} runs across {len(datasets)} timeframes...")
            await pacer.maybe_yield(processed == total_runs)

    shown = collector.ranker.to_sorted_list(collector.options.top_n)
    status = _finish_status(processed, collector, len(shown), extra=[f"{len(datasets)} timeframes"])
    set_progress(100, f"{total_runs}/{total_runs} runs")
    set_status(status)
    return shown, status
