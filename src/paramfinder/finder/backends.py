from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Literal, Mapping, Optional, Sequence

import logging
import math

import httpx
import pandas as pd

from paramfinder.backtest.models import BacktestResult, PositionSizing, Signal
from paramfinder.finder.scheduler import FinderDatasetFlags, ParamJob
from paramfinder.finder.types import FinderOptions, StrategyParams
from paramfinder.remote.client import BatchItem, RemoteEngineClient, RemoteEngineError

logger = logging.getLogger(__name__)

BacktestFn = Callable[..., BacktestResult]

CONSISTENCY_WIN_RATE_TOLERANCE = 1.0
CONSISTENCY_AVG_TRADE_FLOOR = 0.01
CONSISTENCY_AVG_TRADE_RATIO = 0.15
CONSISTENCY_MAX_ABS_SHARPE = 8.0


def is_backtest_result_consistent(result: BacktestResult) -> bool:
    """Cross-check aggregate fields of an externally computed result."""
    total = result.total_trades
    if total != result.winning_trades + result.losing_trades:
        return False
    if total > 0:
        expected_win_rate = result.winning_trades / total * 100.0
        if abs(expected_win_rate - result.win_rate) > CONSISTENCY_WIN_RATE_TOLERANCE:
            return False
        expected_avg = result.net_profit / total
        tolerance = max(CONSISTENCY_AVG_TRADE_FLOOR, abs(expected_avg) * CONSISTENCY_AVG_TRADE_RATIO)
        if abs(expected_avg - result.avg_trade) > tolerance:
            return False
    sharpe = result.sharpe_ratio
    if sharpe is None or not math.isfinite(sharpe) or abs(sharpe) > CONSISTENCY_MAX_ABS_SHARPE:
        return False
    return True


@dataclass(slots=True)
class PreparedRun:
    id: str
    job: ParamJob
    signals: list[Signal]
    confirmation_params: Optional[dict[str, StrategyParams]] = None


@dataclass(slots=True)
class RunOutcome:
    run: PreparedRun
    result: BacktestResult
    source: Literal["local", "remote"] = "local"


@dataclass(slots=True)
class BackendStats:
    local_runs: int = 0
    remote_accepted: int = 0
    inconsistent: int = 0
    missing: int = 0
    unknown_ids: int = 0
    batch_fallbacks: int = 0
    failures: int = 0


class ExecutionBackend(ABC):
    """Simulates prepared runs; signal generation always happens before this point."""

    name: str = "backend"
    batched: bool = False

    def __init__(self) -> None:
        self.stats = BackendStats()

    @abstractmethod
    async def execute(self, runs: Sequence[PreparedRun]) -> list[RunOutcome]:
        ...


class LocalBackend(ExecutionBackend):
    name = "local"
    batched = False

    def __init__(
        self,
        data: pd.DataFrame,
        backtest_fn: BacktestFn,
        initial_capital: float,
        position_size: float,
        commission: float,
        sizing: PositionSizing,
    ) -> None:
        super().__init__()
        self.data = data
        self.backtest_fn = backtest_fn
        self.initial_capital = initial_capital
        self.position_size = position_size
        self.commission = commission
        self.sizing = sizing

    def simulate(self, run: PreparedRun) -> Optional[BacktestResult]:
        try:
            result = self.backtest_fn(
                self.data,
                run.signals,
                self.initial_capital,
                self.position_size,
                self.commission,
                run.job.backtest_settings,
                self.sizing,
            )
        except Exception as exc:
            self.stats.failures += 1
            logger.warning("Backtest failed for %s (job %s): %s", run.job.key, run.job.id, exc)
            return None
        self.stats.local_runs += 1
        return result

    async def execute(self, runs: Sequence[PreparedRun]) -> list[RunOutcome]:
        outcomes: list[RunOutcome] = []
        for run in runs:
            result = self.simulate(run)
            if result is not None:
                outcomes.append(RunOutcome(run=run, result=result, source="local"))
        return outcomes


class RemoteBackend(ExecutionBackend):
    """
    Ships signal lists to the remote engine in one call per batch.

    The wrapped ``LocalBackend`` recomputes any run whose remote result is
    missing or fails the consistency check, and the whole batch when the call
    itself fails.
    """

    name = "remote"
    batched = True

    def __init__(
        self,
        local: LocalBackend,
        client: RemoteEngineClient,
        base_settings: Mapping[str, Any],
        *,
        cache_id: Optional[str] = None,
        compact: bool = True,
    ) -> None:
        super().__init__()
        self.local = local
        self.stats = local.stats
        self.client = client
        self.base_settings = base_settings
        self.cache_id = cache_id
        self.compact = compact

    async def _call(self, items: list[BatchItem]):
        local = self.local
        if self.cache_id:
            return await self.client.run_cached_batch_backtest(
                self.cache_id,
                items,
                local.initial_capital,
                local.position_size,
                local.commission,
                self.base_settings,
                local.sizing,
                self.compact,
            )
        return await self.client.run_batch_backtest(
            local.data,
            items,
            local.initial_capital,
            local.position_size,
            local.commission,
            self.base_settings,
            local.sizing,
            self.compact,
        )

    async def execute(self, runs: Sequence[PreparedRun]) -> list[RunOutcome]:
        if not runs:
            return []
        items = [BatchItem(id=run.id, signals=run.signals, settings=run.job.remote_settings) for run in runs]
        try:
            response = await self._call(items)
        except (httpx.HTTPError, RemoteEngineError) as exc:
            logger.warning("Remote batch raised %s; running %d job(s) locally", exc, len(runs))
            response = None

        if response is None or not response.results:
            self.stats.batch_fallbacks += 1
            return await self.local.execute(runs)

        by_id = {run.id: run for run in runs}
        completed: set[str] = set()
        outcomes: list[RunOutcome] = []
        for entry in response.results:
            run = by_id.get(entry.id)
            if run is None:
                self.stats.unknown_ids += 1
                logger.warning("Remote batch returned unknown run id %s", entry.id)
                continue
            if entry.id in completed:
                continue
            completed.add(entry.id)
            if not is_backtest_result_consistent(entry.result):
                self.stats.inconsistent += 1
                logger.warning("Remote result inconsistent for %s; recomputing locally", run.job.key)
                outcomes.extend(await self.local.execute([run]))
                continue
            self.stats.remote_accepted += 1
            outcomes.append(RunOutcome(run=run, result=entry.result, source="remote"))

        missing = [run for run in runs if run.id not in completed]
        if missing:
            self.stats.missing += len(missing)
            outcomes.extend(await self.local.execute(missing))
        return outcomes


@dataclass(slots=True)
class EnginePlan:
    mode: Literal["local", "remote_direct", "remote_cached"]
    reason: str
    cache_id: Optional[str] = None

    @property
    def remote(self) -> bool:
        return self.mode != "local"


async def select_execution_backend(
    local: LocalBackend,
    client: Optional[RemoteEngineClient],
    flags: FinderDatasetFlags,
    options: FinderOptions,
    *,
    requires_local: bool,
    remote_settings: Mapping[str, Any],
) -> tuple[ExecutionBackend, EnginePlan]:
    """Decide once per run whether batches go to the remote engine."""
    if client is None:
        return local, EnginePlan(mode="local", reason="no remote engine configured")
    if requires_local:
        logger.info("Realism settings enabled; forcing local engine.")
        return local, EnginePlan(mode="local", reason="realism settings enabled")
    if flags.is_extreme_dataset:
        logger.info("Extreme dataset (%d bars); using local ultra-memory mode.", flags.data_size)
        return local, EnginePlan(mode="local", reason="extreme dataset")
    if "sharpeRatio" in options.sort_priority and flags.should_use_compact_backtest:
        logger.info("Sharpe sort in compact mode; using local engine for Sharpe consistency.")
        return local, EnginePlan(mode="local", reason="sharpe sort in compact mode")

    if not await client.check_health():
        return local, EnginePlan(mode="local", reason="remote engine unavailable")

    if not flags.is_large_dataset:
        backend = RemoteBackend(local, client, remote_settings, compact=flags.remote_compact_mode)
        return backend, EnginePlan(mode="remote_direct", reason="remote engine healthy")

    cache_id = await client.cache_data(local.data)
    if cache_id is None:
        logger.warning("Failed to cache %d bars remotely; using local engine.", flags.data_size)
        return local, EnginePlan(mode="local", reason="remote cache upload failed")
    logger.info("Data cached remotely with id %s (%d bars)", cache_id, flags.data_size)
    backend = RemoteBackend(local, client, remote_settings, cache_id=cache_id, compact=flags.remote_compact_mode)
    return backend, EnginePlan(mode="remote_cached", reason="large dataset cached remotely", cache_id=cache_id)
