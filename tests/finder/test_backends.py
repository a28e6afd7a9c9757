from __future__ import annotations

import math

import httpx
import pytest

from paramfinder.backtest.models import BacktestResult, PositionSizing, Signal
from paramfinder.backtest.simulator import run_backtest
from paramfinder.finder.backends import (
    LocalBackend,
    PreparedRun,
    RemoteBackend,
    is_backtest_result_consistent,
    select_execution_backend,
)
from paramfinder.finder.scheduler import ParamJob, compute_dataset_flags
from paramfinder.finder.strategies import FunctionStrategy, SignalStrategy
from paramfinder.finder.types import FinderOptions
from paramfinder.remote.client import BatchEntry, BatchResponse


def _result(total: int, wins: int, losses: int, **overrides) -> BacktestResult:
    result = BacktestResult.empty()
    result.total_trades = total
    result.winning_trades = wins
    result.losing_trades = losses
    result.win_rate = wins / total * 100.0 if total else 0.0
    for name, value in overrides.items():
        setattr(result, name, value)
    return result


def test_consistency_check() -> None:
    assert is_backtest_result_consistent(_result(10, 6, 4, net_profit=100.0, avg_trade=10.0, sharpe_ratio=1.2))
    assert not is_backtest_result_consistent(_result(10, 6, 3))
    assert not is_backtest_result_consistent(_result(10, 6, 4, win_rate=75.0))
    assert not is_backtest_result_consistent(_result(10, 6, 4, net_profit=100.0, avg_trade=12.0))
    assert is_backtest_result_consistent(_result(10, 6, 4, net_profit=100.0, avg_trade=11.4))
    assert not is_backtest_result_consistent(_result(0, 0, 0, sharpe_ratio=math.nan))
    assert not is_backtest_result_consistent(_result(0, 0, 0, sharpe_ratio=8.5))
    assert is_backtest_result_consistent(_result(0, 0, 0, sharpe_ratio=-8.0))


class _FakeClient:
    def __init__(self, *, healthy=True, cache_id="cache-1", responder=None) -> None:
        self.healthy = healthy
        self.cache_id = cache_id
        self.responder = responder
        self.calls: list[tuple[str, list[str]]] = []

    async def check_health(self) -> bool:
        return self.healthy

    async def cache_data(self, data):
        return self.cache_id

    async def run_batch_backtest(self, data, items, *args):
        self.calls.append(("direct", [item.id for item in items]))
        return self.responder(items)

    async def run_cached_batch_backtest(self, cache_id, items, *args):
        self.calls.append((cache_id, [item.id for item in items]))
        return self.responder(items)


def _local(frame) -> LocalBackend:
    return LocalBackend(frame, run_backtest, 1_000.0, 100.0, 0.0, PositionSizing())


def _runs(frame, count: int) -> list[PreparedRun]:
    strategy = SignalStrategy(FunctionStrategy(lambda data, params: [], {}))
    signals = [
        Signal(time=frame.index[0], type="buy", price=float(frame["close"].iloc[0])),
        Signal(time=frame.index[2], type="sell", price=float(frame["close"].iloc[2])),
    ]
    runs = []
    for idx in range(count):
        job = ParamJob(id=idx, key="k", name="K", params={"p": idx}, backtest_settings={}, remote_settings={}, strategy=strategy)
        runs.append(PreparedRun(id=f"k-{idx}", job=job, signals=signals))
    return runs


def _good(total: int = 4) -> BacktestResult:
    return _result(total, 2, 2, net_profit=40.0, avg_trade=10.0, sharpe_ratio=0.5)


@pytest.mark.asyncio
async def test_local_backend_simulates_every_run(ohlcv_factory) -> None:
    frame = ohlcv_factory([100, 101, 102, 103])
    local = _local(frame)
    outcomes = await local.execute(_runs(frame, 3))
    assert [outcome.source for outcome in outcomes] == ["local"] * 3
    assert outcomes[0].result.net_profit == pytest.approx(20.0)
    assert local.stats.local_runs == 3


@pytest.mark.asyncio
async def test_local_backend_skips_failing_simulations(ohlcv_factory) -> None:
    frame = ohlcv_factory([100, 101, 102])

    def _boom(*args, **kwargs):
        raise RuntimeError("boom")

    local = LocalBackend(frame, _boom, 1_000.0, 100.0, 0.0, PositionSizing())
    assert await local.execute(_runs(frame, 2)) == []
    assert local.stats.failures == 2


@pytest.mark.asyncio
async def test_remote_results_accepted_and_inconsistent_recomputed(ohlcv_factory) -> None:
    frame = ohlcv_factory([100, 101, 102, 103])

    def _respond(items):
        return BatchResponse(
            results=[
                BatchEntry(id=items[0].id, result=_good()),
                BatchEntry(id=items[1].id, result=_result(10, 6, 3)),
                BatchEntry(id="unknown", result=_good()),
            ]
        )

    local = _local(frame)
    backend = RemoteBackend(local, _FakeClient(responder=_respond), {})
    outcomes = await backend.execute(_runs(frame, 3))
    sources = {outcome.run.id: outcome.source for outcome in outcomes}
    assert sources == {"k-0": "remote", "k-1": "local", "k-2": "local"}
    assert local.stats.remote_accepted == 1
    assert local.stats.inconsistent == 1
    assert local.stats.missing == 1
    assert local.stats.unknown_ids == 1
    assert local.stats.local_runs == 2


@pytest.mark.asyncio
async def test_remote_batch_failure_falls_back_for_whole_batch(ohlcv_factory) -> None:
    frame = ohlcv_factory([100, 101, 102, 103])

    def _raise(items):
        raise httpx.ConnectError("down")

    local = _local(frame)
    outcomes = await RemoteBackend(local, _FakeClient(responder=_raise), {}).execute(_runs(frame, 2))
    assert [outcome.source for outcome in outcomes] == ["local", "local"]
    assert local.stats.batch_fallbacks == 1

    local_none = _local(frame)
    outcomes = await RemoteBackend(local_none, _FakeClient(responder=lambda items: None), {}).execute(_runs(frame, 2))
    assert len(outcomes) == 2
    assert local_none.stats.batch_fallbacks == 1


@pytest.mark.asyncio
async def test_engine_selection_policy(ohlcv_factory) -> None:
    frame = ohlcv_factory([100, 101, 102])
    local = _local(frame)
    small = compute_dataset_flags(1_000, {}, FinderOptions(), False)
    large = compute_dataset_flags(600_000, {}, FinderOptions(), False)
    extreme = compute_dataset_flags(4_500_000, {}, FinderOptions(), False)
    no_sharpe = FinderOptions(sort_priority=["netProfit"])

    backend, plan = await select_execution_backend(local, None, small, no_sharpe, requires_local=False, remote_settings={})
    assert backend is local and plan.mode == "local"

    backend, plan = await select_execution_backend(local, _FakeClient(), small, no_sharpe, requires_local=True, remote_settings={})
    assert plan.mode == "local" and "realism" in plan.reason

    backend, plan = await select_execution_backend(local, _FakeClient(), extreme, no_sharpe, requires_local=False, remote_settings={})
    assert plan.mode == "local"

    backend, plan = await select_execution_backend(local, _FakeClient(), large, FinderOptions(), requires_local=False, remote_settings={})
    assert plan.mode == "local" and "sharpe" in plan.reason

    backend, plan = await select_execution_backend(
        local, _FakeClient(healthy=False), small, no_sharpe, requires_local=False, remote_settings={}
    )
    assert plan.mode == "local"

    backend, plan = await select_execution_backend(local, _FakeClient(), small, no_sharpe, requires_local=False, remote_settings={})
    assert plan.mode == "remote_direct" and isinstance(backend, RemoteBackend)

    backend, plan = await select_execution_backend(local, _FakeClient(), large, no_sharpe, requires_local=False, remote_settings={})
    assert plan.mode == "remote_cached" and plan.cache_id == "cache-1"
    assert backend.cache_id == "cache-1"

    backend, plan = await select_execution_backend(
        local, _FakeClient(cache_id=None), large, no_sharpe, requires_local=False, remote_settings={}
    )
    assert plan.mode == "local" and backend is local
