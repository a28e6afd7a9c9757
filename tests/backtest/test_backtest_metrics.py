from __future__ import annotations

import math

import pandas as pd
import pytest

from paramfinder.backtest.metrics import (
    build_entry_backtest_result,
    compute_backtest_stats,
    compute_max_drawdown,
    equity_returns,
    normalize_result_sharpe,
    sharpe_from_returns,
    summarize_trades,
)
from paramfinder.backtest.models import BacktestResult, EntryStats, EquityPoint, TradeRecord


def _trade(pnl: float, hour: int = 0) -> TradeRecord:
    entry = pd.Timestamp("2024-01-01") + pd.Timedelta(hours=hour)
    return TradeRecord(
        id=f"t{hour}",
        direction="long",
        entry_time=entry,
        entry_price=100.0,
        exit_time=entry + pd.Timedelta(hours=1),
        exit_price=100.0 + pnl / 10.0,
        pnl=pnl,
        pnl_percent=pnl / 10.0,
        size=10.0,
    )


def test_summarize_trades_counts_zero_pnl_as_loss() -> None:
    stats = summarize_trades([_trade(10), _trade(-5, 1), _trade(0, 2), _trade(20, 3)], 1_000.0)
    assert stats["total_trades"] == 4
    assert stats["winning_trades"] == 2
    assert stats["losing_trades"] == 2
    assert stats["win_rate"] == pytest.approx(50.0)
    assert stats["avg_win"] == pytest.approx(15.0)
    assert stats["avg_loss"] == pytest.approx(2.5)
    assert stats["expectancy"] == pytest.approx(6.25)
    assert stats["net_profit"] == pytest.approx(25.0)
    assert stats["net_profit_percent"] == pytest.approx(2.5)
    assert stats["profit_factor"] == pytest.approx(6.0)
    assert stats["avg_trade"] == pytest.approx(6.25)


def test_profit_factor_edges() -> None:
    assert math.isinf(summarize_trades([_trade(5), _trade(7, 1)], 1_000.0)["profit_factor"])
    assert summarize_trades([], 1_000.0)["profit_factor"] == 0.0
    assert summarize_trades([_trade(0)], 1_000.0)["profit_factor"] == 0.0


def test_sharpe_guards_and_clamp() -> None:
    assert sharpe_from_returns([1.0, 2.0, 3.0, 4.0]) == 0.0
    assert sharpe_from_returns([2.0] * 10) == 0.0
    assert sharpe_from_returns([10.0, 10.001, 10.0, 10.001, 10.0]) == 8.0
    assert sharpe_from_returns([-10.0, -10.001, -10.0, -10.001, -10.0]) == -8.0


def test_sharpe_ignores_non_finite_returns() -> None:
    value = sharpe_from_returns([1.0, 2.0, float("nan"), 3.0, 4.0, 5.0])
    assert value == pytest.approx(3.0 / 1.5811388, rel=1e-6)


def test_max_drawdown_uses_initial_capital_as_first_peak() -> None:
    assert compute_max_drawdown([1_100.0, 990.0, 1_200.0], 1_000.0) == pytest.approx((110.0, 10.0))
    assert compute_max_drawdown([900.0], 1_000.0) == pytest.approx((100.0, 10.0))
    assert compute_max_drawdown([], 1_000.0) == (0.0, 0.0)


def test_normalize_sharpe_prefers_trades_then_equity() -> None:
    trades = [_trade(p, i) for i, p in enumerate([5, -2, 8, 3, -1, 6])]
    result = compute_backtest_stats(trades, [], 1_000.0)
    result.sharpe_ratio = 99.0
    normalized = normalize_result_sharpe(result, 1_000.0)
    assert normalized.sharpe_ratio == pytest.approx(sharpe_from_returns([t.pnl_percent for t in trades]))
    assert result.sharpe_ratio == 99.0

    times = pd.date_range("2024-01-01", periods=6, freq="h")
    curve = [EquityPoint(t, v) for t, v in zip(times, [1_010.0, 1_000.0, 1_020.0, 1_030.0, 1_015.0, 1_040.0])]
    bare = BacktestResult.empty()
    bare.equity_curve = curve
    bare.sharpe_ratio = 3.0
    expected = sharpe_from_returns(equity_returns(curve, 1_000.0))
    assert normalize_result_sharpe(bare, 1_000.0).sharpe_ratio == pytest.approx(expected)


def test_normalize_sharpe_leaves_single_point_curve() -> None:
    bare = BacktestResult.empty()
    bare.equity_curve = [EquityPoint(pd.Timestamp("2024-01-01"), 1_050.0)]
    bare.sharpe_ratio = 1.25
    assert normalize_result_sharpe(bare, 1_000.0) is bare


def test_entry_result_from_entry_stats() -> None:
    result = build_entry_backtest_result(EntryStats(total_entries=10, wins=6, losses=4))
    assert result.total_trades == 10
    assert result.win_rate == pytest.approx(60.0)
    assert result.profit_factor == pytest.approx(1.5)
    assert result.expectancy == pytest.approx(0.2)
    assert math.isinf(build_entry_backtest_result(EntryStats(3, 3, 0)).profit_factor)
