from __future__ import annotations

import math

import pytest

from paramfinder.backtest.models import BacktestResult
from paramfinder.finder.aggregate import UNBOUNDED_PROFIT_FACTOR, aggregate_finder_results


def _result(net: float, trades: int, win_rate: float, profit_factor: float, sharpe: float) -> BacktestResult:
    result = BacktestResult.empty()
    result.net_profit = net
    result.total_trades = trades
    result.win_rate = win_rate
    result.profit_factor = profit_factor
    result.sharpe_ratio = sharpe
    return result


def test_aggregate_empty_and_single() -> None:
    assert aggregate_finder_results([], 1_000.0).total_trades == 0
    single = _result(10.0, 3, 66.0, 2.0, 1.0)
    assert aggregate_finder_results([single], 1_000.0) is single


def test_aggregate_averages_metrics() -> None:
    combined = aggregate_finder_results(
        [_result(100.0, 10, 60.0, 2.0, 1.0), _result(-20.0, 5, 40.0, math.inf, 0.0)],
        1_000.0,
    )
    assert combined.net_profit == pytest.approx(40.0)
    assert combined.net_profit_percent == pytest.approx(4.0)
    assert combined.total_trades == 8
    assert combined.win_rate == pytest.approx(50.0)
    assert combined.winning_trades == 4
    assert combined.losing_trades == 4
    assert combined.profit_factor == pytest.approx((2.0 + UNBOUNDED_PROFIT_FACTOR) / 2)
    assert combined.sharpe_ratio == pytest.approx(0.5)
    assert combined.trades == []
