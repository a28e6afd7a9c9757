from __future__ import annotations

import pandas as pd
import pytest

from paramfinder.backtest.models import BacktestResult, EquityPoint, PositionSizing
from paramfinder.backtest.simulator import run_backtest
from paramfinder.finder.strategies import SignalStrategy
from paramfinder.robust.walkforward import (
    WalkForwardFold,
    WindowBacktester,
    fold_stability_penalty,
    holdout_window,
    make_fold_splits,
    run_fixed_param_walk_forward,
)


def _backtester(frame, strategy) -> WindowBacktester:
    return WindowBacktester(
        data=frame,
        strategy=SignalStrategy(strategy),
        params=dict(strategy.default_params),
        settings={},
        backtest_fn=run_backtest,
        position_size=100.0,
        commission=0.0,
        sizing=PositionSizing(),
    )


def test_fold_splits_cover_the_tail() -> None:
    folds = make_fold_splits(600, 3)
    assert [(f.start, f.end) for f in folds] == [(120, 280), (280, 440), (440, 600)]
    assert [f.index for f in folds] == [0, 1, 2]


def test_fold_splits_shrink_to_fit() -> None:
    folds = make_fold_splits(100, 6, 0.2, 20)
    assert len(folds) == 4
    assert folds[0] == WalkForwardFold(index=0, start=20, end=40)
    assert folds[-1].end == 100


def test_fold_splits_push_leftover_into_warmup() -> None:
    folds = make_fold_splits(103, 3, 0.2, 20)
    assert [(f.start, f.end) for f in folds] == [(22, 49), (49, 76), (76, 103)]


def test_fold_splits_require_one_window() -> None:
    with pytest.raises(ValueError):
        make_fold_splits(30, 3, 0.5, 20)


def test_holdout_window() -> None:
    assert holdout_window(600, 0.3, 40) == (420, 600)
    assert holdout_window(100, 0.3, 40) == (60, 100)
    with pytest.raises(ValueError):
        holdout_window(40, 0.3, 40)


def test_fold_stability_penalty() -> None:
    assert fold_stability_penalty([]) == 0.0
    assert fold_stability_penalty([3.0, 3.0, 3.0]) == 0.0
    assert fold_stability_penalty([0.0, 2.0]) == pytest.approx(0.5)


def test_window_backtest_only_counts_window_entries(rising_frame, cycle_strategy) -> None:
    result = _backtester(rising_frame, cycle_strategy).run(300, 400, 10_000.0)
    window_start = rising_frame.index[300]
    assert result.total_trades > 0
    assert result.net_profit > 0
    assert all(trade.entry_time >= window_start for trade in result.trades)
    assert all(trade.exit_time <= rising_frame.index[399] for trade in result.trades)
    assert result.equity_curve[0].time >= window_start


def test_walk_forward_on_rising_prices(rising_frame, cycle_strategy) -> None:
    evaluation = run_fixed_param_walk_forward(
        _backtester(rising_frame, cycle_strategy),
        make_fold_splits(len(rising_frame), 3),
        10_000.0,
        30.0,
    )
    assert len(evaluation.folds) == 3
    assert evaluation.profitable_fold_ratio == 1.0
    assert evaluation.dd_breach_rate == 0.0
    assert evaluation.median_expectancy > 0
    assert evaluation.combined.total_trades == sum(fold.total_trades for fold in evaluation.folds)


def test_walk_forward_on_falling_prices(falling_frame, cycle_strategy) -> None:
    evaluation = run_fixed_param_walk_forward(
        _backtester(falling_frame, cycle_strategy),
        make_fold_splits(len(falling_frame), 3),
        10_000.0,
        30.0,
    )
    assert evaluation.profitable_fold_ratio == 0.0
    assert evaluation.median_expectancy < 0


class _GrowingBacktester:
    def __init__(self) -> None:
        self.capitals: list[float] = []

    def run(self, start: int, end: int, capital: float) -> BacktestResult:
        self.capitals.append(capital)
        result = BacktestResult.empty()
        result.equity_curve = [EquityPoint(time=pd.Timestamp("2024-01-01") + pd.Timedelta(hours=end), value=capital * 1.1)]
        return result


def test_walk_forward_carries_capital_between_folds() -> None:
    backtester = _GrowingBacktester()
    run_fixed_param_walk_forward(backtester, make_fold_splits(600, 3), 1_000.0, 30.0)
    assert backtester.capitals == pytest.approx([1_000.0, 1_100.0, 1_210.0])


def test_walk_forward_requires_folds(rising_frame, cycle_strategy) -> None:
    with pytest.raises(ValueError):
        run_fixed_param_walk_forward(_backtester(rising_frame, cycle_strategy), [], 10_000.0, 30.0)
