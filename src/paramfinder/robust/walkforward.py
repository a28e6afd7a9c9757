from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Sequence

import math

import numpy as np
import pandas as pd

from paramfinder.backtest.metrics import compute_backtest_stats
from paramfinder.backtest.models import BacktestResult, EquityPoint, PositionSizing, TradeRecord
from paramfinder.finder.strategies import StrategyVariant

BacktestFn = Callable[..., BacktestResult]


@dataclass(slots=True, frozen=True)
class WalkForwardFold:
    index: int
    start: int
    end: int


def make_fold_splits(
    n_bars: int,
    folds: int,
    warmup_fraction: float = 0.2,
    min_fold_bars: int = 20,
) -> List[WalkForwardFold]:
    """
    Cut the bars after a warm-up prefix into consecutive, equal test windows.

    Fewer folds are produced when the data cannot fit ``folds`` windows of
    ``min_fold_bars``; leftover bars extend the warm-up so the last window ends
    on the last bar.
    """

    warmup = int(n_bars * warmup_fraction)
    usable = n_bars - warmup
    count = min(int(folds), usable // max(1, int(min_fold_bars)))
    if count < 1:
        raise ValueError(f"Not enough bars for a walk-forward fold: have {n_bars}, need {warmup + min_fold_bars}.")
    size = usable // count
    start = n_bars - size * count
    return [WalkForwardFold(index=i, start=start + i * size, end=start + (i + 1) * size) for i in range(count)]


def holdout_window(n_bars: int, fraction: float, min_bars: int) -> tuple[int, int]:
    size = max(int(min_bars), int(math.floor(n_bars * fraction)))
    if size >= n_bars:
        raise ValueError(f"Holdout of {size} bars leaves no history in {n_bars} bars.")
    return n_bars - size, n_bars


@dataclass(slots=True)
class WindowBacktester:
    """Backtests fixed parameters over index windows of one dataset."""

    data: pd.DataFrame
    strategy: StrategyVariant
    params: Mapping[str, float]
    settings: Mapping[str, Any]
    backtest_fn: BacktestFn
    position_size: float
    commission: float
    sizing: PositionSizing
    lookback: int = 250

    def run(self, start: int, end: int, capital: float) -> BacktestResult:
        """
        Simulate bars ``[start, end)`` starting from ``capital``.

        Up to ``lookback`` earlier bars are handed to the strategy for indicator
        warm-up, but only signals and trade entries inside the window count.
        """

        buffered = self.data.iloc[max(0, start - self.lookback) : end]
        window_start = self.data.index[start]
        window_end = self.data.index[end - 1]
        signals = self.strategy.generate_signals(buffered, self.params)
        window_signals = [sig for sig in signals if window_start <= sig.time <= window_end]
        full = self.backtest_fn(
            buffered,
            window_signals,
            capital,
            self.position_size,
            self.commission,
            self.settings,
            self.sizing,
        )
        trades = [trade for trade in full.trades if trade.entry_time >= window_start]
        equity = [point for point in full.equity_curve if point.time >= window_start]
        return compute_backtest_stats(trades, equity, capital)


@dataclass(slots=True)
class WalkForwardEvaluation:
    folds: list[BacktestResult]
    combined: BacktestResult
    median_expectancy: float
    profitable_fold_ratio: float
    dd_breach_rate: float
    stability_penalty: float


def fold_stability_penalty(expectancies: Sequence[float]) -> float:
    arr = np.asarray(list(expectancies), dtype=float)
    if arr.size == 0:
        return 0.0
    return float(arr.std(ddof=0) / (abs(float(np.median(arr))) + 1.0))


def run_fixed_param_walk_forward(
    backtester: WindowBacktester,
    splits: Sequence[WalkForwardFold],
    initial_capital: float,
    fold_drawdown_cap: float,
) -> WalkForwardEvaluation:
    """Run every fold in order, carrying capital forward, and score the out-of-sample folds."""
    if not splits:
        raise ValueError("Walk-forward requires at least one fold.")
    capital = float(initial_capital)
    fold_results: list[BacktestResult] = []
    trades: list[TradeRecord] = []
    equity: list[EquityPoint] = []
    for split in splits:
        result = backtester.run(split.start, split.end, capital)
        fold_results.append(result)
        trades.extend(result.trades)
        equity.extend(result.equity_curve)
        if result.equity_curve and result.equity_curve[-1].value > 0:
            capital = float(result.equity_curve[-1].value)

    combined = compute_backtest_stats(trades, equity, initial_capital)
    expectancies = [fold.expectancy for fold in fold_results]
    count = len(fold_results)
    profitable = sum(1 for fold in fold_results if fold.expectancy > 0 and fold.net_profit > 0)
    breaches = sum(1 for fold in fold_results if fold.max_drawdown_percent > fold_drawdown_cap)
    return WalkForwardEvaluation(
        folds=fold_results,
        combined=combined,
        median_expectancy=float(np.median(expectancies)),
        profitable_fold_ratio=profitable / count,
        dd_breach_rate=breaches / count,
        stability_penalty=fold_stability_penalty(expectancies),
    )
