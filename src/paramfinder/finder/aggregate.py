from __future__ import annotations

from typing import Sequence

import math

import numpy as np

from paramfinder.backtest.models import BacktestResult

# profit factor used for a timeframe with no losing trades
UNBOUNDED_PROFIT_FACTOR = 4.0


def _mean(values: Sequence[float]) -> float:
    return float(np.mean(values)) if len(values) else 0.0


def aggregate_finder_results(results: Sequence[BacktestResult], initial_capital: float) -> BacktestResult:
    """
    Combine per-timeframe results into one candidate by averaging metrics.

    Trade lists and equity curves are not merged; the averaged trade count is
    rounded and split into wins/losses by the averaged win rate.
    """

    if not results:
        return BacktestResult.empty()
    if len(results) == 1:
        return results[0]

    avg_net = _mean([r.net_profit for r in results])
    if initial_capital > 0:
        avg_net_pct = avg_net / initial_capital * 100.0
    else:
        avg_net_pct = _mean([r.net_profit_percent for r in results])
    avg_trades = max(0, int(math.floor(_mean([r.total_trades for r in results]) + 0.5)))
    avg_win_rate = _mean([r.win_rate for r in results])
    winning = max(0, int(math.floor(avg_win_rate / 100.0 * avg_trades + 0.5)))
    profit_factors = [
        max(0.0, r.profit_factor) if math.isfinite(r.profit_factor) else UNBOUNDED_PROFIT_FACTOR
        for r in results
    ]
    return BacktestResult(
        trades=[],
        net_profit=avg_net,
        net_profit_percent=avg_net_pct,
        win_rate=avg_win_rate,
        expectancy=_mean([r.expectancy for r in results]),
        avg_trade=_mean([r.avg_trade for r in results]),
        profit_factor=_mean(profit_factors),
        max_drawdown=_mean([r.max_drawdown for r in results]),
        max_drawdown_percent=_mean([r.max_drawdown_percent for r in results]),
        total_trades=avg_trades,
        winning_trades=winning,
        losing_trades=max(0, avg_trades - winning),
        avg_win=_mean([r.avg_win for r in results]),
        avg_loss=_mean([r.avg_loss for r in results]),
        sharpe_ratio=_mean([r.sharpe_ratio for r in results]),
    )
