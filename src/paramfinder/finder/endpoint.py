from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional

import pandas as pd

from paramfinder.backtest.metrics import sharpe_from_returns, summarize_trades
from paramfinder.backtest.models import BacktestResult


@dataclass(slots=True)
class EndpointAdjustment:
    result: BacktestResult
    adjusted: bool
    removed_trades: int


def build_selection_result(
    raw: BacktestResult,
    last_time: Optional[pd.Timestamp],
    initial_capital: float,
) -> EndpointAdjustment:
    """
    Drop trades exiting on or after the final bar and rebuild trade statistics.

    Only the trade-derived fields are recomputed; the equity curve and
    drawdown of ``raw`` are kept. A result with nothing to remove is returned
    as-is so re-applying the adjustment is a no-op.
    """

    if last_time is None or not raw.trades:
        return EndpointAdjustment(result=raw, adjusted=False, removed_trades=0)

    kept = [trade for trade in raw.trades if trade.exit_time < last_time]
    removed = len(raw.trades) - len(kept)
    if removed <= 0:
        return EndpointAdjustment(result=raw, adjusted=False, removed_trades=0)

    stats = summarize_trades(kept, initial_capital)
    adjusted = replace(
        raw,
        trades=kept,
        net_profit=stats["net_profit"],
        net_profit_percent=stats["net_profit_percent"],
        win_rate=stats["win_rate"],
        expectancy=stats["expectancy"],
        avg_trade=stats["avg_trade"],
        profit_factor=stats["profit_factor"],
        total_trades=int(stats["total_trades"]),
        winning_trades=int(stats["winning_trades"]),
        losing_trades=int(stats["losing_trades"]),
        avg_win=stats["avg_win"],
        avg_loss=stats["avg_loss"],
        sharpe_ratio=sharpe_from_returns([trade.pnl_percent for trade in kept]),
    )
    return EndpointAdjustment(result=adjusted, adjusted=True, removed_trades=removed)
