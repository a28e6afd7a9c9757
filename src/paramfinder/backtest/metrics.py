from __future__ import annotations

from dataclasses import replace
from typing import Optional, Sequence

import math

import numpy as np

from paramfinder.backtest.models import BacktestResult, EntryStats, EquityPoint, TradeRecord

SHARPE_MIN_TRADES = 5
SHARPE_MIN_STD = 1e-4
SHARPE_MAX_ABS = 8.0


def sanitize_sharpe(value: float) -> float:
    if value is None or not math.isfinite(value):
        return 0.0
    return float(max(-SHARPE_MAX_ABS, min(SHARPE_MAX_ABS, value)))


def sharpe_from_moments(avg: float, std: float, count: int) -> float:
    """
    Per-trade Sharpe ratio from the mean and sample deviation of returns.

    Too few observations or a near-zero deviation yield 0 rather than an
    exploding ratio; the result is clamped to +/- SHARPE_MAX_ABS.
    """

    if count < SHARPE_MIN_TRADES:
        return 0.0
    if not math.isfinite(avg) or not math.isfinite(std) or std < SHARPE_MIN_STD:
        return 0.0
    return sanitize_sharpe(avg / std)


def sharpe_from_returns(returns: Sequence[float]) -> float:
    arr = np.asarray(list(returns), dtype=float)
    arr = arr[np.isfinite(arr)]
    if arr.size < SHARPE_MIN_TRADES:
        return 0.0
    return sharpe_from_moments(float(arr.mean()), float(arr.std(ddof=1)), int(arr.size))


def equity_returns(equity_curve: Sequence[EquityPoint], initial_capital: float) -> list[float]:
    returns: list[float] = []
    previous = float(initial_capital)
    for point in equity_curve:
        value = float(point.value)
        if previous > 0 and math.isfinite(value):
            returns.append((value - previous) / previous)
        previous = value
    return returns


def normalize_result_sharpe(result: BacktestResult, initial_capital: float) -> BacktestResult:
    """Recompute Sharpe from trade returns, or from the equity curve when no trades are attached."""
    if result.trades:
        sharpe = sharpe_from_returns([trade.pnl_percent for trade in result.trades])
    elif len(result.equity_curve) > 1:
        sharpe = sharpe_from_returns(equity_returns(result.equity_curve, initial_capital))
    else:
        return result
    if sharpe == result.sharpe_ratio:
        return result
    return replace(result, sharpe_ratio=sharpe)


def compute_max_drawdown(values: Sequence[float], initial_capital: float) -> tuple[float, float]:
    """Return (absolute, percent) peak-to-trough drawdown of an equity series."""
    if not len(values):
        return 0.0, 0.0
    arr = np.asarray(values, dtype=float)
    peaks = np.maximum.accumulate(np.concatenate(([float(initial_capital)], arr)))[1:]
    drawdowns = peaks - arr
    with np.errstate(divide="ignore", invalid="ignore"):
        pct = np.where(peaks > 0, drawdowns / peaks * 100.0, 0.0)
    return float(max(0.0, drawdowns.max())), float(max(0.0, pct.max()))


def summarize_trades(trades: Sequence[TradeRecord], initial_capital: float) -> dict[str, float]:
    """
    Aggregate trade-level statistics.

    Trades with pnl > 0 are wins, every other trade counts as a loss. Win rate
    is returned in percent.
    """

    wins = [trade.pnl for trade in trades if trade.pnl > 0]
    losses = [trade.pnl for trade in trades if trade.pnl <= 0]
    total = len(trades)
    total_profit = float(sum(wins))
    total_loss = float(abs(sum(losses)))
    avg_win = total_profit / len(wins) if wins else 0.0
    avg_loss = total_loss / len(losses) if losses else 0.0
    win_rate = len(wins) / total if total else 0.0
    loss_rate = len(losses) / total if total else 0.0
    net_profit = total_profit - total_loss
    if total_loss > 0:
        profit_factor = total_profit / total_loss
    else:
        profit_factor = math.inf if total_profit > 0 else 0.0
    return {
        "total_trades": total,
        "winning_trades": len(wins),
        "losing_trades": len(losses),
        "avg_win": avg_win,
        "avg_loss": avg_loss,
        "win_rate": win_rate * 100.0,
        "net_profit": net_profit,
        "net_profit_percent": net_profit / initial_capital * 100.0 if initial_capital else 0.0,
        "expectancy": win_rate * avg_win - loss_rate * avg_loss,
        "avg_trade": net_profit / total if total else 0.0,
        "profit_factor": profit_factor,
    }


def compute_backtest_stats(
    trades: Sequence[TradeRecord],
    equity_curve: Sequence[EquityPoint],
    initial_capital: float,
    entry_stats: Optional[EntryStats] = None,
) -> BacktestResult:
    stats = summarize_trades(trades, initial_capital)
    max_dd, max_dd_pct = compute_max_drawdown([point.value for point in equity_curve], initial_capital)
    return BacktestResult(
        trades=list(trades),
        net_profit=stats["net_profit"],
        net_profit_percent=stats["net_profit_percent"],
        win_rate=stats["win_rate"],
        expectancy=stats["expectancy"],
        avg_trade=stats["avg_trade"],
        profit_factor=stats["profit_factor"],
        max_drawdown=max_dd,
        max_drawdown_percent=max_dd_pct,
        total_trades=int(stats["total_trades"]),
        winning_trades=int(stats["winning_trades"]),
        losing_trades=int(stats["losing_trades"]),
        avg_win=stats["avg_win"],
        avg_loss=stats["avg_loss"],
        sharpe_ratio=sharpe_from_returns([trade.pnl_percent for trade in trades]),
        equity_curve=list(equity_curve),
        entry_stats=entry_stats,
    )


def build_entry_backtest_result(entry_stats: EntryStats) -> BacktestResult:
    total = entry_stats.total_entries
    wins = entry_stats.wins
    losses = entry_stats.losses
    result = BacktestResult.empty()
    result.total_trades = total
    result.winning_trades = wins
    result.losing_trades = losses
    result.win_rate = wins / total * 100.0 if total > 0 else 0.0
    if losses > 0:
        result.profit_factor = wins / losses
    else:
        result.profit_factor = math.inf if wins > 0 else 0.0
    result.expectancy = (wins - losses) / total if total > 0 else 0.0
    result.entry_stats = entry_stats
    return result
