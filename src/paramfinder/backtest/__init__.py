from __future__ import annotations

from .metrics import (
    build_entry_backtest_result,
    compute_backtest_stats,
    compute_max_drawdown,
    normalize_result_sharpe,
    sanitize_sharpe,
    sharpe_from_moments,
    sharpe_from_returns,
    summarize_trades,
)
from .models import (
    BacktestResult,
    EntryStats,
    EquityPoint,
    PositionSizing,
    Signal,
    TradeRecord,
)
from .simulator import last_bar_time, run_backtest, run_backtest_compact

__all__ = [
    "BacktestResult",
    "EntryStats",
    "EquityPoint",
    "PositionSizing",
    "Signal",
    "TradeRecord",
    "build_entry_backtest_result",
    "compute_backtest_stats",
    "compute_max_drawdown",
    "last_bar_time",
    "normalize_result_sharpe",
    "run_backtest",
    "run_backtest_compact",
    "sanitize_sharpe",
    "sharpe_from_moments",
    "sharpe_from_returns",
    "summarize_trades",
]
