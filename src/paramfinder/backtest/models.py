from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Optional

import math

import pandas as pd

SignalType = Literal["buy", "sell"]
TradeDirection = Literal["long", "short"]


def _to_timestamp(value: Any) -> pd.Timestamp:
    if isinstance(value, pd.Timestamp):
        return value
    if isinstance(value, (int, float)):
        # remote engine ships unix seconds
        return pd.Timestamp(int(value), unit="s")
    return pd.Timestamp(value)


def _to_float(value: Any, default: float = 0.0) -> float:
    if value is None:
        return default
    if isinstance(value, str) and value.lower() in {"infinity", "inf"}:
        return math.inf
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass(slots=True)
class Signal:
    time: pd.Timestamp
    type: SignalType
    price: float
    reason: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "time": int(self.time.timestamp()),
            "type": self.type,
            "price": float(self.price),
        }
        if self.reason:
            payload["reason"] = self.reason
        return payload


@dataclass(slots=True)
class TradeRecord:
    id: str
    direction: TradeDirection
    entry_time: pd.Timestamp
    entry_price: float
    exit_time: pd.Timestamp
    exit_price: float
    pnl: float
    pnl_percent: float
    size: float
    fees: float = 0.0
    exit_reason: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "TradeRecord":
        return cls(
            id=str(payload.get("id", "")),
            direction="short" if payload.get("type") == "short" else "long",
            entry_time=_to_timestamp(payload.get("entryTime")),
            entry_price=_to_float(payload.get("entryPrice")),
            exit_time=_to_timestamp(payload.get("exitTime")),
            exit_price=_to_float(payload.get("exitPrice")),
            pnl=_to_float(payload.get("pnl")),
            pnl_percent=_to_float(payload.get("pnlPercent")),
            size=_to_float(payload.get("size")),
            fees=_to_float(payload.get("fees")),
            exit_reason=payload.get("exitReason"),
        )


@dataclass(slots=True)
class EquityPoint:
    time: pd.Timestamp
    value: float


@dataclass(slots=True)
class EntryStats:
    """Win/loss tallies reported by entry-role strategies."""

    total_entries: int
    wins: int
    losses: int


@dataclass(slots=True)
class BacktestResult:
    trades: list[TradeRecord]
    net_profit: float
    net_profit_percent: float
    win_rate: float
    expectancy: float
    avg_trade: float
    profit_factor: float
    max_drawdown: float
    max_drawdown_percent: float
    total_trades: int
    winning_trades: int
    losing_trades: int
    avg_win: float
    avg_loss: float
    sharpe_ratio: float
    equity_curve: list[EquityPoint] = field(default_factory=list)
    entry_stats: Optional[EntryStats] = None

    @classmethod
    def empty(cls) -> "BacktestResult":
        return cls(
            trades=[],
            net_profit=0.0,
            net_profit_percent=0.0,
            win_rate=0.0,
            expectancy=0.0,
            avg_trade=0.0,
            profit_factor=0.0,
            max_drawdown=0.0,
            max_drawdown_percent=0.0,
            total_trades=0,
            winning_trades=0,
            losing_trades=0,
            avg_win=0.0,
            avg_loss=0.0,
            sharpe_ratio=0.0,
        )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "BacktestResult":
        """Parse a camelCase result object returned by the remote engine."""
        trades = [TradeRecord.from_payload(item) for item in payload.get("trades") or []]
        equity = [
            EquityPoint(time=_to_timestamp(point.get("time")), value=_to_float(point.get("value")))
            for point in payload.get("equityCurve") or []
        ]
        return cls(
            trades=trades,
            net_profit=_to_float(payload.get("netProfit")),
            net_profit_percent=_to_float(payload.get("netProfitPercent")),
            win_rate=_to_float(payload.get("winRate")),
            expectancy=_to_float(payload.get("expectancy")),
            avg_trade=_to_float(payload.get("avgTrade")),
            profit_factor=_to_float(payload.get("profitFactor")),
            max_drawdown=_to_float(payload.get("maxDrawdown")),
            max_drawdown_percent=_to_float(payload.get("maxDrawdownPercent")),
            total_trades=int(_to_float(payload.get("totalTrades"))),
            winning_trades=int(_to_float(payload.get("winningTrades"))),
            losing_trades=int(_to_float(payload.get("losingTrades"))),
            avg_win=_to_float(payload.get("avgWin")),
            avg_loss=_to_float(payload.get("avgLoss")),
            sharpe_ratio=_to_float(payload.get("sharpeRatio"), default=math.nan),
            equity_curve=equity,
        )

    def to_summary(self) -> dict[str, Any]:
        """Flat metric view used by audit logs and CLI output."""
        return {
            "net_profit": self.net_profit,
            "net_profit_percent": self.net_profit_percent,
            "win_rate": self.win_rate,
            "expectancy": self.expectancy,
            "avg_trade": self.avg_trade,
            "profit_factor": self.profit_factor if math.isfinite(self.profit_factor) else None,
            "max_drawdown": self.max_drawdown,
            "max_drawdown_percent": self.max_drawdown_percent,
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "avg_win": self.avg_win,
            "avg_loss": self.avg_loss,
            "sharpe_ratio": self.sharpe_ratio,
        }


@dataclass(slots=True)
class PositionSizing:
    mode: Literal["percent", "fixed"] = "percent"
    fixed_trade_amount: float = 1_000.0

    def to_payload(self) -> dict[str, Any]:
        return {"mode": self.mode, "fixedTradeAmount": float(self.fixed_trade_amount)}
