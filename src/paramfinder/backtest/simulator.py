from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

import logging

import pandas as pd

from paramfinder.backtest.metrics import compute_backtest_stats
from paramfinder.backtest.models import (
    BacktestResult,
    EquityPoint,
    PositionSizing,
    Signal,
    TradeRecord,
)

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("open", "high", "low", "close")


@dataclass(slots=True)
class _OpenPosition:
    direction: str
    entry_idx: int
    entry_price: float
    size: float
    value: float
    entry_fee: float
    stop_price: Optional[float]
    target_price: Optional[float]


def _validate_frame(data: pd.DataFrame) -> None:
    missing = [col for col in REQUIRED_COLUMNS if col not in data.columns]
    if missing:
        raise ValueError(f"OHLCV frame missing columns: {missing}")
    if not isinstance(data.index, pd.DatetimeIndex):
        raise ValueError("OHLCV frame must be indexed by a DatetimeIndex.")


def _risk_levels(
    direction: str,
    entry_price: float,
    settings: Mapping[str, Any],
) -> tuple[Optional[float], Optional[float]]:
    if settings.get("risk_mode") != "percentage":
        return None, None
    stop_price = None
    target_price = None
    sl_pct = float(settings.get("stop_loss_percent") or 0.0)
    tp_pct = float(settings.get("take_profit_percent") or 0.0)
    if settings.get("stop_loss_enabled", True) and sl_pct > 0:
        delta = entry_price * sl_pct / 100.0
        stop_price = entry_price - delta if direction == "long" else entry_price + delta
    if settings.get("take_profit_enabled", True) and tp_pct > 0:
        delta = entry_price * tp_pct / 100.0
        target_price = entry_price + delta if direction == "long" else entry_price - delta
    return stop_price, target_price


def _check_exit(position: _OpenPosition, high: float, low: float) -> tuple[Optional[float], Optional[str]]:
    # stop is evaluated before target when both trigger on one bar
    if position.direction == "long":
        if position.stop_price is not None and low <= position.stop_price:
            return position.stop_price, "stop_loss"
        if position.target_price is not None and high >= position.target_price:
            return position.target_price, "take_profit"
    else:
        if position.stop_price is not None and high >= position.stop_price:
            return position.stop_price, "stop_loss"
        if position.target_price is not None and low <= position.target_price:
            return position.target_price, "take_profit"
    return None, None


def _group_signals(index: pd.DatetimeIndex, signals: Sequence[Signal]) -> dict[int, list[Signal]]:
    grouped: dict[int, list[Signal]] = {}
    if not signals:
        return grouped
    positions = index.searchsorted(pd.DatetimeIndex([sig.time for sig in signals]), side="left")
    skipped = 0
    for pos, sig in zip(positions, signals):
        if pos >= len(index):
            skipped += 1
            continue
        grouped.setdefault(int(pos), []).append(sig)
    if skipped:
        logger.debug("Dropped %d signal(s) after the last bar", skipped)
    return grouped


def _simulate(
    data: pd.DataFrame,
    signals: Sequence[Signal],
    initial_capital: float,
    position_size: float,
    commission: float,
    settings: Mapping[str, Any],
    sizing: Optional[PositionSizing],
    compact: bool,
) -> BacktestResult:
    _validate_frame(data)
    sizing = sizing or PositionSizing()
    direction_mode = str(settings.get("trade_direction") or "long")
    allow_long = direction_mode in {"long", "both"}
    allow_short = direction_mode in {"short", "both"}
    fee_rate = float(commission) / 100.0

    index = data.index
    highs = data["high"].to_numpy(dtype=float)
    lows = data["low"].to_numpy(dtype=float)
    closes = data["close"].to_numpy(dtype=float)
    grouped = _group_signals(index, signals)

    capital = float(initial_capital)
    trades: list[TradeRecord] = []
    equity: list[EquityPoint] = []
    position: Optional[_OpenPosition] = None

    def _open(direction: str, idx: int, price: float) -> Optional[_OpenPosition]:
        if price <= 0 or capital <= 0:
            return None
        if sizing.mode == "fixed":
            value = min(float(sizing.fixed_trade_amount), capital)
        else:
            value = capital * float(position_size) / 100.0
        if value <= 0:
            return None
        stop_price, target_price = _risk_levels(direction, price, settings)
        return _OpenPosition(
            direction=direction,
            entry_idx=idx,
            entry_price=price,
            size=value / price,
            value=value,
            entry_fee=value * fee_rate,
            stop_price=stop_price,
            target_price=target_price,
        )

    def _close(pos: _OpenPosition, idx: int, price: float, reason: str) -> None:
        nonlocal capital
        exit_fee = pos.size * price * fee_rate
        gross = (price - pos.entry_price) * pos.size
        if pos.direction == "short":
            gross = -gross
        pnl = gross - pos.entry_fee - exit_fee
        capital += pnl
        trades.append(
            TradeRecord(
                id=f"trade-{len(trades) + 1}",
                direction="short" if pos.direction == "short" else "long",
                entry_time=index[pos.entry_idx],
                entry_price=pos.entry_price,
                exit_time=index[idx],
                exit_price=price,
                pnl=pnl,
                pnl_percent=pnl / pos.value * 100.0 if pos.value else 0.0,
                size=pos.size,
                fees=pos.entry_fee + exit_fee,
                exit_reason=reason,
            )
        )
        if compact:
            equity.append(EquityPoint(time=index[idx], value=capital))

    for idx in range(len(index)):
        if position is not None and idx > position.entry_idx:
            exit_price, reason = _check_exit(position, highs[idx], lows[idx])
            if exit_price is not None and reason is not None:
                _close(position, idx, exit_price, reason)
                position = None

        for sig in grouped.get(idx, ()):
            price = float(sig.price)
            if sig.type == "buy":
                if position is not None and position.direction == "short":
                    _close(position, idx, price, "signal")
                    position = None
                if position is None and allow_long:
                    position = _open("long", idx, price)
            elif sig.type == "sell":
                if position is not None and position.direction == "long":
                    _close(position, idx, price, "signal")
                    position = None
                if position is None and allow_short:
                    position = _open("short", idx, price)

        if not compact:
            marked = capital
            if position is not None:
                unrealized = (closes[idx] - position.entry_price) * position.size
                if position.direction == "short":
                    unrealized = -unrealized
                marked += unrealized - position.entry_fee
            equity.append(EquityPoint(time=index[idx], value=float(marked)))

    if position is not None and len(index):
        last = len(index) - 1
        _close(position, last, float(closes[last]), "end_of_data")
        if not compact and equity:
            equity[-1] = EquityPoint(time=index[last], value=capital)

    return compute_backtest_stats(trades, equity, initial_capital)


def run_backtest(
    data: pd.DataFrame,
    signals: Sequence[Signal],
    initial_capital: float,
    position_size: float,
    commission: float,
    settings: Mapping[str, Any],
    sizing: Optional[PositionSizing] = None,
) -> BacktestResult:
    """
    Reference signal-driven simulator.

    Entries and signal exits fill at the signal price, percentage stop-loss and
    take-profit levels are checked against bar high/low from the bar after the
    entry, and any open position is liquidated on the final close.
    """

    return _simulate(data, signals, initial_capital, position_size, commission, settings, sizing, compact=False)


def run_backtest_compact(
    data: pd.DataFrame,
    signals: Sequence[Signal],
    initial_capital: float,
    position_size: float,
    commission: float,
    settings: Mapping[str, Any],
    sizing: Optional[PositionSizing] = None,
) -> BacktestResult:
    """Same fills as run_backtest but the equity curve only records trade exits."""
    return _simulate(data, signals, initial_capital, position_size, commission, settings, sizing, compact=True)


def last_bar_time(data: pd.DataFrame) -> Optional[pd.Timestamp]:
    if data is None or data.empty:
        return None
    return pd.Timestamp(data.index[-1])
