from __future__ import annotations

import pandas as pd
import pytest

from paramfinder.backtest.models import PositionSizing, Signal
from paramfinder.backtest.simulator import last_bar_time, run_backtest, run_backtest_compact


def _sig(frame: pd.DataFrame, idx: int, kind: str) -> Signal:
    return Signal(time=frame.index[idx], type=kind, price=float(frame["close"].iloc[idx]))


def test_long_round_trip_fills_at_signal_price(ohlcv_factory) -> None:
    frame = ohlcv_factory([100, 101, 102, 103, 104])
    signals = [_sig(frame, 0, "buy"), _sig(frame, 3, "sell")]
    result = run_backtest(frame, signals, 1_000.0, 100.0, 0.0, {})
    assert result.total_trades == 1
    trade = result.trades[0]
    assert trade.exit_reason == "signal"
    assert trade.pnl == pytest.approx(30.0)
    assert trade.pnl_percent == pytest.approx(3.0)
    assert result.net_profit == pytest.approx(30.0)
    assert len(result.equity_curve) == len(frame)
    assert result.equity_curve[-1].value == pytest.approx(1_030.0)


def test_compact_mode_records_equity_only_at_exits(ohlcv_factory) -> None:
    frame = ohlcv_factory([100, 101, 102, 103, 104])
    signals = [_sig(frame, 0, "buy"), _sig(frame, 3, "sell")]
    full = run_backtest(frame, signals, 1_000.0, 100.0, 0.0, {})
    compact = run_backtest_compact(frame, signals, 1_000.0, 100.0, 0.0, {})
    assert [p.value for p in compact.equity_curve] == pytest.approx([1_030.0])
    assert compact.net_profit == pytest.approx(full.net_profit)
    assert compact.total_trades == full.total_trades


def test_commission_charged_per_side(ohlcv_factory) -> None:
    frame = ohlcv_factory([100, 101, 102, 103])
    signals = [_sig(frame, 0, "buy"), _sig(frame, 3, "sell")]
    result = run_backtest(frame, signals, 1_000.0, 100.0, 0.1, {})
    assert result.trades[0].fees == pytest.approx(1.0 + 1.03)
    assert result.trades[0].pnl == pytest.approx(27.97)


def test_fixed_sizing_caps_trade_value(ohlcv_factory) -> None:
    frame = ohlcv_factory([100, 101, 102, 103])
    signals = [_sig(frame, 0, "buy"), _sig(frame, 3, "sell")]
    result = run_backtest(frame, signals, 1_000.0, 100.0, 0.0, {}, PositionSizing(mode="fixed", fixed_trade_amount=500.0))
    assert result.trades[0].size == pytest.approx(5.0)
    assert result.trades[0].pnl == pytest.approx(15.0)


def test_percentage_stop_loss_exits_at_stop_price(ohlcv_factory) -> None:
    frame = ohlcv_factory([100, 99, 94, 96])
    settings = {"risk_mode": "percentage", "stop_loss_enabled": True, "stop_loss_percent": 5, "take_profit_enabled": False}
    result = run_backtest(frame, [_sig(frame, 0, "buy")], 1_000.0, 100.0, 0.0, settings)
    trade = result.trades[0]
    assert trade.exit_reason == "stop_loss"
    assert trade.exit_price == pytest.approx(95.0)
    assert trade.exit_time == frame.index[2]
    assert trade.pnl == pytest.approx(-50.0)


def test_take_profit_and_risk_ignored_outside_percentage_mode(ohlcv_factory) -> None:
    frame = ohlcv_factory([100, 104, 111, 112])
    settings = {"risk_mode": "percentage", "take_profit_enabled": True, "take_profit_percent": 10, "stop_loss_enabled": False}
    hit = run_backtest(frame, [_sig(frame, 0, "buy")], 1_000.0, 100.0, 0.0, settings)
    assert hit.trades[0].exit_reason == "take_profit"
    assert hit.trades[0].exit_price == pytest.approx(110.0)

    plain = run_backtest(frame, [_sig(frame, 0, "buy")], 1_000.0, 100.0, 0.0, {**settings, "risk_mode": "none"})
    assert plain.trades[0].exit_reason == "end_of_data"


def test_open_position_liquidated_at_last_close(ohlcv_factory) -> None:
    frame = ohlcv_factory([100, 102, 105])
    result = run_backtest(frame, [_sig(frame, 0, "buy")], 1_000.0, 100.0, 0.0, {})
    trade = result.trades[0]
    assert trade.exit_reason == "end_of_data"
    assert trade.exit_time == frame.index[-1]
    assert trade.exit_price == pytest.approx(105.0)
    assert result.equity_curve[-1].value == pytest.approx(1_050.0)


def test_short_direction(ohlcv_factory) -> None:
    frame = ohlcv_factory([100, 98, 95])
    signals = [_sig(frame, 0, "sell"), _sig(frame, 2, "buy")]
    short = run_backtest(frame, signals, 1_000.0, 100.0, 0.0, {"trade_direction": "short"})
    assert short.total_trades == 1
    assert short.trades[0].direction == "short"
    assert short.trades[0].pnl == pytest.approx(50.0)

    long_only = run_backtest(frame, signals, 1_000.0, 100.0, 0.0, {"trade_direction": "long"})
    assert long_only.trades[0].direction == "long"
    assert long_only.trades[0].entry_time == frame.index[2]


def test_rejects_frames_without_ohlc(ohlcv_factory) -> None:
    frame = ohlcv_factory([100, 101]).drop(columns=["high"])
    with pytest.raises(ValueError):
        run_backtest(frame, [], 1_000.0, 100.0, 0.0, {})


def test_last_bar_time(ohlcv_factory) -> None:
    frame = ohlcv_factory([1, 2, 3])
    assert last_bar_time(frame) == frame.index[-1]
    assert last_bar_time(frame.iloc[0:0]) is None
