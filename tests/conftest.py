from __future__ import annotations

import asyncio
import inspect
from typing import Mapping

import numpy as np
import pandas as pd
import pytest

from paramfinder.backtest.models import Signal
from paramfinder.finder.strategies import Strategy, StrategySelection

HOUR_NS = 3_600_000_000_000


def pytest_pyfunc_call(pyfuncitem):  # type: ignore[override]
    marker = pyfuncitem.get_closest_marker("asyncio")
    if marker is None:
        return None
    func = pyfuncitem.obj
    if not inspect.iscoroutinefunction(func):
        return None
    argnames = getattr(pyfuncitem._fixtureinfo, "argnames", ())
    testargs = {name: pyfuncitem.funcargs[name] for name in argnames if name in pyfuncitem.funcargs}
    loop = asyncio.new_event_loop()
    try:
        loop.run_until_complete(func(**testargs))
    finally:
        loop.close()
    return True


def make_frame(closes, start: str = "2024-01-01", freq: str = "h", spread: float = 0.05) -> pd.DataFrame:
    closes = np.asarray(closes, dtype=float)
    index = pd.date_range(start, periods=len(closes), freq=freq)
    return pd.DataFrame(
        {
            "open": closes,
            "high": closes + spread,
            "low": closes - spread,
            "close": closes,
            "volume": np.full(len(closes), 1_000.0),
        },
        index=index,
    )


class CycleStrategy(Strategy):
    """Buys every ``cycle_bars`` hours and sells ``hold_bars`` later, keyed on absolute time."""

    key = "cycle"
    name = "Cycle"

    def __init__(self, cycle_bars: int = 10, hold_bars: int = 5) -> None:
        self._defaults = {"cycle_bars": cycle_bars, "hold_bars": hold_bars}

    @property
    def default_params(self) -> Mapping[str, float]:
        return self._defaults

    def execute(self, data: pd.DataFrame, params: Mapping[str, float]) -> list[Signal]:
        cycle = max(2, int(params["cycle_bars"]))
        hold = int(params["hold_bars"]) % cycle
        signals: list[Signal] = []
        for ts, close in zip(data.index, data["close"].to_numpy()):
            phase = (ts.value // HOUR_NS) % cycle
            if phase == 0:
                signals.append(Signal(time=ts, type="buy", price=float(close)))
            elif phase == hold:
                signals.append(Signal(time=ts, type="sell", price=float(close)))
        return signals


@pytest.fixture
def rising_frame() -> pd.DataFrame:
    return make_frame(100.0 + 0.1 * np.arange(600))


@pytest.fixture
def falling_frame() -> pd.DataFrame:
    return make_frame(200.0 - 0.1 * np.arange(600))


@pytest.fixture
def cycle_strategy() -> CycleStrategy:
    return CycleStrategy()


@pytest.fixture
def cycle_selection(cycle_strategy: CycleStrategy) -> StrategySelection:
    return StrategySelection(key="cycle", name="Cycle", strategy=cycle_strategy)


@pytest.fixture
def ohlcv_factory():
    return make_frame


@pytest.fixture
def cycle_strategy_cls():
    return CycleStrategy
