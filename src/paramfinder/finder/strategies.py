from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence, Union

import pandas as pd

from paramfinder.backtest.metrics import build_entry_backtest_result
from paramfinder.backtest.models import BacktestResult, EntryStats, Signal
from paramfinder.finder.types import StrategyParams


class Strategy(ABC):
    """Signal generator supplied by the caller."""

    role: str = "signal"

    @property
    @abstractmethod
    def default_params(self) -> Mapping[str, float]:
        ...

    @abstractmethod
    def execute(self, data: pd.DataFrame, params: Mapping[str, float]) -> list[Signal]:
        ...

    def evaluate(
        self,
        data: pd.DataFrame,
        params: Mapping[str, float],
        signals: Sequence[Signal],
    ) -> Optional[EntryStats]:
        return None


class FunctionStrategy(Strategy):
    """Adapter turning plain callables into a ``Strategy``."""

    def __init__(
        self,
        execute: Callable[[pd.DataFrame, Mapping[str, float]], list[Signal]],
        default_params: Mapping[str, float],
        *,
        role: str = "signal",
        evaluate: Optional[Callable[[pd.DataFrame, Mapping[str, float], Sequence[Signal]], Optional[EntryStats]]] = None,
    ) -> None:
        self._execute = execute
        self._defaults = dict(default_params)
        self._evaluate = evaluate
        self.role = role

    @property
    def default_params(self) -> Mapping[str, float]:
        return self._defaults

    def execute(self, data: pd.DataFrame, params: Mapping[str, float]) -> list[Signal]:
        return self._execute(data, params)

    def evaluate(
        self,
        data: pd.DataFrame,
        params: Mapping[str, float],
        signals: Sequence[Signal],
    ) -> Optional[EntryStats]:
        if self._evaluate is None:
            return None
        return self._evaluate(data, params, signals)


@dataclass(slots=True, frozen=True)
class SignalStrategy:
    strategy: Strategy
    both_sides: bool = False

    def generate_signals(self, data: pd.DataFrame, params: Mapping[str, float]) -> list[Signal]:
        return list(self.strategy.execute(data, params))

    def evaluate_entry(
        self,
        data: pd.DataFrame,
        params: Mapping[str, float],
        signals: Sequence[Signal],
    ) -> Optional[BacktestResult]:
        return None


@dataclass(slots=True, frozen=True)
class EntryStrategy:
    """Entry-role strategy: scored from its own entry statistics when it reports them."""

    strategy: Strategy
    both_sides: bool = True

    def generate_signals(self, data: pd.DataFrame, params: Mapping[str, float]) -> list[Signal]:
        return list(self.strategy.execute(data, params))

    def evaluate_entry(
        self,
        data: pd.DataFrame,
        params: Mapping[str, float],
        signals: Sequence[Signal],
    ) -> Optional[BacktestResult]:
        stats = self.strategy.evaluate(data, params, signals)
        if stats is None:
            return None
        return build_entry_backtest_result(stats)


StrategyVariant = Union[EntryStrategy, SignalStrategy]


def classify_strategy(strategy: Strategy) -> StrategyVariant:
    if getattr(strategy, "role", "signal") == "entry":
        return EntryStrategy(strategy)
    return SignalStrategy(strategy)


@dataclass(slots=True)
class StrategySelection:
    key: str
    name: str
    strategy: Strategy


class ConfirmationGate(ABC):
    """
    Filters entry signals through confirmation strategies.

    ``build_states`` precomputes whatever per-bar state the filter needs for a
    set of confirmation parameters; ``filter_signals`` drops signals the states
    do not confirm. ``direction`` is ``"both"`` for entry-role strategies and
    two-sided runs, otherwise the run's trade direction.
    """

    @abstractmethod
    def build_states(
        self,
        data: pd.DataFrame,
        strategy_keys: Sequence[str],
        params_by_key: Mapping[str, StrategyParams],
    ) -> Any:
        ...

    @abstractmethod
    def filter_signals(
        self,
        data: pd.DataFrame,
        signals: list[Signal],
        states: Any,
        mode: str,
        direction: str,
    ) -> list[Signal]:
        ...
