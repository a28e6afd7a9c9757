from __future__ import annotations

from typing import Callable, Mapping, Optional, Sequence

import math
import re

import numpy as np

from paramfinder.finder.types import FinderOptions, StrategyParams
from paramfinder.utils.seeding import Mulberry32

DEFAULT_ROBUST_SEED = 1337

_TOGGLE_PATTERN = re.compile(r"^use_[a-z0-9]")
_RSI_THRESHOLD = re.compile(r"(rsi_?(bullish|bearish|overbought|oversold)|overbought|oversold)", re.IGNORECASE)
_RSI = re.compile(r"rsi", re.IGNORECASE)
_ITERATION_LIKE = re.compile(r"(iteration|iterations|interval)", re.IGNORECASE)
_ALPHA_LIKE = re.compile(r"alpha", re.IGNORECASE)
_PERIOD_LIKE = re.compile(r"(period|lookback|bars|bins|length)", re.IGNORECASE)
_PERCENT_LIKE = re.compile(r"(percent|pct)", re.IGNORECASE)
_NON_NEGATIVE = re.compile(r"(std|dev|factor|multiplier|atr|adx)", re.IGNORECASE)
_SCALE_LIKE = re.compile(r"(multiplier|factor)", re.IGNORECASE)
_Z_SCORE = re.compile(r"z_?(entry|exit)", re.IGNORECASE)

_FIXED_RANGES: dict[str, tuple[Optional[float], Optional[float]]] = {
    "stop_loss_percent": (0.0, 15.0),
    "take_profit_percent": (0.0, 100.0),
}


def is_toggle_param(key: str, value: float) -> bool:
    """Toggle params are ``use_*`` switches holding 0 or 1."""
    return bool(_TOGGLE_PATTERN.match(key)) and value in (0, 1)


def _js_round(value: float) -> float:
    return float(math.floor(value + 0.5))


def _round_to(value: float, digits: int) -> float:
    return float(round(value, digits))


def _is_integral(value: float) -> bool:
    return float(value).is_integer()


def normalize_param_value(key: str, value: float, default_value: float) -> float | int:
    """Snap a candidate value to the domain implied by the parameter name."""
    is_rsi_threshold = bool(_RSI_THRESHOLD.search(key))
    is_rsi_period = bool(_RSI.search(key)) and not is_rsi_threshold
    period_like = (
        bool(_PERIOD_LIKE.search(key))
        or is_rsi_period
        or bool(_ITERATION_LIKE.search(key))
        or bool(_ALPHA_LIKE.search(key))
    )
    percent_like = bool(_PERCENT_LIKE.search(key)) or is_rsi_threshold
    fixed_precision = key in {"stop_loss_percent", "take_profit_percent", "target_pct"}

    nxt = float(value)
    if key == "warmup_bars":
        nxt = max(0.0, _js_round(nxt))
    elif key == "cluster_choice":
        nxt = min(2.0, max(0.0, _js_round(nxt)))
    elif period_like:
        nxt = max(1.0, _js_round(nxt))
    elif key == "target_pct":
        nxt = min(2.0, max(0.0, _round_to(nxt, 2)))
    elif key == "stop_loss_percent":
        nxt = min(15.0, max(0.0, _round_to(nxt, 2)))
    elif key == "take_profit_percent":
        nxt = min(100.0, max(0.0, _round_to(nxt, 2)))
    elif percent_like:
        nxt = min(100.0, max(0.0, nxt))
    elif _NON_NEGATIVE.search(key):
        nxt = max(0.0, nxt)

    if _SCALE_LIKE.search(key) and default_value > 0:
        nxt = max(0.1, nxt)
    if _Z_SCORE.search(key) or key == "buffer_atr":
        nxt = max(0.0, nxt)

    if not period_like and _is_integral(default_value) and not percent_like and not fixed_precision:
        nxt = _js_round(nxt)
    elif fixed_precision:
        nxt = _round_to(nxt, 2)
    elif not _is_integral(default_value):
        nxt = _round_to(nxt, 4)

    if _is_integral(nxt) and (period_like or _is_integral(default_value)) and not fixed_precision:
        return int(nxt)
    return nxt


def normalize_params(params: Mapping[str, float]) -> StrategyParams:
    return {key: normalize_param_value(key, value, value) for key, value in params.items()}


def _less(params: Mapping[str, float], low: str, high: str, *, strict: bool = True) -> bool:
    if low not in params or high not in params:
        return True
    return params[low] < params[high] if strict else params[low] <= params[high]


def validate_params(params: Mapping[str, float]) -> bool:
    """Reject combinations whose parameters contradict each other."""
    ordered = [
        ("fast_period", "slow_period"),
        ("fast_period", "medium_period"),
        ("medium_period", "slow_period"),
        ("oversold", "overbought"),
        ("rsi_oversold", "rsi_overbought"),
        ("macd_fast", "macd_slow"),
        ("z_exit", "z_entry"),
        ("exit_exposure_pct", "entry_exposure_pct"),
    ]
    for low, high in ordered:
        if not _less(params, low, high):
            return False
    if not _less(params, "d_period", "k_period", strict=False):
        return False
    if not _less(params, "min_factor", "max_factor", strict=False):
        return False
    for key in ("factor_step", "k_means_iterations", "k_means_interval", "perf_alpha"):
        if key in params and params[key] <= 0:
            return False
    if "cluster_choice" in params and not 0 <= params["cluster_choice"] <= 2:
        return False
    return True


def serialize_params(params: Mapping[str, float]) -> str:
    return "|".join(f"{key}:{params[key]}" for key in sorted(params))


class ParamSpace:
    """
    Parameter-set generator for finder runs.

    ``default`` returns the normalized defaults, ``grid`` enumerates (or samples)
    a per-parameter value ladder, ``random`` and ``robust_random_wf`` draw
    uniformly inside +/- range_percent around each default. Robust mode uses a
    seeded Mulberry32 stream so the generated order is reproducible.
    """

    def __init__(self, rng: Optional[np.random.Generator] = None) -> None:
        self._rng = rng or np.random.default_rng()

    def generate_param_sets(self, defaults: Mapping[str, float], options: FinderOptions) -> list[StrategyParams]:
        keys = list(defaults)
        if not keys or options.mode == "default":
            return [normalize_params(defaults)]

        values_by_key = [self._range_values(key, defaults[key], options) for key in keys]
        total_combos = math.prod(len(values) for values in values_by_key)
        rand = self._resolve_random(options)

        if options.mode == "grid" and total_combos <= options.max_runs:
            combos = self._grid_combos(keys, values_by_key, options.max_runs)
            return combos or [normalize_params(defaults)]
        if options.mode == "grid":
            return self._sample_grid(keys, values_by_key, defaults, options.max_runs, rand)
        return self._random_combos(defaults, options, rand)

    def build_random_confirmation_params(
        self,
        strategy_keys: Sequence[str],
        options: FinderOptions,
        defaults_by_key: Mapping[str, Mapping[str, float]],
    ) -> dict[str, StrategyParams]:
        rand = self._resolve_random(options)
        params_by_key: dict[str, StrategyParams] = {}
        for key in strategy_keys:
            defaults = defaults_by_key.get(key)
            if defaults is None:
                continue
            params_by_key[key] = self._random_params(defaults, options, rand)
        return params_by_key

    def _resolve_random(self, options: FinderOptions) -> Callable[[], float]:
        if options.mode != "robust_random_wf":
            return lambda: float(self._rng.random())
        seed = options.robust_seed
        if seed is None or not math.isfinite(float(seed)):
            seed = DEFAULT_ROBUST_SEED
        return Mulberry32(seed).random

    @staticmethod
    def _bounds(key: str, base: float, options: FinderOptions) -> tuple[float, float]:
        ratio = max(0.0, float(options.range_percent)) / 100.0
        raw = abs(base) * ratio
        span = raw if raw > 0 else (1.0 if ratio > 0 else 0.0)
        low, high = base - span, base + span
        if key in _FIXED_RANGES:
            floor, ceil = _FIXED_RANGES[key]
            low = max(floor, low)
            high = min(ceil, high)
        elif key == "target_pct":
            low, high = 0.0, 2.0
        return low, high

    def _range_values(self, key: str, base: float, options: FinderOptions) -> list[float]:
        if is_toggle_param(key, base):
            return [0, 1]
        low, high = self._bounds(key, base, options)
        if key == "cluster_choice":
            low, high = 0.0, 2.0
        elif _ITERATION_LIKE.search(key) or _ALPHA_LIKE.search(key):
            low = max(1.0, low)
        elif key == "warmup_bars":
            low = max(0.0, low)
        steps = max(2, int(options.steps))
        step_size = (high - low) / (steps - 1)
        values = {normalize_param_value(key, low + step_size * i, base) for i in range(steps)}
        values.add(normalize_param_value(key, base, base))
        return sorted(values)

    @staticmethod
    def _grid_combos(keys: list[str], values_by_key: list[list[float]], max_runs: int) -> list[StrategyParams]:
        combos: list[StrategyParams] = []
        current: StrategyParams = {}

        def _walk(depth: int) -> None:
            if len(combos) >= max_runs:
                return
            if depth >= len(keys):
                if validate_params(current):
                    combos.append(dict(current))
                return
            for value in values_by_key[depth]:
                current[keys[depth]] = value
                _walk(depth + 1)
                if len(combos) >= max_runs:
                    break

        _walk(0)
        return combos

    @staticmethod
    def _try_add(params: StrategyParams, combos: list[StrategyParams], seen: set[str], max_runs: int) -> None:
        if len(combos) >= max_runs or not validate_params(params):
            return
        key = serialize_params(params)
        if key in seen:
            return
        seen.add(key)
        combos.append(dict(params))

    def _sample_grid(
        self,
        keys: list[str],
        values_by_key: list[list[float]],
        defaults: Mapping[str, float],
        max_runs: int,
        rand: Callable[[], float],
    ) -> list[StrategyParams]:
        combos: list[StrategyParams] = []
        seen: set[str] = set()
        self._try_add(normalize_params(defaults), combos, seen, max_runs)
        attempts = 0
        while len(combos) < max_runs and attempts < max_runs * 10:
            params = {key: values[int(rand() * len(values))] for key, values in zip(keys, values_by_key)}
            self._try_add(params, combos, seen, max_runs)
            attempts += 1
        return combos

    def _draw(
        self,
        defaults: Mapping[str, float],
        options: FinderOptions,
        rand: Callable[[], float],
    ) -> Callable[[], StrategyParams]:
        toggles = [key for key, value in defaults.items() if is_toggle_param(key, value)]
        ranges = [
            (key, float(value), *self._bounds(key, float(value), options))
            for key, value in defaults.items()
            if not is_toggle_param(key, value)
        ]

        def _one() -> StrategyParams:
            params: StrategyParams = {}
            for key in toggles:
                params[key] = 0 if rand() < 0.5 else 1
            for key, base, low, high in ranges:
                params[key] = normalize_param_value(key, low + rand() * (high - low), base)
            return params

        return _one

    def _random_combos(
        self,
        defaults: Mapping[str, float],
        options: FinderOptions,
        rand: Callable[[], float],
    ) -> list[StrategyParams]:
        combos: list[StrategyParams] = []
        seen: set[str] = set()
        self._try_add(normalize_params(defaults), combos, seen, options.max_runs)
        draw = self._draw(defaults, options, rand)
        attempts = 0
        while len(combos) < options.max_runs and attempts < options.max_runs * 10:
            self._try_add(draw(), combos, seen, options.max_runs)
            attempts += 1
        return combos

    def _random_params(
        self,
        defaults: Mapping[str, float],
        options: FinderOptions,
        rand: Callable[[], float],
    ) -> StrategyParams:
        if not defaults:
            return {}
        draw = self._draw(defaults, options, rand)
        for _ in range(max(10, len(defaults) * 5)):
            params = draw()
            if validate_params(params):
                return params
        return normalize_params(defaults)
