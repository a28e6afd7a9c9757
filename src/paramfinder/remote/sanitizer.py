from __future__ import annotations

from typing import Any, Mapping

import math

_RANGED_SNAPSHOT_FEATURES = (
    "atr_percent",
    "volume_ratio",
    "adx",
    "ema_distance",
    "rsi",
    "price_range_pos",
    "trend_efficiency",
    "atr_regime_ratio",
    "body_percent",
    "wick_skew",
    "volume_trend",
    "volume_burst",
    "volume_price_divergence",
    "volume_consistency",
    "close_location",
    "opposite_wick",
    "range_atr_multiple",
    "momentum_consistency",
    "break_quality",
    "tf60_perf",
    "tf90_perf",
    "tf120_perf",
    "tf480_perf",
    "tf_confluence_perf",
    "entry_quality_score",
)

SNAPSHOT_FILTER_SETTING_KEYS: tuple[str, ...] = tuple(
    [f"snapshot_{feature}_{bound}" for feature in _RANGED_SNAPSHOT_FEATURES for bound in ("min", "max")]
    + ["snapshot_bars_from_high_max", "snapshot_bars_from_low_max"]
)

REMOTE_UNSUPPORTED_SETTING_KEYS: frozenset[str] = frozenset(
    (
        "confirmation_strategies",
        "confirmation_strategy_params",
        "execution_model",
        "allow_same_bar_exit",
        "slippage_bps",
        "market_mode",
        "strategy_timeframe_enabled",
        "strategy_timeframe_minutes",
        "two_hour_close_parity",
        "capture_snapshots",
    )
    + SNAPSHOT_FILTER_SETTING_KEYS
)


def sanitize_settings_for_remote(settings: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in settings.items() if key not in REMOTE_UNSUPPORTED_SETTING_KEYS}


def has_snapshot_filters(settings: Mapping[str, Any]) -> bool:
    for key in SNAPSHOT_FILTER_SETTING_KEYS:
        value = settings.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        if math.isfinite(value) and value != 0:
            return True
    return False


def requires_local_engine(settings: Mapping[str, Any]) -> bool:
    """True when the settings enable realism features only the local simulator honours."""
    if (settings.get("execution_model") or "signal_close") != "signal_close":
        return True
    slippage = settings.get("slippage_bps") or 0
    if isinstance(slippage, (int, float)) and slippage > 0:
        return True
    if not settings.get("allow_same_bar_exit", True):
        return True
    if settings.get("trade_direction") in ("both", "combined"):
        return True
    return has_snapshot_filters(settings)


def to_camel_case(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def settings_to_payload(settings: Mapping[str, Any]) -> dict[str, Any]:
    return {to_camel_case(key): value for key, value in settings.items()}
