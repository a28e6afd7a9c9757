from __future__ import annotations

import pytest

from paramfinder.finder.param_space import (
    ParamSpace,
    is_toggle_param,
    normalize_param_value,
    serialize_params,
    validate_params,
)
from paramfinder.finder.types import FinderOptions

DEFAULTS = {"fast_period": 10, "slow_period": 30}


def test_normalize_param_value_snaps_to_domain() -> None:
    assert normalize_param_value("fast_period", 10.4, 10) == 10
    assert isinstance(normalize_param_value("fast_period", 10.6, 10), int)
    assert normalize_param_value("lookback", -3.0, 20) == 1
    assert normalize_param_value("stop_loss_percent", 20.0, 5.0) == 15.0
    assert normalize_param_value("take_profit_percent", 12.3456, 10.0) == 12.35
    assert normalize_param_value("rsi_oversold", 120.0, 30) == 100
    assert normalize_param_value("atr_multiplier", 0.01, 1.5) == pytest.approx(0.1)
    assert normalize_param_value("cluster_choice", 7.0, 1) == 2
    assert normalize_param_value("threshold", 0.123456, 0.5) == pytest.approx(0.1235)


def test_toggle_detection() -> None:
    assert is_toggle_param("use_filter", 1)
    assert is_toggle_param("use_filter", 0)
    assert not is_toggle_param("use_filter", 2)
    assert not is_toggle_param("filter", 1)


def test_validate_params_rejects_contradictions() -> None:
    assert validate_params({"fast_period": 5, "slow_period": 20})
    assert not validate_params({"fast_period": 20, "slow_period": 20})
    assert not validate_params({"z_exit": 2.0, "z_entry": 1.0})
    assert validate_params({"d_period": 3, "k_period": 3})
    assert not validate_params({"factor_step": 0})
    assert not validate_params({"cluster_choice": 3})
    assert validate_params({"unrelated": 1})


def test_serialize_params_is_order_independent() -> None:
    assert serialize_params({"b": 2, "a": 1}) == serialize_params({"a": 1, "b": 2}) == "a:1|b:2"


def test_default_mode_returns_normalized_defaults() -> None:
    sets = ParamSpace().generate_param_sets({"fast_period": 9.6, "slow_period": 30}, FinderOptions(mode="default"))
    assert sets == [{"fast_period": 10, "slow_period": 30}]


def test_grid_mode_enumerates_ladders() -> None:
    options = FinderOptions(mode="grid", steps=3, range_percent=35.0, max_runs=200)
    sets = ParamSpace().generate_param_sets(DEFAULTS, options)
    assert len(sets) == 9
    assert sets[0] == {"fast_period": 7, "slow_period": 20}
    assert {params["fast_period"] for params in sets} == {7, 10, 14}
    assert {params["slow_period"] for params in sets} == {20, 30, 41}


def test_grid_mode_samples_when_over_budget() -> None:
    options = FinderOptions(mode="grid", steps=3, range_percent=35.0, max_runs=4)
    sets = ParamSpace().generate_param_sets(DEFAULTS, options)
    assert len(sets) == 4
    assert sets[0] == DEFAULTS
    assert len({serialize_params(params) for params in sets}) == 4


def test_toggle_params_use_both_states() -> None:
    options = FinderOptions(mode="grid", steps=3, max_runs=200)
    sets = ParamSpace().generate_param_sets({"use_filter": 1}, options)
    assert sets == [{"use_filter": 0}, {"use_filter": 1}]


def test_random_mode_is_bounded_unique_and_valid() -> None:
    options = FinderOptions(mode="random", range_percent=35.0, max_runs=25)
    sets = ParamSpace().generate_param_sets(DEFAULTS, options)
    assert sets[0] == DEFAULTS
    assert 1 < len(sets) <= 25
    assert len({serialize_params(params) for params in sets}) == len(sets)
    for params in sets:
        assert 6 <= params["fast_period"] <= 14
        assert 19 <= params["slow_period"] <= 41
        assert validate_params(params)


def test_robust_mode_is_reproducible_per_seed() -> None:
    first = ParamSpace().generate_param_sets(DEFAULTS, FinderOptions(mode="robust_random_wf", robust_seed=42, max_runs=30))
    second = ParamSpace().generate_param_sets(DEFAULTS, FinderOptions(mode="robust_random_wf", robust_seed=42, max_runs=30))
    other = ParamSpace().generate_param_sets(DEFAULTS, FinderOptions(mode="robust_random_wf", robust_seed=43, max_runs=30))
    assert first == second
    assert first != other


def test_robust_mode_without_seed_uses_fixed_default() -> None:
    unseeded = ParamSpace().generate_param_sets(DEFAULTS, FinderOptions(mode="robust_random_wf", max_runs=20))
    seeded = ParamSpace().generate_param_sets(DEFAULTS, FinderOptions(mode="robust_random_wf", robust_seed=1337, max_runs=20))
    assert unseeded == seeded


def test_random_confirmation_params_skip_unknown_keys() -> None:
    options = FinderOptions(mode="robust_random_wf", robust_seed=5)
    params = ParamSpace().build_random_confirmation_params(
        ["trend", "missing"],
        options,
        {"trend": {"fast_period": 10, "slow_period": 30}},
    )
    assert list(params) == ["trend"]
    assert validate_params(params["trend"])
