from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional

import os
import re

import yaml

from paramfinder.backtest.models import PositionSizing
from paramfinder.finder.types import BacktestSettings, FinderOptions
from paramfinder.remote.client import BASE_URL_ENV, DEFAULT_BASE_URL
from paramfinder.robust.config import RobustPolicy

CONFIG_ROOT = (Path(__file__).resolve().parents[2] / "configs").resolve()
SAFE_TOKEN_PATTERN = re.compile(r"^(?!.*\.\.)[A-Za-z0-9._~-]+$")
DEFAULT_CONFIG_FILE = "finder.yaml"
TOP_LEVEL_KEYS = frozenset(
    {"options", "settings", "capital", "remote", "robust", "interval", "symbol"}
)


def _read_yaml(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping.")
    return data


def _validate_token(token: str, name: str) -> str:
    token = (token or "").strip()
    if not token or not SAFE_TOKEN_PATTERN.match(token):
        raise ValueError(f"Invalid {name!s}: {token!r}")
    return token


def _ensure_under(root: Path, path: Path) -> None:
    if not path.is_relative_to(root):
        raise ValueError(f"Resolved path escapes CONFIG_ROOT: {path}")


def resolve_config_path(path: str | Path) -> Path:
    """
    Find a config file.

    Bare names (``finder.yaml``) resolve under CONFIG_ROOT and may not escape
    it; anything else is taken as a filesystem path.
    """

    raw = Path(path)
    if not raw.is_absolute() and len(raw.parts) == 1:
        name = _validate_token(str(raw), "config name")
        candidate = (CONFIG_ROOT / name).resolve()
        _ensure_under(CONFIG_ROOT, candidate)
        if candidate.exists():
            return candidate
    candidate = raw.expanduser().resolve()
    if candidate.exists():
        return candidate
    raise FileNotFoundError(f"Config file not found: {path}")


@dataclass(slots=True)
class RemoteEngineConfig:
    enabled: bool = False
    base_url: str = DEFAULT_BASE_URL
    timeout: float = 120.0
    health_timeout: float = 2.0
    health_ttl: float = 30.0

    @classmethod
    def from_mapping(cls, payload: Optional[Mapping[str, Any]], env: Mapping[str, str] | None = None) -> "RemoteEngineConfig":
        env = os.environ if env is None else env
        data = dict(payload or {})
        config = cls(
            enabled=bool(data.get("enabled", False)),
            base_url=str(data.get("base_url") or DEFAULT_BASE_URL),
            timeout=float(data.get("timeout", 120.0)),
            health_timeout=float(data.get("health_timeout", 2.0)),
            health_ttl=float(data.get("health_ttl", 30.0)),
        )
        override = (env.get(BASE_URL_ENV) or "").strip()
        if override:
            config.base_url = override
        return config


@dataclass(slots=True)
class FinderConfig:
    options: FinderOptions = field(default_factory=FinderOptions)
    settings: BacktestSettings = field(default_factory=dict)
    interval: str = "1d"
    symbol: str = ""
    initial_capital: float = 10_000.0
    position_size: float = 100.0
    commission: float = 0.1
    sizing: PositionSizing = field(default_factory=PositionSizing)
    remote: RemoteEngineConfig = field(default_factory=RemoteEngineConfig)
    robust: RobustPolicy = field(default_factory=RobustPolicy)


def _build_options(raw: Mapping[str, Any]) -> FinderOptions:
    allowed = {f.name for f in fields(FinderOptions)}
    unknown = sorted(set(raw) - allowed)
    if unknown:
        raise ValueError(f"Unknown finder options: {unknown}")
    data = dict(raw)
    if "sort_priority" in data:
        data["sort_priority"] = [str(metric) for metric in data["sort_priority"]]
    if "timeframes" in data:
        data["timeframes"] = [str(tf) for tf in data["timeframes"]]
    options = FinderOptions(**data)
    options.validate()
    return options


def parse_finder_config(payload: Mapping[str, Any], env: Mapping[str, str] | None = None) -> FinderConfig:
    unknown = sorted(set(payload) - TOP_LEVEL_KEYS)
    if unknown:
        raise ValueError(f"Unknown top-level config keys: {unknown}")
    capital = dict(payload.get("capital") or {})
    sizing = capital.get("sizing") or {}
    return FinderConfig(
        options=_build_options(payload.get("options") or {}),
        settings=dict(payload.get("settings") or {}),
        interval=str(payload.get("interval") or "1d"),
        symbol=str(payload.get("symbol") or ""),
        initial_capital=float(capital.get("initial", 10_000.0)),
        position_size=float(capital.get("position_size", 100.0)),
        commission=float(capital.get("commission", 0.1)),
        sizing=PositionSizing(
            mode=str(sizing.get("mode", "percent")),
            fixed_trade_amount=float(sizing.get("fixed_trade_amount", 1_000.0)),
        ),
        remote=RemoteEngineConfig.from_mapping(payload.get("remote"), env),
        robust=RobustPolicy.from_mapping(payload.get("robust")),
    )


def load_finder_config(path: str | Path = DEFAULT_CONFIG_FILE, env: Mapping[str, str] | None = None) -> FinderConfig:
    """Load a finder run config from YAML; ``PARAMFINDER_REMOTE_URL`` overrides ``remote.base_url``."""
    return parse_finder_config(_read_yaml(resolve_config_path(path)), env)
