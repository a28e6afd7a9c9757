#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

import pandas as pd

from paramfinder.configs import FinderConfig, load_finder_config
from paramfinder.finder.strategies import Strategy, StrategySelection
from paramfinder.finder.runner import FinderRunInput, FinderRunOutput, run_finder
from paramfinder.remote.client import RemoteEngineClient
from paramfinder.robust.audit import CellAuditWriter

DEFAULT_SEEDS = (1337, 7331, 2026, 4242, 9001)
OHLCV_COLUMNS = ("open", "high", "low", "close", "volume")

logger = logging.getLogger("run_finder")


def _parse_seeds(payload: str | None) -> list[int]:
    if not payload:
        return list(DEFAULT_SEEDS)
    return [int(token.strip()) for token in payload.split(",") if token.strip()]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the parameter finder over an OHLCV CSV.")
    parser.add_argument("--data", type=Path, required=True, help="CSV with a time column and OHLCV columns.")
    parser.add_argument("--time-column", default="time")
    parser.add_argument(
        "--strategy",
        action="append",
        required=True,
        help="Strategy as module:attr (instance, class or zero-arg factory). Repeatable.",
    )
    parser.add_argument("--config", default="finder.yaml", help="YAML config name under configs/ or a path.")
    parser.add_argument("--mode", choices=["default", "grid", "random", "robust_random_wf"])
    parser.add_argument("--interval", help="Interval label of --data (overrides config).")
    parser.add_argument("--max-runs", type=int)
    parser.add_argument("--top", type=int)
    parser.add_argument("--seeds", help="Comma separated robust seeds, ex: 1337,7331.")
    parser.add_argument("--remote", action=argparse.BooleanOptionalAction, default=None)
    parser.add_argument("--output-dir", type=Path, required=True)
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args(argv)


def load_ohlcv_csv(path: Path, time_column: str = "time") -> pd.DataFrame:
    frame = pd.read_csv(path)
    frame.columns = [str(col).strip().lower() for col in frame.columns]
    time_column = time_column.lower()
    if time_column not in frame.columns:
        raise ValueError(f"{path}: missing time column {time_column!r}")
    missing = [col for col in OHLCV_COLUMNS if col not in frame.columns]
    if missing:
        raise ValueError(f"{path}: missing columns {missing}")
    raw_time = frame[time_column]
    if pd.api.types.is_numeric_dtype(raw_time):
        index = pd.to_datetime(raw_time, unit="s", utc=True)
    else:
        index = pd.to_datetime(raw_time, utc=True)
    frame = frame.set_index(pd.DatetimeIndex(index, name="time"))[list(OHLCV_COLUMNS)].astype(float)
    return frame.sort_index()


def load_strategy(reference: str) -> StrategySelection:
    module_name, _, attr = reference.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Strategy must look like module:attr, got {reference!r}")
    target: Any = getattr(importlib.import_module(module_name), attr)
    if not isinstance(target, Strategy):
        target = target()
    if not isinstance(target, Strategy):
        raise ValueError(f"{reference} did not produce a Strategy")
    key = str(getattr(target, "key", attr))
    name = str(getattr(target, "name", key))
    return StrategySelection(key=key, name=name, strategy=target)


def _apply_overrides(config: FinderConfig, args: argparse.Namespace) -> FinderConfig:
    options = config.options
    if args.mode:
        options = replace(options, mode=args.mode)
    if args.max_runs is not None:
        options = replace(options, max_runs=args.max_runs)
    if args.top is not None:
        options = replace(options, top_n=args.top)
    options.validate()
    config.options = options
    if args.interval:
        config.interval = args.interval
    if args.remote is not None:
        config.remote.enabled = args.remote
    return config


def _summary_payload(output: FinderRunOutput, seed: int | None) -> dict[str, Any]:
    stats = output.stats
    return {
        "seed": seed,
        "status": output.status,
        "stats": {
            "total_runs": stats.total_runs,
            "engine": stats.engine,
            "engine_reason": stats.engine_reason,
            "timeframes": stats.timeframes,
            "matched": stats.matched,
            "endpoint_adjusted": stats.endpoint_adjusted,
            "elapsed_ms": round(stats.elapsed_ms, 1),
        },
        "results": [item.to_summary() for item in output.results],
        "records": [cell.to_audit_record() for cell in output.cells],
        "cluster_report": [entry.to_dict() for entry in output.cluster_report],
    }


async def _run(args: argparse.Namespace) -> int:
    config = _apply_overrides(load_finder_config(args.config), args)
    data = load_ohlcv_csv(args.data, args.time_column)
    selections = [load_strategy(item) for item in args.strategy]
    args.output_dir.mkdir(parents=True, exist_ok=True)

    client = None
    if config.remote.enabled:
        client = RemoteEngineClient(
            config.remote.base_url,
            timeout=config.remote.timeout,
            health_timeout=config.remote.health_timeout,
            health_ttl=config.remote.health_ttl,
        )

    seeds: list[int | None] = _parse_seeds(args.seeds) if config.options.is_robust else [None]
    try:
        for seed in seeds:
            options = replace(config.options, robust_seed=seed) if seed is not None else config.options
            audit_path = args.output_dir / f"robust_audit_seed{seed}.jsonl"
            writer = CellAuditWriter(audit_path) if seed is not None else None
            try:
                output = await run_finder(
                    FinderRunInput(
                        data=data,
                        selections=selections,
                        options=options,
                        settings=dict(config.settings),
                        interval=config.interval,
                        symbol=config.symbol,
                        initial_capital=config.initial_capital,
                        position_size=config.position_size,
                        commission=config.commission,
                        sizing=config.sizing,
                        remote_client=client,
                        robust_policy=config.robust,
                        audit_writer=writer,
                    )
                )
            finally:
                if writer is not None:
                    writer.close()
            name = f"finder_seed{seed}.json" if seed is not None else "finder_results.json"
            out_path = args.output_dir / name
            out_path.write_text(json.dumps(_summary_payload(output, seed), indent=2, default=str), encoding="utf-8")
            print(f"[INFO] {output.status}")
            for rank, item in enumerate(output.results, start=1):
                metrics = item.selection_result
                print(
                    f"  #{rank} {item.key} {item.params} "
                    f"exp={metrics.expectancy:.3f} pf={metrics.profit_factor:.2f} "
                    f"trades={metrics.total_trades} dd={metrics.max_drawdown_percent:.1f}%"
                )
            print(f"[INFO] Wrote {out_path}")
    finally:
        if client is not None:
            await client.aclose()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
