from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

import json
import logging
import math

import numpy as np

logger = logging.getLogger(__name__)

AUDIT_MODE = "robust_random_wf"
AUDIT_LOG_MARKER = "[robust_random_wf][cell_audit]"
STAGES = ("A", "B", "C", "other")


class CellAuditWriter:
    """Persist robust cell audit records as JSON lines."""

    def __init__(self, path: str | Path, *, append: bool = False) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = self.path.open("a" if append else "w", encoding="utf-8")
        self.records_written = 0

    def write(self, record: Mapping[str, Any]) -> None:
        self._handle.write(json.dumps(dict(record), sort_keys=True))
        self._handle.write("\n")
        self._handle.flush()
        self.records_written += 1

    def close(self) -> None:
        self._handle.close()

    def __enter__(self) -> "CellAuditWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _finite(value: Any, fallback: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    return number if math.isfinite(number) else fallback


def finite_median(values: Iterable[Any]) -> float:
    """Median of the finite values; 0.0 when there are none."""
    clean = [float(v) for v in values if isinstance(v, (int, float)) and math.isfinite(v)]
    if not clean:
        return 0.0
    return float(np.median(clean))


def _positive_counts(raw: Any) -> dict[str, int]:
    counts: dict[str, int] = {}
    if not isinstance(raw, Mapping):
        return counts
    for reason, value in raw.items():
        count = _finite(value)
        if reason and count > 0:
            counts[str(reason)] = int(count)
    return counts


def _sort_counts(counts: Mapping[str, int]) -> dict[str, int]:
    return dict(sorted(counts.items(), key=lambda item: (-item[1], item[0])))


def reject_stage(reason: str) -> str:
    for stage in ("a", "b", "c"):
        if reason.startswith(f"stage_{stage}_"):
            return stage.upper()
    return "other"


@dataclass(slots=True)
class AuditRecord:
    strategy_key: str
    strategy_name: str
    timeframe: str
    seed: float
    cell_seed: float
    decision: str
    decision_reason: str
    sampled_params: float = 0.0
    stage_a_survivors: float = 0.0
    stage_b_survivors: float = 0.0
    stage_c_survivors: float = 0.0
    pass_rate: float = 0.0
    top_decile_median_oos_expectancy: float = 0.0
    top_decile_median_profitable_fold_ratio: float = 0.0
    median_fold_stability_penalty: float = 0.0
    top_decile_median_dd_breach_rate: float = 0.0
    robust_score: float = 0.0
    rejection_reasons: dict[str, int] = field(default_factory=dict)
    source_file: str = ""


def normalize_audit_record(raw: Any, source_file: str = "") -> Optional[AuditRecord]:
    """Coerce a logged cell record; records without a strategy key or timeframe are dropped."""
    if not isinstance(raw, Mapping):
        return None
    metrics = raw.get("robust_metrics") if isinstance(raw.get("robust_metrics"), Mapping) else raw
    key = str(raw.get("strategy_key") or raw.get("key") or "").strip()
    timeframe = metrics.get("timeframe")
    if not timeframe and isinstance(raw.get("timeframes"), list) and len(raw["timeframes"]) == 1:
        timeframe = raw["timeframes"][0]
    timeframe = str(timeframe or "").strip()
    if not key or not timeframe:
        return None
    decision = "PASS" if str(metrics.get("decision") or "").strip().upper() == "PASS" else "FAIL"
    return AuditRecord(
        strategy_key=key,
        strategy_name=str(raw.get("strategy_name") or raw.get("name") or key),
        timeframe=timeframe,
        seed=_finite(metrics.get("seed"), math.nan),
        cell_seed=_finite(metrics.get("cell_seed"), math.nan),
        decision=decision,
        decision_reason=str(metrics.get("decision_reason") or "unknown"),
        sampled_params=_finite(metrics.get("sampled_params")),
        stage_a_survivors=_finite(metrics.get("stage_a_survivors")),
        stage_b_survivors=_finite(metrics.get("stage_b_survivors")),
        stage_c_survivors=_finite(metrics.get("stage_c_survivors")),
        pass_rate=_finite(metrics.get("pass_rate")),
        top_decile_median_oos_expectancy=_finite(metrics.get("top_decile_median_oos_expectancy")),
        top_decile_median_profitable_fold_ratio=_finite(metrics.get("top_decile_median_profitable_fold_ratio")),
        median_fold_stability_penalty=_finite(metrics.get("median_fold_stability_penalty")),
        top_decile_median_dd_breach_rate=_finite(metrics.get("top_decile_median_dd_breach_rate")),
        robust_score=_finite(metrics.get("robust_score")),
        rejection_reasons=_positive_counts(metrics.get("rejection_reasons", raw.get("rejection_reasons"))),
        source_file=source_file,
    )


def _parse_line(line: str) -> Any:
    text = line.strip()
    if not text:
        return None
    if AUDIT_LOG_MARKER in text:
        start = text.find("{", text.index(AUDIT_LOG_MARKER))
        if start < 0:
            return None
        text = text[start:]
    elif not text.startswith("{"):
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        logger.debug("Skipping unparsable audit line: %.80s", text)
        return None


def collect_audit_records(paths: Sequence[str | Path]) -> list[AuditRecord]:
    """
    Read audit records from JSONL files, JSON documents or captured log output.

    A whole-file JSON document may be a single record, a list of records, or
    an object with a ``records`` list (such as a saved run summary).
    """

    records: list[AuditRecord] = []
    for raw_path in paths:
        path = Path(raw_path)
        text = path.read_text(encoding="utf-8")
        source = str(path.resolve())
        try:
            document = json.loads(text)
        except json.JSONDecodeError:
            document = None
        if document is not None:
            if isinstance(document, Mapping) and isinstance(document.get("records"), list):
                items = document["records"]
            elif isinstance(document, list):
                items = document
            else:
                items = [document]
        else:
            items = [_parse_line(line) for line in text.splitlines()]
        for item in items:
            record = normalize_audit_record(item, source)
            if record is not None:
                records.append(record)
    return records


def _seed_sort_key(record: AuditRecord) -> tuple[float, str]:
    seed = record.seed if math.isfinite(record.seed) else math.inf
    return seed, record.source_file


def _top_reason(counts: Mapping[str, int]) -> str:
    ordered = _sort_counts(counts)
    return next(iter(ordered), "")


def build_audit_summary(records: Sequence[AuditRecord]) -> dict[str, Any]:
    """Group audit records per (strategy, timeframe) across seeds."""
    buckets: dict[tuple[str, str], list[AuditRecord]] = {}
    global_fail: dict[str, int] = defaultdict(int)
    global_reject: dict[str, int] = defaultdict(int)
    global_by_stage = {stage: 0 for stage in STAGES}

    for record in records:
        buckets.setdefault((record.strategy_key, record.timeframe), []).append(record)
        if record.decision == "FAIL":
            global_fail[record.decision_reason] += 1
        for reason, count in record.rejection_reasons.items():
            global_reject[reason] += count
            global_by_stage[reject_stage(reason)] += count

    cells: list[dict[str, Any]] = []
    for (key, timeframe), rows in buckets.items():
        rows = sorted(rows, key=_seed_sort_key)
        passes = [row for row in rows if row.decision == "PASS"]
        fails = [row for row in rows if row.decision == "FAIL"]
        fail_counts: dict[str, int] = defaultdict(int)
        for row in fails:
            fail_counts[row.decision_reason] += 1
        reject_counts: dict[str, int] = defaultdict(int)
        by_stage = {stage: 0 for stage in STAGES}
        for row in rows:
            for reason, count in row.rejection_reasons.items():
                reject_counts[reason] += count
                by_stage[reject_stage(reason)] += count

        cells.append(
            {
                "strategy_key": key,
                "strategy_name": rows[0].strategy_name,
                "timeframe": timeframe,
                "runs": len(rows),
                "seeds": sorted({int(row.seed) for row in rows if math.isfinite(row.seed)}),
                "pass_count": len(passes),
                "fail_count": len(fails),
                "seed_pass_rate": len(passes) / len(rows) if rows else 0.0,
                "median_cell_pass_rate": finite_median(row.pass_rate for row in rows),
                "median_robust_score": finite_median(row.robust_score for row in rows),
                "median_top_decile_expectancy": finite_median(row.top_decile_median_oos_expectancy for row in rows),
                "median_fold_stability_penalty": finite_median(row.median_fold_stability_penalty for row in rows),
                "median_dd_breach_rate": finite_median(row.top_decile_median_dd_breach_rate for row in rows),
                "median_stage_c_survivors": finite_median(row.stage_c_survivors for row in rows),
                "top_fail_reason": _top_reason(fail_counts),
                "top_reject_reason": _top_reason(reject_counts),
                "fail_reason_counts": _sort_counts(fail_counts),
                "reject_reason_counts": _sort_counts(reject_counts),
                "reject_reason_counts_by_stage": by_stage,
                "per_seed": [
                    {
                        "seed": int(row.seed) if math.isfinite(row.seed) else None,
                        "decision": row.decision,
                        "decision_reason": row.decision_reason,
                        "pass_rate": row.pass_rate,
                        "robust_score": row.robust_score,
                        "stage_c_survivors": row.stage_c_survivors,
                        "dd_breach_rate": row.top_decile_median_dd_breach_rate,
                        "fold_stability_penalty": row.median_fold_stability_penalty,
                        "rejection_reasons": dict(row.rejection_reasons),
                    }
                    for row in rows
                ],
            }
        )

    cells.sort(key=lambda cell: (cell["strategy_key"], cell["timeframe"]))
    return {
        "cells": cells,
        "global_fail_decision_reason_counts": _sort_counts(global_fail),
        "global_reject_reason_counts": _sort_counts(global_reject),
        "global_reject_reason_counts_by_stage": global_by_stage,
    }
