from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np

from paramfinder.robust.validator import CellReport


@dataclass(slots=True)
class ClusterEntry:
    """PASS statistics for one strategy across all of its cells."""

    key: str
    name: str
    cells: int = 0
    passed: int = 0
    passed_timeframes: list[str] = field(default_factory=list)
    mean_robust_score: float = 0.0
    best_robust_score: float = 0.0

    @property
    def pass_rate(self) -> float:
        return self.passed / self.cells if self.cells else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "cells": self.cells,
            "passed": self.passed,
            "pass_rate": self.pass_rate,
            "passed_timeframes": list(self.passed_timeframes),
            "mean_robust_score": self.mean_robust_score,
            "best_robust_score": self.best_robust_score,
        }


def build_cluster_report(cells: Sequence[CellReport]) -> list[ClusterEntry]:
    """Aggregate cell decisions per strategy, best PASS rate first."""
    grouped: dict[str, list[CellReport]] = {}
    for cell in cells:
        grouped.setdefault(cell.key, []).append(cell)

    entries: list[ClusterEntry] = []
    for key, rows in grouped.items():
        scores = np.array([row.robust_score for row in rows], dtype=float)
        entries.append(
            ClusterEntry(
                key=key,
                name=rows[0].name,
                cells=len(rows),
                passed=sum(1 for row in rows if row.passed),
                passed_timeframes=[row.timeframe for row in rows if row.passed],
                mean_robust_score=float(scores.mean()),
                best_robust_score=float(scores.max()),
            )
        )
    entries.sort(key=lambda entry: (-entry.pass_rate, -entry.mean_robust_score, entry.key))
    return entries
