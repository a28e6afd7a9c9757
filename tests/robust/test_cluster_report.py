from __future__ import annotations

import pytest

from paramfinder.robust.report import build_cluster_report
from paramfinder.robust.validator import CellReport


def _cell(key: str, timeframe: str, decision: str, score: float) -> CellReport:
    return CellReport(
        key=key,
        name=key.upper(),
        timeframe=timeframe,
        seed=1,
        cell_seed=2,
        bars=500,
        sampled_params=40,
        stage_a_survivors=10,
        stage_b_survivors=5,
        stage_c_survivors=3,
        decision=decision,
        decision_reason="pass" if decision == "PASS" else "stage_c_survivors_lt_2",
        robust_score=score,
    )


def test_cluster_report_orders_by_pass_rate_then_score() -> None:
    report = build_cluster_report(
        [
            _cell("a", "1h", "FAIL", 0.0),
            _cell("a", "4h", "PASS", 40.0),
            _cell("b", "1h", "PASS", 30.0),
            _cell("b", "4h", "PASS", 50.0),
            _cell("c", "1h", "FAIL", 10.0),
            _cell("d", "1h", "FAIL", 10.0),
        ]
    )
    assert [entry.key for entry in report] == ["b", "a", "c", "d"]
    top = report[0]
    assert top.cells == 2 and top.passed == 2
    assert top.pass_rate == 1.0
    assert top.passed_timeframes == ["1h", "4h"]
    assert top.mean_robust_score == pytest.approx(40.0)
    assert top.best_robust_score == pytest.approx(50.0)
    assert report[1].to_dict()["pass_rate"] == 0.5
    assert report[1].to_dict()["passed_timeframes"] == ["4h"]


def test_cluster_report_empty() -> None:
    assert build_cluster_report([]) == []
