from __future__ import annotations

import json

import pytest

from paramfinder.robust.audit import (
    AUDIT_LOG_MARKER,
    CellAuditWriter,
    build_audit_summary,
    collect_audit_records,
    finite_median,
    normalize_audit_record,
    reject_stage,
)


def _record(key="cycle", timeframe="1h", seed=1, decision="PASS", reason="pass", score=50.0, rejections=None) -> dict:
    return {
        "mode": "robust_random_wf",
        "strategy_key": key,
        "strategy_name": key.title(),
        "timeframe": timeframe,
        "seed": seed,
        "cell_seed": seed * 10,
        "decision": decision,
        "decision_reason": reason,
        "sampled_params": 40,
        "stage_c_survivors": 4 if decision == "PASS" else 0,
        "pass_rate": 0.1 if decision == "PASS" else 0.0,
        "robust_score": score,
        "rejection_reasons": rejections or {},
    }


def test_helpers() -> None:
    assert finite_median([]) == 0.0
    assert finite_median([1.0, float("nan"), 3.0, "x"]) == 2.0
    assert reject_stage("stage_a_expectancy") == "A"
    assert reject_stage("stage_c_dd_breach") == "C"
    assert reject_stage("insufficient_bars") == "other"


def test_normalize_flat_and_nested_records() -> None:
    flat = normalize_audit_record(_record(decision="pass"))
    assert flat is not None
    assert flat.decision == "PASS"
    assert flat.seed == 1

    nested = normalize_audit_record(
        {
            "key": "cycle",
            "name": "Cycle",
            "timeframes": ["4h"],
            "robust_metrics": {"decision": "FAIL", "decision_reason": "pass_rate_lt_1pct", "seed": 3},
        }
    )
    assert nested is not None
    assert nested.timeframe == "4h"
    assert nested.decision == "FAIL"
    assert nested.decision_reason == "pass_rate_lt_1pct"

    assert normalize_audit_record({"strategy_key": "cycle"}) is None
    assert normalize_audit_record(["not", "a", "record"]) is None


def test_rejection_counts_keep_positive_entries() -> None:
    record = normalize_audit_record(_record(rejections={"stage_a_expectancy": 3, "stage_b_stability": 0, "": 2}))
    assert record.rejection_reasons == {"stage_a_expectancy": 3}


def test_writer_and_collect_round_trip(tmp_path) -> None:
    path = tmp_path / "audit" / "seed1.jsonl"
    with CellAuditWriter(path) as writer:
        writer.write(_record(seed=1))
        writer.write(_record(seed=1, timeframe="4h", decision="FAIL", reason="stage_c_survivors_lt_2"))
    assert writer.records_written == 2
    with CellAuditWriter(path, append=True) as writer:
        writer.write(_record(seed=2))
    records = collect_audit_records([path])
    assert [(r.timeframe, r.seed) for r in records] == [("1h", 1), ("4h", 1), ("1h", 2)]
    assert records[0].source_file == str(path.resolve())


def test_collect_from_logs_and_documents(tmp_path) -> None:
    log = tmp_path / "run.log"
    log.write_text(
        "\n".join(
            [
                "2026-01-01 INFO starting",
                f"2026-01-01 INFO {AUDIT_LOG_MARKER} {json.dumps(_record(seed=7))}",
                f"2026-01-01 INFO {AUDIT_LOG_MARKER} {{broken",
                "",
            ]
        ),
        encoding="utf-8",
    )
    summary_doc = tmp_path / "finder_seed8.json"
    summary_doc.write_text(json.dumps({"status": "Complete.", "records": [_record(seed=8)]}), encoding="utf-8")
    listing = tmp_path / "records.json"
    listing.write_text(json.dumps([_record(seed=9), _record(seed=10)]), encoding="utf-8")

    records = collect_audit_records([log, summary_doc, listing])
    assert [r.seed for r in records] == [7, 8, 9, 10]


def test_build_audit_summary_groups_cells() -> None:
    records = [
        normalize_audit_record(_record(seed=2, score=60.0)),
        normalize_audit_record(
            _record(
                seed=1,
                decision="FAIL",
                reason="stage_c_survivors_lt_2",
                score=0.0,
                rejections={"stage_a_expectancy": 30, "stage_b_stability": 5},
            )
        ),
        normalize_audit_record(_record(seed=3, score=40.0, rejections={"stage_c_dd_breach": 2})),
        normalize_audit_record(_record(key="alpha", timeframe="4h", seed=1, decision="FAIL", reason="insufficient_bars", score=0.0)),
    ]
    summary = build_audit_summary(records)

    assert [(cell["strategy_key"], cell["timeframe"]) for cell in summary["cells"]] == [("alpha", "4h"), ("cycle", "1h")]
    cycle = summary["cells"][1]
    assert cycle["runs"] == 3
    assert cycle["seeds"] == [1, 2, 3]
    assert cycle["pass_count"] == 2
    assert cycle["fail_count"] == 1
    assert cycle["seed_pass_rate"] == pytest.approx(2 / 3)
    assert cycle["median_robust_score"] == pytest.approx(40.0)
    assert cycle["top_fail_reason"] == "stage_c_survivors_lt_2"
    assert cycle["top_reject_reason"] == "stage_a_expectancy"
    assert cycle["reject_reason_counts_by_stage"] == {"A": 30, "B": 5, "C": 2, "other": 0}
    assert [row["seed"] for row in cycle["per_seed"]] == [1, 2, 3]

    assert summary["global_fail_decision_reason_counts"] == {"insufficient_bars": 1, "stage_c_survivors_lt_2": 1}
    assert list(summary["global_reject_reason_counts"]) == ["stage_a_expectancy", "stage_b_stability", "stage_c_dd_breach"]
