#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from paramfinder.robust.audit import build_audit_summary, collect_audit_records


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Summarize robust cell audit records across seeds.")
    parser.add_argument("paths", nargs="+", type=Path, help="Audit JSONL files, run summaries or captured logs.")
    parser.add_argument("--output", type=Path, help="Write the summary JSON here.")
    parser.add_argument("--top", type=int, default=20, help="Cells to print.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    records = collect_audit_records(args.paths)
    if not records:
        print("[WARN] No robust cell audit records found.")
        return 1

    summary = build_audit_summary(records)
    ranked = sorted(summary["cells"], key=lambda cell: (-cell["seed_pass_rate"], -cell["median_robust_score"]))
    print(f"[INFO] {len(records)} records, {len(summary['cells'])} cells")
    for cell in ranked[: args.top]:
        print(
            f"  {cell['strategy_key']:<24} {cell['timeframe']:<6} "
            f"pass {cell['pass_count']}/{cell['runs']} "
            f"score~{cell['median_robust_score']:.1f} "
            f"top_fail={cell['top_fail_reason'] or '-'} top_reject={cell['top_reject_reason'] or '-'}"
        )
    by_stage = summary["global_reject_reason_counts_by_stage"]
    print(f"[INFO] Rejections by stage: A={by_stage['A']} B={by_stage['B']} C={by_stage['C']} other={by_stage['other']}")

    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(json.dumps(summary, indent=2), encoding="utf-8")
        print(f"[INFO] Wrote {args.output}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
