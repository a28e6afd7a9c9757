from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from functools import cmp_to_key
from typing import Any, Callable, Optional, Sequence

import json
import logging
import math

import numpy as np
import pandas as pd

from paramfinder.backtest.metrics import normalize_result_sharpe
from paramfinder.backtest.models import BacktestResult, PositionSizing
from paramfinder.finder.dispatcher import RunPacer
from paramfinder.finder.endpoint import build_selection_result
from paramfinder.finder.ranker import compare_finder_results
from paramfinder.finder.scheduler import JobScheduler, ParamJob
from paramfinder.finder.strategies import StrategyVariant
from paramfinder.finder.timeframes import TimeframeDataset
from paramfinder.finder.types import ROBUST_MODE, FinderOptions, FinderResult, RobustMetrics, StrategyParams
from paramfinder.robust.audit import CellAuditWriter
from paramfinder.robust.config import RobustPolicy, WalkForwardStagePolicy
from paramfinder.robust.walkforward import (
    WalkForwardEvaluation,
    WindowBacktester,
    holdout_window,
    make_fold_splits,
    run_fixed_param_walk_forward,
)
from paramfinder.utils.seeding import cell_seed as compute_cell_seed, seeded_subset

logger = logging.getLogger(__name__)

PASS = "PASS"
FAIL = "FAIL"

CONFIRMATIONS_ENABLED_STATUS = "Robust mode requires confirmation strategies to be disabled."
NON_FINITE_SEED_STATUS = "Robust mode requires a finite seed."

BacktestFn = Callable[..., BacktestResult]


def robust_precondition_error(options: FinderOptions, confirmations_enabled: bool) -> Optional[str]:
    """Status explaining why a robust run cannot start, or None when it can."""
    if confirmations_enabled:
        return CONFIRMATIONS_ENABLED_STATUS
    if not options.has_finite_seed():
        return NON_FINITE_SEED_STATUS
    return None


@dataclass(slots=True)
class RejectionTally:
    reasons: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    errors: int = 0

    def record(self, reason: str) -> None:
        self.reasons[reason] += 1
        if reason.endswith("_error"):
            self.errors += 1

    def as_dict(self) -> dict[str, int]:
        return {key: self.reasons[key] for key in sorted(self.reasons)}


@dataclass(slots=True)
class RobustCandidate:
    job: ParamJob
    stage_a_score: float
    holdout: BacktestResult
    stage_b: Optional[WalkForwardEvaluation] = None
    stage_c: Optional[WalkForwardEvaluation] = None

    @property
    def params(self) -> StrategyParams:
        return self.job.params

    @property
    def final(self) -> WalkForwardEvaluation:
        evaluation = self.stage_c or self.stage_b
        if evaluation is None:
            raise ValueError("Candidate has no walk-forward evaluation yet.")
        return evaluation


def _compare_survivors(a: RobustCandidate, b: RobustCandidate) -> int:
    fa, fb = a.final, b.final
    keys = (
        (fb.median_expectancy, fa.median_expectancy),
        (fb.profitable_fold_ratio, fa.profitable_fold_ratio),
        (fa.stability_penalty, fb.stability_penalty),
        (b.stage_a_score, a.stage_a_score),
    )
    for left, right in keys:
        if left < right:
            return -1
        if left > right:
            return 1
    return 0


def rank_survivors(survivors: Sequence[RobustCandidate]) -> list[RobustCandidate]:
    return sorted(survivors, key=cmp_to_key(_compare_survivors))


def _clamp_score(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return float(min(100.0, max(0.0, value)))


@dataclass(slots=True)
class CellReport:
    key: str
    name: str
    timeframe: str
    seed: int
    cell_seed: int
    bars: int
    sampled_params: int
    stage_a_survivors: int
    stage_b_survivors: int
    stage_c_survivors: int
    decision: str
    decision_reason: str
    pass_rate: float = 0.0
    top_decile_median_oos_expectancy: float = 0.0
    top_decile_median_profitable_fold_ratio: float = 0.0
    median_fold_stability_penalty: float = 0.0
    top_decile_median_dd_breach_rate: float = 0.0
    robust_score: float = 0.0
    rejection_reasons: dict[str, int] = field(default_factory=dict)
    best: Optional[RobustCandidate] = None

    @property
    def passed(self) -> bool:
        return self.decision == PASS

    def to_metrics(self) -> RobustMetrics:
        return RobustMetrics(
            seed=self.seed,
            cell_seed=self.cell_seed,
            decision=PASS if self.passed else FAIL,
            decision_reason=self.decision_reason,
            timeframe=self.timeframe,
            sampled_params=self.sampled_params,
            stage_a_survivors=self.stage_a_survivors,
            stage_b_survivors=self.stage_b_survivors,
            stage_c_survivors=self.stage_c_survivors,
            pass_rate=self.pass_rate,
            top_decile_median_oos_expectancy=self.top_decile_median_oos_expectancy,
            top_decile_median_profitable_fold_ratio=self.top_decile_median_profitable_fold_ratio,
            median_fold_stability_penalty=self.median_fold_stability_penalty,
            top_decile_median_dd_breach_rate=self.top_decile_median_dd_breach_rate,
            robust_score=self.robust_score,
            rejection_reasons=dict(self.rejection_reasons),
        )

    def to_audit_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "mode": ROBUST_MODE,
            "strategy_key": self.key,
            "strategy_name": self.name,
            "timeframe": self.timeframe,
            "seed": self.seed,
            "cell_seed": self.cell_seed,
            "bars": self.bars,
            "sampled_params": self.sampled_params,
            "stage_a_survivors": self.stage_a_survivors,
            "stage_b_survivors": self.stage_b_survivors,
            "stage_c_survivors": self.stage_c_survivors,
            "pass_rate": self.pass_rate,
            "top_decile_median_oos_expectancy": self.top_decile_median_oos_expectancy,
            "top_decile_median_profitable_fold_ratio": self.top_decile_median_profitable_fold_ratio,
            "median_fold_stability_penalty": self.median_fold_stability_penalty,
            "top_decile_median_dd_breach_rate": self.top_decile_median_dd_breach_rate,
            "robust_score": self.robust_score,
            "decision": self.decision,
            "decision_reason": self.decision_reason,
            "rejection_reasons": dict(self.rejection_reasons),
        }
        if self.best is not None:
            record["best_params"] = dict(self.best.params)
        return record


class RobustValidator:
    """
    Runs the Stage A/B/C survivor funnel for one (strategy, timeframe) cell.

    Stage A screens every sampled parameter set on a trailing holdout. Stages B
    and C re-run the survivors as fixed-parameter walk-forwards with more
    folds and stricter gates. Every rejection is tallied by reason code and
    only the first failing check per candidate is recorded.
    """

    def __init__(
        self,
        policy: Optional[RobustPolicy] = None,
        *,
        initial_capital: float,
        position_size: float,
        commission: float,
        sizing: Optional[PositionSizing] = None,
        backtest_fn: BacktestFn,
    ) -> None:
        self.policy = policy or RobustPolicy()
        self.policy.validate()
        self.initial_capital = float(initial_capital)
        self.position_size = float(position_size)
        self.commission = float(commission)
        self.sizing = sizing or PositionSizing()
        self.backtest_fn = backtest_fn

    def _backtester(self, data: pd.DataFrame, strategy: StrategyVariant, job: ParamJob) -> WindowBacktester:
        return WindowBacktester(
            data=data,
            strategy=strategy,
            params=job.params,
            settings=job.backtest_settings,
            backtest_fn=self.backtest_fn,
            position_size=self.position_size,
            commission=self.commission,
            sizing=self.sizing,
            lookback=self.policy.lookback_bars,
        )

    def _stage_a(
        self,
        data: pd.DataFrame,
        strategy: StrategyVariant,
        jobs: Sequence[ParamJob],
        tally: RejectionTally,
    ) -> list[RobustCandidate]:
        policy = self.policy.holdout
        start, end = holdout_window(len(data), policy.holdout_fraction, policy.min_holdout_bars)
        survivors: list[RobustCandidate] = []
        for job in jobs:
            try:
                result = self._backtester(data, strategy, job).run(start, end, self.initial_capital)
            except Exception as exc:
                logger.warning("Stage A failed for %s (job %s): %s", job.key, job.id, exc)
                tally.record("stage_a_error")
                continue
            if result.total_trades < policy.min_trades:
                tally.record("stage_a_min_trades")
                continue
            if result.expectancy <= policy.min_expectancy:
                tally.record("stage_a_expectancy")
                continue
            if result.max_drawdown_percent > policy.max_drawdown_percent:
                tally.record("stage_a_drawdown")
                continue
            score = (
                result.expectancy
                + min(policy.profit_factor_cap, result.profit_factor)
                - result.max_drawdown_percent * policy.drawdown_weight
            )
            survivors.append(RobustCandidate(job=job, stage_a_score=float(score), holdout=result))
        return survivors

    @staticmethod
    def _walk_forward_reject(evaluation: WalkForwardEvaluation, policy: WalkForwardStagePolicy) -> Optional[str]:
        if evaluation.combined.total_trades < policy.min_trades:
            return "min_trades"
        if evaluation.median_expectancy <= policy.min_median_expectancy:
            return "median_expectancy"
        if evaluation.profitable_fold_ratio < policy.min_profitable_fold_ratio:
            return "profitable_folds"
        if evaluation.dd_breach_rate > policy.max_breach_rate:
            return "dd_breach"
        if evaluation.combined.max_drawdown_percent > policy.max_combined_drawdown:
            return "combined_dd"
        if evaluation.stability_penalty > policy.max_stability_penalty:
            return "stability"
        return None

    def _walk_forward_stage(
        self,
        stage: str,
        policy: WalkForwardStagePolicy,
        data: pd.DataFrame,
        strategy: StrategyVariant,
        candidates: Sequence[RobustCandidate],
        tally: RejectionTally,
    ) -> list[RobustCandidate]:
        if not candidates:
            return []
        splits = make_fold_splits(len(data), policy.folds, self.policy.warmup_fraction, self.policy.min_fold_bars)
        survivors: list[RobustCandidate] = []
        for candidate in candidates:
            try:
                evaluation = run_fixed_param_walk_forward(
                    self._backtester(data, strategy, candidate.job),
                    splits,
                    self.initial_capital,
                    policy.fold_drawdown_cap,
                )
            except Exception as exc:
                logger.warning("Stage %s failed for %s (job %s): %s", stage.upper(), candidate.job.key, candidate.job.id, exc)
                tally.record(f"stage_{stage}_error")
                continue
            reason = self._walk_forward_reject(evaluation, policy)
            if reason is not None:
                tally.record(f"stage_{stage}_{reason}")
                continue
            if stage == "b":
                candidate.stage_b = evaluation
            else:
                candidate.stage_c = evaluation
            survivors.append(candidate)
        return survivors

    def evaluate_cell(
        self,
        data: pd.DataFrame,
        *,
        key: str,
        name: str,
        strategy: StrategyVariant,
        jobs: Sequence[ParamJob],
        timeframe: str,
        seed: int,
        max_runs: int,
    ) -> CellReport:
        seed = int(seed)
        derived_seed = compute_cell_seed(seed, key, timeframe)
        sampled = seeded_subset(list(jobs), self.policy.sample_budget(max_runs), derived_seed)
        report = CellReport(
            key=key,
            name=name,
            timeframe=timeframe,
            seed=seed,
            cell_seed=derived_seed,
            bars=len(data),
            sampled_params=len(sampled),
            stage_a_survivors=0,
            stage_b_survivors=0,
            stage_c_survivors=0,
            decision=FAIL,
            decision_reason="insufficient_bars",
        )
        if len(data) < self.policy.min_bars:
            logger.info("Skipping %s @ %s: %d bars < %d", key, timeframe, len(data), self.policy.min_bars)
            return report

        tally = RejectionTally()
        stage_a = self._stage_a(data, strategy, sampled, tally)
        stage_b = self._walk_forward_stage("b", self.policy.stage_b, data, strategy, stage_a, tally)
        stage_c = self._walk_forward_stage("c", self.policy.stage_c, data, strategy, stage_b, tally)

        report.stage_a_survivors = len(stage_a)
        report.stage_b_survivors = len(stage_b)
        report.stage_c_survivors = len(stage_c)
        report.rejection_reasons = tally.as_dict()
        self._decide(report, rank_survivors(stage_c))
        return report

    def _decide(self, report: CellReport, ranked: list[RobustCandidate]) -> None:
        decision = self.policy.decision
        report.pass_rate = report.stage_c_survivors / report.sampled_params if report.sampled_params else 0.0
        if ranked:
            top = ranked[: max(1, math.ceil(decision.top_fraction * len(ranked)))]
            report.top_decile_median_oos_expectancy = float(np.median([c.final.median_expectancy for c in top]))
            report.top_decile_median_profitable_fold_ratio = float(np.median([c.final.profitable_fold_ratio for c in top]))
            report.median_fold_stability_penalty = float(np.median([c.final.stability_penalty for c in top]))
            report.top_decile_median_dd_breach_rate = float(np.median([c.final.dd_breach_rate for c in top]))
            expectancy = report.top_decile_median_oos_expectancy
            report.robust_score = float(
                decision.pass_rate_weight * _clamp_score(report.pass_rate * 100.0)
                + decision.fold_ratio_weight * _clamp_score(report.top_decile_median_profitable_fold_ratio * 100.0)
                + decision.stability_weight
                * _clamp_score(100.0 * (1.0 - report.median_fold_stability_penalty / decision.max_stability_penalty))
                + decision.expectancy_weight * _clamp_score(100.0 * expectancy / (abs(expectancy) + 1.0))
            )
            report.best = ranked[0]

        if report.stage_c_survivors < decision.min_stage_c_survivors:
            report.decision_reason = "stage_c_survivors_lt_2"
        elif report.pass_rate < decision.min_pass_rate:
            report.decision_reason = "pass_rate_lt_1pct"
        elif report.top_decile_median_dd_breach_rate > decision.max_dd_breach_rate:
            report.decision_reason = "dd_breach_rate_gt_20pct"
        elif report.median_fold_stability_penalty > decision.max_stability_penalty:
            report.decision_reason = "stability_penalty_gt_1_8"
        else:
            report.decision = PASS
            report.decision_reason = "pass"

    def full_result(self, data: pd.DataFrame, candidate: RobustCandidate) -> BacktestResult:
        """Backtest a survivor over the whole dataset."""
        job = candidate.job
        signals = job.strategy.generate_signals(data, job.params)
        return self.backtest_fn(
            data,
            signals,
            self.initial_capital,
            self.position_size,
            self.commission,
            job.backtest_settings,
            self.sizing,
        )


@dataclass(slots=True)
class RobustRunOutput:
    results: list[FinderResult]
    status: str
    cells: list[CellReport]


@dataclass(slots=True)
class _CellGroup:
    key: str
    name: str
    strategy: StrategyVariant
    jobs: list[ParamJob] = field(default_factory=list)


def group_jobs_by_strategy(scheduler: JobScheduler) -> list[_CellGroup]:
    """Drain the scheduler and bucket jobs per strategy key in pull order."""
    groups: dict[str, _CellGroup] = {}
    batch_size = max(1, scheduler.total_runs)
    while not scheduler.exhausted:
        batch = scheduler.next_job_batch(batch_size)
        if not batch:
            break
        for job in batch:
            group = groups.get(job.key)
            if group is None:
                group = groups[job.key] = _CellGroup(key=job.key, name=job.name, strategy=job.strategy)
            group.jobs.append(job)
    return list(groups.values())


def _order_robust_results(results: Sequence[FinderResult], sort_priority: Sequence[str]) -> list[FinderResult]:
    def _cmp(a: FinderResult, b: FinderResult) -> float:
        score_a = a.robust_metrics.robust_score if a.robust_metrics else 0.0
        score_b = b.robust_metrics.robust_score if b.robust_metrics else 0.0
        if score_a != score_b:
            return score_b - score_a
        return compare_finder_results(a, b, sort_priority)

    return sorted(results, key=cmp_to_key(_cmp))


async def run_robust_validation(
    *,
    datasets: Sequence[TimeframeDataset],
    scheduler: JobScheduler,
    validator: RobustValidator,
    options: FinderOptions,
    pacer: RunPacer,
    set_progress: Callable[[float, str], None],
    set_status: Callable[[str], None],
    audit_writer: Optional[CellAuditWriter] = None,
) -> RobustRunOutput:
    """
    Validate every (strategy, timeframe) cell and emit the best survivor of each PASS cell.

    Callers check ``robust_precondition_error`` first; a non-finite seed here
    raises ValueError.
    """

    if not options.has_finite_seed():
        raise ValueError(NON_FINITE_SEED_STATUS)
    seed = int(float(options.robust_seed))
    groups = group_jobs_by_strategy(scheduler)
    total_cells = len(groups) * len(datasets)
    cells: list[CellReport] = []
    emitted: list[FinderResult] = []
    endpoint_adjusted = 0

    set_status(f"Robust WF seed {seed}: validating {total_cells} cells...")
    for group in groups:
        for dataset in datasets:
            report = validator.evaluate_cell(
                dataset.data,
                key=group.key,
                name=group.name,
                strategy=group.strategy,
                jobs=group.jobs,
                timeframe=dataset.interval,
                seed=seed,
                max_runs=options.max_runs,
            )
            cells.append(report)
            record = report.to_audit_record()
            logger.info("[robust_random_wf][cell_audit] %s", json.dumps(record, sort_keys=True))
            if audit_writer is not None:
                audit_writer.write(record)

            if report.passed and report.best is not None:
                try:
                    raw = validator.full_result(dataset.data, report.best)
                except Exception as exc:
                    logger.warning("Full-dataset backtest failed for %s @ %s: %s", group.key, dataset.interval, exc)
                else:
                    result = normalize_result_sharpe(raw, validator.initial_capital)
                    last_time = dataset.data.index[-1] if len(dataset.data) else None
                    adjustment = build_selection_result(result, last_time, validator.initial_capital)
                    if adjustment.adjusted:
                        endpoint_adjusted += 1
                    emitted.append(
                        FinderResult(
                            key=group.key,
                            name=group.name,
                            params=report.best.params,
                            result=result,
                            selection_result=adjustment.result,
                            endpoint_adjusted=adjustment.adjusted,
                            endpoint_removed_trades=adjustment.removed_trades,
                            timeframes=[dataset.interval],
                            robust_metrics=report.to_metrics(),
                        )
                    )

            done = len(cells)
            if pacer.should_update_ui(done == total_cells):
                set_progress(10 + done / total_cells * 85, f"Robust WF {done}/{total_cells} cells")
                set_status(f"Robust WF: {group.key} @ {dataset.interval} {report.decision} ({done}/{total_cells})")
            await pacer.maybe_yield(True)

    shown = _order_robust_results(emitted, options.sort_priority)[: options.top_n]
    passed = sum(1 for cell in cells if cell.passed)
    status = (
        f"Complete. Robust WF seed {seed}: {len(cells)} cells, {passed} PASS, "
        f"{endpoint_adjusted} endpoint-adjusted, {len(shown)} shown."
    )
    set_progress(100, f"{len(cells)}/{total_cells} cells")
    set_status(status)
    return RobustRunOutput(results=shown, status=status, cells=cells)
