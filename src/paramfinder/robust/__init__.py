from __future__ import annotations

from .audit import (
    AuditRecord,
    CellAuditWriter,
    build_audit_summary,
    collect_audit_records,
    normalize_audit_record,
)
from .config import CellDecisionPolicy, HoldoutStagePolicy, RobustPolicy, WalkForwardStagePolicy
from .report import ClusterEntry, build_cluster_report
from .validator import (
    CellReport,
    RobustCandidate,
    RobustRunOutput,
    RobustValidator,
    robust_precondition_error,
    run_robust_validation,
)
from .walkforward import (
    WalkForwardEvaluation,
    WalkForwardFold,
    WindowBacktester,
    make_fold_splits,
    run_fixed_param_walk_forward,
)

__all__ = [
    "AuditRecord",
    "CellAuditWriter",
    "CellDecisionPolicy",
    "CellReport",
    "ClusterEntry",
    "HoldoutStagePolicy",
    "RobustCandidate",
    "RobustPolicy",
    "RobustRunOutput",
    "RobustValidator",
    "WalkForwardEvaluation",
    "WalkForwardFold",
    "WalkForwardStagePolicy",
    "WindowBacktester",
    "build_audit_summary",
    "build_cluster_report",
    "collect_audit_records",
    "make_fold_splits",
    "normalize_audit_record",
    "robust_precondition_error",
    "run_fixed_param_walk_forward",
    "run_robust_validation",
]
