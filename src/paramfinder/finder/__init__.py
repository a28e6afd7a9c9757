from __future__ import annotations

from .aggregate import aggregate_finder_results
from .backends import (
    BackendStats,
    EnginePlan,
    ExecutionBackend,
    LocalBackend,
    PreparedRun,
    RemoteBackend,
    RunOutcome,
    is_backtest_result_consistent,
    select_execution_backend,
)
from .endpoint import EndpointAdjustment, build_selection_result
from .param_space import ParamSpace, normalize_params, validate_params
from .ranker import FinderResultRanker, compare_finder_results, sort_finder_results
from .scheduler import (
    FinderDatasetFlags,
    JobScheduler,
    ParamJob,
    StrategyPlan,
    build_strategy_plans,
    compute_dataset_flags,
)
from .strategies import (
    ConfirmationGate,
    EntryStrategy,
    FunctionStrategy,
    SignalStrategy,
    Strategy,
    StrategySelection,
    classify_strategy,
)
from .timeframes import TimeframeDataset, TimeframeDatasetCache, resolve_run_timeframes
from .types import FinderOptions, FinderResult, RobustMetrics

# run_finder: import from paramfinder.finder.runner (it depends on paramfinder.robust)
__all__ = [
    "BackendStats",
    "ConfirmationGate",
    "EndpointAdjustment",
    "EnginePlan",
    "EntryStrategy",
    "ExecutionBackend",
    "FinderDatasetFlags",
    "FinderOptions",
    "FinderResult",
    "FinderResultRanker",
    "FunctionStrategy",
    "JobScheduler",
    "LocalBackend",
    "ParamJob",
    "ParamSpace",
    "PreparedRun",
    "RemoteBackend",
    "RobustMetrics",
    "RunOutcome",
    "SignalStrategy",
    "Strategy",
    "StrategyPlan",
    "StrategySelection",
    "TimeframeDataset",
    "TimeframeDatasetCache",
    "aggregate_finder_results",
    "build_selection_result",
    "build_strategy_plans",
    "classify_strategy",
    "compare_finder_results",
    "compute_dataset_flags",
    "is_backtest_result_consistent",
    "normalize_params",
    "resolve_run_timeframes",
    "select_execution_backend",
    "sort_finder_results",
    "validate_params",
]
