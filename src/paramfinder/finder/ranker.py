from __future__ import annotations

from functools import cmp_to_key
from typing import Sequence

import math

from paramfinder.finder.types import FinderResult

METRIC_EPSILON = 1e-4
# stands in for an infinite profit factor so it still orders above finite values
INFINITE_PROFIT_FACTOR = float(2**53 - 1)
ASCENDING_METRICS = frozenset({"maxDrawdownPercent"})


def finder_metric_value(item: FinderResult, metric: str) -> float:
    result = item.selection_result
    if metric == "netProfit":
        return result.net_profit
    if metric == "netProfitPercent":
        return result.net_profit_percent
    if metric == "profitFactor":
        return INFINITE_PROFIT_FACTOR if math.isinf(result.profit_factor) and result.profit_factor > 0 else result.profit_factor
    if metric == "sharpeRatio":
        return result.sharpe_ratio
    if metric == "winRate":
        return result.win_rate
    if metric == "maxDrawdownPercent":
        return result.max_drawdown_percent
    if metric == "expectancy":
        return result.expectancy
    if metric == "averageGain":
        return result.avg_win
    if metric == "totalTrades":
        return float(result.total_trades)
    return 0.0


def compare_finder_results(a: FinderResult, b: FinderResult, sort_priority: Sequence[str]) -> float:
    """Negative when ``a`` ranks ahead of ``b``."""
    for metric in sort_priority:
        val_a = finder_metric_value(a, metric)
        val_b = finder_metric_value(b, metric)
        if abs(val_a - val_b) > METRIC_EPSILON:
            return val_a - val_b if metric in ASCENDING_METRICS else val_b - val_a
    return 0.0


def sort_finder_results(items: Sequence[FinderResult], sort_priority: Sequence[str]) -> list[FinderResult]:
    return sorted(items, key=cmp_to_key(lambda a, b: compare_finder_results(a, b, sort_priority)))


class FinderResultRanker:
    """
    Bounded top-K collection.

    Internally a binary heap with the worst retained candidate at the root, so
    an offer is O(log K) and a candidate no better than the current worst is
    dropped without touching the heap.
    """

    def __init__(self, max_size: int, sort_priority: Sequence[str]) -> None:
        self.max_size = max(1, int(max_size))
        self.sort_priority = list(sort_priority)
        self._heap: list[FinderResult] = []

    def __len__(self) -> int:
        return len(self._heap)

    def offer(self, candidate: FinderResult) -> bool:
        if len(self._heap) < self.max_size:
            self._heap.append(candidate)
            self._sift_up(len(self._heap) - 1)
            return True
        if compare_finder_results(candidate, self._heap[0], self.sort_priority) >= 0:
            return False
        self._heap[0] = candidate
        self._sift_down(0)
        return True

    def to_sorted_list(self, limit: int) -> list[FinderResult]:
        return sort_finder_results(self._heap, self.sort_priority)[: max(1, int(limit))]

    def _is_worse(self, a: FinderResult, b: FinderResult) -> bool:
        return compare_finder_results(a, b, self.sort_priority) > 0

    def _sift_up(self, idx: int) -> None:
        heap = self._heap
        while idx > 0:
            parent = (idx - 1) // 2
            if not self._is_worse(heap[idx], heap[parent]):
                break
            heap[idx], heap[parent] = heap[parent], heap[idx]
            idx = parent

    def _sift_down(self, idx: int) -> None:
        heap = self._heap
        size = len(heap)
        while True:
            left = idx * 2 + 1
            right = left + 1
            worst = idx
            if left < size and self._is_worse(heap[left], heap[worst]):
                worst = left
            if right < size and self._is_worse(heap[right], heap[worst]):
                worst = right
            if worst == idx:
                return
            heap[idx], heap[worst] = heap[worst], heap[idx]
            idx = worst
