from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

import asyncio
import logging
import re
import time

import pandas as pd

from paramfinder.finder.types import FinderOptions

logger = logging.getLogger(__name__)

INTERVAL_PATTERN = re.compile(r"^(\d+)\s*([mhdwM])$")
DEFAULT_MAX_TIMEFRAMES = 10
DATASET_CACHE_TTL_SECONDS = 30.0

FetchFn = Callable[[str, str], Awaitable[pd.DataFrame]]


@dataclass(slots=True)
class TimeframeDataset:
    interval: str
    data: pd.DataFrame


def normalize_interval(raw: str) -> Optional[str]:
    """Canonical interval token (``"15 m"`` -> ``"15m"``); None when unparseable."""
    match = INTERVAL_PATTERN.match(raw.strip())
    if not match:
        return None
    value = int(match.group(1))
    if value <= 0:
        return None
    unit = match.group(2)
    return f"{value}{unit if unit == 'M' else unit.lower()}"


def resolve_run_timeframes(
    options: FinderOptions,
    fallback_interval: str,
    max_timeframes: int = DEFAULT_MAX_TIMEFRAMES,
) -> list[str]:
    if not options.multi_timeframe_enabled:
        return [fallback_interval]
    deduped: list[str] = []
    for interval in options.timeframes:
        normalized = normalize_interval(interval)
        if normalized is None:
            continue
        if normalized not in deduped:
            deduped.append(normalized)
        if len(deduped) >= max_timeframes:
            break
    return deduped or [fallback_interval]


class TimeframeDatasetCache:
    """
    Loads one dataset per interval through ``fetch`` with a short-lived cache.

    The dataset already loaded by the caller is reused for its own interval.
    Failed or empty fetches are logged and skipped; the returned list keeps the
    requested interval order.
    """

    def __init__(
        self,
        fetch: FetchFn,
        *,
        ttl_seconds: float = DATASET_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: dict[str, tuple[pd.DataFrame, float]] = {}

    @staticmethod
    def _key(symbol: str, interval: str) -> str:
        return f"{symbol}|{interval}"

    def clear(self) -> None:
        self._cache.clear()

    def get(self, symbol: str, interval: str) -> Optional[pd.DataFrame]:
        key = self._key(symbol, interval)
        cached = self._cache.get(key)
        if cached is None or cached[0].empty:
            return None
        data, cached_at = cached
        if self._clock() - cached_at > self.ttl_seconds:
            del self._cache[key]
            return None
        return data

    def put(self, symbol: str, interval: str, data: pd.DataFrame) -> None:
        self._cache[self._key(symbol, interval)] = (data, self._clock())

    async def load(
        self,
        symbol: str,
        intervals: Sequence[str],
        *,
        current_interval: Optional[str] = None,
        current_data: Optional[pd.DataFrame] = None,
    ) -> list[TimeframeDataset]:
        deduped = list(dict.fromkeys(intervals))
        found: dict[str, pd.DataFrame] = {}
        for interval in deduped:
            cached = self.get(symbol, interval)
            if cached is not None:
                found[interval] = cached

        if current_interval in deduped and current_data is not None and not current_data.empty:
            found[current_interval] = current_data
            self.put(symbol, current_interval, current_data)

        missing = [interval for interval in deduped if interval not in found]
        if missing:
            fetched = await asyncio.gather(
                *(self._fetch(symbol, interval) for interval in missing),
                return_exceptions=True,
            )
            for interval, outcome in zip(missing, fetched):
                if isinstance(outcome, BaseException):
                    logger.warning("Failed to load %s %s: %s", symbol, interval, outcome)
                    continue
                if outcome is None or outcome.empty:
                    logger.warning("Skipping timeframe %s - no data returned.", interval)
                    continue
                self.put(symbol, interval, outcome)
                found[interval] = outcome

        return [TimeframeDataset(interval=interval, data=found[interval]) for interval in deduped if interval in found]
