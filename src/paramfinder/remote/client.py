"""Async client for the remote batch backtest engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

import logging
import os
import time

import httpx
import pandas as pd

from paramfinder.backtest.models import BacktestResult, PositionSizing, Signal
from paramfinder.remote.sanitizer import settings_to_payload

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:3030"
BASE_URL_ENV = "PARAMFINDER_REMOTE_URL"


class RemoteEngineError(RuntimeError):
    ...


@dataclass(slots=True)
class BatchItem:
    id: str
    signals: Sequence[Signal]
    settings: Mapping[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "signals": [signal.to_payload() for signal in self.signals],
            "settings": settings_to_payload(self.settings),
        }


@dataclass(slots=True)
class BatchEntry:
    id: str
    result: BacktestResult


@dataclass(slots=True)
class BatchResponse:
    results: list[BatchEntry]
    processing_time_ms: float = 0.0


def ohlcv_to_payload(data: pd.DataFrame) -> list[dict[str, Any]]:
    frame = data.loc[:, ["open", "high", "low", "close"]].astype(float)
    frame["volume"] = data["volume"].fillna(0.0).astype(float) if "volume" in data.columns else 0.0
    frame.insert(0, "time", [int(ts.timestamp()) for ts in data.index])
    return frame.to_dict(orient="records")


def data_fingerprint(data: pd.DataFrame) -> str:
    if data.empty:
        return "empty"
    first = int(data.index[0].timestamp())
    last = int(data.index[-1].timestamp())
    return f"{first}-{last}-{len(data)}"


def _parse_batch(payload: Any) -> BatchResponse:
    if not isinstance(payload, Mapping) or not isinstance(payload.get("results"), list):
        raise RemoteEngineError("Batch response missing 'results' list.")
    entries: list[BatchEntry] = []
    for raw in payload["results"]:
        if not isinstance(raw, Mapping) or "id" not in raw or not isinstance(raw.get("result"), Mapping):
            raise RemoteEngineError(f"Malformed batch entry: {raw!r}")
        entries.append(BatchEntry(id=str(raw["id"]), result=BacktestResult.from_payload(raw["result"])))
    return BatchResponse(results=entries, processing_time_ms=float(payload.get("processingTimeMs") or 0.0))


class RemoteEngineClient:
    """
    Thin wrapper around the remote engine's HTTP API.

    Every public call returns ``None`` (or ``False`` for the health probe) on
    transport or protocol failure so callers can fall back to local execution.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout: float = 120.0,
        health_timeout: float = 2.0,
        health_ttl: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or os.environ.get(BASE_URL_ENV) or DEFAULT_BASE_URL).rstrip("/")
        self.health_timeout = health_timeout
        self.health_ttl = health_ttl
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )
        self._available = False
        self._last_health_check = 0.0
        self._cached_data_id: Optional[str] = None
        self._cached_data_hash: Optional[str] = None

    @property
    def available(self) -> bool:
        return self._available

    async def check_health(self) -> bool:
        now = time.monotonic()
        if self._available and now - self._last_health_check < self.health_ttl:
            return True
        try:
            resp = await self._client.get("/api/health", timeout=self.health_timeout)
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            self._available = False
            logger.warning("Remote engine not available at %s: %s", self.base_url, exc)
            return False
        self._available = isinstance(payload, Mapping) and payload.get("status") == "healthy"
        self._last_health_check = now
        if self._available:
            logger.info("Remote engine connected (version=%s)", payload.get("version"))
        return self._available

    async def cache_data(self, data: pd.DataFrame) -> Optional[str]:
        """Upload ``data`` once and return its cache id; unchanged data reuses the last id."""
        if not await self.check_health():
            return None
        fingerprint = data_fingerprint(data)
        if self._cached_data_id and self._cached_data_hash == fingerprint:
            logger.debug("Reusing remote cache id %s", self._cached_data_id)
            return self._cached_data_id
        try:
            resp = await self._client.post("/api/data/cache", json={"data": ohlcv_to_payload(data)})
            resp.raise_for_status()
            payload = resp.json()
            cache_id = payload.get("cacheId") if isinstance(payload, Mapping) else None
            if not cache_id:
                raise RemoteEngineError("Cache response missing 'cacheId'.")
        except (httpx.HTTPError, ValueError, RemoteEngineError) as exc:
            logger.warning("Remote data cache failed: %s", exc)
            return None
        self._cached_data_id = str(cache_id)
        self._cached_data_hash = fingerprint
        logger.info("Cached %s bars on remote engine (id=%s)", payload.get("barCount", len(data)), cache_id)
        return self._cached_data_id

    def clear_local_cache(self) -> None:
        self._cached_data_id = None
        self._cached_data_hash = None

    async def run_batch_backtest(
        self,
        data: pd.DataFrame,
        items: Sequence[BatchItem],
        initial_capital: float,
        position_size: float,
        commission: float,
        base_settings: Mapping[str, Any],
        sizing: PositionSizing,
        compact: bool = True,
    ) -> Optional[BatchResponse]:
        body = self._batch_body(items, initial_capital, position_size, commission, base_settings, sizing, compact)
        body["data"] = ohlcv_to_payload(data)
        return await self._post_batch("/api/backtest/batch", body)

    async def run_cached_batch_backtest(
        self,
        cache_id: str,
        items: Sequence[BatchItem],
        initial_capital: float,
        position_size: float,
        commission: float,
        base_settings: Mapping[str, Any],
        sizing: PositionSizing,
        compact: bool = True,
    ) -> Optional[BatchResponse]:
        body = self._batch_body(items, initial_capital, position_size, commission, base_settings, sizing, compact)
        body["cacheId"] = cache_id
        return await self._post_batch("/api/backtest/batch/cached", body)

    @staticmethod
    def _batch_body(
        items: Sequence[BatchItem],
        initial_capital: float,
        position_size: float,
        commission: float,
        base_settings: Mapping[str, Any],
        sizing: PositionSizing,
        compact: bool,
    ) -> dict[str, Any]:
        return {
            "items": [item.to_payload() for item in items],
            "initialCapital": float(initial_capital),
            "positionSizePercent": float(position_size),
            "commissionPercent": float(commission),
            "baseSettings": settings_to_payload(base_settings),
            "sizing": sizing.to_payload(),
            "compact": bool(compact),
        }

    async def _post_batch(self, path: str, body: dict[str, Any]) -> Optional[BatchResponse]:
        if not await self.check_health():
            return None
        started = time.perf_counter()
        try:
            resp = await self._client.post(path, json=body)
            resp.raise_for_status()
            batch = _parse_batch(resp.json())
        except (httpx.HTTPError, ValueError, RemoteEngineError) as exc:
            logger.warning("Remote batch %s failed: %s", path, exc)
            return None
        logger.debug(
            "Remote batch: %d runs in %.1fms (engine %.1fms)",
            len(body["items"]),
            (time.perf_counter() - started) * 1000.0,
            batch.processing_time_ms,
        )
        return batch

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "RemoteEngineClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
