from __future__ import annotations

from .client import (
    BatchEntry,
    BatchItem,
    BatchResponse,
    RemoteEngineClient,
    RemoteEngineError,
    data_fingerprint,
)
from .sanitizer import (
    REMOTE_UNSUPPORTED_SETTING_KEYS,
    SNAPSHOT_FILTER_SETTING_KEYS,
    has_snapshot_filters,
    requires_local_engine,
    sanitize_settings_for_remote,
)

__all__ = [
    "BatchEntry",
    "BatchItem",
    "BatchResponse",
    "REMOTE_UNSUPPORTED_SETTING_KEYS",
    "RemoteEngineClient",
    "RemoteEngineError",
    "SNAPSHOT_FILTER_SETTING_KEYS",
    "data_fingerprint",
    "has_snapshot_filters",
    "requires_local_engine",
    "sanitize_settings_for_remote",
]
