"""Runtime configuration for the access client."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv


@dataclass(frozen=True)
class AccessSyncConfig:
    """Settings shared by the backend client, poller, channel and preview gate."""

    api_base_url: str
    poll_interval_seconds: float
    preview_seconds: int
    preview_rewind_seconds: float
    storage_dir: Optional[Path]
    storage_namespace: str
    pending_namespace: str
    request_timeout_seconds: float
    connect_timeout_seconds: float
    stream_retry_ms: int
    storage_poll_interval_seconds: float


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def load_access_config(env: Optional[Mapping[str, str]] = None) -> AccessSyncConfig:
    """Load :class:`AccessSyncConfig` from environment variables."""

    if env is None:
        load_dotenv()
        env_mapping: Mapping[str, str] = os.environ
    else:
        env_mapping = env

    api_base_url = env_mapping.get("ACCESS_API_BASE_URL", "http://localhost:5000/api")
    storage_dir_raw = (env_mapping.get("ACCESS_STORAGE_DIR") or "").strip()
    namespace = (env_mapping.get("ACCESS_STORAGE_NAMESPACE") or "access").strip() or "access"

    return AccessSyncConfig(
        api_base_url=api_base_url.rstrip("/"),
        poll_interval_seconds=max(0.5, _to_float(env_mapping.get("ACCESS_POLL_INTERVAL"), default=10.0)),
        preview_seconds=max(0, _to_int(env_mapping.get("ACCESS_PREVIEW_SECONDS"), default=10)),
        preview_rewind_seconds=max(0.0, _to_float(env_mapping.get("ACCESS_PREVIEW_REWIND"), default=0.5)),
        storage_dir=Path(storage_dir_raw).expanduser() if storage_dir_raw else None,
        storage_namespace=namespace,
        pending_namespace=f"{namespace}-pending",
        request_timeout_seconds=max(1.0, _to_float(env_mapping.get("ACCESS_REQUEST_TIMEOUT"), default=10.0)),
        connect_timeout_seconds=max(1.0, _to_float(env_mapping.get("ACCESS_CONNECT_TIMEOUT"), default=5.0)),
        stream_retry_ms=max(0, _to_int(env_mapping.get("ACCESS_STREAM_RETRY_MS"), default=3000)),
        storage_poll_interval_seconds=max(
            0.1, _to_float(env_mapping.get("ACCESS_STORAGE_POLL_INTERVAL"), default=1.0)
        ),
    )
