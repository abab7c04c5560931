from __future__ import annotations

from pathlib import Path

import pytest

from access_sync.config import load_access_config


def test_defaults_apply_when_unset():
    config = load_access_config({})

    assert config.api_base_url == "http://localhost:5000/api"
    assert config.poll_interval_seconds == 10.0
    assert config.preview_seconds == 10
    assert config.preview_rewind_seconds == 0.5
    assert config.storage_dir is None
    assert config.storage_namespace == "access"
    assert config.pending_namespace == "access-pending"
    assert config.stream_retry_ms == 3000


def test_overrides_are_parsed_and_clamped(tmp_path):
    config = load_access_config(
        {
            "ACCESS_API_BASE_URL": "https://api.example.com/v1/",
            "ACCESS_POLL_INTERVAL": "0.1",
            "ACCESS_PREVIEW_SECONDS": "30",
            "ACCESS_STORAGE_DIR": str(tmp_path),
            "ACCESS_STORAGE_NAMESPACE": "tutor",
            "ACCESS_STREAM_RETRY_MS": "1500",
        }
    )

    assert config.api_base_url == "https://api.example.com/v1"
    assert config.poll_interval_seconds == 0.5
    assert config.preview_seconds == 30
    assert config.storage_dir == Path(tmp_path)
    assert config.pending_namespace == "tutor-pending"
    assert config.stream_retry_ms == 1500


def test_invalid_numbers_raise():
    with pytest.raises(ValueError):
        load_access_config({"ACCESS_PREVIEW_SECONDS": "ten"})
