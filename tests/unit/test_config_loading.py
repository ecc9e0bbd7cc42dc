"""Tests for config file loading and validation."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from gewe_bridge.config import config_from_env, load_config
from tests.conftest import make_config

CONFIG_DIR = Path(__file__).parent.parent.parent / "config"


def test_example_config_loads() -> None:
    config = load_config(str(CONFIG_DIR / "gewe.example.json"))
    assert config.webhook_port == 4399
    assert config.media_server_enabled
    assert config.groups["12345678@chatroom"].require_mention is True
    assert config.groups["12345678@chatroom"].system_prompt
    assert config.download_min_delay_ms <= config.download_max_delay_ms


def test_defaults_without_file(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("GEWE_TOKEN", "GEWE_APP_ID", "GEWE_STATE_DIR"):
        monkeypatch.delenv(name, raising=False)
    config = load_config(None)
    assert config.api_base_url == "https://www.geweapi.com"
    assert config.dm_policy == "pairing"
    assert config.group_policy == "allowlist"
    assert config.normalized_webhook_path == "/webhook"
    assert config.media_max_bytes == 20 * 1024 * 1024
    assert not config.media_server_enabled
    assert "status" in config.commands.names


def test_environment_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "gewe.json"
    path.write_text(json.dumps({"token": "from-file", "app_id": "wx_file"}))
    monkeypatch.setenv("GEWE_TOKEN", "from-env")
    monkeypatch.setenv("GEWE_CONFIG_PATH", str(path))
    config = config_from_env()
    assert config.token == "from-env"
    assert config.app_id == "wx_file"


def test_invalid_json_rejected(tmp_path: Path) -> None:
    path = tmp_path / "bad.json"
    path.write_text("{nope")
    with pytest.raises(ValueError, match="Invalid JSON"):
        load_config(str(path))


def test_non_object_rejected(tmp_path: Path) -> None:
    path = tmp_path / "list.json"
    path.write_text("[]")
    with pytest.raises(ValueError, match="JSON object"):
        load_config(str(path))


def test_invalid_policy_rejected(tmp_path: Path) -> None:
    path = tmp_path / "gewe.json"
    path.write_text(json.dumps({"dm_policy": "everyone"}))
    with pytest.raises(ValidationError):
        load_config(str(path))


def test_webhook_path_normalized() -> None:
    assert make_config(webhook_path="hooks").normalized_webhook_path == "/hooks"
