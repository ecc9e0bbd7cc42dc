"""Account configuration loaded from JSON with environment overrides."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

DEFAULT_API_BASE_URL = "https://www.geweapi.com"
DEFAULT_STATE_DIR = "~/.gewe-bridge"
DEFAULT_COMMANDS = (
    "new", "reset", "status", "help", "stop", "model", "think", "verbose", "compact",
)

DmPolicy = Literal["pairing", "allowlist", "open", "disabled"]
GroupPolicy = Literal["allowlist", "open", "disabled"]


class GroupConfig(BaseModel):
    require_mention: bool | None = None
    enabled: bool | None = None
    allow_from: list[str] = Field(default_factory=list)
    system_prompt: str | None = None


class CommandsConfig(BaseModel):
    text: bool = True
    use_access_groups: bool = True
    names: list[str] = Field(default_factory=lambda: list(DEFAULT_COMMANDS))


class GeweAccountConfig(BaseModel):
    account_id: str = "default"
    api_base_url: str = DEFAULT_API_BASE_URL
    token: str = ""
    app_id: str = ""
    state_dir: str = DEFAULT_STATE_DIR

    webhook_host: str = "0.0.0.0"
    webhook_port: int = 4399
    webhook_path: str = "/webhook"
    webhook_secret: str | None = None

    media_host: str | None = None
    media_port: int | None = None
    media_path: str | None = None
    media_public_url: str | None = None
    media_max_mb: float = 20

    voice_auto_convert: bool = False
    voice_ffmpeg_path: str | None = None
    voice_silk_path: str | None = None
    voice_silk_args: list[str] = Field(default_factory=list)
    voice_sample_rate: int = 24000
    voice_decode_path: str | None = None
    voice_decode_args: list[str] = Field(default_factory=list)
    voice_decode_sample_rate: int | None = None
    voice_decode_output: Literal["pcm", "wav"] = "pcm"

    silk_auto_download: bool = True
    silk_version: str = "latest"
    silk_base_url: str | None = None
    silk_sha256: str | None = None
    silk_allow_unverified: bool = False
    silk_install_dir: str | None = None

    video_ffmpeg_path: str | None = None
    video_ffprobe_path: str | None = None
    video_thumb_url: str | None = None

    download_min_delay_ms: int = Field(default=3000, ge=0)
    download_max_delay_ms: int = Field(default=10000, ge=0)

    dm_policy: DmPolicy = "pairing"
    allow_from: list[str] = Field(default_factory=list)
    group_allow_from: list[str] = Field(default_factory=list)
    group_policy: GroupPolicy = "allowlist"
    groups: dict[str, GroupConfig] = Field(default_factory=dict)
    mention_patterns: list[str] = Field(default_factory=list)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)

    upstream_url: str | None = None
    upstream_token: str | None = None
    audit_log_path: str | None = None

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir).expanduser().resolve()

    @property
    def media_max_bytes(self) -> int:
        if self.media_max_mb > 0:
            return int(self.media_max_mb * 1024 * 1024)
        return 20 * 1024 * 1024

    @property
    def normalized_webhook_path(self) -> str:
        raw = self.webhook_path.strip() or "/webhook"
        return raw if raw.startswith("/") else f"/{raw}"

    @property
    def media_server_enabled(self) -> bool:
        return bool(
            self.media_public_url or self.media_host or self.media_port or self.media_path
        )


def _apply_env(data: dict[str, object]) -> dict[str, object]:
    overrides = {
        "token": os.environ.get("GEWE_TOKEN", "").strip(),
        "app_id": os.environ.get("GEWE_APP_ID", "").strip(),
        "state_dir": os.environ.get("GEWE_STATE_DIR", "").strip(),
    }
    for key, value in overrides.items():
        if value:
            data[key] = value
    return data


def load_config(path: str | None) -> GeweAccountConfig:
    """Load account config from a JSON file, then apply environment overrides."""
    data: dict[str, object] = {}
    if path:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        try:
            raw = json.loads(config_path.read_text())
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in config file: {e}") from e
        if not isinstance(raw, dict):
            raise ValueError("Config file must contain a JSON object")
        data = raw
    return GeweAccountConfig.model_validate(_apply_env(data))


def config_from_env() -> GeweAccountConfig:
    """Factory used by the ASGI entrypoints: reads GEWE_CONFIG_PATH."""
    return load_config(os.environ.get("GEWE_CONFIG_PATH") or None)
