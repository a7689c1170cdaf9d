"""Configuration management for termtile MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
import os
import tempfile

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_WORKSPACE = "mcp-agents"
DEFAULT_ARTIFACT_CAP_BYTES = 1024 * 1024
MIN_ARTIFACT_CAP_BYTES = 1024


def default_artifact_root() -> Path:
    """Return ``$XDG_DATA_HOME/termtile/artifacts`` or its home-directory fallback."""

    data_home = os.environ.get("XDG_DATA_HOME", "").strip()
    if data_home:
        return Path(data_home) / "termtile" / "artifacts"
    return Path.home() / ".local" / "share" / "termtile" / "artifacts"


def default_registry_path() -> Path:
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR", "").strip() or tempfile.gettempdir()
    return Path(runtime_dir) / "termtile-workspace.json"


class TermtileSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    config_path: Path = Field(
        default=Path("~/.config/termtile/config.yaml"), validation_alias="TERMTILE_CONFIG"
    )
    log_level: str = Field(default="INFO", validation_alias="TERMTILE_LOG_LEVEL")
    artifact_cap_bytes: int = Field(
        default=DEFAULT_ARTIFACT_CAP_BYTES, validation_alias="TERMTILE_ARTIFACT_CAP_BYTES"
    )
    artifact_root: Path | None = Field(default=None, validation_alias="TERMTILE_ARTIFACT_DIR")
    pipe_dir: Path | None = Field(default=None, validation_alias="TERMTILE_PIPE_DIR")
    workspace_registry_path: Path | None = Field(
        default=None, validation_alias="TERMTILE_WORKSPACE_REGISTRY"
    )
    dependency_poll_seconds: float = Field(
        default=2.0, validation_alias="TERMTILE_DEPENDENCY_POLL_SECONDS"
    )
    hook_command: str = Field(default="termtile-hook", validation_alias="TERMTILE_HOOK_COMMAND")
    action_log_enabled: bool = Field(default=False, validation_alias="TERMTILE_ACTION_LOG")
    action_log_include_content: bool = Field(
        default=False, validation_alias="TERMTILE_ACTION_LOG_CONTENT"
    )
    action_log_preview_length: int = Field(
        default=50, validation_alias="TERMTILE_ACTION_LOG_PREVIEW"
    )
    chroma_persist_path: Path = Field(
        default=Path("~/.local/share/termtile/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "TERMTILE_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("artifact_cap_bytes")
    @classmethod
    def _validate_artifact_cap(cls, value: int) -> int:
        if value < MIN_ARTIFACT_CAP_BYTES:
            raise ValueError(f"TERMTILE_ARTIFACT_CAP_BYTES must be >= {MIN_ARTIFACT_CAP_BYTES}")
        return value

    @field_validator("dependency_poll_seconds")
    @classmethod
    def _validate_poll_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("TERMTILE_DEPENDENCY_POLL_SECONDS must be > 0")
        return value

    @field_validator("hook_command")
    @classmethod
    def _strip_hook_command(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("TERMTILE_HOOK_COMMAND must not be empty")
        return stripped

    @property
    def resolved_artifact_root(self) -> Path:
        return self.artifact_root or default_artifact_root()

    @property
    def resolved_pipe_dir(self) -> Path:
        return self.pipe_dir or Path(tempfile.gettempdir())

    @property
    def resolved_registry_path(self) -> Path:
        return self.workspace_registry_path or default_registry_path()


@lru_cache(maxsize=1)
def get_settings() -> TermtileSettings:
    """Return cached settings instance."""

    settings = TermtileSettings()
    settings.config_path = settings.config_path.expanduser()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    if settings.artifact_root is not None:
        settings.artifact_root = settings.artifact_root.expanduser().resolve()
    if settings.pipe_dir is not None:
        settings.pipe_dir = settings.pipe_dir.expanduser().resolve()
    if settings.workspace_registry_path is not None:
        settings.workspace_registry_path = settings.workspace_registry_path.expanduser()
    return settings


__all__ = [
    "DEFAULT_ARTIFACT_CAP_BYTES",
    "DEFAULT_WORKSPACE",
    "MIN_ARTIFACT_CAP_BYTES",
    "TermtileSettings",
    "default_artifact_root",
    "default_registry_path",
    "get_settings",
]
