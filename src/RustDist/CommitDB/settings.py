# === NAVMAP v1 ===
# {
#   "module": "RustDist.CommitDB.settings",
#   "purpose": "Channel enumeration, pydantic-settings configuration and on-disk layout",
#   "sections": [
#     {"id": "channel", "name": "Channel", "anchor": "class-channel", "kind": "class"},
#     {"id": "httpsettings", "name": "HttpSettings", "anchor": "class-httpsettings", "kind": "class"},
#     {"id": "commitdbsettings", "name": "CommitDBSettings", "anchor": "class-commitdbsettings", "kind": "class"},
#     {"id": "get-settings", "name": "get_settings", "anchor": "function-get-settings", "kind": "function"},
#     {"id": "reset-settings-cache", "name": "reset_settings_cache", "anchor": "function-reset-settings-cache", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Configuration for the commit database.

Settings are read from ``COMMITDB_*`` environment variables through
``pydantic-settings`` and cached per process.  The same model also owns the
on-disk layout so every cache derives its directories from one root::

    <data_dir>/
        bbot_json_cache/<channel>/<build id>
        dist_cache/<channel>/dist/<date>/channel-rust-<channel>.toml
        fixups/<channel>
        commits
        logs/
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import platformdirs
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

__all__ = [
    "Channel",
    "HttpSettings",
    "CommitDBSettings",
    "get_settings",
    "reset_settings_cache",
    "DEFAULT_STALENESS_HOURS",
]

DEFAULT_STALENESS_HOURS = 24.0


class Channel(str, Enum):
    """Release tracks served by the commit database."""

    STABLE = "stable"
    BETA = "beta"
    NIGHTLY = "nightly"

    @classmethod
    def parse(cls, value: "str | Channel") -> "Channel":
        """Return the channel named by ``value`` or raise :class:`ConfigError`."""

        if isinstance(value, Channel):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError as exc:
            valid = ", ".join(channel.value for channel in cls)
            raise ConfigError(f"Unknown channel '{value}' (expected one of: {valid})") from exc

    @property
    def builder_name(self) -> str:
        return f"{self.value}-dist-rustc-linux"

    def __str__(self) -> str:
        return self.value


class HttpSettings(BaseModel):
    """HTTP client settings shared by the builder feed, bucket and commit API."""

    model_config = ConfigDict(frozen=True)

    timeout_connect: float = Field(default=10.0, gt=0.0, le=120.0)
    timeout_read: float = Field(default=60.0, gt=0.0, le=600.0)
    user_agent: str = Field(default="commit-db/0.1 (+https://github.com/rust-lang)")
    trust_env: bool = Field(
        default=True,
        description="Honor HTTP(S)_PROXY and NO_PROXY environment variables",
    )


class CommitDBSettings(BaseSettings):
    """Process configuration for the commit database."""

    model_config = SettingsConfigDict(
        env_prefix="COMMITDB_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    data_dir: Path = Field(default_factory=lambda: Path(platformdirs.user_data_dir("commit-db")))
    buildbot_url: str = Field(default="https://buildbot.rust-lang.org")
    dist_url: str = Field(default="https://static.rust-lang.org")
    github_api_url: str = Field(default="https://api.github.com")
    github_repo: str = Field(default="rust-lang/rust")
    github_token: Optional[SecretStr] = Field(default=None)
    git_dir: Optional[Path] = Field(
        default=None,
        description="Local checkout used to resolve short hashes instead of the GitHub API",
    )
    staleness_hours: float = Field(default=DEFAULT_STALENESS_HOURS, gt=0.0)
    http: HttpSettings = Field(default_factory=HttpSettings)
    log_level: str = Field(default="INFO")
    log_dir: Optional[Path] = Field(default=None)
    log_retention_days: int = Field(default=30, ge=1)

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_level(cls, value: Any) -> str:
        upper = str(value).upper()
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if upper not in valid_levels:
            raise ValueError(f"log_level must be one of {sorted(valid_levels)}, got '{value}'")
        return upper

    @field_validator("buildbot_url", "dist_url", "github_api_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("data_dir", "git_dir", "log_dir", mode="after")
    @classmethod
    def expand_path(cls, value: Optional[Path]) -> Optional[Path]:
        if value is None:
            return None
        return value.expanduser()

    @property
    def staleness_seconds(self) -> float:
        return self.staleness_hours * 3600.0

    def level_int(self) -> int:
        return getattr(logging, self.log_level, logging.INFO)

    # --- on-disk layout ---

    def build_cache_dir(self, channel: Channel) -> Path:
        return self.data_dir / "bbot_json_cache" / channel.value

    def dist_cache_dir(self, channel: Channel) -> Path:
        return self.data_dir / "dist_cache" / channel.value

    def fixups_file(self, channel: Channel) -> Path:
        return self.data_dir / "fixups" / channel.value

    @property
    def commits_file(self) -> Path:
        return self.data_dir / "commits"

    @property
    def resolved_log_dir(self) -> Path:
        return self.log_dir if self.log_dir is not None else self.data_dir / "logs"


_SETTINGS_LOCK = threading.RLock()
_SETTINGS_CACHE: Optional[CommitDBSettings] = None


def get_settings(**overrides: Any) -> CommitDBSettings:
    """Return the process-wide settings, building them on first use.

    Args:
        **overrides: Field values that take precedence over the environment.
            Passing overrides always builds a fresh instance and replaces the
            cached one.

    Returns:
        CommitDBSettings: validated configuration.

    Raises:
        ConfigError: If environment values or overrides fail validation.
    """

    global _SETTINGS_CACHE  # noqa: PLW0603

    with _SETTINGS_LOCK:
        if _SETTINGS_CACHE is None or overrides:
            try:
                _SETTINGS_CACHE = CommitDBSettings(**overrides)
            except PydanticValidationError as exc:
                raise ConfigError(f"Invalid commit-db settings: {exc}") from exc
        return _SETTINGS_CACHE


def reset_settings_cache() -> None:
    """Invalidate the cached settings instance."""

    global _SETTINGS_CACHE  # noqa: PLW0603

    with _SETTINGS_LOCK:
        _SETTINGS_CACHE = None
