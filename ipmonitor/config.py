"""Application configuration for the IP monitor.

Central configuration module powered by Pydantic v2.  Settings are loaded
from environment variables (with ``.env`` file support), validated once at
startup and then passed into each component's constructor.

Key exports:
    MonitorSettings: Root settings model (instantiate once).
    load_settings: Build settings, converting validation errors into
        :class:`~ipmonitor.exceptions.ConfigurationError`.
    BASE_DIR / CONFIG_DIR / LOGS_DIR: Canonical project paths.
"""

import logging
from pathlib import Path
from typing import Any, List, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ipmonitor.exceptions import ConfigurationError

# ---------------------------------------------------------------------------
# Base Paths
# ---------------------------------------------------------------------------
BASE_DIR: Path = Path(__file__).parent.parent
"""Project root directory (parent of ``ipmonitor/``)."""

CONFIG_DIR: Path = BASE_DIR / "config"
"""Directory containing the persisted address record."""

LOGS_DIR: Path = BASE_DIR / "logs"
"""Directory for log output files."""

RAW_GITHUB_URL = "https://raw.githubusercontent.com/{owner}/{repo}/{branch}/config/ip.json"

logger: logging.Logger = logging.getLogger(__name__)


class MonitorSettings(BaseSettings):
    """Root configuration model for the IP monitor.

    All fields can be set via environment variables or a ``.env`` file
    (field name in upper case, e.g. ``CHECK_INTERVAL_SECONDS``).

    Section overview:
        * **Monitor** -- cycle period, per-call timeout, detection retries.
        * **Record** -- local record path and key, backup generations.
        * **Remote** -- remote reference URL (derived from GitHub
          coordinates when unset).
        * **Git** -- publish workflow toggles, retries, timeouts.
        * **Health** -- failure threshold, error ring size, HTTP endpoint.
        * **Telegram** -- optional change notifications.
        * **Logging** -- level and optional rotating log file.
    """

    # Monitor
    check_interval_seconds: float = Field(default=3600.0, gt=0)
    # Applies to each HTTP request and DNS lookup independently
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    detection_attempts: int = Field(default=2, ge=1)
    detection_backoff_seconds: float = Field(default=1.0, ge=0)

    # Record
    record_path: str = str(CONFIG_DIR / "ip.json")
    record_key: str = "ip"
    # Backups live next to the record; keep at 0 inside a git working tree
    record_backups: int = Field(default=0, ge=0)

    # Remote
    remote_url: Optional[str] = None
    github_owner: str = "ip-monitor"
    github_repo: str = "ip-config"
    github_branch: str = "main"

    # Git
    git_enabled: bool = True
    git_auto_commit: bool = True
    git_max_retries: int = Field(default=3, ge=1)
    git_backoff_seconds: float = Field(default=2.0, ge=0)
    git_timeout_seconds: float = Field(default=60.0, gt=0)
    git_repo_dir: str = str(BASE_DIR)
    git_binary: str = "git"
    # None -> stage the record file; [] -> stage everything when dirty
    git_target_files: Optional[List[str]] = None
    commit_message_max_length: int = Field(default=100, ge=10)

    # Health
    health_threshold: int = Field(default=5, ge=1)
    max_recent_errors: int = Field(default=10, ge=1)
    health_server_enabled: bool = True
    health_host: str = "0.0.0.0"
    health_port: int = Field(default=3000, ge=0, le=65535)

    # Telegram
    telegram_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    telegram_timeout_seconds: float = Field(default=30.0, gt=0)
    telegram_retry_attempts: int = Field(default=3, ge=1)
    notification_rate_window_seconds: float = Field(default=60.0, gt=0)
    max_notifications_per_window: int = Field(default=5, ge=1)

    # Logging
    log_level: str = "INFO"
    log_file_enabled: bool = False
    log_file_path: str = str(LOGS_DIR / "ip_monitor.log")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @field_validator("record_key")
    @classmethod
    def _record_key_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("record_key must not be empty")
        return value.strip()

    @field_validator("telegram_chat_id", mode="before")
    @classmethod
    def _chat_id_numeric(cls, value: Any) -> Optional[str]:
        if value is None or value == "":
            return None
        try:
            int(value)
        except (TypeError, ValueError):
            raise ValueError("TELEGRAM_CHAT_ID must be a valid number") from None
        return str(value)

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return level

    def model_post_init(self, __context: Any) -> None:
        """Derive the remote URL and check cross-field constraints."""
        if not self.remote_url:
            self.remote_url = RAW_GITHUB_URL.format(
                owner=self.github_owner,
                repo=self.github_repo,
                branch=self.github_branch,
            )
        if bool(self.telegram_token) != bool(self.telegram_chat_id):
            raise ConfigurationError(
                "TELEGRAM_TOKEN and TELEGRAM_CHAT_ID must be set together"
            )

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_token and self.telegram_chat_id)

    @property
    def target_files(self) -> List[str]:
        """Files the publish workflow stages explicitly."""
        if self.git_target_files is None:
            return [self.record_path]
        return list(self.git_target_files)

    def summary(self) -> dict:
        """Settings without secrets, for startup logging."""
        data = self.model_dump(exclude={"telegram_token"})
        data["telegram_enabled"] = self.telegram_enabled
        return data


def load_settings(**overrides: Any) -> MonitorSettings:
    """Build and validate :class:`MonitorSettings`.

    Args:
        **overrides: Field values taking precedence over the environment.

    Raises:
        ConfigurationError: On any invalid or inconsistent setting.
    """
    try:
        settings = MonitorSettings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
    logger.debug("Configuration loaded: %s", settings.summary())
    return settings
