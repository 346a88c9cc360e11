"""Configuration management for local-mount-backup."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import yaml
from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError


class BackupJobConfig(BaseModel):
    """Immutable description of the single backup job."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    device_name: str = Field(
        description="Name of the machine being backed up, used in paths and the lock name"
    )
    mount_point: str = Field(description="Absolute path the backup drive is mounted on")
    drive_uuid: str = Field(description="Filesystem UUID of the backup drive")
    source_dirs: List[str] = Field(description="Ordered list of paths handed to rsync")
    rsync_opts: str = Field(description="Option string passed to rsync before the sources")
    rsync_path: str = Field(default="rsync", description="rsync executable")
    webhook_url: Optional[str] = Field(
        default=None, description="Push URL notified with up/down after each run"
    )
    notify_retry_delay: float = Field(
        default=120.0, ge=0, description="Seconds to wait before retrying a failed push"
    )
    schedule: Optional[str] = Field(
        default=None,
        description="Cron-like schedule: 'minute hour day-of-month month day-of-week'",
    )
    log_dir: str = Field(default="logs", description="Directory holding the run logs")
    lock_dir: str = Field(default="lock", description="Directory holding the lock file")
    log_file: str = Field(
        default="logs/local_mount_backup.log", description="Application log file"
    )
    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    base_dir: str = Field(
        default=".", description="Directory relative paths are resolved against"
    )

    @field_validator("device_name", "drive_uuid", "rsync_opts", "rsync_path")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Reject empty or whitespace-only values."""
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @field_validator("device_name")
    @classmethod
    def validate_device_name(cls, v: str) -> str:
        """The device name becomes a path component."""
        if "/" in v or v in (".", ".."):
            raise ValueError("device_name must be a plain name without '/'")
        return v

    @field_validator("mount_point")
    @classmethod
    def validate_mount_point(cls, v: str) -> str:
        """Validate mount point path."""
        if not v:
            raise ValueError("mount_point must not be empty")
        if not v.startswith("/"):
            raise ValueError("mount_point must be an absolute path (e.g., /mnt/backup-usb)")
        return v.rstrip("/") or "/"

    @field_validator("source_dirs", mode="before")
    @classmethod
    def validate_source_dirs(cls, v):
        """Accept a single path or a list; refuse an empty list."""
        if isinstance(v, str):
            v = [v]
        if not v:
            raise ValueError("source_dirs is empty. Nothing to back up")
        for source in v:
            if not isinstance(source, str) or not source.strip():
                raise ValueError("source_dirs entries must be non-empty paths")
        return v

    @field_validator("webhook_url")
    @classmethod
    def validate_webhook_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate the push URL scheme."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("http://", "https://")):
            raise ValueError("webhook_url must start with http:// or https://")
        return v

    @field_validator("schedule")
    @classmethod
    def validate_schedule(cls, v: Optional[str]) -> Optional[str]:
        """Validate the cron schedule format."""
        if v is None or not v.strip():
            return None

        schedule_parts = v.strip().split()
        if len(schedule_parts) != 5:
            raise ValueError(
                "Schedule must have 5 fields: 'minute hour day-of-month month day-of-week'"
            )

        if not croniter.is_valid(v):
            raise ValueError(f"Invalid cron schedule format: {v}")
        return v.strip()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(sorted(valid_levels))}")
        return v_upper

    def _resolve(self, value: str) -> Path:
        path = Path(value)
        if path.is_absolute():
            return path
        return Path(self.base_dir) / path

    @property
    def dest_dir(self) -> Path:
        """Destination handed to rsync: <mount_point>/<device_name>/backup."""
        return Path(self.mount_point) / self.device_name / "backup"

    @property
    def log_path(self) -> Path:
        return self._resolve(self.log_dir)

    @property
    def lock_path(self) -> Path:
        return self._resolve(self.lock_dir)

    @property
    def app_log_file(self) -> Path:
        return self._resolve(self.log_file)

    @property
    def lock_file(self) -> Path:
        """Lock artifact for this job."""
        return self.lock_path / f"backup-{self.device_name}.pid"


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for item in error.errors():
        field = ".".join(str(part) for part in item["loc"]) or "config"
        lines.append(f"'{field.upper()}': {item['msg']}")
    return "; ".join(lines)


def load_config(config_path: str = "config.yaml") -> BackupJobConfig:
    """Load and validate configuration from YAML file.

    Keys are matched case-insensitively so ``MOUNT_POINT`` and
    ``mount_point`` are the same setting.

    Raises:
        ConfigError: if the file is missing, unparsable or invalid.
    """
    config_file = Path(config_path)

    if not config_file.is_file():
        raise ConfigError(f"Configuration file not found at '{config_path}'")

    try:
        with open(config_file, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML format in config file: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file '{config_path}': {e}") from e

    if config_data is None:
        raise ConfigError("Configuration file is empty")
    if not isinstance(config_data, dict):
        raise ConfigError("Configuration file must contain a mapping of settings")

    config_data = {str(key).lower(): value for key, value in config_data.items()}
    config_data.setdefault("base_dir", str(config_file.resolve().parent))

    try:
        return BackupJobConfig(**config_data)
    except ValidationError as e:
        raise ConfigError(
            f"Configuration validation failed in '{config_path}': {_format_validation_error(e)}"
        ) from e
