"""Error taxonomy for local-mount-backup."""

from __future__ import annotations

import signal


class BackupError(Exception):
    """Base class for every fatal condition reported to the operator."""

    exit_code = 1


class ConfigError(BackupError, ValueError):
    """Configuration file missing, unreadable or invalid."""


class InsufficientPrivilegeError(BackupError, PermissionError):
    """The command needs root privileges."""


class LockConflictError(BackupError):
    """Another live backup run holds the lock."""

    def __init__(self, pid: int, message: str | None = None):
        self.pid = pid
        super().__init__(
            message or f"Backup appears to be running with PID: {pid}"
        )


class MountError(BackupError):
    """The backup drive could not be mounted or unmounted."""


class DestinationError(BackupError):
    """The destination directory is missing or not writable."""


class SyncToolError(BackupError):
    """rsync is not installed or cannot be executed."""


class NotificationDeliveryError(BackupError):
    """The notification sink could not be reached. Never fatal."""


class BackupAborted(BackupError):
    """Raised inside the worker when a termination signal arrives."""

    def __init__(self, signum: int):
        self.signum = signum
        self.exit_code = 128 + signum
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        super().__init__(f"Backup aborted by signal {name}")
