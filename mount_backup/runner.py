"""Backup worker: mount the drive, run rsync and record the outcome."""

from __future__ import annotations

import logging
import signal
import threading
import time
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .config import BackupJobConfig
from .errors import BackupAborted, DestinationError, LockConflictError, MountError
from .lock import JobIdentity, RunLock
from .records import (
    Outcome,
    RunLog,
    RunRecord,
    format_duration,
    write_sidecar,
)
from .services import (
    MountService,
    Notifier,
    RsyncTool,
    Severity,
    SyncTool,
    SystemMountService,
    WebhookNotifier,
    validate_destination,
)


class RunState(str, Enum):
    START = "start"
    LOCK_HELD = "lock_held"
    MOUNT_CHECKED = "mount_checked"
    MOUNT_ENSURED = "mount_ensured"
    DEST_VALIDATED = "dest_validated"
    SYNCING = "syncing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_STATES = {RunState.SUCCEEDED, RunState.FAILED, RunState.ABORTED}

# Signals turned into BackupAborted; SIGINT already raises KeyboardInterrupt
_ABORT_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


def _raise_aborted(signum, frame):
    raise BackupAborted(signum)


class BackupRunner:
    """Runs one backup attempt from lock claim to outcome record."""

    def __init__(
        self,
        config: BackupJobConfig,
        lock: Optional[RunLock] = None,
        mount_service: Optional[MountService] = None,
        sync_tool: Optional[SyncTool] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config
        self.identity = JobIdentity.for_config(config)
        self.lock = lock or RunLock(config.lock_file)
        self.mount_service = mount_service or SystemMountService()
        self.sync_tool = sync_tool or RsyncTool(config.rsync_path)
        self.notifier = notifier or WebhookNotifier(
            config.webhook_url, retry_delay=config.notify_retry_delay
        )
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self.state = RunState.START
        self.run_log: Optional[RunLog] = None
        self._started: Optional[datetime] = None
        self._sync_started: Optional[datetime] = None
        self._sync_finished: Optional[datetime] = None
        self._exit_code: Optional[int] = None
        self._note = ""
        self._elapsed: Optional[float] = None

    @property
    def title(self) -> str:
        return f"Backup {self.config.device_name}"

    def run(self) -> int:
        """
        Execute the backup.

        Returns:
            rsync's exit code after a sync, 1 for mount, destination or lock
            failures, 128 + signal number when interrupted.
        """
        try:
            self.lock.claim(self.identity)
        except LockConflictError as e:
            self.logger.error(f"❌ ERROR: {e}. Aborting.")
            return e.exit_code

        self.state = RunState.LOCK_HELD
        previous_handlers = self._install_signal_handlers()

        try:
            self._started = self.clock()
            self.run_log = RunLog.create(self.config.log_path, self._started)
            self.logger.info(f"Backup worker started, logging to {self.run_log.path}")

            self._ensure_mounted()
            self._validate_destination()
            self._sync()

        except (MountError, DestinationError) as e:
            self.state = RunState.FAILED
            self._exit_code = e.exit_code
            self._note = str(e)
            self.run_log.line(f"❌ ERROR: {e}. Aborting.", logging.ERROR)

        except BackupAborted as e:
            self._abort(e.exit_code, str(e))

        except KeyboardInterrupt:
            self._abort(128 + signal.SIGINT, "Backup interrupted by user")

        finally:
            if self.state not in TERMINAL_STATES:
                self.state = RunState.FAILED
                self._note = self._note or "Unexpected error during backup"
            self._finalize()
            self._restore_signal_handlers(previous_handlers)

        return self._exit_code

    def _ensure_mounted(self) -> None:
        mount_point = self.config.mount_point
        mounted = self.mount_service.is_mounted(mount_point)
        self.state = RunState.MOUNT_CHECKED

        if mounted:
            self.run_log.line(f"INFO: {mount_point} is already mounted.")
            return

        self.run_log.line("WARN: Destination not mounted. Mounting by UUID...", logging.WARNING)
        try:
            Path(mount_point).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise MountError(f"Cannot create mount point {mount_point}: {e}") from e

        success, error_message = self.mount_service.mount(
            self.config.drive_uuid, mount_point, self.run_log.stream
        )
        if not success:
            raise MountError(f"Failed to mount drive UUID={self.config.drive_uuid}: {error_message}")

        self.state = RunState.MOUNT_ENSURED

    def _validate_destination(self) -> None:
        success, error_message = validate_destination(self.config.dest_dir)
        if not success:
            raise DestinationError(error_message)
        self.state = RunState.DEST_VALIDATED

    def _sync(self) -> int:
        self.state = RunState.SYNCING
        self._sync_started = self.clock()
        self.run_log.start_marker(self._sync_started)

        timer = time.monotonic()
        exit_code = self.sync_tool.run(
            self.config.rsync_opts,
            list(self.config.source_dirs),
            str(self.config.dest_dir),
            self.run_log.stream,
        )
        self._elapsed = time.monotonic() - timer
        self._sync_finished = self.clock()

        # From here on the outcome is rsync's and a late signal cannot change it
        self._exit_code = exit_code
        if exit_code == 0:
            self.state = RunState.SUCCEEDED
        else:
            self.state = RunState.FAILED
            self._note = f"rsync failed with exit code {exit_code}"

        self.run_log.end_marker(self._sync_finished, exit_code)
        return exit_code

    def _abort(self, exit_code: int, reason: str) -> None:
        if self.state in TERMINAL_STATES:
            self._log_late_interrupt(reason)
            return
        self.state = RunState.ABORTED
        self._exit_code = exit_code
        self._note = reason
        if self.run_log is not None:
            self.run_log.line(f"❌ ERROR: {reason}. Aborting.", logging.ERROR)

    def _log_late_interrupt(self, reason: str) -> None:
        message = f"WARN: {reason} after the run finished; keeping its result."
        if self.run_log is not None and not self.run_log.stream.closed:
            self.run_log.line(message, logging.WARNING)
        else:
            self.logger.warning(message)

    def _finalize(self) -> None:
        """Record the outcome, drop the lock and send the notification. Runs on every exit path."""
        if self._exit_code is None:
            self._exit_code = 1

        try:
            if self.run_log is not None:
                write_sidecar(self._build_record())
                self.run_log.close()
        except OSError as e:
            self.logger.warning(f"Could not write run record: {e}")
        finally:
            self.lock.release()

        try:
            self._notify_outcome()
        except BackupAborted as e:
            self._log_late_interrupt(str(e))
        except KeyboardInterrupt:
            self._log_late_interrupt("Backup interrupted by user")

    def _notify_outcome(self) -> None:
        if self._elapsed is not None:
            took = f" after {format_duration(self._elapsed)}"
        else:
            took = ""

        if self.state == RunState.SUCCEEDED:
            self.notifier.notify(
                self.title,
                f"Backup completed successfully in {format_duration(self._elapsed or 0)}",
                Severity.SUCCESS,
            )
        else:
            self.notifier.notify(
                self.title, f"Backup failed{took}: {self._note or self.state.value}", Severity.FAILURE
            )

    def _build_record(self) -> RunRecord:
        if self.state == RunState.SUCCEEDED:
            outcome = Outcome.SUCCESS
        elif self.state == RunState.ABORTED:
            outcome = Outcome.INCOMPLETE
        else:
            outcome = Outcome.FAILURE

        if self._sync_started is not None:
            start, end = self._sync_started, self._sync_finished
        else:
            start, end = self._started, self.clock()
        if outcome == Outcome.INCOMPLETE:
            end = None

        return RunRecord(
            log_path=self.run_log.path,
            outcome=outcome,
            start=start,
            end=end,
            exit_code=self._exit_code,
            note=self._note,
        )

    def _install_signal_handlers(self) -> dict:
        if threading.current_thread() is not threading.main_thread():
            return {}
        previous = {}
        for signum in _ABORT_SIGNALS:
            previous[signum] = signal.signal(signum, _raise_aborted)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: dict) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
