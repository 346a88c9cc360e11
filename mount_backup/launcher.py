"""Starts the backup worker, detached from the invoking terminal."""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Callable, List, Optional

import psutil

from .config import BackupJobConfig
from .errors import InsufficientPrivilegeError, SyncToolError
from .lock import JobIdentity, RunLock
from .runner import BackupRunner
from .services import MountService, Notifier, RsyncTool

WORKER_MODULE = "mount_backup.worker"
PACKAGE_ROOT = str(Path(__file__).resolve().parent.parent)


def require_root(command: str) -> None:
    """Abort unless running with root privileges."""
    if os.geteuid() != 0:
        raise InsufficientPrivilegeError(f"'{command}' command must be run with sudo.")


def worker_command(config_path: str) -> List[str]:
    """Command line of the background worker."""
    return [
        sys.executable,
        "-m",
        WORKER_MODULE,
        "--config",
        str(Path(config_path).resolve()),
    ]


class Launcher:
    """Acquires the run lock and hands it to a detached worker process."""

    def __init__(
        self,
        config: BackupJobConfig,
        config_path: str,
        lock: Optional[RunLock] = None,
        spawn: Callable[..., subprocess.Popen] = subprocess.Popen,
        sync_tool: Optional[RsyncTool] = None,
        mount_service: Optional[MountService] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.config = config
        self.config_path = config_path
        self.identity = JobIdentity.for_config(config)
        self.lock = lock or RunLock(config.lock_file)
        self.spawn = spawn
        self.sync_tool = sync_tool or RsyncTool(config.rsync_path)
        self.mount_service = mount_service
        self.notifier = notifier
        self.logger = logging.getLogger(__name__)

    def validate_sync_tool(self) -> None:
        """Check rsync works before taking the lock."""
        if not self.sync_tool.validate_installation():
            raise SyncToolError(
                f"rsync not found or not working: {self.config.rsync_path}. Please install rsync first."
            )

    def launch(self) -> int:
        """
        Start the backup in the background and return the worker PID.

        Does not wait for the worker.

        Raises:
            InsufficientPrivilegeError: if not running as root
            SyncToolError: if rsync is missing
            LockConflictError: if a backup is already running
        """
        require_root("start")
        self.validate_sync_tool()
        self.config.log_path.mkdir(parents=True, exist_ok=True)

        handle = self.lock.acquire(self.identity)

        cmd = worker_command(self.config_path)
        env = os.environ.copy()
        env["PYTHONPATH"] = PACKAGE_ROOT + os.pathsep + env.get("PYTHONPATH", "")
        self.logger.info(f"Starting backup process in the background: {' '.join(cmd)}")
        try:
            proc = self.spawn(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
                close_fds=True,
                cwd="/",
                env=env,
            )
        except OSError:
            self.lock.release(handle)
            raise

        try:
            self.lock.handoff(handle, proc.pid)
        except psutil.NoSuchProcess:
            # The worker exited before the handoff and has cleaned up after itself
            self.logger.warning(f"Backup worker (PID {proc.pid}) exited immediately")

        return proc.pid

    def run_foreground(self) -> int:
        """
        Run the backup in this process, e.g. from cron or a systemd unit.

        Returns:
            The worker exit code
        """
        require_root("start")
        self.validate_sync_tool()
        self.lock.acquire(self.identity)
        runner = BackupRunner(
            self.config,
            lock=self.lock,
            mount_service=self.mount_service,
            sync_tool=self.sync_tool,
            notifier=self.notifier,
        )
        return runner.run()
