"""External collaborators: mount service, rsync and the notification sink."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
import urllib.parse
import urllib.request
from enum import Enum
from pathlib import Path
from typing import IO, List, Optional, Protocol, Sequence, Tuple

from .errors import NotificationDeliveryError


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    FAILURE = "failure"


class MountService(Protocol):
    def is_mounted(self, path: str) -> bool: ...

    def mount(self, volume_id: str, path: str, output: Optional[IO] = None) -> Tuple[bool, str]: ...

    def unmount(self, path: str) -> Tuple[bool, str]: ...


class SyncTool(Protocol):
    def run(self, options: str, sources: Sequence[str], destination: str, output: IO) -> int: ...


class Notifier(Protocol):
    def notify(self, title: str, message: str, severity: Severity) -> None: ...


class SystemMountService:
    """Mounts and unmounts the backup drive with mount(8) and umount(8)."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def is_mounted(self, path: str) -> bool:
        """Check whether path is an active mount point."""
        return os.path.ismount(path)

    def mount(
        self, volume_id: str, path: str, output: Optional[IO] = None
    ) -> Tuple[bool, str]:
        """
        Mount a filesystem by UUID. Device paths are not stable across reboots.

        Returns:
            Tuple of (success, error_message)
        """
        cmd = ["mount", f"UUID={volume_id}", path]
        self.logger.info(f"Running mount command: {' '.join(cmd)}")
        return self._run(cmd, output)

    def unmount(self, path: str) -> Tuple[bool, str]:
        """
        Unmount the filesystem at path.

        Returns:
            Tuple of (success, error_message)
        """
        cmd = ["umount", path]
        self.logger.info(f"Running umount command: {' '.join(cmd)}")
        return self._run(cmd)

    def _run(self, cmd: List[str], output: Optional[IO] = None) -> Tuple[bool, str]:
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=120,
            )
        except FileNotFoundError:
            return False, f"{cmd[0]} command not found"
        except subprocess.TimeoutExpired:
            return False, f"{cmd[0]} timed out"
        except subprocess.SubprocessError as e:
            return False, f"{cmd[0]} subprocess error: {e}"

        if output is not None:
            output.write(result.stdout)
            output.write(result.stderr)
            output.flush()

        if result.returncode == 0:
            return True, ""

        error_msg = result.stderr.strip() or f"{cmd[0]} exited with code {result.returncode}"
        self.logger.error(f"{cmd[0]} failed: {error_msg}")
        return False, error_msg


class RsyncTool:
    """Runs rsync with its combined output streamed into the run log."""

    def __init__(self, rsync_path: str = "rsync"):
        self.rsync_path = rsync_path
        self.logger = logging.getLogger(__name__)

    def validate_installation(self) -> bool:
        """Check if rsync is installed and accessible."""
        try:
            result = subprocess.run(
                [self.rsync_path, "--version"],
                capture_output=True,
                text=True,
                timeout=30,
            )
            return result.returncode == 0
        except (subprocess.TimeoutExpired, FileNotFoundError, subprocess.SubprocessError):
            return False

    def build_command(
        self, options: str, sources: Sequence[str], destination: str
    ) -> List[str]:
        """Build ``<rsync> <options> <src1> <src2> ... <dest>``."""
        return [self.rsync_path, *shlex.split(options), *sources, destination]

    def run(
        self, options: str, sources: Sequence[str], destination: str, output: IO
    ) -> int:
        """
        Copy sources into destination.

        Blocks until rsync exits, which may take hours. If the calling
        process is interrupted, subprocess.run kills rsync before re-raising.

        Returns:
            rsync's exit code, unmodified. 127 if rsync could not be started.
        """
        cmd = self.build_command(options, sources, destination)
        self.logger.info(f"Running rsync command: {' '.join(cmd)}")
        output.flush()

        try:
            result = subprocess.run(cmd, stdout=output, stderr=subprocess.STDOUT)
        except FileNotFoundError:
            output.write(f"{self.rsync_path}: command not found\n")
            output.flush()
            self.logger.error(f"rsync executable not found: {self.rsync_path}")
            return 127

        return result.returncode


class WebhookNotifier:
    """Sends up/down push notifications to a monitoring endpoint such as Uptime Kuma."""

    def __init__(self, url: Optional[str], retry_delay: float = 120.0, timeout: float = 10.0):
        self.url = url
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    def build_url(self, title: str, message: str, severity: Severity) -> str:
        """Build the push URL for one notification."""
        params = {
            "status": "down" if severity == Severity.FAILURE else "up",
            "msg": f"{title}: {message}",
            "ping": "",
        }
        separator = "&" if urllib.parse.urlparse(self.url).query else "?"
        return f"{self.url}{separator}{urllib.parse.urlencode(params)}"

    def notify(self, title: str, message: str, severity: Severity) -> None:
        """
        Send a notification. Never raises.

        A failed delivery is retried once after retry_delay seconds, then
        logged and dropped.
        """
        log = self.logger.error if severity == Severity.FAILURE else self.logger.info
        log(f"{title}: {message}")

        if not self.url:
            return

        full_url = self.build_url(title, message, severity)

        try:
            self._send(full_url)
            self.logger.debug(f"Notification sent: status={severity.value}, msg={message}")
            return
        except NotificationDeliveryError as e:
            self.logger.warning(f"{e}; retrying in {self.retry_delay:.0f} seconds...")

        time.sleep(self.retry_delay)

        try:
            self._send(full_url)
            self.logger.info("Notification sent successfully on retry")
        except NotificationDeliveryError as e:
            self.logger.warning(f"{e}; giving up")

    def _send(self, url: str) -> None:
        try:
            with urllib.request.urlopen(url, timeout=self.timeout) as response:
                status = response.getcode()
        except Exception as e:
            raise NotificationDeliveryError(f"Notification failed: {e}") from e

        if status >= 400:
            raise NotificationDeliveryError(f"Notification failed with HTTP {status}")


def validate_destination(destination: Path) -> Tuple[bool, str]:
    """
    Create the destination directory if needed and check it is writable.

    Returns:
        Tuple of (success, error_message)
    """
    try:
        destination.mkdir(parents=True, exist_ok=True)

        # Test write permissions
        test_file = destination / ".write_test"
        test_file.write_text("test")
        test_file.unlink()

        return True, ""
    except OSError as e:
        return False, f"Destination directory {destination} not writable: {e}"
