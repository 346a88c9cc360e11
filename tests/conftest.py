from __future__ import annotations

import logging
import subprocess
import sys
from pathlib import Path

import pytest

# Ensure tests always import the local tree, not an older installed wheel.
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from mount_backup.config import BackupJobConfig  # noqa: E402

# Above the largest pid_max Linux allows, so never a live process
DEAD_PID = 99999999


class FakeMountService:
    def __init__(self, mounted=False, mount_result=(True, ""), unmount_result=(True, "")):
        self.mounted = mounted
        self.mount_result = mount_result
        self.unmount_result = unmount_result
        self.mount_calls = []
        self.unmount_calls = []

    def is_mounted(self, path):
        return self.mounted

    def mount(self, volume_id, path, output=None):
        self.mount_calls.append((volume_id, path))
        if self.mount_result[0]:
            self.mounted = True
        return self.mount_result

    def unmount(self, path):
        self.unmount_calls.append(path)
        if self.unmount_result[0]:
            self.mounted = False
        return self.unmount_result


class FakeSyncTool:
    def __init__(self, exit_code=0, output="", raises=None, on_run=None, installed=True):
        self.installed = installed
        self.exit_code = exit_code
        self.output = output
        self.raises = raises
        self.on_run = on_run
        self.calls = []

    def run(self, options, sources, destination, output):
        self.calls.append((options, list(sources), destination))
        output.write(self.output)
        output.flush()
        if self.on_run is not None:
            self.on_run()
        if self.raises is not None:
            raise self.raises
        return self.exit_code

    def validate_installation(self):
        return self.installed


class RecordingNotifier:
    def __init__(self):
        self.messages = []

    def notify(self, title, message, severity):
        self.messages.append((title, message, severity))


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides) -> BackupJobConfig:
        values = {
            "device_name": "dev",
            "mount_point": str(tmp_path / "mnt" / "x"),
            "drive_uuid": "1234-ABCD",
            "source_dirs": ["/a", "/b"],
            "rsync_opts": "-aAX --delete",
            "log_dir": "logs",
            "lock_dir": "lock",
            "log_file": "logs/app.log",
            "notify_retry_delay": 0,
            "base_dir": str(tmp_path),
        }
        values.update(overrides)
        return BackupJobConfig(**values)

    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def sleeper():
    """A live child process that is not a backup job."""
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    yield proc
    proc.kill()
    proc.wait()


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers installed by setup_logging so they do not leak between tests."""
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_mount_backup_handler", False):
            root.removeHandler(handler)
            handler.close()
