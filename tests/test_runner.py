import os
import signal
from datetime import datetime

import pytest

from conftest import FakeMountService, FakeSyncTool, RecordingNotifier
from mount_backup.errors import BackupAborted
from mount_backup.lock import JobIdentity, LockRecord, RunLock
from mount_backup.records import (
    SUCCESS_SENTINEL,
    Outcome,
    list_run_logs,
    parse_run_log,
    sidecar_path,
)
from mount_backup.runner import BackupRunner, RunState
from mount_backup.services import Severity


def make_runner(config, mount_service=None, sync_tool=None):
    notifier = RecordingNotifier()
    runner = BackupRunner(
        config,
        mount_service=mount_service or FakeMountService(mounted=True),
        sync_tool=sync_tool or FakeSyncTool(),
        notifier=notifier,
    )
    return runner, notifier


def only_log(config):
    logs = list_run_logs(config.log_path)
    assert len(logs) == 1
    return logs[0]


def test_successful_sync(config):
    sync = FakeSyncTool(exit_code=0, output="sent 1,234 bytes  received 56 bytes\n")
    runner, notifier = make_runner(config, sync_tool=sync)

    assert runner.run() == 0

    assert sync.calls == [("-aAX --delete", ["/a", "/b"], str(config.dest_dir))]
    assert str(config.dest_dir).endswith("/mnt/x/dev/backup")
    assert config.dest_dir.is_dir()

    text = only_log(config).read_text()
    assert "--- Backup Started: " in text
    assert "--- Backup Finished: " in text
    assert SUCCESS_SENTINEL in text
    assert "sent 1,234 bytes" in text

    assert runner.state == RunState.SUCCEEDED
    assert not config.lock_file.exists()
    assert [m[2] for m in notifier.messages] == [Severity.SUCCESS]


def test_success_writes_sidecar(config):
    runner, _ = make_runner(config)
    runner.run()

    log_path = only_log(config)
    assert sidecar_path(log_path).exists()
    record = parse_run_log(log_path)
    assert record.outcome == Outcome.SUCCESS
    assert record.exit_code == 0
    assert record.duration is not None


def test_already_mounted_skips_mount(config):
    mounts = FakeMountService(mounted=True)
    runner, _ = make_runner(config, mount_service=mounts)

    runner.run()

    assert mounts.mount_calls == []


def test_mounts_by_uuid_when_not_mounted(config):
    mounts = FakeMountService(mounted=False)
    runner, _ = make_runner(config, mount_service=mounts)

    assert runner.run() == 0

    assert mounts.mount_calls == [("1234-ABCD", config.mount_point)]
    assert os.path.isdir(config.mount_point)
    assert "Mounting by UUID" in only_log(config).read_text()


def test_mount_failure_aborts_before_sync(config):
    mounts = FakeMountService(mounted=False, mount_result=(False, "wrong fs type"))
    sync = FakeSyncTool()
    runner, notifier = make_runner(config, mount_service=mounts, sync_tool=sync)

    assert runner.run() == 1

    assert sync.calls == []
    assert runner.state == RunState.FAILED
    assert not config.lock_file.exists()
    assert "Failed to mount drive" in only_log(config).read_text()
    assert [m[2] for m in notifier.messages] == [Severity.FAILURE]

    record = parse_run_log(only_log(config))
    assert record.outcome == Outcome.FAILURE
    assert "wrong fs type" in record.note


def test_unwritable_destination_fails(config):
    device_dir = config.dest_dir.parent
    device_dir.parent.mkdir(parents=True)
    device_dir.write_text("a file where a directory should be")
    sync = FakeSyncTool()
    runner, notifier = make_runner(config, sync_tool=sync)

    assert runner.run() == 1

    assert sync.calls == []
    assert not config.lock_file.exists()
    assert "not writable" in only_log(config).read_text()
    assert notifier.messages[-1][2] == Severity.FAILURE


def test_sync_failure_propagates_exit_code(config):
    runner, notifier = make_runner(config, sync_tool=FakeSyncTool(exit_code=23))

    assert runner.run() == 23

    text = only_log(config).read_text()
    assert "--- Backup Finished: " in text
    assert "Rsync failed with exit code 23." in text
    assert SUCCESS_SENTINEL not in text
    assert not config.lock_file.exists()
    # one failure notification, not a second one from the finalizer
    assert [m[2] for m in notifier.messages] == [Severity.FAILURE]
    assert parse_run_log(only_log(config)).outcome == Outcome.FAILURE


def test_keyboard_interrupt_releases_lock(config):
    runner, notifier = make_runner(config, sync_tool=FakeSyncTool(raises=KeyboardInterrupt()))

    assert runner.run() == 130

    assert runner.state == RunState.ABORTED
    assert not config.lock_file.exists()
    assert [m[2] for m in notifier.messages] == [Severity.FAILURE]
    assert parse_run_log(only_log(config)).outcome == Outcome.INCOMPLETE


def test_interrupted_log_without_sidecar_reads_incomplete(config):
    runner, _ = make_runner(config, sync_tool=FakeSyncTool(raises=KeyboardInterrupt()))
    runner.run()

    log_path = only_log(config)
    sidecar_path(log_path).unlink()

    assert parse_run_log(log_path).outcome == Outcome.INCOMPLETE


def test_sigterm_during_sync_aborts(config):
    sync = FakeSyncTool(on_run=lambda: os.kill(os.getpid(), signal.SIGTERM))
    runner, notifier = make_runner(config, sync_tool=sync)

    assert runner.run() == 128 + signal.SIGTERM

    assert runner.state == RunState.ABORTED
    assert not config.lock_file.exists()
    assert notifier.messages[-1][2] == Severity.FAILURE
    assert "aborted by signal SIGTERM" in only_log(config).read_text()


def test_signal_handlers_are_restored(config):
    before = signal.getsignal(signal.SIGTERM)
    runner, _ = make_runner(config, sync_tool=FakeSyncTool(raises=BackupAborted(signal.SIGTERM)))

    runner.run()

    assert signal.getsignal(signal.SIGTERM) is before


def test_unexpected_error_still_releases_lock(config):
    runner, notifier = make_runner(config, sync_tool=FakeSyncTool(raises=RuntimeError("boom")))

    with pytest.raises(RuntimeError):
        runner.run()

    assert runner.state == RunState.FAILED
    assert not config.lock_file.exists()
    assert notifier.messages[-1][2] == Severity.FAILURE


def test_refuses_to_run_while_another_backup_holds_lock(config, sleeper):
    config.lock_file.parent.mkdir(parents=True)
    config.lock_file.write_text(
        LockRecord.for_process(sleeper.pid, JobIdentity("dev")).to_json()
    )
    sync = FakeSyncTool()
    runner, notifier = make_runner(config, sync_tool=sync)

    assert runner.run() == 1

    assert sync.calls == []
    assert RunLock(config.lock_file).read().pid == sleeper.pid
    assert notifier.messages == []
    assert list_run_logs(config.log_path) == []


class InterruptingNotifier(RecordingNotifier):
    """Raises error while delivering a notification of the given severity."""

    def __init__(self, lock_file, severity, error):
        super().__init__()
        self.lock_file = lock_file
        self.severity = severity
        self.error = error
        self.lock_held = []

    def notify(self, title, message, severity):
        super().notify(title, message, severity)
        self.lock_held.append(self.lock_file.exists())
        if severity == self.severity:
            raise self.error


def test_signal_during_success_notification_keeps_success(config, caplog):
    notifier = InterruptingNotifier(config.lock_file, Severity.SUCCESS, BackupAborted(signal.SIGTERM))
    runner = BackupRunner(
        config,
        mount_service=FakeMountService(mounted=True),
        sync_tool=FakeSyncTool(exit_code=0),
        notifier=notifier,
    )

    assert runner.run() == 0

    assert runner.state == RunState.SUCCEEDED
    assert [m[2] for m in notifier.messages] == [Severity.SUCCESS]
    # notifications go out after the lock is released
    assert notifier.lock_held == [False]
    assert SUCCESS_SENTINEL in only_log(config).read_text()
    assert parse_run_log(only_log(config)).outcome == Outcome.SUCCESS
    assert "keeping its result" in caplog.text


def test_interrupt_during_failure_notification_keeps_rsync_exit_code(config):
    notifier = InterruptingNotifier(config.lock_file, Severity.FAILURE, KeyboardInterrupt())
    runner = BackupRunner(
        config,
        mount_service=FakeMountService(mounted=True),
        sync_tool=FakeSyncTool(exit_code=23),
        notifier=notifier,
    )

    assert runner.run() == 23

    assert runner.state == RunState.FAILED
    assert [m[2] for m in notifier.messages] == [Severity.FAILURE]
    assert notifier.lock_held == [False]
    record = parse_run_log(only_log(config))
    assert record.outcome == Outcome.FAILURE
    assert record.exit_code == 23


def test_runs_started_in_the_same_second_keep_separate_logs(config):
    clock = lambda: datetime(2026, 10, 19, 3, 0, 0)  # noqa: E731
    failed = BackupRunner(
        config,
        mount_service=FakeMountService(mounted=False, mount_result=(False, "no such device")),
        sync_tool=FakeSyncTool(),
        notifier=RecordingNotifier(),
        clock=clock,
    )
    retried = BackupRunner(
        config,
        mount_service=FakeMountService(mounted=True),
        sync_tool=FakeSyncTool(),
        notifier=RecordingNotifier(),
        clock=clock,
    )

    assert failed.run() == 1
    assert retried.run() == 0

    logs = list_run_logs(config.log_path)
    assert [p.name for p in logs] == [
        "backup_2026-10-19_03-00-00_01.log",
        "backup_2026-10-19_03-00-00.log",
    ]
    assert [parse_run_log(p).outcome for p in logs] == [Outcome.SUCCESS, Outcome.FAILURE]
    assert "no such device" in logs[1].read_text()
