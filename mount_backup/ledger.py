"""Status reporting derived from the lock file and the run logs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .config import BackupJobConfig
from .lock import JobIdentity, LockState, LockStatus, RunLock
from .records import (
    Outcome,
    RunRecord,
    format_duration,
    format_time_ago,
    format_timestamp,
    list_run_logs,
    parse_run_log,
)
from .schedule_checker import ScheduleChecker

RULE = "-" * 70
ROW_FORMAT = "%-28s | %s"

# How far back to look for the last successful run while a backup is active
_LAST_SUCCESS_SCAN = 50

_OUTCOME_LABELS = {
    Outcome.SUCCESS: "✅ SUCCESS",
    Outcome.FAILURE: "❌ FAILURE",
    Outcome.INCOMPLETE: "⚠️ INCOMPLETE (Backup was interrupted)",
    Outcome.UNKNOWN: "⚠️ UNKNOWN (Incomplete log file)",
}


@dataclass(frozen=True)
class RunSummary:
    """One line of backup history."""

    log_name: str
    outcome: Outcome
    start: Optional[datetime] = None
    duration: Optional[float] = None

    @classmethod
    def from_record(cls, record: RunRecord) -> RunSummary:
        return cls(
            log_name=record.log_path.name,
            outcome=record.outcome,
            start=record.start,
            duration=record.duration,
        )

    @property
    def is_complete(self) -> bool:
        return self.outcome in (Outcome.SUCCESS, Outcome.FAILURE)

    def describe(self) -> str:
        if self.start is None:
            return f"{'?':19}  {'incomplete log':10}  {self.log_name}"
        started = format_timestamp(self.start)
        if not self.is_complete:
            return f"{started}  {'incomplete log':10}  {self.log_name}"
        return f"{started}  {self.outcome.value:10}  {format_duration(self.duration or 0)}"


@dataclass(frozen=True)
class StatusReport:
    """Snapshot of the job state at generated_at."""

    generated_at: datetime
    lock: LockStatus
    last_run: Optional[RunRecord] = None
    last_success: Optional[RunRecord] = None
    next_run: Optional[datetime] = None
    rows: Tuple[Tuple[str, str], ...] = field(default=())

    @property
    def is_running(self) -> bool:
        return self.lock.state == LockState.RUNNING

    def render(self) -> str:
        lines = [ROW_FORMAT % ("Report generated", self.generated_at.strftime("%c")), RULE]
        lines.extend(ROW_FORMAT % row for row in self.rows)
        lines.append(RULE)
        return "\n".join(lines)


class StatusLedger:
    """Answers 'is a backup running, and how did the last ones go'."""

    def __init__(
        self,
        config: BackupJobConfig,
        lock: Optional[RunLock] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config
        self.identity = JobIdentity.for_config(config)
        self.lock = lock or RunLock(config.lock_file)
        self.clock = clock

    def run_logs(self) -> List[Path]:
        return list_run_logs(self.config.log_path)

    def history(self, limit: int = 10) -> List[RunSummary]:
        """The newest runs, newest first, at most limit entries."""
        if limit <= 0:
            return []
        return [RunSummary.from_record(parse_run_log(path)) for path in self.run_logs()[:limit]]

    def current_status(self, identity: Optional[JobIdentity] = None) -> StatusReport:
        """Build the status report. Reads only; never touches the lock."""
        now = self.clock()
        lock_status = self.lock.inspect(identity or self.identity)
        logs = self.run_logs()
        latest = parse_run_log(logs[0]) if logs else None
        next_run = ScheduleChecker.next_run_time(self.config, now)

        rows: List[Tuple[str, str]] = []
        last_success = None

        if lock_status.state == LockState.RUNNING:
            since = lock_status.since or now
            rows.append(("Status", "🟢 RUNNING"))
            rows.append(("Process ID (PID)", str(lock_status.pid)))
            rows.append(("Started at", format_timestamp(since)))
            rows.append(("Running for", format_duration((now - since).total_seconds())))

            last_success = self._last_success(logs)
            if last_success is not None:
                rows.append(("Last successful backup took", format_duration(last_success.duration)))
        else:
            if lock_status.state == LockState.STALE:
                rows.append(("Status", "🟡 WARNING: Stale lock file found"))
                if lock_status.pid is not None:
                    rows.append(("Info", f"PID {lock_status.pid} is not running. Backup is NOT active."))
                else:
                    rows.append(("Info", "Lock file is unreadable. Backup is NOT active."))
            else:
                rows.append(("Status", "⚪ NOT RUNNING"))
            rows.extend(self._last_run_rows(latest, now))

        if next_run is not None:
            rows.append(("Next scheduled run", format_timestamp(next_run)))

        return StatusReport(
            generated_at=now,
            lock=lock_status,
            last_run=latest,
            last_success=last_success,
            next_run=next_run,
            rows=tuple(rows),
        )

    def _last_success(self, logs: List[Path]) -> Optional[RunRecord]:
        for path in logs[:_LAST_SUCCESS_SCAN]:
            record = parse_run_log(path)
            if record.outcome == Outcome.SUCCESS and record.duration is not None:
                return record
        return None

    @staticmethod
    def _last_run_rows(record: Optional[RunRecord], now: datetime) -> List[Tuple[str, str]]:
        if record is None:
            return [("Last backup", "Never ran (no log files found).")]

        rows = [("Last backup status", _OUTCOME_LABELS[record.outcome])]

        if record.outcome in (Outcome.SUCCESS, Outcome.FAILURE) and record.end is not None:
            if record.start is not None:
                rows.append(("Last backup started", format_timestamp(record.start)))
            rows.append(("Last backup ended", format_timestamp(record.end)))
            rows.append(("Last backup ran", format_time_ago((now - record.end).total_seconds())))
            if record.duration is not None:
                rows.append(("Last backup duration", format_duration(record.duration)))
            if record.note:
                rows.append(("Details", record.note))
        else:
            if record.start is not None:
                rows.append(("Last backup started", format_timestamp(record.start)))
            if record.note:
                rows.append(("Details", record.note))
            rows.append(("Log file", str(record.log_path)))

        return rows
