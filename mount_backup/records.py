"""Run log format: markers, file naming, sidecar records and the lenient parser."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import IO, List, Optional

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_NAME_FORMAT = "backup_%Y-%m-%d_%H-%M-%S"
LOG_GLOB = "backup_*.log"

START_MARKER = "--- Backup Started: {} ---"
END_MARKER = "--- Backup Finished: {} ---"
SUCCESS_SENTINEL = "✅ Rsync completed successfully."
FAILURE_LINE = "❌ ERROR: Rsync failed with exit code {}."
RULE = "=" * 49

_START_RE = re.compile(r"^--- Backup Started: (.+?) ---\s*$", re.MULTILINE)
_END_RE = re.compile(r"^--- Backup Finished: (.+?) ---\s*$", re.MULTILINE)

# Formats seen in run logs, newest first. The last three are date(1) output
# left behind by the shell version of this tool, with the zone name removed.
_TIMESTAMP_FORMATS = (
    TIMESTAMP_FORMAT,
    "%Y-%m-%dT%H:%M:%S",
    "%a %b %d %H:%M:%S %Y",
    "%a %d %b %Y %H:%M:%S",
    "%a %d %b %Y %I:%M:%S %p",
)

# Zone names such as CEST or numeric zones such as +0200 printed by date(1).
# strptime's %Z only knows UTC, GMT and the local zone.
_ZONE_RE = re.compile(r"(?<!\S)(?!(?:AM|PM)(?!\S))(?:[A-Z]{2,5}|[+-]\d{2,4})(?!\S)")


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    INCOMPLETE = "incomplete"
    UNKNOWN = "unknown"


@dataclass
class RunRecord:
    """One backup attempt, resolved from its log and sidecar."""

    log_path: Path
    outcome: Outcome
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    exit_code: Optional[int] = None
    note: str = ""

    @property
    def duration(self) -> Optional[float]:
        """Run time in seconds, when both ends are known."""
        if self.start is None or self.end is None:
            return None
        return max((self.end - self.start).total_seconds(), 0.0)

    def to_json(self) -> str:
        return json.dumps(
            {
                "log": self.log_path.name,
                "start": self.start.isoformat() if self.start else None,
                "end": self.end.isoformat() if self.end else None,
                "outcome": self.outcome.value,
                "exit_code": self.exit_code,
                "note": self.note,
            },
            indent=2,
        )


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse a marker timestamp. Returns None instead of raising."""
    value = value.strip()
    without_zone = " ".join(_ZONE_RE.sub(" ", value).split())
    for candidate in (value, without_zone):
        for fmt in _TIMESTAMP_FORMATS:
            try:
                return datetime.strptime(candidate, fmt)
            except ValueError:
                continue
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def format_timestamp(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


def run_log_path(log_dir: Path, start: datetime, attempt: int = 0) -> Path:
    """
    Log file for a run starting at start. Names sort chronologically.

    A non-zero attempt adds a ``_NN`` suffix for runs started within the
    same second; those names sort after the unsuffixed one.
    """
    name = start.strftime(LOG_NAME_FORMAT)
    if attempt:
        name += f"_{attempt:02d}"
    return Path(log_dir) / f"{name}.log"


def sidecar_path(log_path: Path) -> Path:
    return log_path.with_suffix(".json")


def list_run_logs(log_dir: Path) -> List[Path]:
    """All run logs, newest first."""
    log_dir = Path(log_dir)
    if not log_dir.is_dir():
        return []
    return sorted(log_dir.glob(LOG_GLOB), key=lambda p: p.name, reverse=True)


def write_sidecar(record: RunRecord) -> Path:
    path = sidecar_path(record.log_path)
    path.write_text(record.to_json() + "\n", encoding="utf-8")
    return path


def read_sidecar(log_path: Path) -> Optional[RunRecord]:
    """Load the structured record next to a run log, if there is a usable one."""
    path = sidecar_path(log_path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        outcome = Outcome(data["outcome"])
        start = datetime.fromisoformat(data["start"]) if data.get("start") else None
        end = datetime.fromisoformat(data["end"]) if data.get("end") else None
    except FileNotFoundError:
        return None
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.debug(f"Ignoring unreadable sidecar {path}: {e}")
        return None

    exit_code = data.get("exit_code")
    return RunRecord(
        log_path=log_path,
        outcome=outcome,
        start=start,
        end=end,
        exit_code=exit_code if isinstance(exit_code, int) else None,
        note=str(data.get("note") or ""),
    )


def parse_log_text(log_path: Path, text: str) -> RunRecord:
    """
    Derive a run record from the human-readable markers.

    - start and end markers: success if the sentinel is present, else failure
    - start marker only: incomplete (the run was interrupted)
    - anything else: unknown
    """
    start_match = _START_RE.search(text)
    end_matches = _END_RE.findall(text)

    start = parse_timestamp(start_match.group(1)) if start_match else None
    end = parse_timestamp(end_matches[-1]) if end_matches else None

    if start is None:
        return RunRecord(log_path=log_path, outcome=Outcome.UNKNOWN, end=end)
    if end is None:
        return RunRecord(log_path=log_path, outcome=Outcome.INCOMPLETE, start=start)

    outcome = Outcome.SUCCESS if SUCCESS_SENTINEL in text else Outcome.FAILURE
    return RunRecord(log_path=log_path, outcome=outcome, start=start, end=end)


def parse_run_log(log_path: Path) -> RunRecord:
    """Resolve a run log, preferring its sidecar record. Never raises."""
    record = read_sidecar(log_path)
    if record is not None:
        return record

    try:
        text = log_path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning(f"Cannot read run log {log_path}: {e}")
        return RunRecord(log_path=log_path, outcome=Outcome.UNKNOWN)

    return parse_log_text(log_path, text)


class RunLog:
    """Append-only writer for one run's log file."""

    # Runs per second before create() gives up
    MAX_ATTEMPTS = 100

    def __init__(self, path: Path, mode: str = "a"):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.stream: IO = open(self.path, mode, encoding="utf-8")
        self.logger = logging.getLogger(__name__)

    @classmethod
    def create(cls, log_dir: Path, start: datetime) -> RunLog:
        """Open a fresh log for a run starting at start, never reusing an existing file."""
        for attempt in range(cls.MAX_ATTEMPTS):
            try:
                return cls(run_log_path(log_dir, start, attempt), mode="x")
            except FileExistsError:
                continue
        raise FileExistsError(f"No free run log name for {format_timestamp(start)} in {log_dir}")

    def line(self, text: str, level: int = logging.INFO) -> None:
        """Append a line to the run log and echo it to the application log."""
        self.stream.write(text + "\n")
        self.stream.flush()
        self.logger.log(level, text)

    def start_marker(self, when: datetime) -> None:
        self.line(RULE)
        self.line(START_MARKER.format(format_timestamp(when)))

    def end_marker(self, when: datetime, exit_code: int) -> None:
        self.line(END_MARKER.format(format_timestamp(when)))
        if exit_code == 0:
            self.line(SUCCESS_SENTINEL)
        else:
            self.line(FAILURE_LINE.format(exit_code), logging.ERROR)
        self.line(RULE)

    def close(self) -> None:
        if not self.stream.closed:
            self.stream.close()


def format_duration(seconds: float) -> str:
    """Format a duration as 'M minutes, S seconds'."""
    seconds = max(int(seconds), 0)
    return f"{seconds // 60} minutes, {seconds % 60} seconds"


def format_time_ago(seconds: float) -> str:
    """Format an age in the largest whole unit that fits."""
    seconds = max(int(seconds), 0)
    if seconds < 60:
        return f"{seconds} seconds ago"
    elif seconds < 3600:
        return f"{seconds // 60} minutes ago"
    elif seconds < 86400:
        return f"{seconds // 3600} hours ago"
    elif seconds < 2592000:
        return f"{seconds // 86400} days ago"
    elif seconds < 31536000:
        return f"{seconds // 2592000} months ago"
    return f"{seconds // 31536000} years ago"
