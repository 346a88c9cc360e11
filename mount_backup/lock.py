"""Single-instance run lock backed by a PID file.

The lock file holds a small JSON record naming the owning process, its
command line and its start time. A lock is only trusted when that process
is still alive *and* is still the same invocation, which protects against
PID reuse after a crash. Creation uses a hard link from a fully written
temporary file, so a competing process either sees no lock or a complete one.

Mutual exclusion is best-effort: this is plain filesystem coordination, not
a kernel advisory lock.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional

import psutil

from .errors import LockConflictError

logger = logging.getLogger(__name__)

# Tolerance when comparing psutil create_time() values across reads
_START_TIME_TOLERANCE = 1.0

# Markers accepted for lock files that only contain a PID
_LEGACY_ARGV_MARKERS = ("mount_backup", "mount-backup")


@dataclass(frozen=True)
class JobIdentity:
    """Name of the backup job a lock belongs to."""

    name: str

    @classmethod
    def for_config(cls, config) -> JobIdentity:
        return cls(name=config.device_name)


@dataclass
class LockRecord:
    """Contents of the lock file."""

    pid: int
    job: Optional[str] = None
    argv: Optional[List[str]] = None
    process_started: Optional[float] = None
    started_at: Optional[float] = None

    @classmethod
    def for_process(
        cls, pid: int, identity: JobIdentity, started_at: Optional[float] = None
    ) -> LockRecord:
        """Build a record describing a running process."""
        proc = psutil.Process(pid)
        return cls(
            pid=pid,
            job=identity.name,
            argv=proc.cmdline(),
            process_started=proc.create_time(),
            started_at=started_at if started_at is not None else time.time(),
        )

    @classmethod
    def parse(cls, text: str) -> Optional[LockRecord]:
        """Parse lock file contents. Returns None for garbage."""
        text = text.strip()
        if not text:
            return None

        if text.isdigit():
            pid = int(text)
            return cls(pid=pid) if pid > 0 else None

        try:
            data = json.loads(text)
            pid = int(data["pid"])
        except (ValueError, KeyError, TypeError):
            return None
        if pid <= 0:
            return None

        argv = data.get("argv")
        return cls(
            pid=pid,
            job=data.get("job"),
            argv=list(argv) if isinstance(argv, list) else None,
            process_started=data.get("process_started"),
            started_at=data.get("started_at"),
        )

    def to_json(self) -> str:
        return json.dumps(asdict(self))


@dataclass
class LockHandle:
    """Proof of ownership returned by acquire()."""

    path: Path
    identity: JobIdentity
    record: LockRecord


class LockState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STALE = "stale"


@dataclass(frozen=True)
class LockStatus:
    """Read-only view of the lock used by status queries."""

    state: LockState
    pid: Optional[int] = None
    since: Optional[datetime] = field(default=None, compare=False)


class RunLock:
    """PID-file lock for one backup job."""

    def __init__(self, lock_file: Path):
        self.lock_file = Path(lock_file)

    def acquire(self, identity: JobIdentity) -> LockHandle:
        """
        Take the lock for the current process.

        A stale lock is removed and creation retried once.

        Raises:
            LockConflictError: if a live instance of the job holds the lock
        """
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        record = LockRecord.for_process(os.getpid(), identity)

        for attempt in range(2):
            if self._create_exclusive(record):
                logger.debug(f"Lock acquired: {self.lock_file} (PID {record.pid})")
                return LockHandle(self.lock_file, identity, record)

            existing = self.read()
            if existing is not None and self.is_live_owner(existing, identity):
                raise LockConflictError(existing.pid)

            if attempt == 0:
                stale_pid = existing.pid if existing else "unknown"
                logger.warning(
                    f"Found a stale lock file (PID {stale_pid} is not our backup "
                    f"or is not running). Removing it."
                )
                self.lock_file.unlink(missing_ok=True)

        # Another process recreated the lock between our removal and retry
        existing = self.read()
        pid = existing.pid if existing else 0
        raise LockConflictError(pid, f"Another backup took the lock first (PID {pid})")

    def release(self, handle: Optional[LockHandle] = None) -> None:
        """Remove the lock file. Safe to call when it is already gone."""
        path = handle.path if handle is not None else self.lock_file
        path.unlink(missing_ok=True)
        logger.debug(f"Lock released: {path}")

    @contextmanager
    def held(self, identity: JobIdentity) -> Iterator[LockHandle]:
        """Scoped acquisition; the lock is released on every exit path."""
        handle = self.acquire(identity)
        try:
            yield handle
        finally:
            self.release(handle)

    def handoff(self, handle: LockHandle, pid: int) -> LockHandle:
        """
        Transfer an acquired lock to another process, e.g. a spawned worker.

        Nothing is written when the lock no longer names the handle's owner,
        which happens when the worker has already claimed (or released) it.

        Raises:
            psutil.NoSuchProcess: if pid has already exited
        """
        current = self.read()
        if current is None or current.pid != handle.record.pid:
            logger.debug(f"Lock no longer owned by PID {handle.record.pid}; skipping handoff")
            return handle

        record = LockRecord.for_process(pid, handle.identity, handle.record.started_at)
        self._write_atomic(record)
        logger.debug(f"Lock handed off from PID {handle.record.pid} to PID {pid}")
        return LockHandle(handle.path, handle.identity, record)

    def claim(self, identity: JobIdentity) -> LockHandle:
        """
        Record the current process as lock owner.

        Used by the worker on entry. The lock may already name this process
        or the launcher that spawned it; any other live owner is a conflict.
        """
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        me = os.getpid()
        existing = self.read()
        started_at = None

        if existing is not None:
            if existing.pid in (me, os.getppid()):
                started_at = existing.started_at
            elif self.is_live_owner(existing, identity):
                raise LockConflictError(existing.pid)

        record = LockRecord.for_process(me, identity, started_at)
        self._write_atomic(record)
        return LockHandle(self.lock_file, identity, record)

    def inspect(self, identity: JobIdentity) -> LockStatus:
        """Report the lock state without modifying anything."""
        try:
            text = self.lock_file.read_text(encoding="utf-8")
            mtime = self.lock_file.stat().st_mtime
        except FileNotFoundError:
            return LockStatus(LockState.IDLE)
        except OSError as e:
            logger.warning(f"Cannot read lock file {self.lock_file}: {e}")
            return LockStatus(LockState.STALE)

        record = LockRecord.parse(text)
        if record is None:
            return LockStatus(LockState.STALE)

        if not self.is_live_owner(record, identity):
            return LockStatus(LockState.STALE, pid=record.pid)

        started = record.started_at if record.started_at is not None else mtime
        return LockStatus(
            LockState.RUNNING, pid=record.pid, since=datetime.fromtimestamp(started)
        )

    def read(self) -> Optional[LockRecord]:
        """Read the lock record, or None if absent or unreadable."""
        try:
            return LockRecord.parse(self.lock_file.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Cannot read lock file {self.lock_file}: {e}")
            return None

    @staticmethod
    def is_live_owner(record: LockRecord, identity: JobIdentity) -> bool:
        """Check that the recorded process is alive and is the recorded job invocation."""
        if record.job is not None and record.job != identity.name:
            return False

        try:
            proc = psutil.Process(record.pid)
            cmdline = proc.cmdline()
            created = proc.create_time()
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            # Alive, but we cannot look closer. Refusing is safer than clobbering.
            return True

        if (
            record.process_started is not None
            and abs(created - record.process_started) > _START_TIME_TOLERANCE
        ):
            return False

        if record.argv is not None:
            return cmdline == record.argv

        return any(
            marker in part for part in cmdline for marker in _LEGACY_ARGV_MARKERS
        )

    def _create_exclusive(self, record: LockRecord) -> bool:
        tmp_path = self._write_temp(record)
        try:
            os.link(tmp_path, self.lock_file)
            return True
        except FileExistsError:
            return False
        finally:
            os.unlink(tmp_path)

    def _write_atomic(self, record: LockRecord) -> None:
        tmp_path = self._write_temp(record)
        try:
            os.replace(tmp_path, self.lock_file)
        except OSError:
            os.unlink(tmp_path)
            raise

    def _write_temp(self, record: LockRecord) -> str:
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self.lock_file.name}.", suffix=".tmp", dir=self.lock_file.parent
        )
        # status queries run unprivileged and must be able to read the lock
        os.fchmod(fd, 0o644)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(record.to_json())
            f.flush()
            os.fsync(f.fileno())
        return tmp_path
