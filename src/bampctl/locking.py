"""Process-exclusive locking for mutating bampctl commands.

Two bampctl processes editing ``httpd.conf`` or the vhost directory at the same
time is unsupported, so every mutating command holds
``<runtime_dir>/bampctl.lock`` via ``fcntl.flock`` for its whole duration.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

from .errors import PreconditionError

GLOBAL_LOCK_NAME = "bampctl.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(PreconditionError):
    """Raised when the lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """An acquired lock plus the time spent waiting for it."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire the global bampctl lock under ``runtime_dir``."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default wait bound (seconds)."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = float(default_timeout)

    @property
    def lock_path(self) -> Path:
        """Path of the global lock file."""
        return self.runtime_dir / GLOBAL_LOCK_NAME

    @contextmanager
    def mutate(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global lock for the duration of the block."""
        wait = self.default_timeout if timeout is None else float(timeout)
        path = self.lock_path
        path.parent.mkdir(parents=True, exist_ok=True)
        handle = path.open("a+", encoding="utf-8")
        try:
            wait_ms = self._acquire(handle, path, wait)
            self._write_metadata(handle, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    def _acquire(self, handle: IO[str], path: Path, timeout: float) -> int:
        start = time.monotonic()
        deadline = start + timeout
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise LockTimeoutError(
                        f"Timed out after {timeout:.1f}s waiting for lock {path}.",
                        remediation="Another bampctl process is running; retry once it finishes.",
                    ) from None
                time.sleep(_POLL_INTERVAL)
                continue
            return int((time.monotonic() - start) * 1000)

    @staticmethod
    def _write_metadata(handle: IO[str], path: Path) -> None:
        payload = {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
        }
        handle.seek(0)
        handle.truncate()
        handle.write(json.dumps(payload))
        handle.flush()


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
