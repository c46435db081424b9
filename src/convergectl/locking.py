"""File-based locking for reconciliation and restore runs.

Only one run may touch a target at a time. Locks are ``fcntl.flock`` locks
on ``<runtime_dir>/<name>.lock`` plus an in-process registry, so a second
request from another process or another thread fails instead of queuing.
Lock files persist after release and carry JSON metadata describing the
last holder for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

_POLL_INTERVAL = 0.05


class LockError(RuntimeError):
    """Raised when a lock cannot be prepared."""


class LockTimeoutError(LockError):
    """Raised when a lock is still held after the timeout expires."""


class RunInProgressError(LockTimeoutError):
    """Raised when another run already holds the lock for a target."""


@dataclass(slots=True, frozen=True)
class LockHandle:
    """Information about an acquired lock."""

    name: str
    path: Path
    wait_ms: int


_held_lock = threading.Lock()
_held_paths: set[str] = set()


class LockManager:
    """Acquire exclusive run locks below *root*."""

    def __init__(self, root: Path, default_timeout: float = 0.0) -> None:
        """Store the lock directory and default wait budget (seconds)."""
        self.root = Path(root).expanduser()
        self.default_timeout = max(0.0, float(default_timeout))

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        safe = "".join(char if char.isalnum() or char in {"-", "_", "."} else "-" for char in name)
        return self.root / f"{safe or 'default'}.lock"

    def is_locked(self, name: str) -> bool:
        """Return ``True`` when *name* is currently held by any run."""
        path = self.lock_path(name)
        with _held_lock:
            if str(path) in _held_paths:
                return True
        if not path.exists():
            return False
        try:
            fd = os.open(path, os.O_RDWR)
        except OSError:
            return False
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return True
        else:
            fcntl.flock(fd, fcntl.LOCK_UN)
            return False
        finally:
            os.close(fd)

    @contextmanager
    def run_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the exclusive run lock for *name* for the duration of the block.

        With the default timeout of zero the lock is attempted once and
        :class:`RunInProgressError` is raised immediately when it is busy.
        """
        budget = self.default_timeout if timeout is None else max(0.0, timeout)
        path = self.lock_path(name)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise LockError(f"Unable to prepare lock directory {self.root}: {exc}") from exc

        start = time.perf_counter()
        key = str(path)
        while True:
            with _held_lock:
                if key not in _held_paths:
                    _held_paths.add(key)
                    break
            if time.perf_counter() - start >= budget:
                raise RunInProgressError(
                    f"Another run already holds the lock for '{name}' ({path})."
                )
            time.sleep(_POLL_INTERVAL)

        try:
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        except OSError as exc:
            with _held_lock:
                _held_paths.discard(key)
            raise LockError(f"Unable to open lock file {path}: {exc}") from exc

        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.perf_counter() - start >= budget:
                        raise RunInProgressError(
                            f"Another run already holds the lock for '{name}' ({path})."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.perf_counter() - start) * 1000)
            self._write_metadata(fd, path)
            try:
                yield LockHandle(name=name, path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
            with _held_lock:
                _held_paths.discard(key)

    @staticmethod
    def _write_metadata(fd: int, path: Path) -> None:
        payload = {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
        }
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, json.dumps(payload).encode("utf-8"))


__all__ = [
    "LockError",
    "LockHandle",
    "LockManager",
    "LockTimeoutError",
    "RunInProgressError",
]
