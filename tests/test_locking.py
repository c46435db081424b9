"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
import threading
from pathlib import Path

import pytest

from convergectl.locking import LockManager, LockTimeoutError, RunInProgressError


def test_run_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run")

    lock_path = tmp_path / "run" / "web.lock"
    with manager.run_lock("web") as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)
        assert manager.is_locked("web") is True

    # Lockfile persists for diagnostics but no longer holds the lock.
    assert lock_path.exists()
    assert manager.is_locked("web") is False
    with manager.run_lock("web"):
        pass


def test_second_run_fails_immediately(tmp_path: Path) -> None:
    """A concurrent run is rejected instead of queued."""
    manager = LockManager(tmp_path / "run")

    with manager.run_lock("web"):
        with pytest.raises(RunInProgressError, match="already holds the lock"):
            with manager.run_lock("web"):
                pass


def test_run_in_progress_is_a_timeout(tmp_path: Path) -> None:
    """Callers catching the timeout base class also see busy runs."""
    manager = LockManager(tmp_path / "run", default_timeout=0.1)

    with manager.run_lock("web"):
        with pytest.raises(LockTimeoutError):
            with manager.run_lock("web"):
                pass


def test_lock_from_other_thread_is_rejected(tmp_path: Path) -> None:
    """The in-process registry blocks other threads too."""
    manager = LockManager(tmp_path / "run")
    errors: list[Exception] = []

    def contender() -> None:
        try:
            with manager.run_lock("web"):
                pass
        except RunInProgressError as exc:
            errors.append(exc)

    with manager.run_lock("web"):
        thread = threading.Thread(target=contender)
        thread.start()
        thread.join()

    assert len(errors) == 1


def test_different_targets_do_not_block(tmp_path: Path) -> None:
    """Locks are per target name."""
    manager = LockManager(tmp_path / "run")

    with manager.run_lock("web"), manager.run_lock("api"):
        assert manager.is_locked("web")
        assert manager.is_locked("api")


def test_lock_path_sanitises_names(tmp_path: Path) -> None:
    """Unsafe characters never escape the lock directory."""
    manager = LockManager(tmp_path / "run")

    assert manager.lock_path("../etc/passwd") == tmp_path / "run" / "..-etc-passwd.lock"
