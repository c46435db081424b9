"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from convergectl.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    text = logger._operations_log_path.read_text(encoding="utf-8")  # type: ignore[attr-defined]
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger.enabled is False

    with logger.operation("reconcile", args={"dry_run": True}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("reconcile") as op:
        op.success("done", changed=0)

    assert logger.enabled is False

    # Subsequent operations should not raise even though logger is disabled.
    with logger.operation("backup") as op:
        op.success("done", changed=0)


def test_operation_record_contains_steps_and_lock_wait(tmp_path: Path) -> None:
    """Records carry steps, args, actor and the lock wait."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "reconcile",
        args={"config": Path("/etc/convergectl/target.yml")},
        target={"kind": "target"},
    ) as op:
        op.add_step("state.Inspecting")
        op.add_step("state.Failed", status="error", detail="probe api")
        op.set_lock_wait_ms(12)
        op.success("ok", changed=2)

    [record] = _records(logger)
    assert record["op"] == "reconcile"
    assert record["args"] == {"config": "/etc/convergectl/target.yml"}
    assert record["lock_wait_ms"] == 12
    steps = record["steps"]
    assert isinstance(steps, list)
    assert [step["name"] for step in steps] == ["state.Inspecting", "state.Failed"]
    assert steps[1]["detail"] == "probe api"
    assert record["result"] == {"status": "success", "message": "ok", "changed": 2}
    assert "pid" in record["actor"]  # type: ignore[operator]


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("restore", args={"archive": Path("a.tar.gz")}) as op:
        op.warning(
            "declined",
            warnings=("declined",),
            errors=("err",),
            changed=1,
            backups=["backup.tar"],
            context={"path": Path("/var/lib"), "obj": Custom()},
        )

    [record] = _records(logger)
    result = record["result"]
    assert result["status"] == "warning"
    assert result["warnings"] == ["declined"]
    assert result["errors"] == ["err"]
    assert result["backups"] == ["backup.tar"]
    assert result["context"] == {"path": "/var/lib", "obj": "<custom>"}


def test_operation_scope_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors should default to the message when not provided."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("verify") as op:
        op.error("boom", errors=None, rc=1, context={"value": {1, 2}})

    [record] = _records(logger)
    result = record["result"]
    assert result["status"] == "error"
    assert result["errors"] == ["boom"]
    assert result["rc"] == 1
    assert result["context"] == {"value": "{1, 2}"}


def test_unhandled_exception_is_recorded(tmp_path: Path) -> None:
    """An exception escaping the scope is logged as an error and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError):
        with logger.operation("backup"):
            raise ValueError("tar exploded")

    [record] = _records(logger)
    result = record["result"]
    assert result["status"] == "error"
    assert "tar exploded" in str(result["message"])
