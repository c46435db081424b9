"""Structured operation logging for convergectl.

Each CLI command runs inside :meth:`StructuredLogger.operation`. The returned
:class:`OperationScope` collects steps and a final result, then appends one
JSON record per operation to ``operations.jsonl``. A human-readable trail is
written to ``convergectl.log`` through the standard :mod:`logging` module.

Logging must never break a command: when the log directory is unavailable or
a write fails the logger disables itself and carries on silently.
"""
from __future__ import annotations

import getpass
import json
import logging
import logging.handlers
import os
import time
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

LOGGER_NAME = "convergectl"
HUMAN_LOG_NAME = "convergectl.log"
OPERATIONS_LOG_NAME = "operations.jsonl"
HUMAN_LOG_MAX_BYTES = 5 * 1024 * 1024
HUMAN_LOG_BACKUPS = 5


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def sanitize(value: object) -> object:
    """Return *value* converted into JSON-safe primitives."""
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): sanitize(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [sanitize(item) for item in value]
    return str(value)


def _current_actor() -> dict[str, object]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = os.environ.get("USER", "unknown")
    return {"user": user, "uid": os.getuid(), "pid": os.getpid()}


class OperationScope:
    """Mutable record for a single logged operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        name: str,
        *,
        args: Mapping[str, object] | None,
        target: Mapping[str, object] | None,
    ) -> None:
        """Start a new operation record."""
        self._logger = logger
        self.name = name
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.actor: Mapping[str, object] = _current_actor()
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self.lock_wait_ms: int | None = None
        self._started_at = _now_iso()
        self._start = time.perf_counter()

    def add_step(self, name: str, *, status: str = "info", detail: str | None = None) -> None:
        """Append a step to the operation record."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail:
            step["detail"] = detail
        self.steps.append(step)
        self._logger.emit(
            logging.WARNING if status in {"warning", "error"} else logging.INFO,
            "%s: %s [%s]%s",
            self.name,
            name,
            status,
            f" {detail}" if detail else "",
        )

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its lock."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    # ------------------------------------------------------------------
    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int | None = None,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        backups: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if changed is not None:
            result["changed"] = changed
        if warnings:
            result["warnings"] = list(warnings)
        if errors:
            result["errors"] = list(errors)
        if backups:
            result["backups"] = list(backups)
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = sanitize(context)
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON-serialisable record for this operation."""
        result = self.result or {"status": "unknown", "message": "No result recorded."}
        record: dict[str, object] = {
            "op": self.name,
            "started_at": self._started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "args": sanitize(self.args),
            "target": sanitize(self.target),
            "actor": sanitize(self.actor),
            "steps": self.steps,
            "result": result,
        }
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        return record


class StructuredLogger:
    """Write operation records and human-readable log lines under *log_dir*."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare the log directory, disabling logging when it is unusable."""
        self._log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self._log_dir / OPERATIONS_LOG_NAME
        self._human_log_path = self._log_dir / HUMAN_LOG_NAME
        self._logger = logging.getLogger(LOGGER_NAME)
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        self._attach_handler()

    @property
    def enabled(self) -> bool:
        """Return ``True`` while the logger is still writing records."""
        return self._enabled

    @property
    def log_dir(self) -> Path:
        """Return the directory holding the log files."""
        return self._log_dir

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(self, name, args=args, target=target)
        self.emit(logging.INFO, "%s: started", name)
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(f"Unhandled error: {exc}", errors=[repr(exc)])
            raise
        finally:
            self._write_record(scope)

    def emit(self, level: int, message: str, *args: object) -> None:
        """Send a human-readable line to the ``convergectl`` logger."""
        self._logger.log(level, message, *args)

    # ------------------------------------------------------------------
    def _attach_handler(self) -> None:
        target = str(self._human_log_path)
        for existing in list(self._logger.handlers):
            if not getattr(existing, "_convergectl_owned", False):
                continue
            if getattr(existing, "baseFilename", None) == target:
                return
            # Only the most recently configured log directory receives lines.
            self._logger.removeHandler(existing)
            existing.close()
        handler = logging.handlers.RotatingFileHandler(
            target,
            maxBytes=HUMAN_LOG_MAX_BYTES,
            backupCount=HUMAN_LOG_BACKUPS,
            encoding="utf-8",
            delay=True,
        )
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        handler._convergectl_owned = True  # type: ignore[attr-defined]
        self._logger.addHandler(handler)
        if self._logger.level == logging.NOTSET or self._logger.level > logging.INFO:
            self._logger.setLevel(logging.INFO)

    def _write_record(self, scope: OperationScope) -> None:
        record = scope.to_record()
        result = record["result"]
        status = result.get("status") if isinstance(result, Mapping) else None
        self.emit(
            logging.ERROR if status == "error" else logging.INFO,
            "%s: %s",
            scope.name,
            status,
        )
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger", "sanitize"]
