"""Run state machine: inspect, diff, execute, verify.

The orchestrator is the single place that decides a run's terminal state
and whether rollback happens:

* an action failure (or cancellation) rolls back the run and ends in
  ``RolledBack`` (``Failed`` if a compensating step itself failed);
* a health probe failure after a successful execution ends in ``Failed``
  and leaves the new state in place;
* a cyclic dependency ends in ``Failed`` before anything is touched.

Only one run per target may be active; a concurrent run raises
:class:`~convergectl.locking.RunInProgressError` before inspecting anything.
Cancellation is scoped to the active run: the flag is cleared when a run
starts and again when it ends, and a cancel request with no run in
progress is ignored.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from .backups import BackupManager, RestoreResult
from .executor import ActionExecutor, ExecutionResult, RollbackStep
from .health import HealthVerifier, VerificationResult
from .inspector import StateInspector
from .locking import LockManager
from .model import ResourceSpec, TargetModel
from .planner import CyclicDependencyError, ReconciliationPlan, plan

LOGGER = logging.getLogger(__name__)

Confirm = Callable[[ReconciliationPlan], bool]


class RunState(str, Enum):
    """States a run moves through."""

    IDLE = "Idle"
    INSPECTING = "Inspecting"
    DIFFING = "Diffing"
    EXECUTING = "Executing"
    VERIFYING = "Verifying"
    PLANNED = "Planned"
    DONE = "Done"
    ROLLED_BACK = "RolledBack"
    FAILED = "Failed"


@dataclass(slots=True)
class RunReport:
    """Everything a caller needs to explain what a run did."""

    target: str
    dry_run: bool = False
    states: list[RunState] = field(default_factory=lambda: [RunState.IDLE])
    plan: ReconciliationPlan | None = None
    inspection_errors: list[str] = field(default_factory=list)
    execution: ExecutionResult | None = None
    verification: VerificationResult | None = None
    rollback: list[RollbackStep] = field(default_factory=list)
    error: str | None = None
    failure: str | None = None
    declined: bool = False
    restore: RestoreResult | None = None
    lock_wait_ms: int | None = None

    @property
    def state(self) -> RunState:
        return self.states[-1]

    @property
    def succeeded(self) -> bool:
        return self.state in (RunState.DONE, RunState.PLANNED)

    @property
    def touched(self) -> list[str]:
        """Return the subjects of actions applied during execution."""
        if self.execution is None:
            return []
        seen: dict[str, None] = {}
        for result in self.execution.results:
            if result.status in ("applied", "failed"):
                seen.setdefault(result.action.subject, None)
        return list(seen)

    def advance(self, state: RunState) -> None:
        LOGGER.debug("run %s: %s -> %s", self.target, self.state.value, state.value)
        self.states.append(state)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "target": self.target,
            "state": self.state.value,
            "states": [state.value for state in self.states],
            "dry_run": self.dry_run,
            "declined": self.declined,
            "touched": self.touched,
            "plan": self.plan.to_dict() if self.plan else None,
            "inspection_errors": list(self.inspection_errors),
            "execution": self.execution.to_dict() if self.execution else None,
            "probes": self.verification.to_dict() if self.verification else None,
            "rollback": [step.to_dict() for step in self.rollback],
            "restore": self.restore.to_dict() if self.restore else None,
            "error": self.error,
            "failure": self.failure,
        }


class Orchestrator:
    """Sequence inspector, planner, executor and verifier for one target."""

    def __init__(
        self,
        *,
        inspector: StateInspector,
        executor: ActionExecutor,
        verifier: HealthVerifier,
        locks: LockManager,
        backups: BackupManager | None = None,
    ) -> None:
        """Store the collaborating components."""
        self.inspector = inspector
        self.executor = executor
        self.verifier = verifier
        self.locks = locks
        self.backups = backups
        self._guard = threading.Lock()
        self._active = False

    def cancel(self) -> bool:
        """Ask the active run to stop before its next action.

        Returns ``False`` without doing anything when no run is in progress.
        """
        with self._guard:
            if not self._active:
                LOGGER.debug("cancel requested with no active run; ignored")
                return False
            self.executor.cancel_event.set()
            return True

    def reconcile(
        self,
        target: TargetModel,
        *,
        dry_run: bool = False,
        confirm: Confirm | None = None,
    ) -> RunReport:
        """Converge the system onto *target*."""
        with self.locks.run_lock(target.name) as handle, self._active_run():
            report = self._run(target, target.resources, dry_run=dry_run, confirm=confirm)
            report.lock_wait_ms = handle.wait_ms
            return report

    def restore(self, target: TargetModel, archive: Path) -> RunReport:
        """Restore *archive*, then reconcile and verify health.

        Restored files are kept as they are: their content is not rewritten
        from the target, but services and the proxy depending on them are
        restarted or reloaded. Integrity failures propagate as
        :class:`~convergectl.backups.IntegrityError` before any write.
        """
        if self.backups is None:
            raise RuntimeError("Orchestrator was created without a backup manager.")
        with self.locks.run_lock(target.name) as handle, self._active_run():
            restored = self.backups.restore(archive)
            specs = _pin_restored(target.resources, restored)
            report = self._run(target, specs, refresh=restored.restored_keys)
            report.restore = restored
            report.lock_wait_ms = handle.wait_ms
            return report

    # ------------------------------------------------------------------
    @contextmanager
    def _active_run(self) -> Iterator[None]:
        with self._guard:
            self.executor.cancel_event.clear()
            self._active = True
        try:
            yield
        finally:
            with self._guard:
                self._active = False
                self.executor.cancel_event.clear()

    def _run(
        self,
        target: TargetModel,
        specs: tuple[ResourceSpec, ...],
        *,
        dry_run: bool = False,
        confirm: Confirm | None = None,
        refresh: Iterable[str] = (),
    ) -> RunReport:
        report = RunReport(target=target.name, dry_run=dry_run)

        report.advance(RunState.INSPECTING)
        inspection = self.inspector.inspect_all(specs)
        report.inspection_errors = [str(error) for error in inspection.errors]
        for error in inspection.errors:
            LOGGER.warning("inspection failed, treating as absent: %s", error)

        report.advance(RunState.DIFFING)
        try:
            report.plan = plan(specs, inspection.states, refresh=refresh)
        except CyclicDependencyError as exc:
            report.error = str(exc)
            report.failure = "cycle"
            report.advance(RunState.FAILED)
            return report

        if dry_run:
            report.advance(RunState.PLANNED)
            return report

        if report.plan.is_empty:
            report.advance(RunState.VERIFYING)
        else:
            if confirm is not None and not confirm(report.plan):
                report.declined = True
                report.advance(RunState.PLANNED)
                return report
            report.advance(RunState.EXECUTING)
            execution = self.executor.execute(report.plan)
            report.execution = execution
            if not execution.succeeded:
                report.rollback = list(execution.rollback)
                report.error = execution.error
                report.failure = "cancelled" if execution.cancelled else "action"
                report.advance(
                    RunState.ROLLED_BACK if execution.rolled_back else RunState.FAILED
                )
                return report
            report.advance(RunState.VERIFYING)

        report.verification = self.verifier.verify(target.probes)
        if report.verification.passed:
            report.advance(RunState.DONE)
        else:
            names = ", ".join(outcome.name for outcome in report.verification.failed)
            report.error = f"Health probes failed: {names}"
            report.failure = "probe"
            report.advance(RunState.FAILED)
        return report


def _pin_restored(
    specs: tuple[ResourceSpec, ...],
    restored: RestoreResult,
) -> tuple[ResourceSpec, ...]:
    keys = set(restored.restored_keys)
    return tuple(replace(spec, content=None) if spec.key in keys else spec for spec in specs)


__all__ = ["Orchestrator", "RunReport", "RunState"]
