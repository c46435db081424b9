"""Apply plan actions with a rollback journal.

Before an action mutates anything its pre-image (previous file bytes and
mode, link target, unit or rule state) is appended to a run-scoped journal.
When an action fails, or the run is cancelled between actions, every
journaled action is undone in reverse order. Restarts and reloads cannot be
undone directly; they are re-issued once all content has been restored so
the services come back on their previous configuration.
"""
from __future__ import annotations

import logging
import os
import stat
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from .model import ResourceKind, ResourceSpec, ServiceManager, content_hash
from .planner import Action, ActionOperation, ReconciliationPlan
from .providers.firewall import FirewallError, FirewallProvider
from .providers.nginx import NginxError, NginxProvider
from .providers.pm2 import Pm2Error, Pm2Provider
from .providers.systemd import SystemdError, SystemdProvider

LOGGER = logging.getLogger(__name__)

DEFAULT_FILE_MODE = 0o644
_PROVIDER_ERRORS = (SystemdError, Pm2Error, NginxError, FirewallError, OSError)


class ActionError(RuntimeError):
    """Raised when an action cannot be applied or its post-condition fails."""

    def __init__(self, message: str, *, action: Action | None = None) -> None:
        super().__init__(message)
        self.action = action


@dataclass(slots=True, frozen=True)
class PreImage:
    """What a resource looked like before an action touched it."""

    path: Path | None = None
    existed: bool = False
    data: bytes | None = None
    mode: int | None = None
    link_target: Path | None = None
    enabled: bool | None = None
    active: bool | None = None
    rule_present: bool | None = None


@dataclass(slots=True, frozen=True)
class ActionResult:
    """Outcome of applying a single action."""

    action: Action
    status: str
    message: str = ""
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        payload = self.action.to_dict()
        payload.update(
            {"status": self.status, "message": self.message, "duration_ms": self.duration_ms}
        )
        return payload


@dataclass(slots=True, frozen=True)
class RollbackStep:
    """Record of one compensating step taken during rollback."""

    subject: str
    operation: str
    status: str
    detail: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "subject": self.subject,
            "operation": self.operation,
            "status": self.status,
            "detail": self.detail,
        }


@dataclass(slots=True)
class ExecutionResult:
    """Everything that happened while executing a plan."""

    results: list[ActionResult] = field(default_factory=list)
    rollback: list[RollbackStep] = field(default_factory=list)
    error: str | None = None
    failed_action: Action | None = None
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None and not self.cancelled

    @property
    def rolled_back(self) -> bool:
        """Return ``True`` when rollback ran and every step succeeded."""
        return not self.succeeded and all(step.status != "failed" for step in self.rollback)

    @property
    def applied(self) -> list[Action]:
        return [result.action for result in self.results if result.status == "applied"]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "results": [result.to_dict() for result in self.results],
            "rollback": [step.to_dict() for step in self.rollback],
            "error": self.error,
            "failed_action": self.failed_action.to_dict() if self.failed_action else None,
            "cancelled": self.cancelled,
        }


class ActionExecutor:
    """Apply actions through the providers and undo them on failure."""

    def __init__(
        self,
        *,
        systemd: SystemdProvider,
        nginx: NginxProvider,
        firewall: FirewallProvider,
        pm2: Pm2Provider | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Store provider collaborators and the optional cancellation flag."""
        self.systemd = systemd
        self.nginx = nginx
        self.firewall = firewall
        self.pm2 = pm2 or Pm2Provider()
        self.cancel_event = cancel_event or threading.Event()
        self._journal: list[tuple[Action, PreImage]] = []

    @property
    def journal(self) -> tuple[tuple[Action, PreImage], ...]:
        """Return the journaled actions in application order."""
        return tuple(self._journal)

    def execute(self, plan: ReconciliationPlan) -> ExecutionResult:
        """Apply *plan* in order, rolling back on the first failure."""
        self._journal = []
        outcome = ExecutionResult()
        for action in plan.actions:
            if action.is_noop:
                outcome.results.append(ActionResult(action=action, status="skipped"))
                continue
            if self.cancel_event.is_set():
                outcome.cancelled = True
                outcome.error = "Run cancelled before " + action.describe()
                break
            try:
                result = self.apply(action)
            except ActionError as exc:
                outcome.results.append(
                    ActionResult(action=action, status="failed", message=str(exc))
                )
                outcome.error = str(exc)
                outcome.failed_action = action
                break
            outcome.results.append(result)

        if not outcome.succeeded:
            outcome.rollback = self.rollback()
        return outcome

    def apply(self, action: Action) -> ActionResult:
        """Capture the pre-image of *action*, then apply it.

        Raises :class:`ActionError` on failure. An action whose pre-image
        cannot be captured is never journaled or applied; once captured, the
        pre-image stays in the journal so a partially applied action is
        still rolled back.
        """
        start = time.perf_counter()
        try:
            image = self._capture(action)
            self._journal.append((action, image))
            LOGGER.debug("applying %s", action.describe())
            message = self._dispatch(action)
        except ActionError:
            raise
        except _PROVIDER_ERRORS as exc:
            raise ActionError(f"{action.describe()} failed: {exc}", action=action) from exc
        return ActionResult(
            action=action,
            status="applied",
            message=message,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )

    def rollback(self) -> list[RollbackStep]:
        """Undo every journaled action in reverse order."""
        steps: list[RollbackStep] = []
        reissue: list[Action] = []
        unit_restored = False
        for action, image in reversed(self._journal):
            operation = action.operation
            if operation in (ActionOperation.RESTART, ActionOperation.RELOAD):
                reissue.append(action)
                continue
            if operation in (ActionOperation.VALIDATE, ActionOperation.DAEMON_RELOAD):
                continue
            try:
                detail = self._undo(action, image)
            except _PROVIDER_ERRORS as exc:
                LOGGER.debug("rollback of %s failed: %s", action.describe(), exc)
                steps.append(
                    RollbackStep(action.subject, operation.value, "failed", str(exc))
                )
                continue
            if (
                operation in (ActionOperation.CREATE, ActionOperation.UPDATE)
                and action.spec is not None
                and action.spec.kind is ResourceKind.SERVICE_UNIT
                and action.spec.manager is ServiceManager.SYSTEMD
            ):
                unit_restored = True
            steps.append(RollbackStep(action.subject, operation.value, "restored", detail))

        if unit_restored or any(
            action.operation is ActionOperation.DAEMON_RELOAD for action, _ in self._journal
        ):
            try:
                self.systemd.daemon_reload()
            except SystemdError as exc:
                steps.append(RollbackStep("systemd", "daemon_reload", "failed", str(exc)))
            else:
                steps.append(RollbackStep("systemd", "daemon_reload", "reissued"))

        # Re-issue in original order so dependencies restart first.
        for action in reversed(reissue):
            try:
                self._dispatch(action)
            except (ActionError, *_PROVIDER_ERRORS) as exc:
                steps.append(
                    RollbackStep(action.subject, action.operation.value, "failed", str(exc))
                )
            else:
                steps.append(
                    RollbackStep(
                        action.subject,
                        action.operation.value,
                        "reissued",
                        "running previous configuration",
                    )
                )
        self._journal = []
        return steps

    # ------------------------------------------------------------------
    def _capture(self, action: Action) -> PreImage:
        spec = action.spec
        if spec is None:
            return PreImage()
        operation = action.operation
        if operation in (ActionOperation.CREATE, ActionOperation.UPDATE):
            path = _require_path(action)
            try:
                info = path.stat()
            except FileNotFoundError:
                return PreImage(path=path, existed=False)
            except OSError as exc:
                raise ActionError(f"Cannot capture {path}: {exc}", action=action) from exc
            try:
                data = path.read_bytes()
            except OSError as exc:
                raise ActionError(f"Cannot capture {path}: {exc}", action=action) from exc
            return PreImage(path=path, existed=True, data=data, mode=stat.S_IMODE(info.st_mode))
        if spec.kind is ResourceKind.PROXY_SITE and spec.link is not None:
            return PreImage(path=spec.link, link_target=self.nginx.link_target(spec.link))
        if spec.kind is ResourceKind.FIREWALL_RULE:
            try:
                present = self.firewall.has_rule(spec.identity)
            except FirewallError as exc:
                raise ActionError(str(exc), action=action) from exc
            return PreImage(rule_present=present)
        if spec.kind is ResourceKind.SERVICE_UNIT:
            service = self._service(spec)
            try:
                return PreImage(
                    enabled=service.is_enabled(spec.identity),
                    active=service.is_active(spec.identity),
                )
            except (SystemdError, Pm2Error) as exc:
                raise ActionError(str(exc), action=action) from exc
        return PreImage()

    def _dispatch(self, action: Action) -> str:
        operation = action.operation
        spec = action.spec
        if operation is ActionOperation.VALIDATE:
            try:
                self.nginx.test_config()
            except NginxError as exc:
                raise ActionError(
                    f"Proxy configuration failed validation: {exc}", action=action
                ) from exc
            return "proxy configuration valid"
        if operation is ActionOperation.DAEMON_RELOAD:
            self.systemd.daemon_reload()
            return "systemd reloaded unit files"
        if spec is None:
            if operation is ActionOperation.RELOAD:
                self.nginx.reload()
                return "proxy reloaded"
            raise ActionError(f"Unsupported action {action.describe()}", action=action)

        if operation in (ActionOperation.CREATE, ActionOperation.UPDATE):
            return self._write(action, spec)
        if spec.kind is ResourceKind.PROXY_SITE:
            return self._apply_link(action, spec)
        if spec.kind is ResourceKind.FIREWALL_RULE:
            return self._apply_rule(action, spec)
        if spec.kind is ResourceKind.SERVICE_UNIT:
            return self._apply_unit(action, spec)
        raise ActionError(f"Unsupported action {action.describe()}", action=action)

    def _write(self, action: Action, spec: ResourceSpec) -> str:
        path = _require_path(action)
        data = spec.content_bytes or b""
        mode = spec.mode
        if mode is None:
            try:
                mode = stat.S_IMODE(path.stat().st_mode)
            except FileNotFoundError:
                mode = DEFAULT_FILE_MODE
        atomic_write(path, data, mode)
        # Post-condition: the bytes on disk are the bytes we meant to write.
        if content_hash(path.read_bytes()) != spec.desired_hash:
            raise ActionError(f"{path} does not match desired content after write", action=action)
        return f"wrote {len(data)} bytes to {path}"

    def _apply_link(self, action: Action, spec: ResourceSpec) -> str:
        site = Path(spec.identity)
        link = spec.link
        if link is None:
            raise ActionError(f"{spec.key} declares no site link", action=action)
        if action.operation is ActionOperation.ENABLE:
            self.nginx.enable(site, link)
            if not self.nginx.is_enabled(site, link):
                raise ActionError(f"{link} does not point at {site}", action=action)
            return f"linked {link} -> {site}"
        if action.operation is ActionOperation.DISABLE:
            self.nginx.disable(link)
            return f"removed {link}"
        raise ActionError(f"Unsupported action {action.describe()}", action=action)

    def _apply_rule(self, action: Action, spec: ResourceSpec) -> str:
        if action.operation is ActionOperation.ENABLE:
            self.firewall.allow(spec.identity)
            if not self.firewall.has_rule(spec.identity):
                raise ActionError(f"firewall rule {spec.identity} not present", action=action)
            return f"allowed {spec.identity}"
        if action.operation is ActionOperation.DISABLE:
            self.firewall.delete(spec.identity)
            return f"deleted {spec.identity}"
        raise ActionError(f"Unsupported action {action.describe()}", action=action)

    def _service(self, spec: ResourceSpec) -> SystemdProvider | Pm2Provider:
        return self.pm2 if spec.manager is ServiceManager.PM2 else self.systemd

    def _enable_unit(self, spec: ResourceSpec) -> None:
        if spec.manager is ServiceManager.PM2:
            self.pm2.enable(spec.identity, ecosystem=spec.path)
        else:
            self.systemd.enable(spec.identity)

    def _apply_unit(self, action: Action, spec: ResourceSpec) -> str:
        unit = spec.identity
        service = self._service(spec)
        operation = action.operation
        if operation is ActionOperation.ENABLE:
            self._enable_unit(spec)
            if not service.is_enabled(unit):
                raise ActionError(f"{unit} is not enabled after enable", action=action)
        elif operation is ActionOperation.START:
            service.start(unit)
            if not service.is_active(unit):
                raise ActionError(f"{unit} is not active after start", action=action)
        elif operation is ActionOperation.RESTART:
            if spec.manager is ServiceManager.PM2:
                self.pm2.restart(unit, ecosystem=spec.path)
            else:
                self.systemd.restart(unit)
        elif operation is ActionOperation.RELOAD:
            service.reload(unit)
        elif operation is ActionOperation.STOP:
            service.stop(unit)
        elif operation is ActionOperation.DISABLE:
            service.disable(unit)
        else:
            raise ActionError(f"Unsupported action {action.describe()}", action=action)
        return f"{operation.value} {unit}"

    def _undo(self, action: Action, image: PreImage) -> str:
        spec = action.spec
        operation = action.operation
        if operation in (ActionOperation.CREATE, ActionOperation.UPDATE):
            path = image.path
            if path is None:
                return "nothing captured"
            if image.existed and image.data is not None:
                atomic_write(path, image.data, image.mode or DEFAULT_FILE_MODE)
                return f"restored previous content of {path}"
            path.unlink(missing_ok=True)
            return f"removed {path}"
        if spec is None:
            return "nothing to undo"
        if spec.kind is ResourceKind.PROXY_SITE and spec.link is not None:
            link = spec.link
            self.nginx.disable(link)
            if image.link_target is not None:
                link.parent.mkdir(parents=True, exist_ok=True)
                link.symlink_to(image.link_target)
                return f"relinked {link} -> {image.link_target}"
            return f"removed {link}"
        if spec.kind is ResourceKind.FIREWALL_RULE:
            present = self.firewall.has_rule(spec.identity)
            if image.rule_present and not present:
                self.firewall.allow(spec.identity)
                return f"re-allowed {spec.identity}"
            if not image.rule_present and present:
                self.firewall.delete(spec.identity)
                return f"deleted {spec.identity}"
            return "rule unchanged"
        if spec.kind is ResourceKind.SERVICE_UNIT:
            unit = spec.identity
            service = self._service(spec)
            if operation in (ActionOperation.ENABLE, ActionOperation.DISABLE):
                if image.enabled:
                    self._enable_unit(spec)
                    return f"re-enabled {unit}"
                service.disable(unit)
                return f"disabled {unit}"
            if operation in (ActionOperation.START, ActionOperation.STOP):
                if image.active:
                    service.start(unit)
                    return f"started {unit}"
                service.stop(unit)
                return f"stopped {unit}"
        return "nothing to undo"


def atomic_write(path: Path, data: bytes, mode: int) -> None:
    """Replace *path* with *data* via a temporary file in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


def _require_path(action: Action) -> Path:
    spec = action.spec
    path = spec.file_path if spec is not None else None
    if path is None:
        raise ActionError(f"{action.subject} has no managed file", action=action)
    return path


__all__ = [
    "ActionError",
    "ActionExecutor",
    "ActionResult",
    "ExecutionResult",
    "PreImage",
    "RollbackStep",
    "atomic_write",
]
