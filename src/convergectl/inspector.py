"""Read-only inspection of the live system.

The inspector observes files, symlinks, systemd units, PM2 processes and
firewall rules
and reports what it sees as :class:`ResourceState` values. It never mutates
anything, so it is safe to run at any time, including during a dry run.
"""
from __future__ import annotations

import concurrent.futures
import logging
import stat
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from .model import ResourceKind, ResourceSpec, RuntimeState, ServiceManager, content_hash
from .providers.firewall import FirewallError, FirewallProvider
from .providers.nginx import NginxProvider
from .providers.pm2 import Pm2Error, Pm2Provider
from .providers.systemd import SystemdError, SystemdProvider

LOGGER = logging.getLogger(__name__)


class InspectionError(RuntimeError):
    """Raised when a resource exists but cannot be inspected."""

    def __init__(self, key: str, message: str) -> None:
        super().__init__(f"{key}: {message}")
        self.key = key
        self.message = message


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass(slots=True, frozen=True)
class ResourceState:
    """Observed state of one resource at inspection time."""

    key: str
    exists: bool
    content_hash: str | None = None
    mode: int | None = None
    runtime_state: RuntimeState | None = None
    active: bool | None = None
    checked_at: str = field(default_factory=_now_iso)
    error: str | None = None

    @classmethod
    def absent(cls, key: str, *, error: str | None = None) -> ResourceState:
        """Return a state describing a missing (or uninspectable) resource."""
        return cls(key=key, exists=False, error=error)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "key": self.key,
            "exists": self.exists,
            "content_hash": self.content_hash,
            "mode": f"{self.mode:04o}" if self.mode is not None else None,
            "runtime_state": self.runtime_state.value if self.runtime_state else None,
            "active": self.active,
            "checked_at": self.checked_at,
            "error": self.error,
        }


@dataclass(slots=True, frozen=True)
class InspectionReport:
    """States for every inspected resource plus the non-fatal errors."""

    states: Mapping[str, ResourceState]
    errors: tuple[InspectionError, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "states": {key: state.to_dict() for key, state in self.states.items()},
            "errors": [str(error) for error in self.errors],
        }


class StateInspector:
    """Observe the current state of resources through the providers."""

    def __init__(
        self,
        *,
        systemd: SystemdProvider,
        nginx: NginxProvider,
        firewall: FirewallProvider,
        pm2: Pm2Provider | None = None,
        max_workers: int = 8,
    ) -> None:
        """Store provider collaborators and the thread pool bound."""
        self.systemd = systemd
        self.nginx = nginx
        self.firewall = firewall
        self.pm2 = pm2 or Pm2Provider()
        self.max_workers = max(1, max_workers)

    def inspect(self, spec: ResourceSpec) -> ResourceState:
        """Return the observed state of *spec*.

        Raises :class:`InspectionError` when the resource cannot be read.
        """
        if spec.kind is ResourceKind.PROXY_SITE:
            return self._inspect_proxy_site(spec)
        if spec.kind is ResourceKind.SERVICE_UNIT:
            return self._inspect_service_unit(spec)
        if spec.kind is ResourceKind.ENV_FILE:
            exists, digest, mode = self._read_file(spec.key, Path(spec.identity))
            return ResourceState(
                key=spec.key,
                exists=exists,
                content_hash=digest,
                mode=mode,
                runtime_state=RuntimeState.ENABLED if exists else None,
            )
        return self._inspect_firewall_rule(spec)

    def inspect_all(self, specs: Sequence[ResourceSpec]) -> InspectionReport:
        """Inspect every spec concurrently.

        Failures are collected rather than raised; a resource that could not
        be inspected is reported as absent with its error attached.
        """
        if not specs:
            return InspectionReport(states={})

        results: list[ResourceState | InspectionError | None] = [None] * len(specs)
        if self.max_workers == 1 or len(specs) == 1:
            for index, spec in enumerate(specs):
                results[index] = self._inspect_safely(spec)
        else:
            workers = min(self.max_workers, len(specs))
            with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
                future_to_index = {
                    executor.submit(self._inspect_safely, spec): index
                    for index, spec in enumerate(specs)
                }
                for future in concurrent.futures.as_completed(future_to_index):
                    results[future_to_index[future]] = future.result()

        states: dict[str, ResourceState] = {}
        errors: list[InspectionError] = []
        for spec, result in zip(specs, results, strict=True):
            if isinstance(result, InspectionError):
                errors.append(result)
                states[spec.key] = ResourceState.absent(spec.key, error=result.message)
            elif result is not None:
                states[spec.key] = result
        return InspectionReport(states=states, errors=tuple(errors))

    # ------------------------------------------------------------------
    def _inspect_safely(self, spec: ResourceSpec) -> ResourceState | InspectionError:
        try:
            return self.inspect(spec)
        except InspectionError as exc:
            LOGGER.debug("inspection of %s failed: %s", spec.key, exc.message)
            return exc

    def _inspect_proxy_site(self, spec: ResourceSpec) -> ResourceState:
        site = Path(spec.identity)
        exists, digest, mode = self._read_file(spec.key, site)
        if spec.link is not None:
            enabled = self.nginx.is_enabled(site, spec.link)
            runtime: RuntimeState | None = (
                RuntimeState.ENABLED if enabled else RuntimeState.DISABLED
            )
        else:
            runtime = RuntimeState.ENABLED if exists else None
        return ResourceState(
            key=spec.key,
            exists=exists,
            content_hash=digest,
            mode=mode,
            runtime_state=runtime,
        )

    def _inspect_service_unit(self, spec: ResourceSpec) -> ResourceState:
        digest: str | None = None
        mode: int | None = None
        registered: bool | None = None
        try:
            if spec.manager is ServiceManager.PM2:
                statuses = self.pm2.processes()
                registered = enabled = spec.identity in statuses
                active = statuses.get(spec.identity) == "online"
            else:
                enabled = self.systemd.is_enabled(spec.identity)
                active = self.systemd.is_active(spec.identity)
            if spec.path is not None:
                exists, digest, mode = self._read_file(spec.key, spec.path)
            elif registered is not None:
                exists = registered
            else:
                exists = self.systemd.exists(spec.identity)
        except (SystemdError, Pm2Error) as exc:
            raise InspectionError(spec.key, str(exc)) from exc
        return ResourceState(
            key=spec.key,
            exists=exists,
            content_hash=digest,
            mode=mode,
            runtime_state=RuntimeState.ENABLED if enabled else RuntimeState.DISABLED,
            active=active,
        )

    def _inspect_firewall_rule(self, spec: ResourceSpec) -> ResourceState:
        try:
            present = self.firewall.has_rule(spec.identity)
        except FirewallError as exc:
            raise InspectionError(spec.key, str(exc)) from exc
        return ResourceState(
            key=spec.key,
            exists=present,
            runtime_state=RuntimeState.ENABLED if present else RuntimeState.DISABLED,
        )

    @staticmethod
    def _read_file(key: str, path: Path) -> tuple[bool, str | None, int | None]:
        try:
            info = path.stat()
        except FileNotFoundError:
            return False, None, None
        except OSError as exc:
            raise InspectionError(key, f"cannot stat {path}: {exc}") from exc
        if not stat.S_ISREG(info.st_mode):
            raise InspectionError(key, f"{path} exists but is not a regular file")
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return False, None, None
        except OSError as exc:
            raise InspectionError(key, f"cannot read {path}: {exc}") from exc
        return True, content_hash(data), stat.S_IMODE(info.st_mode)


__all__ = ["InspectionError", "InspectionReport", "ResourceState", "StateInspector"]
