"""Diff engine: turn desired resources and observed state into a plan.

Planning is pure. Given the same specs and states the same ordered plan is
produced, and a converged system yields a plan containing only ``noop``
actions.

Actions are ordered in phases. File content (and proxy site links) come
first, then ``nginx -t`` validation, then ``systemctl daemon-reload`` (for
systemd units only; PM2 re-reads its ecosystem file on restart), then
runtime actions (enable, start, restart, firewall rules, proxy reload).
Within a phase actions follow the resource dependency order, with ties
broken by declaration order.
"""
from __future__ import annotations

import heapq
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum

from .inspector import ResourceState
from .model import ResourceKind, ResourceSpec, RuntimeState, ServiceManager

PROXY_SUBJECT = "nginx"
SYSTEMD_SUBJECT = "systemd"

_PHASE_CONTENT = 0
_PHASE_VALIDATE = 1
_PHASE_DAEMON_RELOAD = 2
_PHASE_RUNTIME = 3


class CyclicDependencyError(RuntimeError):
    """Raised when declared resource dependencies form a cycle."""

    def __init__(self, members: Sequence[str]) -> None:
        super().__init__(f"Dependency cycle detected between: {', '.join(members)}")
        self.members = tuple(members)


class ActionOperation(str, Enum):
    """Operations the executor knows how to apply and undo."""

    CREATE = "create"
    UPDATE = "update"
    NOOP = "noop"
    VALIDATE = "validate"
    DAEMON_RELOAD = "daemon_reload"
    ENABLE = "enable"
    DISABLE = "disable"
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    RELOAD = "reload"


_RUNTIME_STEP = {
    ActionOperation.STOP: 0,
    ActionOperation.ENABLE: 1,
    ActionOperation.DISABLE: 1,
    ActionOperation.START: 2,
    ActionOperation.RESTART: 2,
    ActionOperation.RELOAD: 3,
}


@dataclass(slots=True, frozen=True)
class Action:
    """One step of a plan.

    ``spec`` is ``None`` for system-wide actions (proxy validation, proxy
    reload, systemd daemon reload) whose ``subject`` names the service.
    """

    operation: ActionOperation
    subject: str
    spec: ResourceSpec | None = None
    reason: str = ""

    @property
    def is_noop(self) -> bool:
        return self.operation is ActionOperation.NOOP

    def describe(self) -> str:
        """Return a short human-readable description."""
        text = f"{self.operation.value} {self.subject}"
        return f"{text} ({self.reason})" if self.reason else text

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "operation": self.operation.value,
            "subject": self.subject,
            "reason": self.reason,
        }


@dataclass(slots=True, frozen=True)
class ReconciliationPlan:
    """Ordered actions plus the dependency order they were derived from."""

    actions: tuple[Action, ...]
    order: tuple[str, ...] = ()

    @property
    def pending(self) -> tuple[Action, ...]:
        """Return the actions that change something."""
        return tuple(action for action in self.actions if not action.is_noop)

    @property
    def is_empty(self) -> bool:
        """Return ``True`` when nothing needs to change."""
        return not self.pending

    @property
    def touched(self) -> tuple[str, ...]:
        """Return the subjects of pending actions, first occurrence order."""
        seen: dict[str, None] = {}
        for action in self.pending:
            seen.setdefault(action.subject, None)
        return tuple(seen)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "order": list(self.order),
            "actions": [action.to_dict() for action in self.actions],
            "pending": len(self.pending),
        }


def dependency_order(specs: Sequence[ResourceSpec]) -> list[ResourceSpec]:
    """Return *specs* topologically sorted by ``depends_on``.

    Among resources whose dependencies are satisfied, declaration order
    wins. Raises :class:`CyclicDependencyError` when no order exists.
    """
    by_key = {spec.key: spec for spec in specs}
    position = {spec.key: index for index, spec in enumerate(specs)}
    remaining = {
        spec.key: {dep for dep in spec.depends_on if dep in by_key} for spec in specs
    }
    dependents: dict[str, list[str]] = {spec.key: [] for spec in specs}
    for key, deps in remaining.items():
        for dep in deps:
            dependents[dep].append(key)

    ready = [(position[key], key) for key, deps in remaining.items() if not deps]
    heapq.heapify(ready)
    ordered: list[ResourceSpec] = []
    while ready:
        _, key = heapq.heappop(ready)
        ordered.append(by_key[key])
        for dependent in dependents[key]:
            pending = remaining[dependent]
            pending.discard(key)
            if not pending:
                heapq.heappush(ready, (position[dependent], dependent))

    if len(ordered) != len(specs):
        emitted = {spec.key for spec in ordered}
        members = [spec.key for spec in specs if spec.key not in emitted]
        raise CyclicDependencyError(members)
    return ordered


def plan(
    specs: Sequence[ResourceSpec],
    states: Mapping[str, ResourceState],
    *,
    refresh: Iterable[str] = (),
) -> ReconciliationPlan:
    """Compute the ordered actions converging *states* onto *specs*.

    *refresh* names resources to treat as changed for restart and reload
    purposes even when their content already matches.
    """
    ordered = dependency_order(specs)
    rank = {spec.key: index for index, spec in enumerate(ordered)}
    changed: set[str] = set(refresh)
    keyed: list[tuple[tuple[int, int, int], Action]] = []

    def add(phase: int, spec_rank: int, step: int, action: Action) -> None:
        keyed.append(((phase, spec_rank, step), action))

    # Content pass: files and proxy links.
    for spec in ordered:
        state = states.get(spec.key)
        content_action = _content_action(spec, state)
        if content_action is not None:
            add(_PHASE_CONTENT, rank[spec.key], 0, content_action)
            changed.add(spec.key)
        if spec.kind is ResourceKind.PROXY_SITE and spec.link is not None:
            link_action = _link_action(spec, state)
            if link_action is not None:
                add(_PHASE_CONTENT, rank[spec.key], 1, link_action)
                changed.add(spec.key)

    proxies_changed = [
        spec for spec in ordered if spec.kind is ResourceKind.PROXY_SITE and spec.key in changed
    ]
    if proxies_changed:
        add(
            _PHASE_VALIDATE,
            0,
            0,
            Action(ActionOperation.VALIDATE, PROXY_SUBJECT, reason="proxy configuration changed"),
        )
        last = max(rank[spec.key] for spec in proxies_changed)
        add(
            _PHASE_RUNTIME,
            last,
            _RUNTIME_STEP[ActionOperation.RELOAD],
            Action(ActionOperation.RELOAD, PROXY_SUBJECT, reason="proxy configuration changed"),
        )

    units_changed = [
        spec
        for spec in ordered
        if spec.kind is ResourceKind.SERVICE_UNIT
        and spec.manager is ServiceManager.SYSTEMD
        and spec.path is not None
        and spec.key in changed
    ]
    if units_changed:
        add(
            _PHASE_DAEMON_RELOAD,
            0,
            0,
            Action(
                ActionOperation.DAEMON_RELOAD,
                SYSTEMD_SUBJECT,
                reason="unit files changed: "
                + ", ".join(spec.identity for spec in units_changed),
            ),
        )

    # Runtime pass.
    for spec in ordered:
        state = states.get(spec.key)
        for action in _runtime_actions(spec, state, changed):
            add(_PHASE_RUNTIME, rank[spec.key], _RUNTIME_STEP[action.operation], action)

    touched_specs = {action.spec.key for _, action in keyed if action.spec is not None}
    for spec in ordered:
        if spec.key not in touched_specs:
            add(
                _PHASE_CONTENT,
                rank[spec.key],
                0,
                Action(ActionOperation.NOOP, spec.key, spec=spec, reason="in desired state"),
            )

    keyed.sort(key=lambda item: item[0])
    return ReconciliationPlan(
        actions=tuple(action for _, action in keyed),
        order=tuple(spec.key for spec in ordered),
    )


def _content_action(spec: ResourceSpec, state: ResourceState | None) -> Action | None:
    if not spec.manages_content:
        return None
    if state is None or not state.exists or state.content_hash is None:
        return Action(ActionOperation.CREATE, spec.key, spec=spec, reason="absent")
    if state.content_hash != spec.desired_hash:
        return Action(ActionOperation.UPDATE, spec.key, spec=spec, reason="content differs")
    if spec.mode is not None and state.mode is not None and state.mode != spec.mode:
        return Action(
            ActionOperation.UPDATE,
            spec.key,
            spec=spec,
            reason=f"mode {state.mode:04o} differs from {spec.mode:04o}",
        )
    return None


def _link_action(spec: ResourceSpec, state: ResourceState | None) -> Action | None:
    observed = state.runtime_state if state is not None else None
    if spec.runtime_state is RuntimeState.ENABLED and observed is not RuntimeState.ENABLED:
        return Action(ActionOperation.ENABLE, spec.key, spec=spec, reason="site link missing")
    if spec.runtime_state is RuntimeState.DISABLED and observed is RuntimeState.ENABLED:
        return Action(ActionOperation.DISABLE, spec.key, spec=spec, reason="site link present")
    return None


def _runtime_actions(
    spec: ResourceSpec,
    state: ResourceState | None,
    changed: set[str],
) -> list[Action]:
    if spec.kind is ResourceKind.FIREWALL_RULE:
        present = state is not None and state.exists
        if spec.runtime_state is RuntimeState.ENABLED and not present:
            return [Action(ActionOperation.ENABLE, spec.key, spec=spec, reason="rule missing")]
        if spec.runtime_state is RuntimeState.DISABLED and present:
            return [Action(ActionOperation.DISABLE, spec.key, spec=spec, reason="rule present")]
        return []

    if spec.kind is not ResourceKind.SERVICE_UNIT:
        return []

    enabled = state is not None and state.runtime_state is RuntimeState.ENABLED
    active = state is not None and bool(state.active)
    actions: list[Action] = []
    if spec.runtime_state is RuntimeState.ENABLED:
        if not enabled:
            actions.append(
                Action(ActionOperation.ENABLE, spec.key, spec=spec, reason="unit not enabled")
            )
        if not active:
            actions.append(
                Action(ActionOperation.START, spec.key, spec=spec, reason="unit not running")
            )
        else:
            causes = [key for key in (spec.key, *spec.depends_on) if key in changed]
            if causes:
                actions.append(
                    Action(
                        ActionOperation.RESTART,
                        spec.key,
                        spec=spec,
                        reason="changed: " + ", ".join(causes),
                    )
                )
    else:
        if active:
            actions.append(
                Action(ActionOperation.STOP, spec.key, spec=spec, reason="unit running")
            )
        if enabled:
            actions.append(
                Action(ActionOperation.DISABLE, spec.key, spec=spec, reason="unit enabled")
            )
    return actions


__all__ = [
    "Action",
    "ActionOperation",
    "CyclicDependencyError",
    "PROXY_SUBJECT",
    "ReconciliationPlan",
    "SYSTEMD_SUBJECT",
    "dependency_order",
    "plan",
]
