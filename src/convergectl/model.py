"""Target model: the declarative desired state of the server.

A target document lists managed resources (proxy sites, service units,
environment files, firewall rules) and the health probes that confirm the
server works once they are in place. :func:`load_target` validates the
document and renders every templated resource up front, so the rest of the
pipeline only ever sees concrete, bytes-exact content.
"""
from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import cast

import yaml

from .config import ConfigError
from .health import HealthProbe, RetryPolicy
from .templates import TemplateEngine, TemplateError


class ResourceKind(str, Enum):
    """Kinds of resources convergectl knows how to converge."""

    PROXY_SITE = "proxy_site"
    SERVICE_UNIT = "service_unit"
    ENV_FILE = "env_file"
    FIREWALL_RULE = "firewall_rule"


class RuntimeState(str, Enum):
    """Desired or observed runtime state of a resource."""

    ENABLED = "enabled"
    DISABLED = "disabled"


class ServiceManager(str, Enum):
    """Supervisor that runs a service_unit."""

    SYSTEMD = "systemd"
    PM2 = "pm2"


_RESOURCE_KEYS = {
    "kind",
    "identity",
    "content",
    "template",
    "vars",
    "runtime_state",
    "depends_on",
    "path",
    "link",
    "mode",
    "manager",
}
_PROBE_KEYS = {"name", "url", "expected_statuses", "timeout", "retry"}
_RETRY_KEYS = {"max_attempts", "initial_delay", "multiplier", "max_delay"}
_TOP_LEVEL_KEYS = {"name", "settings", "resources", "probes"}


def content_hash(data: bytes) -> str:
    """Return the sha256 hex digest of *data*."""
    return hashlib.sha256(data).hexdigest()


def resource_key(kind: ResourceKind | str, identity: str) -> str:
    """Return the ``kind:identity`` reference for a resource."""
    kind_value = kind.value if isinstance(kind, ResourceKind) else kind
    return f"{kind_value}:{identity}"


@dataclass(slots=True, frozen=True)
class ResourceSpec:
    """A single desired resource."""

    kind: ResourceKind
    identity: str
    content: str | None = None
    runtime_state: RuntimeState = RuntimeState.ENABLED
    depends_on: tuple[str, ...] = ()
    path: Path | None = None
    link: Path | None = None
    mode: int | None = None
    template: str | None = None
    manager: ServiceManager = ServiceManager.SYSTEMD

    @property
    def key(self) -> str:
        """Return the unique ``kind:identity`` reference."""
        return resource_key(self.kind, self.identity)

    @property
    def file_path(self) -> Path | None:
        """Return the managed file path, if this resource owns one."""
        if self.kind in (ResourceKind.PROXY_SITE, ResourceKind.ENV_FILE):
            return Path(self.identity)
        if self.kind is ResourceKind.SERVICE_UNIT:
            return self.path
        return None

    @property
    def manages_content(self) -> bool:
        """Return ``True`` when the file content is under management."""
        return self.content is not None and self.file_path is not None

    @property
    def content_bytes(self) -> bytes | None:
        if self.content is None:
            return None
        return self.content.encode("utf-8")

    @property
    def desired_hash(self) -> str | None:
        """Return the sha256 of the desired content, if any."""
        data = self.content_bytes
        return content_hash(data) if data is not None else None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable summary (content is summarised by hash)."""
        return {
            "kind": self.kind.value,
            "identity": self.identity,
            "runtime_state": self.runtime_state.value,
            "depends_on": list(self.depends_on),
            "path": str(self.path) if self.path else None,
            "link": str(self.link) if self.link else None,
            "mode": f"{self.mode:04o}" if self.mode is not None else None,
            "template": self.template,
            "manager": self.manager.value if self.kind is ResourceKind.SERVICE_UNIT else None,
            "sha256": self.desired_hash,
        }


@dataclass(slots=True, frozen=True)
class TargetModel:
    """Validated desired state: resources in declaration order plus probes."""

    name: str
    resources: tuple[ResourceSpec, ...]
    probes: tuple[HealthProbe, ...] = ()
    source: Path | None = None

    def get(self, key: str) -> ResourceSpec | None:
        """Return the resource referenced by *key*."""
        for spec in self.resources:
            if spec.key == key:
                return spec
        return None

    def of_kind(self, kind: ResourceKind) -> tuple[ResourceSpec, ...]:
        """Return resources of *kind* in declaration order."""
        return tuple(spec for spec in self.resources if spec.kind is kind)

    def select(self, keys: Iterable[str]) -> tuple[ResourceSpec, ...]:
        """Return the resources named by *keys*, preserving declaration order."""
        wanted = set(keys)
        return tuple(spec for spec in self.resources if spec.key in wanted)


def load_target(
    source: Path | str | Mapping[str, object],
    *,
    templates: TemplateEngine | None = None,
    name: str | None = None,
) -> TargetModel:
    """Parse, validate and render a target document.

    *source* is a path to a YAML file or an already-parsed mapping. Any
    problem with the document raises :class:`ConfigError`.
    """
    source_path: Path | None = None
    if isinstance(source, Mapping):
        raw = _as_mapping(source, "target")
    else:
        source_path = Path(source)
        raw = _read_document(source_path)

    unknown = set(raw) - _TOP_LEVEL_KEYS
    if unknown:
        raise ConfigError(f"Unknown target keys: {', '.join(sorted(unknown))}.")

    engine = templates or TemplateEngine.with_overrides(None)
    settings = _as_mapping(raw.get("settings"), "settings")
    unknown_settings = set(settings) - {"vars"}
    if unknown_settings:
        raise ConfigError(f"Unknown settings keys: {', '.join(sorted(unknown_settings))}.")
    global_vars = _as_mapping(settings.get("vars"), "settings.vars")

    resources_raw = _as_list(raw.get("resources"), "resources")
    specs: list[ResourceSpec] = []
    seen: set[str] = set()
    for index, item in enumerate(resources_raw):
        spec = _build_resource(item, index, engine, global_vars)
        if spec.key in seen:
            raise ConfigError(
                f"Duplicate resource identity '{spec.identity}' for kind {spec.kind.value}."
            )
        seen.add(spec.key)
        specs.append(spec)

    for spec in specs:
        for reference in spec.depends_on:
            if reference == spec.key:
                raise ConfigError(f"Resource {spec.key} depends on itself.")
            if reference not in seen:
                raise ConfigError(
                    f"Resource {spec.key} depends on unknown resource '{reference}'."
                )

    probes_raw = _as_list(raw.get("probes"), "probes")
    probes: list[HealthProbe] = []
    probe_names: set[str] = set()
    for index, item in enumerate(probes_raw):
        probe = _build_probe(item, index)
        if probe.name in probe_names:
            raise ConfigError(f"Duplicate probe name '{probe.name}'.")
        probe_names.add(probe.name)
        probes.append(probe)

    resolved_name = name or _target_name(raw.get("name"), source_path)
    return TargetModel(
        name=resolved_name,
        resources=tuple(specs),
        probes=tuple(probes),
        source=source_path,
    )


def _read_document(path: Path) -> dict[str, object]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigError(f"Target file {path} does not exist.") from exc
    except OSError as exc:
        raise ConfigError(f"Unable to read target file {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse target file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Target file {path} must contain a mapping at the top level.")
    return _as_mapping(data, f"file:{path}")


def _target_name(value: object, source_path: Path | None) -> str:
    if value is not None:
        if not isinstance(value, str) or not value.strip():
            raise ConfigError("Target name must be a non-empty string.")
        return value.strip()
    if source_path is not None:
        return source_path.stem
    return "target"


def _build_resource(
    item: object,
    index: int,
    engine: TemplateEngine,
    global_vars: Mapping[str, object],
) -> ResourceSpec:
    label = f"resources[{index}]"
    raw = _as_mapping(item, label)
    unknown = set(raw) - _RESOURCE_KEYS
    if unknown:
        raise ConfigError(f"Unknown keys in {label}: {', '.join(sorted(unknown))}.")

    kind_value = raw.get("kind")
    try:
        kind = ResourceKind(str(kind_value))
    except ValueError as exc:
        allowed = ", ".join(member.value for member in ResourceKind)
        raise ConfigError(
            f"{label}: unknown kind {kind_value!r}. Allowed: {allowed}."
        ) from exc

    identity = raw.get("identity")
    if not isinstance(identity, str) or not identity.strip():
        raise ConfigError(f"{label}: 'identity' is required and must be a string.")
    identity = identity.strip()
    label = resource_key(kind, identity)

    state_value = raw.get("runtime_state", RuntimeState.ENABLED.value)
    try:
        runtime_state = RuntimeState(str(state_value))
    except ValueError as exc:
        raise ConfigError(
            f"{label}: unknown runtime_state {state_value!r}. Allowed: enabled, disabled."
        ) from exc

    manager_value = raw.get("manager")
    manager = ServiceManager.SYSTEMD
    if manager_value is not None:
        if kind is not ResourceKind.SERVICE_UNIT:
            raise ConfigError(f"{label}: 'manager' only applies to service_unit resources.")
        try:
            manager = ServiceManager(str(manager_value))
        except ValueError as exc:
            allowed = ", ".join(member.value for member in ServiceManager)
            raise ConfigError(
                f"{label}: unknown manager {manager_value!r}. Allowed: {allowed}."
            ) from exc

    path = _optional_path(raw.get("path"), f"{label}.path")
    link = _optional_path(raw.get("link"), f"{label}.link")
    mode = _parse_mode(raw.get("mode"), f"{label}.mode")
    depends_on = tuple(
        _expect_reference(entry, f"{label}.depends_on")
        for entry in _as_list(raw.get("depends_on"), f"{label}.depends_on")
    )

    inline = raw.get("content")
    template = raw.get("template")
    if inline is not None and template is not None:
        raise ConfigError(f"{label}: 'content' and 'template' are mutually exclusive.")
    if inline is not None and not isinstance(inline, str):
        raise ConfigError(f"{label}: 'content' must be a string.")
    if template is not None and not isinstance(template, str):
        raise ConfigError(f"{label}: 'template' must be a string.")

    content: str | None = inline
    if template is not None:
        context: dict[str, object] = dict(global_vars)
        context.update(_as_mapping(raw.get("vars"), f"{label}.vars"))
        context.setdefault("identity", identity)
        try:
            content = engine.render_to_string(template, context)
        except TemplateError as exc:
            raise ConfigError(f"{label}: {exc}") from exc
    elif raw.get("vars") is not None:
        raise ConfigError(f"{label}: 'vars' requires 'template'.")

    if kind in (ResourceKind.PROXY_SITE, ResourceKind.ENV_FILE):
        if not Path(identity).is_absolute():
            raise ConfigError(f"{label}: identity must be an absolute file path.")
        if content is None:
            raise ConfigError(f"{label}: 'content' or 'template' is required.")
    if kind is ResourceKind.ENV_FILE and runtime_state is not RuntimeState.ENABLED:
        raise ConfigError(f"{label}: env_file resources have no runtime state.")
    if kind is ResourceKind.SERVICE_UNIT:
        if content is not None and path is None:
            raise ConfigError(f"{label}: managed unit content requires 'path'.")
        if path is not None and content is None:
            raise ConfigError(f"{label}: 'path' requires 'content' or 'template'.")
    if kind is ResourceKind.FIREWALL_RULE and (content is not None or path is not None):
        raise ConfigError(f"{label}: firewall rules carry no content or path.")
    if link is not None and kind is not ResourceKind.PROXY_SITE:
        raise ConfigError(f"{label}: 'link' only applies to proxy_site resources.")
    if mode is not None and content is None:
        raise ConfigError(f"{label}: 'mode' only applies to managed files.")

    return ResourceSpec(
        kind=kind,
        identity=identity,
        content=content,
        runtime_state=runtime_state,
        depends_on=depends_on,
        path=path,
        link=link,
        mode=mode,
        template=template,
        manager=manager,
    )


def _build_probe(item: object, index: int) -> HealthProbe:
    label = f"probes[{index}]"
    raw = _as_mapping(item, label)
    unknown = set(raw) - _PROBE_KEYS
    if unknown:
        raise ConfigError(f"Unknown keys in {label}: {', '.join(sorted(unknown))}.")

    url = raw.get("url")
    if not isinstance(url, str) or not url.startswith(("http://", "https://")):
        raise ConfigError(f"{label}: 'url' must be an http:// or https:// URL.")
    name = raw.get("name", url)
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"{label}: 'name' must be a non-empty string.")

    statuses_raw = raw.get("expected_statuses", [200])
    if isinstance(statuses_raw, int) and not isinstance(statuses_raw, bool):
        statuses_raw = [statuses_raw]
    statuses: set[int] = set()
    for entry in _as_list(statuses_raw, f"{label}.expected_statuses"):
        if isinstance(entry, bool) or not isinstance(entry, int) or not 100 <= entry <= 599:
            raise ConfigError(f"{label}: invalid expected status {entry!r}.")
        statuses.add(entry)
    if not statuses:
        raise ConfigError(f"{label}: 'expected_statuses' must not be empty.")

    timeout = _positive_float(raw.get("timeout", 5.0), f"{label}.timeout")

    retry_raw = _as_mapping(raw.get("retry"), f"{label}.retry")
    unknown_retry = set(retry_raw) - _RETRY_KEYS
    if unknown_retry:
        raise ConfigError(
            f"Unknown keys in {label}.retry: {', '.join(sorted(unknown_retry))}."
        )
    defaults = RetryPolicy()
    max_attempts = retry_raw.get("max_attempts", defaults.max_attempts)
    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
        raise ConfigError(f"{label}.retry.max_attempts must be a positive integer.")
    multiplier = _positive_float(
        retry_raw.get("multiplier", defaults.multiplier), f"{label}.retry.multiplier"
    )
    if multiplier < 1.0:
        raise ConfigError(f"{label}.retry.multiplier must be at least 1.")
    retry = RetryPolicy(
        max_attempts=max_attempts,
        initial_delay=_non_negative_float(
            retry_raw.get("initial_delay", defaults.initial_delay),
            f"{label}.retry.initial_delay",
        ),
        multiplier=multiplier,
        max_delay=_non_negative_float(
            retry_raw.get("max_delay", defaults.max_delay), f"{label}.retry.max_delay"
        ),
    )

    return HealthProbe(
        name=name.strip(),
        url=url,
        expected_statuses=frozenset(statuses),
        timeout=timeout,
        retry=retry,
    )


def _expect_reference(value: object, label: str) -> str:
    if not isinstance(value, str) or ":" not in value:
        raise ConfigError(f"{label}: references must look like 'kind:identity'. Got {value!r}.")
    kind_value, _, identity = value.partition(":")
    try:
        kind = ResourceKind(kind_value.strip())
    except ValueError as exc:
        raise ConfigError(f"{label}: unknown kind in reference {value!r}.") from exc
    return resource_key(kind, identity.strip())


def _optional_path(value: object, label: str) -> Path | None:
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{label} must be a non-empty string path.")
    path = Path(value.strip())
    if not path.is_absolute():
        raise ConfigError(f"{label} must be an absolute path.")
    return path


def _parse_mode(value: object, label: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be an octal string such as '0640'.")
    if isinstance(value, int):
        mode = value
    elif isinstance(value, str):
        try:
            mode = int(value, 8)
        except ValueError as exc:
            raise ConfigError(f"{label}: invalid octal mode {value!r}.") from exc
    else:
        raise ConfigError(f"{label} must be an octal string such as '0640'.")
    if not 0 <= mode <= 0o7777:
        raise ConfigError(f"{label}: mode {value!r} out of range.")
    return mode


def _positive_float(value: object, label: str) -> float:
    number = _non_negative_float(value, label)
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero.")
    return number


def _non_negative_float(value: object, label: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{label} must be a number. Got {value!r}.")
    if value < 0:
        raise ConfigError(f"{label} must not be negative.")
    return float(value)


def _as_mapping(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


def _as_list(value: object | None, label: str) -> list[object]:
    if value is None:
        return []
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a list. Got {type(value).__name__}.")
    return list(cast(Sequence[object], value))


__all__ = [
    "ResourceKind",
    "ResourceSpec",
    "RuntimeState",
    "ServiceManager",
    "TargetModel",
    "content_hash",
    "load_target",
    "resource_key",
]
