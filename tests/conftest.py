"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

import pytest

from convergectl.providers.firewall import FirewallError, FirewallProvider
from convergectl.providers.nginx import NginxError, NginxProvider
from convergectl.providers.pm2 import Pm2Error, Pm2Provider
from convergectl.providers.systemd import SystemdError, SystemdProvider


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def _ok(*args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(list(args), returncode=0, stdout="", stderr="")


class FakeSystemd(SystemdProvider):
    """In-memory systemd that records every mutating call."""

    def __init__(self) -> None:
        super().__init__(systemctl_bin="systemctl")
        self.enabled: set[str] = set()
        self.active: set[str] = set()
        self.calls: list[tuple[str, str | None]] = []
        self.fail_on: set[tuple[str, str | None]] = set()

    def _record(self, command: str, unit: str | None) -> None:
        self.calls.append((command, unit))
        if (command, unit) in self.fail_on:
            raise SystemdError(f"systemctl {command} {unit} failed (exit 1): simulated")

    def is_enabled(self, unit: str) -> bool:
        return unit in self.enabled

    def is_active(self, unit: str) -> bool:
        return unit in self.active

    def exists(self, unit: str) -> bool:
        return True

    def enable(self, unit: str) -> subprocess.CompletedProcess[str]:
        self._record("enable", unit)
        self.enabled.add(unit)
        return _ok("systemctl", "enable", unit)

    def disable(self, unit: str) -> subprocess.CompletedProcess[str]:
        self._record("disable", unit)
        self.enabled.discard(unit)
        return _ok("systemctl", "disable", unit)

    def start(self, unit: str) -> subprocess.CompletedProcess[str]:
        self._record("start", unit)
        self.active.add(unit)
        return _ok("systemctl", "start", unit)

    def stop(self, unit: str) -> subprocess.CompletedProcess[str]:
        self._record("stop", unit)
        self.active.discard(unit)
        return _ok("systemctl", "stop", unit)

    def restart(self, unit: str) -> subprocess.CompletedProcess[str]:
        self._record("restart", unit)
        self.active.add(unit)
        return _ok("systemctl", "restart", unit)

    def reload(self, unit: str) -> subprocess.CompletedProcess[str]:
        self._record("reload", unit)
        return _ok("systemctl", "reload", unit)

    def daemon_reload(self) -> subprocess.CompletedProcess[str]:
        self._record("daemon-reload", None)
        return _ok("systemctl", "daemon-reload")


class FakePm2(Pm2Provider):
    """In-memory PM2 process list that records every mutating call."""

    def __init__(self) -> None:
        super().__init__(pm2_bin="pm2")
        self.statuses: dict[str, str] = {}
        self.saved: dict[str, str] = {}
        self.calls: list[tuple[str, ...]] = []
        self.fail_on: set[tuple[str, str]] = set()

    def _record(self, *call: str) -> None:
        self.calls.append(call)
        if call[:2] in self.fail_on:
            raise Pm2Error(f"pm2 {call[0]} failed (exit 1): simulated")

    def processes(self) -> dict[str, str]:
        return dict(self.statuses)

    def enable(
        self, name: str, *, ecosystem: Path | None = None
    ) -> subprocess.CompletedProcess[str]:
        self._record("enable", name, str(ecosystem) if ecosystem else "")
        self.statuses[name] = "online"
        self.save()
        return _ok("pm2", "start", name)

    def disable(self, name: str) -> subprocess.CompletedProcess[str]:
        self._record("disable", name)
        self.statuses.pop(name, None)
        self.save()
        return _ok("pm2", "delete", name)

    def start(self, name: str) -> subprocess.CompletedProcess[str]:
        if self.statuses.get(name) == "online":
            return _ok("pm2", "start", name)
        self._record("start", name)
        self.statuses[name] = "online"
        return _ok("pm2", "start", name)

    def stop(self, name: str) -> subprocess.CompletedProcess[str]:
        self._record("stop", name)
        if name in self.statuses:
            self.statuses[name] = "stopped"
        return _ok("pm2", "stop", name)

    def restart(
        self, name: str, *, ecosystem: Path | None = None
    ) -> subprocess.CompletedProcess[str]:
        self._record("restart", name)
        self.statuses[name] = "online"
        return _ok("pm2", "restart", name)

    def reload(self, name: str) -> subprocess.CompletedProcess[str]:
        self._record("reload", name)
        return _ok("pm2", "reload", name)

    def save(self) -> subprocess.CompletedProcess[str]:
        self.calls.append(("save",))
        self.saved = dict(self.statuses)
        return _ok("pm2", "save")


class FakeNginx(NginxProvider):
    """Nginx whose ``-t`` result is controlled by the test; links are real files."""

    def __init__(self) -> None:
        super().__init__(nginx_bin="nginx")
        self.valid = True
        self.calls: list[str] = []

    def test_config(self) -> subprocess.CompletedProcess[str]:
        self.calls.append("test")
        if not self.valid:
            raise NginxError("nginx -t failed (exit 1): unexpected '}' in site")
        return _ok("nginx", "-t")

    def reload(self) -> subprocess.CompletedProcess[str]:
        self.calls.append("reload")
        return _ok("nginx", "-s", "reload")


class FakeFirewall(FirewallProvider):
    """In-memory ufw rule set."""

    def __init__(self) -> None:
        super().__init__(ufw_bin="ufw")
        self.rules: list[str] = []
        self.calls: list[tuple[str, str]] = []
        self.broken = False

    def added_rules(self) -> list[str]:
        if self.broken:
            raise FirewallError("ufw show added failed (exit 1): ERROR: not running as root")
        return list(self.rules)

    def allow(self, rule: str) -> subprocess.CompletedProcess[str]:
        self.calls.append(("allow", rule))
        if rule not in self.rules:
            self.rules.append(rule)
        return _ok("ufw", "allow", rule)

    def delete(self, rule: str) -> subprocess.CompletedProcess[str]:
        self.calls.append(("delete", rule))
        if rule in self.rules:
            self.rules.remove(rule)
        return _ok("ufw", "--force", "delete", "allow", rule)


@pytest.fixture
def fake_systemd() -> FakeSystemd:
    """Return an empty in-memory systemd."""
    return FakeSystemd()


@pytest.fixture
def fake_pm2() -> FakePm2:
    """Return an empty in-memory PM2."""
    return FakePm2()


@pytest.fixture
def fake_nginx() -> FakeNginx:
    """Return a fake nginx that validates successfully."""
    return FakeNginx()


@pytest.fixture
def fake_firewall() -> FakeFirewall:
    """Return an empty in-memory firewall."""
    return FakeFirewall()


@pytest.fixture
def server_root(tmp_path: Path) -> Path:
    """Return a scratch directory standing in for ``/``."""
    root = tmp_path / "server"
    root.mkdir()
    return root
