"""Tests for the nginx provider."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from pathlib import Path

import pytest

from convergectl.providers.nginx import NginxError, NginxProvider


class DummyResult:
    """Stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


@pytest.fixture
def provider() -> NginxProvider:
    """Return an nginx provider using the default binary name."""
    return NginxProvider(nginx_bin="nginx")


@pytest.fixture
def site(tmp_path: Path) -> Path:
    """Return a site file inside sites-available."""
    path = tmp_path / "sites-available" / "n8n.conf"
    path.parent.mkdir()
    path.write_text("server {}\n", encoding="utf-8")
    return path


def test_enable_creates_symlink(provider: NginxProvider, site: Path, tmp_path: Path) -> None:
    """Enabling a site links it into sites-enabled."""
    link = tmp_path / "sites-enabled" / "n8n.conf"

    provider.enable(site, link)

    assert link.is_symlink()
    assert provider.is_enabled(site, link) is True
    assert provider.link_target(link) == site

    # Enabling twice is harmless.
    provider.enable(site, link)
    assert provider.is_enabled(site, link) is True


def test_enable_replaces_foreign_link(
    provider: NginxProvider, site: Path, tmp_path: Path
) -> None:
    """A link pointing elsewhere is replaced."""
    other = tmp_path / "sites-available" / "other.conf"
    other.write_text("server {}\n", encoding="utf-8")
    link = tmp_path / "sites-enabled" / "n8n.conf"
    link.parent.mkdir()
    link.symlink_to(other)
    assert provider.is_enabled(site, link) is False

    provider.enable(site, link)

    assert provider.is_enabled(site, link) is True


def test_disable_removes_symlink(provider: NginxProvider, site: Path, tmp_path: Path) -> None:
    """Disabling removes the link and tolerates a missing one."""
    link = tmp_path / "sites-enabled" / "n8n.conf"
    provider.enable(site, link)

    provider.disable(link)
    provider.disable(link)

    assert not link.exists()
    assert provider.link_target(link) is None
    assert provider.is_enabled(site, link) is False


def test_test_config_runs_nginx_t(
    monkeypatch: pytest.MonkeyPatch,
    provider: NginxProvider,
) -> None:
    """Validation shells out to ``nginx -t``."""
    captured: list[list[str]] = []

    def fake_run(args: Sequence[str], **kwargs: object) -> DummyResult:
        captured.append(list(args))
        return DummyResult(returncode=0, stderr="syntax is ok")

    monkeypatch.setattr(subprocess, "run", fake_run)

    provider.test_config()
    provider.reload()

    assert captured == [["nginx", "-t"], ["nginx", "-s", "reload"]]


def test_invalid_config_raises(
    monkeypatch: pytest.MonkeyPatch,
    provider: NginxProvider,
) -> None:
    """A failing ``nginx -t`` raises NginxError with nginx's message."""
    monkeypatch.setattr(
        subprocess,
        "run",
        lambda args, **kwargs: DummyResult(
            returncode=1, stderr='unknown directive "prox_pass" in n8n.conf:7'
        ),
    )

    with pytest.raises(NginxError, match="prox_pass"):
        provider.test_config()


def test_reload_goes_through_systemd_when_service_is_set(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A configured service is reloaded with systemctl."""
    captured: list[list[str]] = []

    def fake_run(args: Sequence[str], **kwargs: object) -> DummyResult:
        captured.append(list(args))
        return DummyResult(returncode=0)

    monkeypatch.setattr(subprocess, "run", fake_run)

    NginxProvider(nginx_bin="nginx", service="nginx", systemctl_bin="/bin/systemctl").reload()

    assert captured == [["/bin/systemctl", "reload", "nginx"]]


def test_failed_service_reload_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    """A failing systemctl reload surfaces as NginxError."""
    monkeypatch.setattr(
        subprocess,
        "run",
        lambda args, **kwargs: DummyResult(returncode=1, stderr="Job for nginx.service failed"),
    )

    with pytest.raises(NginxError, match="systemctl reload nginx failed"):
        NginxProvider(service="nginx").reload()
