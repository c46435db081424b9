"""Tests for the ufw firewall provider."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence

import pytest

from convergectl.providers.firewall import FirewallError, FirewallProvider


class DummyResult:
    """Stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


SHOW_ADDED = """Added user rules (see 'ufw status' for running firewall):
ufw allow 22/tcp
ufw allow 'Nginx Full'
ufw allow 5678/tcp
"""


def test_added_rules_parses_show_added(monkeypatch: pytest.MonkeyPatch) -> None:
    """Rule specs are extracted from ``ufw show added``."""
    captured: list[list[str]] = []

    def fake_run(args: Sequence[str], **kwargs: object) -> DummyResult:
        captured.append(list(args))
        return DummyResult(returncode=0, stdout=SHOW_ADDED)

    monkeypatch.setattr(subprocess, "run", fake_run)
    provider = FirewallProvider()

    assert provider.added_rules() == ["22/tcp", "Nginx Full", "5678/tcp"]
    assert provider.has_rule("Nginx Full") is True
    assert provider.has_rule("443/tcp") is False
    assert captured[0] == ["ufw", "show", "added"]


def test_allow_and_delete_commands(monkeypatch: pytest.MonkeyPatch) -> None:
    """allow and delete pass the rule spec through untouched."""
    captured: list[list[str]] = []

    def fake_run(args: Sequence[str], **kwargs: object) -> DummyResult:
        captured.append(list(args))
        return DummyResult(returncode=0)

    monkeypatch.setattr(subprocess, "run", fake_run)
    provider = FirewallProvider(ufw_bin="/usr/sbin/ufw")

    provider.allow(" 5678/tcp ")
    provider.delete("5678/tcp")

    assert captured == [
        ["/usr/sbin/ufw", "allow", "5678/tcp"],
        ["/usr/sbin/ufw", "--force", "delete", "allow", "5678/tcp"],
    ]


def test_failure_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    """Non-zero exits raise FirewallError."""
    monkeypatch.setattr(
        subprocess,
        "run",
        lambda args, **kwargs: DummyResult(returncode=1, stderr="ERROR: You need to be root"),
    )

    with pytest.raises(FirewallError, match="need to be root"):
        FirewallProvider().allow("5678/tcp")
