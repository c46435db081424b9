"""Tests for read-only state inspection."""
from __future__ import annotations

import os
from pathlib import Path

from convergectl.inspector import ResourceState, StateInspector
from convergectl.model import (
    ResourceKind,
    ResourceSpec,
    RuntimeState,
    ServiceManager,
    content_hash,
)

from conftest import FakeFirewall, FakeNginx, FakePm2, FakeSystemd


def _inspector(
    systemd: FakeSystemd, nginx: FakeNginx, firewall: FakeFirewall, workers: int = 4
) -> StateInspector:
    return StateInspector(systemd=systemd, nginx=nginx, firewall=firewall, max_workers=workers)


def test_proxy_site_reports_hash_mode_and_link(
    server_root: Path,
    fake_systemd: FakeSystemd,
    fake_nginx: FakeNginx,
    fake_firewall: FakeFirewall,
) -> None:
    """Sites are hashed and their link state observed."""
    site = server_root / "sites-available" / "n8n.conf"
    site.parent.mkdir()
    site.write_bytes(b"server {}\n")
    os.chmod(site, 0o640)
    link = server_root / "sites-enabled" / "n8n.conf"
    spec = ResourceSpec(
        kind=ResourceKind.PROXY_SITE, identity=str(site), content="server {}\n", link=link
    )
    inspector = _inspector(fake_systemd, fake_nginx, fake_firewall)

    state = inspector.inspect(spec)
    assert state.exists is True
    assert state.content_hash == content_hash(b"server {}\n")
    assert state.mode == 0o640
    assert state.runtime_state is RuntimeState.DISABLED

    link.parent.mkdir()
    link.symlink_to(site)
    assert inspector.inspect(spec).runtime_state is RuntimeState.ENABLED


def test_missing_file_is_absent(
    server_root: Path,
    fake_systemd: FakeSystemd,
    fake_nginx: FakeNginx,
    fake_firewall: FakeFirewall,
) -> None:
    """Absent files are reported, not raised."""
    spec = ResourceSpec(
        kind=ResourceKind.ENV_FILE, identity=str(server_root / "n8n.env"), content="A=1\n"
    )

    state = _inspector(fake_systemd, fake_nginx, fake_firewall).inspect(spec)

    assert state.exists is False
    assert state.content_hash is None
    assert state.runtime_state is None


def test_service_unit_state(
    server_root: Path,
    fake_systemd: FakeSystemd,
    fake_nginx: FakeNginx,
    fake_firewall: FakeFirewall,
) -> None:
    """Units report enablement and activity from systemd."""
    fake_systemd.enabled.add("n8n.service")
    fake_systemd.active.add("n8n.service")
    spec = ResourceSpec(kind=ResourceKind.SERVICE_UNIT, identity="n8n.service")

    state = _inspector(fake_systemd, fake_nginx, fake_firewall).inspect(spec)

    assert state.exists is True
    assert state.runtime_state is RuntimeState.ENABLED
    assert state.active is True


def test_firewall_rule_state(
    fake_systemd: FakeSystemd,
    fake_nginx: FakeNginx,
    fake_firewall: FakeFirewall,
) -> None:
    """Rules exist when ufw lists them."""
    fake_firewall.rules.append("443/tcp")
    inspector = _inspector(fake_systemd, fake_nginx, fake_firewall)

    present = inspector.inspect(ResourceSpec(kind=ResourceKind.FIREWALL_RULE, identity="443/tcp"))
    missing = inspector.inspect(ResourceSpec(kind=ResourceKind.FIREWALL_RULE, identity="22/tcp"))

    assert present.exists is True
    assert present.runtime_state is RuntimeState.ENABLED
    assert missing.exists is False


def test_inspect_all_collects_errors(
    server_root: Path,
    fake_systemd: FakeSystemd,
    fake_nginx: FakeNginx,
    fake_firewall: FakeFirewall,
) -> None:
    """Uninspectable resources are reported absent with their error attached."""
    directory = server_root / "not-a-file.env"
    directory.mkdir()
    good = server_root / "good.env"
    good.write_text("A=1\n", encoding="utf-8")
    fake_firewall.broken = True
    specs = [
        ResourceSpec(kind=ResourceKind.ENV_FILE, identity=str(directory), content="A=1\n"),
        ResourceSpec(kind=ResourceKind.ENV_FILE, identity=str(good), content="A=1\n"),
        ResourceSpec(kind=ResourceKind.FIREWALL_RULE, identity="443/tcp"),
    ]

    report = _inspector(fake_systemd, fake_nginx, fake_firewall).inspect_all(specs)

    assert list(report.states) == [spec.key for spec in specs]
    assert report.states[specs[1].key].exists is True
    broken = report.states[specs[0].key]
    assert broken.exists is False
    assert broken.error is not None and "not a regular file" in broken.error
    assert report.states[specs[2].key].error is not None
    assert len(report.errors) == 2
    assert report.to_dict()["errors"][0].startswith("env_file:")  # type: ignore[index]


def test_inspect_all_sequential_matches_pool(
    server_root: Path,
    fake_systemd: FakeSystemd,
    fake_nginx: FakeNginx,
    fake_firewall: FakeFirewall,
) -> None:
    """Worker count does not change the observed states."""
    specs = []
    for index in range(5):
        path = server_root / f"{index}.env"
        path.write_text(f"N={index}\n", encoding="utf-8")
        specs.append(ResourceSpec(kind=ResourceKind.ENV_FILE, identity=str(path), content=""))

    pooled = _inspector(fake_systemd, fake_nginx, fake_firewall, workers=4).inspect_all(specs)
    serial = _inspector(fake_systemd, fake_nginx, fake_firewall, workers=1).inspect_all(specs)

    assert {k: v.content_hash for k, v in pooled.states.items()} == {
        k: v.content_hash for k, v in serial.states.items()
    }


def test_absent_state_to_dict() -> None:
    """Serialised states carry the check timestamp."""
    data = ResourceState.absent("env_file:/etc/a", error="boom").to_dict()

    assert data["exists"] is False
    assert data["error"] == "boom"
    assert str(data["checked_at"]).endswith("Z")


def test_pm2_process_state(
    server_root: Path,
    fake_systemd: FakeSystemd,
    fake_pm2: FakePm2,
    fake_nginx: FakeNginx,
    fake_firewall: FakeFirewall,
) -> None:
    """PM2 processes are registered when listed and active when online."""
    fake_pm2.statuses["n8n"] = "stopped"
    inspector = StateInspector(
        systemd=fake_systemd, nginx=fake_nginx, firewall=fake_firewall, pm2=fake_pm2
    )
    ecosystem = server_root / "n8n-ecosystem.json"
    ecosystem.write_text("{}\n", encoding="utf-8")

    listed = inspector.inspect(
        ResourceSpec(kind=ResourceKind.SERVICE_UNIT, identity="n8n", manager=ServiceManager.PM2)
    )
    with_file = inspector.inspect(
        ResourceSpec(
            kind=ResourceKind.SERVICE_UNIT,
            identity="n8n",
            content="{}\n",
            path=ecosystem,
            manager=ServiceManager.PM2,
        )
    )
    unknown = inspector.inspect(
        ResourceSpec(kind=ResourceKind.SERVICE_UNIT, identity="worker", manager=ServiceManager.PM2)
    )

    assert listed.exists is True
    assert listed.runtime_state is RuntimeState.ENABLED
    assert listed.active is False
    assert with_file.content_hash == content_hash(b"{}\n")
    assert unknown.exists is False
    assert unknown.runtime_state is RuntimeState.DISABLED
    assert fake_systemd.calls == []
