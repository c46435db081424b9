"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from convergectl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.target_file == Path("/etc/convergectl/target.yml")
    assert config.runtime_dir == Path("/run/convergectl")
    assert config.templates_dir == Path("/etc/convergectl/templates")
    assert config.backups.root == Path("/var/backups/convergectl")
    assert config.backups.index == Path("/var/backups/convergectl/backups.json")
    assert config.backups.compression == "auto"
    assert config.backups.keep is None
    assert config.firewall.enabled is True
    assert config.concurrency.inspect_workers == 8
    assert config.nginx.service == "nginx"
    assert config.pm2.pm2_bin == "pm2"
    assert "state_dir" not in config.to_dict()


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "convergectl.yml"
    cfg.write_text(
        "target_file: /srv/target.yml\n"
        "firewall:\n"
        "  enabled: false\n"
        "backups:\n"
        "  root: {root}\n"
        "  keep: 3\n"
        "  extra_paths:\n"
        "    - /srv/data\n"
        "  compression:\n"
        "    algorithm: gzip\n"
        "concurrency:\n"
        "  probe_workers: 2\n"
    )
    cfg.write_text(cfg.read_text().format(root=str(tmp_path / "backups")))

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.target_file == Path("/srv/target.yml")
    assert config.firewall.enabled is False
    assert config.backups.root == tmp_path / "backups"
    assert config.backups.keep == 3
    assert config.backups.extra_paths == (Path("/srv/data"),)
    assert config.backups.compression == "gzip"
    assert config.concurrency.probe_workers == 2


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "convergectl.yml"
    cfg.write_text("nginx:\n  nginx_bin: /usr/sbin/nginx\n")
    env = {
        "CONVERGECTL_CONFIG_FILE": str(cfg),
        "CONVERGECTL_NGINX__NGINX_BIN": "/opt/nginx/sbin/nginx",
        "CONVERGECTL_FIREWALL__ENABLED": "false",
        "CONVERGECTL_RUNTIME_DIR": str(tmp_path / "run"),
        "CONVERGECTL_BACKUPS__ROOT": str(tmp_path / "bk"),
        "CONVERGECTL_BACKUPS__COMPRESSION__ALGORITHM": "none",
        "CONVERGECTL_BACKUPS__COMPRESSION__LEVEL": "5",
    }

    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.nginx.nginx_bin == "/opt/nginx/sbin/nginx"
    assert config.firewall.enabled is False
    assert config.runtime_dir == tmp_path / "run"
    assert config.backups.root == tmp_path / "bk"
    assert config.backups.index == tmp_path / "bk" / "backups.json"
    assert config.backups.compression == "none"
    assert config.backups.compression_level == 5


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """A non-mapping document raises a ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unexpected top-level keys trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("resources: []\n")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_section_key_raises(tmp_path: Path) -> None:
    """Typos inside a section are reported with the section name."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("firewall:\n  enable: true\n")

    with pytest.raises(ConfigError, match="Unknown firewall configuration keys"):
        load_config(config_file=cfg, env={})


def test_invalid_compression_raises(tmp_path: Path) -> None:
    """Unsupported compression algorithms raise ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("backups:\n  compression: lzma\n")

    with pytest.raises(ConfigError, match="Unsupported backup compression"):
        load_config(config_file=cfg, env={})


def test_non_positive_keep_raises(tmp_path: Path) -> None:
    """Retention must keep at least one archive."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("backups:\n  keep: 0\n")

    with pytest.raises(ConfigError, match="backups.keep"):
        load_config(config_file=cfg, env={})


def test_firewall_enabled_must_be_boolean(tmp_path: Path) -> None:
    """Non-boolean toggles are rejected."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("firewall:\n  enabled: sometimes\n")

    with pytest.raises(ConfigError, match="firewall.enabled"):
        load_config(config_file=cfg, env={})


def test_worker_counts_must_be_positive() -> None:
    """Thread pool sizes below one are rejected."""
    with pytest.raises(ConfigError, match="concurrency.inspect_workers"):
        load_config(
            config_file="/nonexistent/convergectl.yml",
            env={"CONVERGECTL_CONCURRENCY__INSPECT_WORKERS": "0"},
        )


def test_null_nginx_service_reloads_by_signal(tmp_path: Path) -> None:
    """An empty nginx service is kept empty so reloads signal the master."""
    cfg = tmp_path / "convergectl.yml"
    cfg.write_text("nginx:\n  service: null\npm2:\n  pm2_bin: /usr/local/bin/pm2\n")

    config = load_config(config_file=cfg, env={})

    assert config.nginx.service == ""
    assert config.pm2.pm2_bin == "/usr/local/bin/pm2"


def test_unused_state_dir_key_is_rejected(tmp_path: Path) -> None:
    """Only keys the tool reads are accepted at the top level."""
    cfg = tmp_path / "convergectl.yml"
    cfg.write_text("state_dir: /var/lib/convergectl\n")

    with pytest.raises(ConfigError, match="state_dir"):
        load_config(config_file=cfg, env={})
