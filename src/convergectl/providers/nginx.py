"""Nginx provider for validating configuration and managing site links."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path


class NginxError(RuntimeError):
    """Raised when nginx operations fail."""


@dataclass(slots=True)
class NginxProvider:
    """Validate, reload, and enable nginx sites.

    When *service* names a systemd unit, reloads go through
    ``systemctl reload <service>`` so systemd tracks the master process.
    Otherwise the running master is signalled with ``nginx -s reload``.
    """

    nginx_bin: str = "nginx"
    service: str | None = None
    systemctl_bin: str = "systemctl"

    def test_config(self) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t`` to validate the configuration."""
        return self._run_nginx(["-t"])

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Reload nginx to apply configuration changes."""
        if self.service:
            return self._run([self.systemctl_bin, "reload", self.service])
        return self._run_nginx(["-s", "reload"])

    def link_target(self, link: Path) -> Path | None:
        """Return the path *link* points at, or ``None`` when it is not a symlink."""
        if not link.is_symlink():
            return None
        return Path(link.readlink())

    def is_enabled(self, site: Path, link: Path) -> bool:
        """Return ``True`` when *link* is a symlink resolving to *site*."""
        if not link.is_symlink():
            return False
        try:
            return link.resolve() == site.resolve()
        except FileNotFoundError:
            return False

    def enable(self, site: Path, link: Path) -> None:
        """Enable the site by creating a symlink at *link*."""
        link.parent.mkdir(parents=True, exist_ok=True)
        if link.exists() or link.is_symlink():
            try:
                if link.resolve() == site.resolve():
                    return
            except FileNotFoundError:
                # Broken symlink; replace it with a fresh one.
                pass
            link.unlink()
        link.symlink_to(site)

    def disable(self, link: Path) -> None:
        """Disable the site by removing the symlink."""
        try:
            link.unlink()
        except FileNotFoundError:
            pass

    # ------------------------------------------------------------------
    def _run_nginx(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        return self._run([self.nginx_bin, *args])

    def _run(self, command: Sequence[str]) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(command),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise NginxError(f"{command[0]} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise NginxError(
                f"{' '.join(command)} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = ["NginxProvider", "NginxError"]
