"""Systemd provider for querying and controlling service units."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Thin wrapper around ``systemctl`` for managed service units."""

    systemctl_bin: str = "systemctl"

    def is_enabled(self, unit: str) -> bool:
        """Return ``True`` when *unit* is enabled."""
        result = self._systemctl("is-enabled", unit, check=False)
        return result.returncode == 0 and (result.stdout or "").strip() in {
            "enabled",
            "enabled-runtime",
            "static",
            "alias",
        }

    def is_active(self, unit: str) -> bool:
        """Return ``True`` when *unit* is currently running."""
        result = self._systemctl("is-active", unit, check=False)
        return result.returncode == 0

    def exists(self, unit: str) -> bool:
        """Return ``True`` when systemd knows about *unit*."""
        result = self._systemctl("cat", unit, check=False)
        return result.returncode == 0

    def enable(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Enable the unit."""
        return self._systemctl("enable", unit)

    def disable(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Disable the unit."""
        return self._systemctl("disable", unit)

    def start(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Start the unit."""
        return self._systemctl("start", unit)

    def stop(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Stop the unit."""
        return self._systemctl("stop", unit)

    def restart(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Restart the unit."""
        return self._systemctl("restart", unit)

    def reload(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Reload the unit's configuration without a full restart."""
        return self._systemctl("reload", unit)

    def daemon_reload(self) -> subprocess.CompletedProcess[str]:
        """Ask systemd to re-read unit files."""
        return self._systemctl("daemon-reload")

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if unit is not None:
            args.append(unit)
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdProvider", "SystemdError"]
