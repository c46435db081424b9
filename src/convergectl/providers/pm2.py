"""PM2 provider for Node.js processes supervised outside systemd.

PM2 has no separate notion of an enabled unit. A process counts as enabled
while it is registered in the PM2 process list, and every change to that
list is followed by ``pm2 save`` so the saved dump (which ``pm2 startup``
resurrects on boot) matches what is running.
"""
from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path


class Pm2Error(RuntimeError):
    """Raised when PM2 operations fail."""


@dataclass(slots=True)
class Pm2Provider:
    """Thin wrapper around the ``pm2`` CLI for managed processes."""

    pm2_bin: str = "pm2"

    def processes(self) -> dict[str, str]:
        """Return ``{name: status}`` for every process PM2 knows about."""
        result = self._pm2("jlist")
        output = result.stdout or ""
        # Some PM2 releases print upgrade notices ahead of the JSON document.
        start = output.find("[")
        if start < 0:
            raise Pm2Error(f"{self.pm2_bin} jlist returned no process list")
        try:
            entries = json.loads(output[start:])
        except json.JSONDecodeError as exc:
            raise Pm2Error(f"{self.pm2_bin} jlist returned invalid JSON: {exc}") from exc
        if not isinstance(entries, list):
            raise Pm2Error(f"{self.pm2_bin} jlist did not return a list")

        statuses: dict[str, str] = {}
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            name = entry.get("name")
            env = entry.get("pm2_env")
            status = env.get("status") if isinstance(env, dict) else None
            if isinstance(name, str):
                statuses[name] = str(status or "unknown")
        return statuses

    def is_enabled(self, name: str) -> bool:
        """Return ``True`` when *name* is registered with PM2."""
        return name in self.processes()

    def is_active(self, name: str) -> bool:
        """Return ``True`` when *name* is online."""
        return self.processes().get(name) == "online"

    def exists(self, name: str) -> bool:
        return self.is_enabled(name)

    def enable(
        self, name: str, *, ecosystem: Path | None = None
    ) -> subprocess.CompletedProcess[str]:
        """Register *name*, from *ecosystem* when given, and persist the list."""
        if ecosystem is not None:
            result = self._pm2("start", str(ecosystem), "--only", name)
        else:
            result = self._pm2("start", name)
        self.save()
        return result

    def disable(self, name: str) -> subprocess.CompletedProcess[str]:
        """Remove *name* from the process list and persist the list."""
        result = self._pm2("delete", name)
        self.save()
        return result

    def start(self, name: str) -> subprocess.CompletedProcess[str]:
        """Start *name* unless it is already online."""
        if self.is_active(name):
            return subprocess.CompletedProcess([self.pm2_bin, "start", name], 0, "", "")
        return self._pm2("start", name)

    def stop(self, name: str) -> subprocess.CompletedProcess[str]:
        """Stop the process."""
        return self._pm2("stop", name)

    def restart(
        self, name: str, *, ecosystem: Path | None = None
    ) -> subprocess.CompletedProcess[str]:
        """Restart *name*, re-reading *ecosystem* and its environment when given."""
        if ecosystem is not None:
            return self._pm2("restart", str(ecosystem), "--only", name, "--update-env")
        return self._pm2("restart", name, "--update-env")

    def reload(self, name: str) -> subprocess.CompletedProcess[str]:
        """Reload the process without downtime."""
        return self._pm2("reload", name)

    def save(self) -> subprocess.CompletedProcess[str]:
        """Write the current process list to the PM2 dump file."""
        return self._pm2("save")

    # ------------------------------------------------------------------
    def _pm2(self, command: str, *extra: str) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.pm2_bin, command, *extra]
        return self._run_command(args, error_prefix=f"{self.pm2_bin} {command}")

    def _run_command(
        self,
        args: Sequence[str],
        *,
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
            raise Pm2Error(f"{args[0]} not found: {exc}") from exc
        if result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise Pm2Error(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["Pm2Error", "Pm2Provider"]
