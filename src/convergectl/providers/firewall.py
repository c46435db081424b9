"""Firewall provider backed by ``ufw``."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass


class FirewallError(RuntimeError):
    """Raised when firewall operations fail."""


@dataclass(slots=True)
class FirewallProvider:
    """Query and change ``ufw`` allow rules such as ``5678/tcp`` or ``'Nginx Full'``."""

    ufw_bin: str = "ufw"

    def added_rules(self) -> list[str]:
        """Return the rule specs currently added, active or not."""
        result = self._run_ufw(["show", "added"])
        rules: list[str] = []
        for line in (result.stdout or "").splitlines():
            stripped = line.strip()
            if stripped.startswith("ufw allow "):
                rules.append(stripped[len("ufw allow ") :].strip().strip("'\""))
        return rules

    def has_rule(self, rule: str) -> bool:
        """Return ``True`` when an allow rule for *rule* exists."""
        return rule.strip() in self.added_rules()

    def allow(self, rule: str) -> subprocess.CompletedProcess[str]:
        """Add an allow rule."""
        return self._run_ufw(["allow", rule.strip()])

    def delete(self, rule: str) -> subprocess.CompletedProcess[str]:
        """Remove an allow rule."""
        return self._run_ufw(["--force", "delete", "allow", rule.strip()])

    # ------------------------------------------------------------------
    def _run_ufw(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.ufw_bin, *args]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise FirewallError(f"{self.ufw_bin} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise FirewallError(
                f"{self.ufw_bin} {' '.join(args)} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = ["FirewallError", "FirewallProvider"]
