"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ReconcileExit(IntEnum):
    """Exit codes for ``convergectl reconcile`` and ``convergectl verify``."""

    DONE = 0
    FAILED = 1
    ROLLED_BACK = 2
    CONFIG = 3
    LOCKED = 4


class BackupExit(IntEnum):
    """Exit codes for ``convergectl backup`` and the ``backups`` group."""

    OK = 0
    FAILED = 1


class RestoreExit(IntEnum):
    """Exit codes for ``convergectl restore``.

    ``FAILED`` covers everything that stops a restore before it writes a
    file: a corrupt archive, invalid settings or target, and a held run lock.
    """

    OK = 0
    FAILED = 1
    RECONCILE = 2


SETTINGS_EXIT: dict[str, int] = {
    "backup": BackupExit.FAILED,
    "backups": BackupExit.FAILED,
    "restore": RestoreExit.FAILED,
}
"""Exit code for invalid tool settings, per top-level command.

Commands not listed here (``reconcile``, ``verify`` and the bare root) use
:attr:`ReconcileExit.CONFIG`.
"""

