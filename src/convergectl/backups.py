"""Backup and restore of managed files.

A backup archive holds a ``manifest.json`` describing every captured file
and an ``objects/`` directory with each file's bytes stored under its
sha256. Restores verify every object before anything on disk is touched,
take a pre-restore backup of what they are about to overwrite, and then
write all files or none.

Archives are recorded in a JSON index (``backups.json``) under the backup
root so they can be listed and pruned.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import stat
import tempfile
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .archive import (
    ArchiveError,
    checksum_path_for,
    compression_extension,
    compute_checksum,
    create_archive,
    extract_archive,
    infer_algorithm,
    read_checksum_file,
    resolve_algorithm,
    write_checksum_file,
)
from .executor import DEFAULT_FILE_MODE, atomic_write
from .model import ResourceSpec, content_hash, resource_key

LOGGER = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
OBJECTS_DIR = "objects"
MANIFEST_FORMAT = 1
DATA_KIND = "data"


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class BackupRegistryError(BackupError):
    """Raised when backup index interactions fail."""


class IntegrityError(BackupError):
    """Raised when an archive does not match its checksum or manifest."""


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _parse_iso(value: object) -> datetime:
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return datetime.min.replace(tzinfo=UTC)


@dataclass(slots=True, frozen=True)
class ManifestEntry:
    """One captured file."""

    kind: str
    identity: str
    path: str
    sha256: str
    size: int
    mode: int | None = None

    @property
    def key(self) -> str:
        return resource_key(self.kind, self.identity)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "kind": self.kind,
            "identity": self.identity,
            "path": self.path,
            "sha256": self.sha256,
            "size": self.size,
            "mode": f"{self.mode:04o}" if self.mode is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ManifestEntry:
        """Build an entry from its JSON form, raising :class:`IntegrityError` when malformed."""
        try:
            mode_value = data.get("mode")
            return cls(
                kind=str(data["kind"]),
                identity=str(data["identity"]),
                path=str(data["path"]),
                sha256=str(data["sha256"]).lower(),
                size=int(str(data["size"])),
                mode=int(str(mode_value), 8) if mode_value is not None else None,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise IntegrityError(f"Malformed manifest entry {dict(data)!r}: {exc}") from exc


@dataclass(slots=True, frozen=True)
class BackupManifest:
    """Ordered description of an archive's contents."""

    entries: tuple[ManifestEntry, ...]
    created_at: str
    label: str | None = None
    target: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "format": MANIFEST_FORMAT,
            "created_at": self.created_at,
            "label": self.label,
            "target": self.target,
            "entries": [entry.to_dict() for entry in self.entries],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> BackupManifest:
        """Parse the JSON form of a manifest."""
        raw_entries = data.get("entries")
        if not isinstance(raw_entries, list):
            raise IntegrityError("Manifest has no entry list.")
        entries: list[ManifestEntry] = []
        for item in raw_entries:
            if not isinstance(item, Mapping):
                raise IntegrityError(f"Malformed manifest entry {item!r}.")
            entries.append(ManifestEntry.from_dict(item))
        label = data.get("label")
        target = data.get("target")
        return cls(
            entries=tuple(entries),
            created_at=str(data.get("created_at", "")),
            label=str(label) if label is not None else None,
            target=str(target) if target is not None else None,
        )


@dataclass(slots=True, frozen=True)
class BackupResult:
    """Outcome of a backup run."""

    backup_id: str
    archive: Path
    checksum: str
    checksum_path: Path
    manifest: BackupManifest
    size_bytes: int

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "id": self.backup_id,
            "archive": str(self.archive),
            "checksum": self.checksum,
            "checksum_path": str(self.checksum_path),
            "size_bytes": self.size_bytes,
            "entries": len(self.manifest.entries),
            "label": self.manifest.label,
        }


@dataclass(slots=True, frozen=True)
class RestoreResult:
    """Outcome of a restore run."""

    archive: Path
    restored: tuple[ManifestEntry, ...]
    pre_restore: BackupResult | None = None

    @property
    def restored_keys(self) -> tuple[str, ...]:
        """Return ``kind:identity`` references of restored managed resources."""
        return tuple(entry.key for entry in self.restored if entry.kind != DATA_KIND)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "archive": str(self.archive),
            "restored": [entry.to_dict() for entry in self.restored],
            "pre_restore": self.pre_restore.to_dict() if self.pre_restore else None,
        }


@dataclass(slots=True, frozen=True)
class _Source:
    kind: str
    identity: str
    path: Path


@dataclass(slots=True)
class BackupsRegistry:
    """Manage the JSON backup index under the backups directory."""

    root: Path
    index: Path

    def __post_init__(self) -> None:
        """Normalise root/index paths after initialisation."""
        self.root = self.root.expanduser()
        self.index = self.index.expanduser()

    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def read(self) -> dict[str, object]:
        """Return the parsed backups index (empty structure when missing)."""
        try:
            data = json.loads(self.index.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {"backups": []}
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the backups index."""
        self.ensure_root()
        self.index.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.index.parent),
            prefix=f".{self.index.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_path, self.index)
            os.chmod(self.index, 0o640)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def append(self, entry: Mapping[str, object]) -> None:
        """Append *entry* to the backups index."""
        entries = self.list_entries()
        entries.append(dict(entry))
        self.write({"backups": entries})

    def list_entries(self) -> list[dict[str, object]]:
        """Return backup entries in insertion order."""
        backups = self.read().get("backups", [])
        if not isinstance(backups, list):
            return []
        return [dict(item) for item in backups if isinstance(item, Mapping)]

    def remove(self, backup_ids: Iterable[str]) -> int:
        """Drop entries whose id is in *backup_ids*; return how many were removed."""
        doomed = {value.strip() for value in backup_ids}
        entries = self.list_entries()
        kept = [entry for entry in entries if str(entry.get("id", "")).strip() not in doomed]
        removed = len(entries) - len(kept)
        if removed:
            self.write({"backups": kept})
        return removed

    def generate_identifier(self, label: str) -> str:
        """Return a unique backup identifier tagged with *label*."""
        timestamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
        token = secrets.token_hex(3)
        safe_label = "".join(char if char.isalnum() or char in {"-", "_"} else "-" for char in label)
        return f"{timestamp}-{safe_label or 'backup'}-{token}"


class BackupManager:
    """Create, verify, restore, list and prune backup archives."""

    def __init__(
        self,
        registry: BackupsRegistry,
        *,
        compression: str = "auto",
        compression_level: int | None = None,
        extra_paths: Sequence[Path] = (),
        target_name: str | None = None,
    ) -> None:
        """Store the index and archive settings."""
        self.registry = registry
        self.compression = compression
        self.compression_level = compression_level
        self.extra_paths = tuple(Path(path) for path in extra_paths)
        self.target_name = target_name

    # Backup --------------------------------------------------------
    def backup(
        self,
        specs: Sequence[ResourceSpec],
        *,
        label: str | None = None,
        output: Path | None = None,
        include_extra: bool = True,
    ) -> BackupResult:
        """Snapshot the on-disk files behind *specs* (plus extra data paths)."""
        sources = [
            _Source(spec.kind.value, spec.identity, path)
            for spec in specs
            if spec.manages_content and (path := spec.file_path) is not None
        ]
        if include_extra:
            sources.extend(self._extra_sources())
        return self._snapshot(sources, label=label, output=output)

    def _extra_sources(self) -> list[_Source]:
        sources: list[_Source] = []
        for root in self.extra_paths:
            if root.is_dir():
                for path in sorted(item for item in root.rglob("*") if item.is_file()):
                    sources.append(_Source(DATA_KIND, str(path), path))
            elif root.is_file():
                sources.append(_Source(DATA_KIND, str(root), root))
            else:
                LOGGER.debug("extra backup path %s does not exist; skipping", root)
        return sources

    def _snapshot(
        self,
        sources: Sequence[_Source],
        *,
        label: str | None,
        output: Path | None,
    ) -> BackupResult:
        try:
            algorithm = resolve_algorithm(self.compression)
        except ArchiveError as exc:
            raise BackupError(str(exc)) from exc
        backup_id = self.registry.generate_identifier(label or self.target_name or "backup")
        archive_path = self._archive_path(backup_id, algorithm, output)
        self.registry.ensure_root()

        with tempfile.TemporaryDirectory(prefix="convergectl-backup-") as staging_name:
            staging = Path(staging_name)
            objects = staging / OBJECTS_DIR
            objects.mkdir()
            entries: list[ManifestEntry] = []
            seen: set[tuple[str, str]] = set()
            for source in sources:
                if (source.kind, source.identity) in seen:
                    continue
                seen.add((source.kind, source.identity))
                try:
                    info = source.path.stat()
                    data = source.path.read_bytes()
                except FileNotFoundError:
                    LOGGER.debug("%s is absent; not captured", source.path)
                    continue
                except OSError as exc:
                    raise BackupError(f"Cannot read {source.path}: {exc}") from exc
                digest = content_hash(data)
                (objects / digest).write_bytes(data)
                entries.append(
                    ManifestEntry(
                        kind=source.kind,
                        identity=source.identity,
                        path=str(source.path),
                        sha256=digest,
                        size=len(data),
                        mode=stat.S_IMODE(info.st_mode),
                    )
                )
            manifest = BackupManifest(
                entries=tuple(entries),
                created_at=_now_iso(),
                label=label,
                target=self.target_name,
            )
            (staging / MANIFEST_NAME).write_text(
                json.dumps(manifest.to_dict(), indent=2) + "\n", encoding="utf-8"
            )
            try:
                create_archive(staging, archive_path, algorithm, self.compression_level)
            except ArchiveError as exc:
                raise BackupError(str(exc)) from exc

        checksum = compute_checksum(archive_path)
        checksum_path = write_checksum_file(archive_path, checksum)
        size_bytes = archive_path.stat().st_size
        self.registry.append(
            {
                "id": backup_id,
                "created_at": manifest.created_at,
                "path": str(archive_path),
                "algorithm": algorithm,
                "size_bytes": size_bytes,
                "checksum": {"algorithm": "sha256", "value": checksum},
                "label": label,
                "target": self.target_name,
                "entries": len(manifest.entries),
                "status": "available",
            }
        )
        LOGGER.debug("backup %s written to %s", backup_id, archive_path)
        return BackupResult(
            backup_id=backup_id,
            archive=archive_path,
            checksum=checksum,
            checksum_path=checksum_path,
            manifest=manifest,
            size_bytes=size_bytes,
        )

    def _archive_path(self, backup_id: str, algorithm: str, output: Path | None) -> Path:
        filename = f"{backup_id}.{compression_extension(algorithm)}"
        if output is None:
            return self.registry.root / filename
        output = output.expanduser()
        if output.is_dir():
            return output / filename
        return output

    # Verify / restore ----------------------------------------------
    def verify_archive(self, archive: Path) -> BackupManifest:
        """Check *archive* against its checksum file and manifest without writing anywhere."""
        with tempfile.TemporaryDirectory(prefix="convergectl-verify-") as staging_name:
            return self._open_verified(archive, Path(staging_name))

    def restore(
        self,
        archive: Path,
        *,
        pre_backup: bool = True,
        on_verified: Callable[[BackupManifest], None] | None = None,
    ) -> RestoreResult:
        """Restore every file in *archive*, all or nothing.

        Raises :class:`IntegrityError` before any write when the archive
        fails verification.
        """
        with tempfile.TemporaryDirectory(prefix="convergectl-restore-") as staging_name:
            staging = Path(staging_name)
            manifest = self._open_verified(archive, staging)
            if on_verified is not None:
                on_verified(manifest)

            pre_restore: BackupResult | None = None
            if pre_backup and manifest.entries:
                pre_restore = self._snapshot(
                    [
                        _Source(entry.kind, entry.identity, Path(entry.path))
                        for entry in manifest.entries
                    ],
                    label="pre-restore",
                    output=None,
                )

            self._write_all(manifest, staging / OBJECTS_DIR)
        return RestoreResult(
            archive=archive,
            restored=manifest.entries,
            pre_restore=pre_restore,
        )

    def _open_verified(self, archive: Path, staging: Path) -> BackupManifest:
        archive = archive.expanduser()
        if not archive.is_file():
            raise IntegrityError(f"Archive {archive} does not exist.")
        recorded = read_checksum_file(archive)
        if recorded is not None:
            actual = compute_checksum(archive)
            if actual != recorded:
                raise IntegrityError(
                    f"Archive checksum mismatch for {archive}: expected {recorded}, got {actual}."
                )
        try:
            extract_archive(archive, staging, infer_algorithm(archive))
        except ArchiveError as exc:
            raise IntegrityError(str(exc)) from exc

        manifest_path = staging / MANIFEST_NAME
        try:
            raw = json.loads(manifest_path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise IntegrityError(f"Archive {archive} has no {MANIFEST_NAME}.") from exc
        except json.JSONDecodeError as exc:
            raise IntegrityError(f"Manifest in {archive} is not valid JSON: {exc}") from exc
        if not isinstance(raw, Mapping):
            raise IntegrityError(f"Manifest in {archive} must be a JSON object.")
        manifest = BackupManifest.from_dict(raw)

        objects = staging / OBJECTS_DIR
        for entry in manifest.entries:
            if not Path(entry.path).is_absolute():
                raise IntegrityError(f"Manifest entry {entry.key} has a relative path.")
            blob = objects / entry.sha256
            try:
                data = blob.read_bytes()
            except FileNotFoundError as exc:
                raise IntegrityError(f"Object for {entry.key} is missing from the archive.") from exc
            if len(data) != entry.size:
                raise IntegrityError(
                    f"Object for {entry.key} has {len(data)} bytes, manifest says {entry.size}."
                )
            if content_hash(data) != entry.sha256:
                raise IntegrityError(f"Object for {entry.key} does not match its sha256.")
        return manifest

    def _write_all(self, manifest: BackupManifest, objects: Path) -> None:
        written: list[tuple[Path, bytes | None, int | None]] = []
        try:
            for entry in manifest.entries:
                path = Path(entry.path)
                previous: bytes | None = None
                previous_mode: int | None = None
                if path.is_file():
                    previous = path.read_bytes()
                    previous_mode = stat.S_IMODE(path.stat().st_mode)
                atomic_write(
                    path,
                    (objects / entry.sha256).read_bytes(),
                    entry.mode if entry.mode is not None else DEFAULT_FILE_MODE,
                )
                written.append((path, previous, previous_mode))
        except OSError as exc:
            for path, previous, previous_mode in reversed(written):
                try:
                    if previous is None:
                        path.unlink(missing_ok=True)
                    else:
                        atomic_write(path, previous, previous_mode or DEFAULT_FILE_MODE)
                except OSError as undo_exc:
                    LOGGER.error("could not undo restore of %s: %s", path, undo_exc)
            raise BackupError(f"Restore aborted, previous files put back: {exc}") from exc

    # Index maintenance ---------------------------------------------
    def list_backups(self) -> list[dict[str, object]]:
        """Return index entries, newest first."""
        entries = self.registry.list_entries()
        entries.sort(key=lambda entry: _parse_iso(entry.get("created_at")), reverse=True)
        return entries

    def prune(self, keep: int, *, dry_run: bool = False) -> list[dict[str, object]]:
        """Remove all but the newest *keep* archives."""
        if keep < 0:
            raise BackupError("keep must be zero or a positive integer.")
        candidates = self.list_backups()[keep:]
        results: list[dict[str, object]] = []
        removed_ids: list[str] = []
        for entry in candidates:
            backup_id = str(entry.get("id", ""))
            path_value = entry.get("path")
            archive = Path(str(path_value)) if path_value else None
            result: dict[str, object] = {
                "id": backup_id,
                "path": str(archive) if archive else None,
            }
            if dry_run:
                result["status"] = "planned"
                results.append(result)
                continue
            if archive is not None:
                existed = archive.exists()
                archive.unlink(missing_ok=True)
                checksum_path_for(archive).unlink(missing_ok=True)
                result["status"] = "removed" if existed else "missing"
            else:
                result["status"] = "missing"
            removed_ids.append(backup_id)
            results.append(result)
        if removed_ids:
            self.registry.remove(removed_ids)
        return results


__all__ = [
    "BackupError",
    "BackupManager",
    "BackupManifest",
    "BackupRegistryError",
    "BackupResult",
    "BackupsRegistry",
    "IntegrityError",
    "ManifestEntry",
    "RestoreResult",
]
