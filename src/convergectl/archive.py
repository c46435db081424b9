"""Tarball helpers for backup archives.

Archives are produced and unpacked with the system ``tar`` binary so gzip
and zstd compression behave exactly as they do for operators on the
command line. Every archive gets a ``<archive>.sha256`` companion file in
``sha256sum`` format.
"""
from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
from pathlib import Path

ALGORITHMS = ("gzip", "zstd", "none")


class ArchiveError(RuntimeError):
    """Raised when tar cannot create or extract an archive."""


def detect_zstd_support() -> bool:
    """Return True when both tar and zstd binaries are available."""
    return shutil.which("tar") is not None and shutil.which("zstd") is not None


def resolve_algorithm(preference: str) -> str:
    """Map a configured compression preference onto a concrete algorithm."""
    candidate = preference.lower()
    if candidate == "auto":
        return "zstd" if detect_zstd_support() else "gzip"
    if candidate not in ALGORITHMS:
        raise ArchiveError(
            f"Unsupported compression '{preference}'. Allowed: auto, {', '.join(ALGORITHMS)}."
        )
    return candidate


def compression_extension(algorithm: str) -> str:
    """Return the archive file extension for *algorithm*."""
    if algorithm == "gzip":
        return "tar.gz"
    if algorithm == "zstd":
        return "tar.zst"
    return "tar"


def infer_algorithm(archive_path: Path) -> str:
    """Guess the compression of *archive_path* from its suffix."""
    name = archive_path.name.lower()
    if name.endswith((".tar.zst", ".tzst")):
        return "zstd"
    if name.endswith((".tar.gz", ".tgz")):
        return "gzip"
    return "none"


def create_archive(
    source_dir: Path,
    archive_path: Path,
    algorithm: str,
    compression_level: int | None = None,
) -> None:
    """Pack the contents of *source_dir* (not the directory itself) into *archive_path*."""
    tar_bin = _require_tar("create archives")
    env = os.environ.copy()
    cmd: list[str] = [tar_bin]
    if algorithm == "gzip":
        cmd.extend(["-czf", str(archive_path)])
        if compression_level is not None:
            env["GZIP"] = f"-{compression_level}"
    elif algorithm == "zstd":
        cmd.extend(["--zstd", "-cf", str(archive_path)])
        if compression_level is not None:
            env["ZSTD_CLEVEL"] = str(compression_level)
    else:
        cmd.extend(["-cf", str(archive_path)])
    cmd.extend(["-C", str(source_dir), "."])

    archive_path.parent.mkdir(parents=True, exist_ok=True)
    result = subprocess.run(  # noqa: S603, S607 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        env=env,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise ArchiveError(message.strip())

    try:
        os.chmod(archive_path, 0o640)
    except OSError:
        pass


def extract_archive(archive_path: Path, destination: Path, algorithm: str | None = None) -> None:
    """Unpack *archive_path* into *destination*."""
    tar_bin = _require_tar("extract archives")
    effective = algorithm or infer_algorithm(archive_path)
    destination.mkdir(parents=True, exist_ok=True)
    cmd: list[str] = [tar_bin]
    if effective == "zstd":
        cmd.extend(["--zstd", "-xf", str(archive_path)])
    elif effective == "gzip":
        cmd.extend(["-xzf", str(archive_path)])
    else:
        cmd.extend(["-xf", str(archive_path)])
    cmd.extend(["--no-same-owner", "-C", str(destination)])

    result = subprocess.run(  # noqa: S603, S607 - controlled command
        cmd,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "tar extraction failed").strip()
        raise ArchiveError(f"Failed to extract {archive_path}: {message}")


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def checksum_path_for(archive_path: Path) -> Path:
    """Return the ``<archive>.sha256`` companion path."""
    return archive_path.with_name(f"{archive_path.name}.sha256")


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = checksum_path_for(archive_path)
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    try:
        os.chmod(checksum_path, 0o640)
    except OSError:
        pass
    return checksum_path


def read_checksum_file(archive_path: Path) -> str | None:
    """Return the recorded checksum for *archive_path*, if a companion file exists."""
    checksum_path = checksum_path_for(archive_path)
    try:
        text = checksum_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    fields = text.split()
    return fields[0].lower() if fields else None


def _require_tar(purpose: str) -> str:
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError(f"The 'tar' command is required to {purpose}.")
    return tar_bin


__all__ = [
    "ALGORITHMS",
    "ArchiveError",
    "checksum_path_for",
    "compression_extension",
    "compute_checksum",
    "create_archive",
    "detect_zstd_support",
    "extract_archive",
    "infer_algorithm",
    "read_checksum_file",
    "resolve_algorithm",
    "write_checksum_file",
]
