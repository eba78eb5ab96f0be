"""Tarball and checksum helpers for backup archives."""
from __future__ import annotations

import hashlib
import os
from pathlib import Path

from ..process import Command, CommandError, CommandRunner
from .models import BackupError


def compression_extension(algorithm: str) -> str:
    """Return the archive file extension for *algorithm*."""
    if algorithm == "gzip":
        return "tar.gz"
    return "tar"


def create_archive(
    source_dir: Path,
    archive_path: Path,
    algorithm: str,
    *,
    runner: CommandRunner,
    tar_bin: str = "tar",
) -> None:
    """Create an archive from *source_dir* at *archive_path*."""
    flags = "-czf" if algorithm == "gzip" else "-cf"
    command = Command.of(
        tar_bin, flags, archive_path, "-C", source_dir.parent, source_dir.name
    )
    try:
        result = runner.run(command)
    except CommandError as exc:
        raise BackupError(f"The 'tar' command is required to create archives: {exc}") from exc
    if not result.ok:
        raise BackupError(result.message())

    try:
        os.chmod(archive_path, 0o640)
    except OSError:
        pass


def extract_archive(
    archive_path: Path,
    destination: Path,
    *,
    runner: CommandRunner,
    tar_bin: str = "tar",
) -> None:
    """Unpack *archive_path* into *destination*."""
    destination.mkdir(parents=True, exist_ok=True)
    flags = "-xzf" if archive_path.name.endswith(".gz") else "-xf"
    try:
        result = runner.run(Command.of(tar_bin, flags, archive_path, "-C", destination))
    except CommandError as exc:
        raise BackupError(f"The 'tar' command is required to extract archives: {exc}") from exc
    if not result.ok:
        raise BackupError(f"Failed to extract {archive_path}: {result.message()}")


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def directory_checksum(root: Path, *, exclude: frozenset[str] = frozenset()) -> str:
    """Return one SHA-256 over every file below *root* (relative path + content)."""
    digest = hashlib.sha256()
    for path in sorted(p for p in root.rglob("*") if p.is_file()):
        relative = path.relative_to(root).as_posix()
        if relative in exclude:
            continue
        digest.update(relative.encode("utf-8"))
        digest.update(b"\0")
        with path.open("rb") as handle:
            for chunk in iter(lambda: handle.read(1024 * 1024), b""):
                digest.update(chunk)
    return digest.hexdigest()


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = archive_path.with_name(f"{archive_path.name}.sha256")
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    try:
        os.chmod(checksum_path, 0o640)
    except OSError:
        pass
    return checksum_path


def tree_size(root: Path) -> tuple[int, list[str]]:
    """Return total bytes and relative file names below *root*."""
    if not root.exists():
        return 0, []
    files = sorted(p for p in root.rglob("*") if p.is_file())
    return (
        sum(path.stat().st_size for path in files),
        [path.relative_to(root).as_posix() for path in files],
    )


__all__ = [
    "compression_extension",
    "compute_checksum",
    "create_archive",
    "directory_checksum",
    "extract_archive",
    "tree_size",
    "write_checksum_file",
]
