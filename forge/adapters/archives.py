"""Safe archive extraction for tarballs and wheels."""

from __future__ import annotations

import shutil
import tarfile
import zipfile
from pathlib import Path, PurePosixPath

from forge.exceptions import ForgeError


class ArchiveError(ForgeError):
    """Raised when an archive is unreadable or contains an unsafe path."""


def _safe_relpath(name: str, strip: int) -> PurePosixPath | None:
    """Member path with *strip* leading components removed.

    Returns None for the stripped root itself. Absolute paths and ``..``
    segments are rejected.
    """
    path = PurePosixPath(name.replace("\\", "/"))
    if path.is_absolute() or ".." in path.parts:
        raise ArchiveError(f"unsafe path in archive: {name!r}")
    parts = path.parts[strip:]
    if not parts:
        return None
    return PurePosixPath(*parts)


def extract_tar(archive: Path, dest: Path, strip: int = 1) -> None:
    """Extract regular files and directories of a gzip tarball into *dest*.

    Links and device nodes are skipped.
    """
    try:
        with tarfile.open(archive, "r:*") as tar:
            for member in tar:
                rel = _safe_relpath(member.name, strip)
                if rel is None:
                    continue
                target = dest.joinpath(*rel.parts)
                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                elif member.isfile():
                    target.parent.mkdir(parents=True, exist_ok=True)
                    src = tar.extractfile(member)
                    if src is None:
                        continue
                    with src, open(target, "wb") as out:
                        shutil.copyfileobj(src, out)
                    target.chmod(0o755 if member.mode & 0o111 else 0o644)
    except (tarfile.TarError, OSError) as exc:
        raise ArchiveError(f"cannot extract {archive.name}: {exc}") from exc


def extract_zip(archive: Path, dest: Path) -> None:
    try:
        with zipfile.ZipFile(archive) as zf:
            for info in zf.infolist():
                rel = _safe_relpath(info.filename, 0)
                if rel is None:
                    continue
                target = dest.joinpath(*rel.parts)
                if info.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, open(target, "wb") as out:
                    shutil.copyfileobj(src, out)
    except (zipfile.BadZipFile, OSError) as exc:
        raise ArchiveError(f"cannot extract {archive.name}: {exc}") from exc


def read_tar_member(archive: Path, path: str, strip: int = 1) -> bytes | None:
    """Contents of the regular file at *path* (after stripping), without extracting."""
    try:
        with tarfile.open(archive, "r:*") as tar:
            for member in tar:
                if not member.isfile() or _safe_relpath(member.name, strip) != PurePosixPath(path):
                    continue
                src = tar.extractfile(member)
                if src is None:
                    return None
                with src:
                    return src.read()
    except (tarfile.TarError, OSError) as exc:
        raise ArchiveError(f"cannot read {archive.name}: {exc}") from exc
    return None


def read_zip_member(archive: Path, suffix: str) -> bytes | None:
    """Contents of the first member whose name ends with *suffix*."""
    try:
        with zipfile.ZipFile(archive) as zf:
            for info in zf.infolist():
                if info.filename.endswith(suffix) and not info.is_dir():
                    return zf.read(info)
    except (zipfile.BadZipFile, OSError) as exc:
        raise ArchiveError(f"cannot read {archive.name}: {exc}") from exc
    return None
