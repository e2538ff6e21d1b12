"""Content-addressed artifact cache and atomic install placement.

Artifacts live at ``<root>/<format>/<safe-name>-<version><suffix>``. A file
at its final path is always complete: downloads stream into a hidden temp
file beside it and are moved into place with :func:`os.replace`.
"""

from __future__ import annotations

import base64
import hashlib
import os
import shutil
import tempfile
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from pathlib import Path

import structlog

from forge.exceptions import IntegrityError

log = structlog.get_logger("forge.cache")

_TMP_SUFFIX = ".part"


def format_bytes(size: int) -> str:
    """Human-readable size: ``0 B``, ``1.5 KB``, ``12.3 MB``."""
    if size <= 0:
        return "0 B"
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{int(value)} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


@dataclass
class CacheInfo:
    directory: Path
    size: int
    file_count: int

    @property
    def human_size(self) -> str:
        return format_bytes(self.size)


# ── integrity ──────────────────────────────────────────────────────────────


class _Digest:
    """Incremental verifier for an SRI string or a bare hex digest."""

    def __init__(self, integrity: str) -> None:
        self.integrity = integrity
        if "-" in integrity and integrity.split("-", 1)[0] in hashlib.algorithms_available:
            algo, encoded = integrity.split("-", 1)
            self._hasher = hashlib.new(algo)
            self._expected = encoded
            self._encoding = "base64"
        else:
            algo = {40: "sha1", 64: "sha256", 128: "sha512"}.get(len(integrity))
            if algo is None:
                raise IntegrityError(f"unrecognised integrity value: {integrity!r}")
            self._hasher = hashlib.new(algo)
            self._expected = integrity.lower()
            self._encoding = "hex"

    def update(self, chunk: bytes) -> None:
        self._hasher.update(chunk)

    def verify(self) -> None:
        digest = self._hasher.digest()
        actual = base64.b64encode(digest).decode() if self._encoding == "base64" else digest.hex()
        if actual != self._expected:
            raise IntegrityError(f"integrity mismatch: expected {self.integrity}, got {actual}")


# ── cache ──────────────────────────────────────────────────────────────────


class PackageCache:
    """On-disk artifact store shared by every adapter.

    Only :meth:`clear` deletes artifacts; fetch never overwrites a file that
    is already present.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser()

    def namespace(self, fmt: str) -> Path:
        return self.root / fmt

    def artifact_path(self, fmt: str, safe_name: str, version: str, suffix: str) -> Path:
        return self.namespace(fmt) / f"{safe_name}-{version}{suffix}"

    async def fetch(
        self,
        path: Path,
        source: Callable[[], AsyncIterator[bytes]],
        integrity: str | None = None,
    ) -> Path:
        """Ensure *path* exists, downloading it from *source* when absent.

        *source* is only called on a cache miss. When another writer placed
        the file while this one was downloading, the temp file is dropped
        and the existing artifact is returned.
        """
        if path.is_file():
            log.debug("fetch.cache_hit", path=str(path))
            return path

        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}{_TMP_SUFFIX}")
        digest = _Digest(integrity) if integrity else None
        try:
            with open(tmp, "wb") as fh:
                async for chunk in source():
                    fh.write(chunk)
                    if digest is not None:
                        digest.update(chunk)
            if digest is not None:
                digest.verify()
            if path.exists():
                log.debug("fetch.duplicate_writer", path=str(path))
                tmp.unlink(missing_ok=True)
                return path
            os.replace(tmp, path)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        log.info("fetch.stored", path=str(path), size=path.stat().st_size)
        return path

    def clear(self, fmt: str | None = None) -> int:
        """Delete cached artifacts (one namespace or all). Returns files removed."""
        target = self.namespace(fmt) if fmt else self.root
        removed = self.info(fmt).file_count
        if target.exists():
            shutil.rmtree(target)
        target.mkdir(parents=True, exist_ok=True)
        log.info("cache.cleared", directory=str(target), files=removed)
        return removed

    def info(self, fmt: str | None = None) -> CacheInfo:
        target = self.namespace(fmt) if fmt else self.root
        size = 0
        count = 0
        if target.exists():
            for entry in target.rglob("*"):
                if entry.is_file() and not entry.name.endswith(_TMP_SUFFIX):
                    size += entry.stat().st_size
                    count += 1
        return CacheInfo(directory=target, size=size, file_count=count)


# ── install placement ──────────────────────────────────────────────────────


def make_staging_dir(parent: Path) -> Path:
    """Empty hidden directory inside *parent*, on the install target's filesystem."""
    parent.mkdir(parents=True, exist_ok=True)
    return Path(tempfile.mkdtemp(prefix=".forge-staging-", dir=parent))


def place_directory(staging: Path, target: Path) -> None:
    """Move a fully populated *staging* directory to *target*.

    An existing *target* is renamed aside first and deleted only after the
    new directory is in place, so *target* is never half-written.
    """
    old: Path | None = None
    if target.exists():
        old = target.with_name(f".{target.name}.old-{uuid.uuid4().hex[:8]}")
        os.replace(target, old)
    try:
        os.replace(staging, target)
    except OSError:
        if old is not None:
            os.replace(old, target)
        raise
    if old is not None:
        shutil.rmtree(old, ignore_errors=True)
