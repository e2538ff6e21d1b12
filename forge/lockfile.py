"""Lock snapshot: which versions a resolution produced, per format."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from functools import cmp_to_key
from pathlib import Path
from typing import Any

import structlog

from forge.exceptions import LockWriteFailure
from forge.models import DependencyGraph
from forge.versions import compare_versions

log = structlog.get_logger("forge.lockfile")


def split_key(key: str) -> tuple[str, str]:
    """``"@scope/pkg@^1.0"`` -> ``("@scope/pkg", "^1.0")``."""
    name, sep, constraint = key.rpartition("@")
    if not sep or not name:
        return key, "*"
    return name, constraint


@dataclass
class LockEntry:
    version: str
    resolved: str
    integrity: str | None = None
    dependencies: dict[str, str] = field(default_factory=dict)  # child name -> constraint

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"version": self.version, "resolved": self.resolved}
        if self.integrity:
            data["integrity"] = self.integrity
        if self.dependencies:
            data["dependencies"] = dict(self.dependencies)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LockEntry:
        return cls(
            version=str(data.get("version", "")),
            resolved=str(data.get("resolved", "")),
            integrity=data.get("integrity"),
            dependencies=dict(data.get("dependencies") or {}),
        )


@dataclass
class LockFile:
    version: str
    packages: dict[str, LockEntry] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "packages": {name: entry.to_dict() for name, entry in sorted(self.packages.items())},
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LockFile:
        packages = data.get("packages") or {}
        return cls(
            version=str(data.get("version", "")),
            packages={name: LockEntry.from_dict(entry) for name, entry in packages.items()},
            metadata=dict(data.get("metadata") or {}),
        )

    def write(self, path: Path) -> None:
        """Atomically write the lock as JSON. Raises :class:`LockWriteFailure`."""
        tmp = path.with_name(f".{path.name}.tmp")
        try:
            tmp.write_text(json.dumps(self.to_dict(), indent=2) + "\n", encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise LockWriteFailure(f"Cannot write {path}: {exc}") from exc
        log.info("lock.written", path=str(path), packages=len(self.packages))

    @classmethod
    def read(cls, path: Path) -> LockFile | None:
        """Load a lock file; None when absent or unreadable."""
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            log.warning("lock.read_failed", path=str(path), error=str(exc))
            return None
        if not isinstance(data, dict):
            return None
        return cls.from_dict(data)


def build_lock(
    graph: DependencyGraph, version: str, metadata: dict[str, Any] | None = None
) -> LockFile:
    """Snapshot *graph*.

    Entries are keyed by package name. When one name resolved to several
    versions (different constraints), the highest keeps the bare name and
    the others are keyed ``name@version``.
    """
    by_name: dict[str, list[LockEntry]] = {}
    for node in graph.nodes.values():
        pkg = node.package
        children = dict(split_key(k) for k in node.dependencies)
        entry = LockEntry(
            version=pkg.version,
            resolved=pkg.download_url,
            integrity=pkg.integrity,
            dependencies=children,
        )
        entries = by_name.setdefault(pkg.name, [])
        if all(e.version != entry.version for e in entries):
            entries.append(entry)

    packages: dict[str, LockEntry] = {}
    for name, entries in by_name.items():
        best = max(entries, key=cmp_to_key(lambda a, b: compare_versions(a.version, b.version)))
        packages[name] = best
        for e in entries:
            if e is not best:
                packages[f"{name}@{e.version}"] = e
    return LockFile(version=version, packages=packages, metadata=dict(metadata or {}))


@dataclass
class LockDiff:
    added: dict[str, str] = field(default_factory=dict)
    removed: dict[str, str] = field(default_factory=dict)
    changed: dict[str, tuple[str, str]] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return not (self.added or self.removed or self.changed)


def diff_locks(old: LockFile | None, new: LockFile) -> LockDiff:
    before = {n: e.version for n, e in (old.packages.items() if old else ())}
    after = {n: e.version for n, e in new.packages.items()}
    diff = LockDiff()
    for name, version in after.items():
        if name not in before:
            diff.added[name] = version
        elif before[name] != version:
            diff.changed[name] = (before[name], version)
    for name, version in before.items():
        if name not in after:
            diff.removed[name] = version
    return diff
