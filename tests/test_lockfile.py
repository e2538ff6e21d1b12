"""Tests for lock snapshots."""

from __future__ import annotations

import json

import pytest

from forge.exceptions import LockWriteFailure
from forge.lockfile import LockEntry, LockFile, build_lock, diff_locks, split_key
from forge.models import DependencyGraph, ResolvedPackage


def pkg(name: str, version: str, integrity: str | None = None) -> ResolvedPackage:
    return ResolvedPackage(
        name=name,
        version=version,
        registry="https://npm.test",
        download_url=f"https://npm.test/{name}/-/{name}-{version}.tgz",
        integrity=integrity,
    )


def graph() -> DependencyGraph:
    g = DependencyGraph(root="app")
    g.add("a@^1.0.0", pkg("a", "1.2.0", "sha512-abc"), ["b@^1.0.0", "@scope/c@~2.0.0"])
    g.add("b@^1.0.0", pkg("b", "1.0.0"), [])
    g.add("@scope/c@~2.0.0", pkg("@scope/c", "2.0.3"), [])
    return g


class TestSplitKey:
    def test_plain(self):
        assert split_key("lodash@^4.0.0") == ("lodash", "^4.0.0")

    def test_scoped(self):
        assert split_key("@scope/pkg@^1.0") == ("@scope/pkg", "^1.0")

    def test_no_constraint(self):
        assert split_key("lodash") == ("lodash", "*")


class TestBuildLock:
    def test_entries_keyed_by_name(self):
        lock = build_lock(graph(), "3.0.0", {"lockfileVersion": 3})
        assert set(lock.packages) == {"a", "b", "@scope/c"}
        a = lock.packages["a"]
        assert a.version == "1.2.0"
        assert a.integrity == "sha512-abc"
        assert a.dependencies == {"b": "^1.0.0", "@scope/c": "~2.0.0"}
        assert lock.metadata == {"lockfileVersion": 3}

    def test_multiple_versions_of_one_name(self):
        g = DependencyGraph(root="app")
        g.add("c@^1.0.0", pkg("c", "1.4.0"), [])
        g.add("c@*", pkg("c", "2.0.0"), [])
        g.add("c@~1.4.0", pkg("c", "1.4.0"), [])
        lock = build_lock(g, "3.0.0")
        assert lock.packages["c"].version == "2.0.0"
        assert lock.packages["c@1.4.0"].version == "1.4.0"
        assert len(lock.packages) == 2

    def test_serialised_sorted(self):
        data = build_lock(graph(), "3.0.0").to_dict()
        assert list(data["packages"]) == ["@scope/c", "a", "b"]
        assert "integrity" not in data["packages"]["b"]
        assert "dependencies" not in data["packages"]["b"]


class TestReadWrite:
    def test_write_then_read(self, tmp_path):
        path = tmp_path / "forge-node-lock.json"
        lock = build_lock(graph(), "3.0.0", {"requires": True})
        lock.write(path)
        assert json.loads(path.read_text())["version"] == "3.0.0"
        assert LockFile.read(path).to_dict() == lock.to_dict()
        assert not list(tmp_path.glob(".*.tmp"))

    def test_read_missing(self, tmp_path):
        assert LockFile.read(tmp_path / "nope.json") is None

    def test_read_corrupt(self, tmp_path):
        path = tmp_path / "lock.json"
        path.write_text("{not json")
        assert LockFile.read(path) is None

    def test_write_failure(self, tmp_path):
        lock = LockFile(version="1.0.0")
        with pytest.raises(LockWriteFailure):
            lock.write(tmp_path / "missing-dir" / "lock.json")


class TestDiff:
    def test_added_removed_changed(self):
        old = LockFile(
            version="3.0.0",
            packages={
                "a": LockEntry("1.0.0", "u"),
                "b": LockEntry("1.0.0", "u"),
            },
        )
        new = LockFile(
            version="3.0.0",
            packages={
                "a": LockEntry("1.1.0", "u"),
                "c": LockEntry("2.0.0", "u"),
            },
        )
        diff = diff_locks(old, new)
        assert diff.added == {"c": "2.0.0"}
        assert diff.removed == {"b": "1.0.0"}
        assert diff.changed == {"a": ("1.0.0", "1.1.0")}
        assert not diff.empty

    def test_no_previous_lock(self):
        diff = diff_locks(None, build_lock(graph(), "3.0.0"))
        assert set(diff.added) == {"a", "b", "@scope/c"}

    def test_identical(self):
        assert diff_locks(build_lock(graph(), "3.0.0"), build_lock(graph(), "3.0.0")).empty
