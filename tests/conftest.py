"""Shared pytest fixtures: config snapshots, fake registries, artifact builders."""

from __future__ import annotations

import base64
import hashlib
import io
import json
import tarfile
import zipfile
from pathlib import Path

import httpx
import pytest
from packaging.version import Version

from forge.core.config import ForgeConfig
from forge.models import OperationContext

NPM_URL = "https://npm.test"
PYPI_URL = "https://pypi.test"


def sri(data: bytes) -> str:
    return "sha512-" + base64.b64encode(hashlib.sha512(data).digest()).decode()


def npm_tarball(name: str, version: str, files: dict[str, str] | None = None) -> bytes:
    content = {
        "package.json": json.dumps({"name": name, "version": version}),
        "index.js": "module.exports = {};\n",
        **(files or {}),
    }
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for rel, text in content.items():
            data = text.encode()
            info = tarfile.TarInfo(f"package/{rel}")
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def wheel_bytes(name: str, version: str) -> bytes:
    pkg = name.replace("-", "_")
    dist = f"{pkg}-{version}.dist-info"
    files = {
        f"{pkg}/__init__.py": f"__version__ = {version!r}\n",
        f"{dist}/METADATA": f"Metadata-Version: 2.1\nName: {name}\nVersion: {version}\n\n",
        f"{dist}/WHEEL": "Wheel-Version: 1.0\nRoot-Is-Purelib: true\n",
    }
    files[f"{dist}/RECORD"] = "".join(f"{p},,\n" for p in files) + f"{dist}/RECORD,,\n"
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for path, text in files.items():
            zf.writestr(path, text)
    return buf.getvalue()


def sdist_bytes(name: str, version: str) -> bytes:
    pkg = name.replace("-", "_")
    root = f"{name}-{version}"
    files = {
        f"{root}/PKG-INFO": f"Metadata-Version: 2.1\nName: {name}\nVersion: {version}\n\n",
        f"{root}/src/{pkg}/__init__.py": f"__version__ = {version!r}\n",
        f"{root}/setup.py": "from setuptools import setup\nsetup()\n",
    }
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for path, text in files.items():
            data = text.encode()
            info = tarfile.TarInfo(path)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


# ── fake registries ───────────────────────────────────────────────────────


class FakeNpmRegistry:
    """In-memory npm registry served through :class:`httpx.MockTransport`."""

    def __init__(self, base: str = NPM_URL) -> None:
        self.base = base
        self.documents: dict[str, dict] = {}
        self.tarballs: dict[str, bytes] = {}
        self.broken: set[str] = set()
        self.requests: list[httpx.Request] = []

    def publish(
        self,
        name: str,
        version: str,
        dependencies: dict[str, str] | None = None,
        deprecated: str | None = None,
    ) -> None:
        data = npm_tarball(name, version)
        path = f"/{name}/-/{name.split('/')[-1]}-{version}.tgz"
        self.tarballs[path] = data
        meta = {
            "name": name,
            "version": version,
            "dependencies": dependencies or {},
            "dist": {"tarball": self.base + path, "integrity": sri(data)},
        }
        if deprecated:
            meta["deprecated"] = deprecated
        doc = self.documents.setdefault(name, {"name": name, "versions": {}, "dist-tags": {}})
        doc["versions"][version] = meta
        doc["dist-tags"]["latest"] = max(doc["versions"], key=Version)

    def break_tarball(self, name: str, version: str) -> None:
        self.broken.add(f"/{name}/-/{name.split('/')[-1]}-{version}.tgz")

    def tarball_requests(self) -> list[str]:
        return [r.url.path for r in self.requests if r.url.path.endswith(".tgz")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.broken:
            return httpx.Response(404)
        if path in self.tarballs:
            return httpx.Response(200, content=self.tarballs[path])
        if path == "/-/v1/search":
            text = request.url.params.get("text", "")
            objects = [
                {
                    "package": {
                        "name": name,
                        "version": doc["dist-tags"]["latest"],
                        "description": f"{name} package",
                    },
                    "score": {"final": 0.5 if text in name else 0.1},
                }
                for name, doc in self.documents.items()
            ]
            return httpx.Response(200, json={"objects": objects})
        doc = self.documents.get(path.lstrip("/"))
        if doc is None:
            return httpx.Response(404, json={"error": "Not found"})
        return httpx.Response(200, json=doc)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class FakePyPI:
    """In-memory PyPI JSON API serving pure-Python wheels."""

    def __init__(self, base: str = PYPI_URL) -> None:
        self.base = base
        self.releases: dict[str, dict[str, list[str]]] = {}
        self.files: dict[str, bytes] = {}
        self.yanked: dict[tuple[str, str], str] = {}
        self.requests: list[httpx.Request] = []

    def publish(self, name: str, version: str, requires_dist: list[str] | None = None) -> None:
        self.releases.setdefault(name, {})[version] = list(requires_dist or [])
        filename = f"{name.replace('-', '_')}-{version}-py3-none-any.whl"
        self.files[f"/files/{filename}"] = wheel_bytes(name, version)

    def yank(self, name: str, version: str, reason: str = "") -> None:
        self.yanked[(name, version)] = reason

    def _file_entry(self, name: str, version: str) -> dict:
        filename = f"{name.replace('-', '_')}-{version}-py3-none-any.whl"
        data = self.files[f"/files/{filename}"]
        return {
            "filename": filename,
            "packagetype": "bdist_wheel",
            "url": f"{self.base}/files/{filename}",
            "digests": {"sha256": hashlib.sha256(data).hexdigest()},
            "yanked": (name, version) in self.yanked,
            "yanked_reason": self.yanked.get((name, version)),
        }

    def _info(self, name: str, version: str) -> dict:
        return {
            "name": name,
            "version": version,
            "summary": f"{name} summary",
            "requires_dist": self.releases[name][version] or None,
            "license": "MIT",
            "project_urls": {"Source": f"https://git.test/{name}"},
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.files:
            return httpx.Response(200, content=self.files[path])
        parts = path.strip("/").split("/")
        if len(parts) >= 3 and parts[0] == "pypi" and parts[1] in self.releases:
            name = parts[1]
            versions = self.releases[name]
            if len(parts) == 4 and parts[2] in versions:
                return httpx.Response(200, json={"info": self._info(name, parts[2])})
            if len(parts) == 3:
                latest = max(versions, key=Version)
                return httpx.Response(
                    200,
                    json={
                        "info": self._info(name, latest),
                        "releases": {v: [self._file_entry(name, v)] for v in versions},
                    },
                )
        return httpx.Response(404, json={"message": "Not Found"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


# ── fixtures ──────────────────────────────────────────────────────────────


@pytest.fixture
def config(tmp_path: Path) -> ForgeConfig:
    return ForgeConfig.model_validate(
        {
            "registries": {
                "npm": {"url": NPM_URL, "scope": "node"},
                "pypi": {"url": PYPI_URL, "scope": "python"},
            },
            "cache": {"directory": str(tmp_path / "cache")},
            "install": {"parallel": 2, "retries": 1},
        }
    )


@pytest.fixture
def project(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def context(project: Path, config: ForgeConfig) -> OperationContext:
    return OperationContext(cwd=project, config=config)


@pytest.fixture
def npm_registry() -> FakeNpmRegistry:
    return FakeNpmRegistry()


@pytest.fixture
def pypi() -> FakePyPI:
    return FakePyPI()


@pytest.fixture
def venv(project: Path) -> Path:
    """A pre-built venv skeleton so installs never spawn ``python -m venv``."""
    root = project / "venv"
    site = root / "lib" / "python3.12" / "site-packages"
    site.mkdir(parents=True)
    (root / "pyvenv.cfg").write_text("home = /usr/bin\n")
    return site
