"""npm-registry adapter: package.json manifests, node_modules layout."""

from __future__ import annotations

import asyncio
import json
import re
import shutil
from pathlib import Path
from typing import Any
from urllib.parse import quote

import structlog

from forge.adapters.archives import extract_tar, read_tar_member
from forge.adapters.base import FormatAdapter
from forge.cache import make_staging_dir, place_directory
from forge.exceptions import ForgeError, ManifestError, RegistryError
from forge.http import RegistryClient
from forge.models import (
    Dependency,
    DependencyScope,
    InstalledPackage,
    InstallResult,
    Manifest,
    OperationContext,
    PackageRegistryInfo,
    PackageSearchResult,
    ResolvedPackage,
    VersionRecord,
    VersionSet,
)
from forge.resolution import ResolutionPolicy
from forge.versions import Dialect

log = structlog.get_logger("forge.adapters.node")

MANIFEST = "package.json"
INSTALL_DIR = "node_modules"

# Abbreviated metadata document; falls back to full JSON on registries without it.
_CORGI_ACCEPT = "application/vnd.npm.install-v1+json; q=1.0, application/json; q=0.8, */*"

_SCOPE_FIELDS = {
    "dependencies": DependencyScope.PRODUCTION,
    "devDependencies": DependencyScope.DEVELOPMENT,
    "peerDependencies": DependencyScope.PEER,
    "optionalDependencies": DependencyScope.OPTIONAL,
}


def _dependencies(raw: Any, scope: DependencyScope = DependencyScope.PRODUCTION) -> list[Dependency]:
    if not isinstance(raw, dict):
        return []
    return [Dependency(name=n, constraint=str(c) or "*", scope=scope) for n, c in raw.items()]


def split_spec(spec: str) -> tuple[str, str]:
    """``"lodash@^4"`` -> ``("lodash", "^4")``; scoped names keep their ``@``."""
    spec = spec.strip()
    head, sep, tail = spec[1:].partition("@") if spec.startswith("@") else spec.partition("@")
    if spec.startswith("@"):
        head = "@" + head
    return head, (tail if sep and tail else "*")


class NpmSource:
    """Registry view over npm packuments."""

    def __init__(self, client: RegistryClient) -> None:
        self.client = client
        self.registry_url = client.base_url

    async def get_versions(self, name: str) -> VersionSet:
        doc = await self.client.get_json(quote(name, safe="@"), headers={"Accept": _CORGI_ACCEPT})
        if not isinstance(doc, dict) or not isinstance(doc.get("versions"), dict):
            raise RegistryError(f"malformed registry document for {name}")
        versions: dict[str, VersionRecord] = {}
        for version, meta in doc["versions"].items():
            dist = meta.get("dist") or {}
            tarball = dist.get("tarball")
            if not tarball:
                continue
            deprecated = meta.get("deprecated")
            versions[version] = VersionRecord(
                version=version,
                download_url=tarball,
                dependencies=tuple(_dependencies(meta.get("dependencies"))),
                integrity=dist.get("integrity") or dist.get("shasum"),
                deprecated=deprecated if isinstance(deprecated, str) and deprecated else None,
            )
        return VersionSet(name=doc.get("name", name), versions=versions, dist_tags=dict(doc.get("dist-tags") or {}))

    async def get_record(self, version_set: VersionSet, version: str) -> VersionRecord:
        return version_set.versions[version]


class NodeAdapter(FormatAdapter):
    name = "node"
    version = "1.0.0"
    supported_formats = ("node", "nodejs", "javascript")
    cache_namespace = "node"
    lock_filename = "forge-node-lock.json"
    lock_version = "3.0.0"
    registry_scope = "node"
    default_registry_url = "https://registry.npmjs.org"
    resolution_policy = ResolutionPolicy.DEEP
    dialect = Dialect.NPM
    resolve_scopes = (
        DependencyScope.PRODUCTION,
        DependencyScope.DEVELOPMENT,
        DependencyScope.OPTIONAL,
    )

    def can_handle(self, directory: Path) -> bool:
        try:
            return (directory / MANIFEST).is_file()
        except OSError:
            return False

    def parse_manifest(self, directory: Path) -> Manifest:
        path = directory / MANIFEST
        if not path.is_file():
            log.debug("manifest.synthetic", directory=str(directory))
            return Manifest.synthetic(directory)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ManifestError(f"Cannot parse {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ManifestError(f"{path} must contain a JSON object")

        manifest = Manifest(
            name=data.get("name") or directory.name or "forge-project",
            version=data.get("version") or "1.0.0",
            description=data.get("description"),
            scripts=dict(data.get("scripts") or {}),
            metadata=data,
        )
        for field_name, scope in _SCOPE_FIELDS.items():
            manifest.by_scope(scope).extend(_dependencies(data.get(field_name), scope))
        return manifest

    def requested_dependency(self, spec: str, scope: DependencyScope) -> Dependency:
        name, constraint = split_spec(spec)
        return Dependency(name=name, constraint=constraint, scope=scope)

    def version_source(self, client: RegistryClient) -> NpmSource:
        return NpmSource(client)

    def safe_name(self, name: str) -> str:
        return re.sub(r"[@/]", "-", name)

    def lock_metadata(self) -> dict[str, object]:
        return {"lockfileVersion": 3, "requires": True}

    # ── install layout ─────────────────────────────────────────────────────

    @staticmethod
    def package_dir(node_modules: Path, name: str) -> Path:
        if name.startswith("@") and "/" in name:
            scope, _, bare = name.partition("/")
            return node_modules / scope / bare
        return node_modules / name

    @staticmethod
    def _read_package_json(directory: Path) -> dict[str, Any] | None:
        try:
            data = json.loads((directory / MANIFEST).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        return data if isinstance(data, dict) else None

    @staticmethod
    def _archive_identity(archive: Path) -> tuple[str, str]:
        raw = read_tar_member(archive, MANIFEST, strip=1)
        try:
            info = json.loads(raw) if raw is not None else None
        except (UnicodeDecodeError, json.JSONDecodeError):
            info = None
        if not isinstance(info, dict) or not info.get("name") or not info.get("version"):
            raise ForgeError(f"{archive.name} has no usable package.json")
        return str(info["name"]), str(info["version"])

    def _install_one(self, archive: Path, node_modules: Path) -> tuple[str, str, str]:
        """Extract *archive* and move it into place. Returns (name, version, status)."""
        name, version = self._archive_identity(archive)
        target = self.package_dir(node_modules, name)
        existing = self._read_package_json(target) if target.is_dir() else None
        if existing and existing.get("name") == name and existing.get("version") == version:
            return name, version, "skipped"

        staging = make_staging_dir(node_modules)
        try:
            extract_tar(archive, staging, strip=1)
            target.parent.mkdir(parents=True, exist_ok=True)
            place_directory(staging, target)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)
        return name, version, ("updated" if existing else "installed")

    async def install_artifacts(
        self, paths: list[Path], manifest: Manifest, context: OperationContext
    ) -> InstallResult:
        result = InstallResult()
        node_modules = context.cwd / INSTALL_DIR
        node_modules.mkdir(parents=True, exist_ok=True)
        registry = self.registry_url(context)

        for archive in paths:
            try:
                name, version, status = await asyncio.to_thread(
                    self._install_one, archive, node_modules
                )
            except (ForgeError, OSError) as exc:
                log.error("install.failed", archive=archive.name, error=str(exc))
                result.add_error(archive.name, str(exc), fatal=True)
                continue
            ident = f"{name}@{version}"
            if status == "skipped":
                log.debug("install.skipped", package=ident)
                result.skipped.append(ident)
                continue
            log.info("install.done", package=ident, status=status)
            pkg = ResolvedPackage(name=name, version=version, registry=registry, download_url=archive.as_uri())
            (result.updated if status == "updated" else result.installed).append(pkg)
        return result

    async def remove_packages(self, names: list[str], context: OperationContext) -> InstallResult:
        result = InstallResult()
        node_modules = context.cwd / INSTALL_DIR
        for name in names:
            target = self.package_dir(node_modules, name)
            if not target.is_dir():
                result.add_error(name, f"Package {name} is not installed", fatal=False)
                continue
            try:
                await asyncio.to_thread(shutil.rmtree, target)
            except OSError as exc:
                result.add_error(name, str(exc), fatal=False)
                continue
            log.info("remove.done", package=name)
            result.removed.append(name)
        return result

    def list_installed(self, context: OperationContext) -> list[InstalledPackage]:
        node_modules = context.cwd / INSTALL_DIR
        if not node_modules.is_dir():
            return []
        candidates: list[Path] = []
        for entry in sorted(node_modules.iterdir()):
            if entry.name.startswith(".") or not entry.is_dir():
                continue
            if entry.name.startswith("@"):
                candidates.extend(sorted(p for p in entry.iterdir() if p.is_dir()))
            else:
                candidates.append(entry)
        out: list[InstalledPackage] = []
        for directory in candidates:
            info = self._read_package_json(directory)
            if info and info.get("name") and info.get("version"):
                out.append(InstalledPackage(str(info["name"]), str(info["version"]), directory))
        return out

    # ── registry queries ───────────────────────────────────────────────────

    async def get_package_info(self, name: str, context: OperationContext) -> PackageRegistryInfo:
        async with self.client(context) as client:
            doc = await client.get_json(quote(name, safe="@"))
        if not isinstance(doc, dict):
            raise RegistryError(f"malformed registry document for {name}")
        repository = doc.get("repository")
        if isinstance(repository, dict):
            repository = repository.get("url")
        license_ = doc.get("license")
        if isinstance(license_, dict):
            license_ = license_.get("type")
        versions = list((doc.get("versions") or {}).keys())
        return PackageRegistryInfo(
            name=doc.get("name", name),
            versions=versions,
            latest=(doc.get("dist-tags") or {}).get("latest") or (versions[-1] if versions else ""),
            description=doc.get("description"),
            homepage=doc.get("homepage"),
            repository=repository,
            license=license_,
            keywords=list(doc.get("keywords") or []),
        )

    async def search_packages(
        self, query: str, context: OperationContext
    ) -> list[PackageSearchResult]:
        try:
            async with self.client(context) as client:
                data = await client.get_json("-/v1/search", params={"text": query, "size": 20})
        except ForgeError as exc:
            log.warning("search.failed", adapter=self.name, error=str(exc))
            return []
        results: list[PackageSearchResult] = []
        objects = data.get("objects", []) if isinstance(data, dict) else []
        for obj in objects:
            pkg = obj.get("package") or {}
            if not pkg.get("name"):
                continue
            results.append(
                PackageSearchResult(
                    name=pkg["name"],
                    version=pkg.get("version", ""),
                    description=pkg.get("description") or "",
                    keywords=list(pkg.get("keywords") or []),
                    score=float((obj.get("score") or {}).get("final", 0.0)),
                    format=self.name,
                )
            )
        return results
