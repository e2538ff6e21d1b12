"""PyPI adapter: requirements.txt / pyproject.toml manifests, venv layout.

Resolution is shallow: only the project's own requirements are resolved.
Their declared requirements are recorded in the graph and the lock but are
not installed, so the result is not a complete environment.
"""

from __future__ import annotations

import asyncio
import csv
import io
import os
import shutil
import sys
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

import structlog
from packaging.utils import canonicalize_name

from forge.adapters.archives import extract_tar, extract_zip, read_tar_member, read_zip_member
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
from forge.resolution import ResolutionPolicy, filter_requirements
from forge.resolution.filters import parse_requirement, requirement_constraint
from forge.versions import Dialect

log = structlog.get_logger("forge.adapters.python")

MANIFEST_FILES = ("requirements.txt", "pyproject.toml", "setup.py")
DEV_REQUIREMENTS = "requirements-dev.txt"
VENV_DIR = "venv"
_DEV_GROUPS = ("dev", "test", "tests")


# ── metadata helpers ───────────────────────────────────────────────────────


def parse_metadata(text: str) -> tuple[str, str]:
    """``Name`` and ``Version`` from a METADATA / PKG-INFO header block."""
    name = version = ""
    for line in text.splitlines():
        if not line.strip():
            break
        if line.startswith("Name:"):
            name = line[5:].strip()
        elif line.startswith("Version:"):
            version = line[8:].strip()
        if name and version:
            break
    if not name or not version:
        raise ForgeError("Could not parse package name and version from metadata")
    return name, version


def dist_info_name(name: str, version: str) -> str:
    return f"{canonicalize_name(name).replace('-', '_')}-{version}.dist-info"


def installed_distributions(site: Path) -> dict[str, tuple[str, str, Path]]:
    """canonical name -> (name, version, dist-info path) for *site*."""
    found: dict[str, tuple[str, str, Path]] = {}
    if not site.is_dir():
        return found
    for info_dir in sorted(site.glob("*.dist-info")):
        meta = info_dir / "METADATA"
        try:
            name, version = parse_metadata(meta.read_text(encoding="utf-8", errors="replace"))
        except (OSError, ForgeError):
            continue
        found[canonicalize_name(name)] = (name, version, info_dir)
    return found


def _requirement_dependency(line: str, scope: DependencyScope) -> Dependency | None:
    req = parse_requirement(line)
    if req is None:
        log.warning("manifest.bad_requirement", line=line)
        return None
    if req.marker is not None and not req.marker.evaluate():
        log.debug("manifest.marker_skipped", requirement=line)
        return None
    return Dependency(name=req.name, constraint=requirement_constraint(req), scope=scope)


def _read_requirements(path: Path, scope: DependencyScope) -> list[Dependency]:
    deps: list[Dependency] = []
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.split(" #", 1)[0].strip()
        if not line or line.startswith(("#", "-")):
            continue
        dep = _requirement_dependency(line, scope)
        if dep is not None:
            deps.append(dep)
    return deps


# ── registry view ──────────────────────────────────────────────────────────


def _pick_file(files: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Pure-Python wheel, then sdist, then any wheel. Yanked files only as a last resort."""
    usable = [f for f in files if f.get("url")]
    live = [f for f in usable if not f.get("yanked")]
    for candidates in (live, usable):
        pure = [
            f for f in candidates
            if f.get("packagetype") == "bdist_wheel" and f.get("filename", "").endswith("-none-any.whl")
        ]
        sdist = [f for f in candidates if f.get("packagetype") == "sdist"]
        wheels = [f for f in candidates if f.get("packagetype") == "bdist_wheel"]
        for group in (pure, sdist, wheels):
            if group:
                return group[0]
    return None


def _yank_message(entry: dict[str, Any]) -> str | None:
    if not entry.get("yanked"):
        return None
    reason = entry.get("yanked_reason")
    return f"yanked: {reason}" if reason else "yanked"


class PyPISource:
    """Registry view over the PyPI JSON API."""

    def __init__(self, client: RegistryClient, extras: tuple[str, ...] = ()) -> None:
        self.client = client
        self.registry_url = client.base_url
        self.extras = extras
        self._latest: dict[str, dict[str, Any]] = {}

    async def get_versions(self, name: str) -> VersionSet:
        doc = await self.client.get_json(f"pypi/{name}/json", headers={"Accept": "application/json"})
        if not isinstance(doc, dict) or not isinstance(doc.get("info"), dict):
            raise RegistryError(f"malformed registry document for {name}")
        info = doc["info"]
        real_name = info.get("name") or name
        versions: dict[str, VersionRecord] = {}
        for version, files in (doc.get("releases") or {}).items():
            chosen = _pick_file(files or [])
            if chosen is None:
                continue
            versions[version] = VersionRecord(
                version=version,
                download_url=chosen["url"],
                integrity=(chosen.get("digests") or {}).get("sha256"),
                deprecated=_yank_message(chosen),
            )
        if not versions and info.get("version"):
            version = info["version"]
            versions[version] = VersionRecord(
                version=version,
                download_url=(
                    f"{self.registry_url}/packages/{real_name}/{version}/{real_name}-{version}.tar.gz"
                ),
            )
        self._latest[real_name] = info
        return VersionSet(name=real_name, versions=versions, dist_tags={"latest": info.get("version", "")})

    async def get_record(self, version_set: VersionSet, version: str) -> VersionRecord:
        base = version_set.versions[version]
        info = self._latest.get(version_set.name) or {}
        if info.get("version") != version:
            doc = await self.client.get_json(f"pypi/{version_set.name}/{version}/json")
            info = (doc.get("info") or {}) if isinstance(doc, dict) else {}
        kept, dropped = filter_requirements(info.get("requires_dist") or [], self.extras)
        for edge in dropped:
            log.debug("resolve.edge_filtered", package=version_set.name, requirement=edge.requirement, reason=edge.reason)
        deprecated = base.deprecated or _yank_message(info)
        return VersionRecord(
            version=version,
            download_url=base.download_url,
            dependencies=tuple(kept),
            integrity=base.integrity,
            deprecated=deprecated,
        )


# ── adapter ────────────────────────────────────────────────────────────────


class PythonAdapter(FormatAdapter):
    name = "python"
    version = "1.0.0"
    supported_formats = ("python", "pip")
    cache_namespace = "python"
    lock_filename = "forge-python-lock.json"
    lock_version = "1.0.0"
    registry_scope = "python"
    default_registry_url = "https://pypi.org"
    resolution_policy = ResolutionPolicy.SHALLOW
    dialect = Dialect.PEP440
    resolve_scopes = (DependencyScope.PRODUCTION, DependencyScope.DEVELOPMENT)

    def can_handle(self, directory: Path) -> bool:
        try:
            return any((directory / name).is_file() for name in MANIFEST_FILES)
        except OSError:
            return False

    def parse_manifest(self, directory: Path) -> Manifest:
        if not self.can_handle(directory):
            log.debug("manifest.synthetic", directory=str(directory))
            return Manifest.synthetic(directory)

        manifest = Manifest(name=directory.name or "forge-project")
        try:
            requirements = directory / "requirements.txt"
            if requirements.is_file():
                manifest.dependencies.extend(
                    _read_requirements(requirements, DependencyScope.PRODUCTION)
                )
            dev_requirements = directory / DEV_REQUIREMENTS
            if dev_requirements.is_file():
                manifest.dev_dependencies.extend(
                    _read_requirements(dev_requirements, DependencyScope.DEVELOPMENT)
                )
            pyproject = directory / "pyproject.toml"
            if pyproject.is_file():
                self._merge_pyproject(manifest, tomllib.loads(pyproject.read_text(encoding="utf-8")))
        except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
            raise ManifestError(f"Cannot parse manifest in {directory}: {exc}") from exc
        return manifest

    @staticmethod
    def _merge_pyproject(manifest: Manifest, data: dict[str, Any]) -> None:
        project = data.get("project") or {}
        manifest.name = project.get("name") or manifest.name
        if isinstance(project.get("version"), str):
            manifest.version = project["version"]
        manifest.description = project.get("description")
        manifest.metadata = {"project": project}

        declared = {canonicalize_name(d.name) for d in manifest.dependencies}
        for line in project.get("dependencies") or []:
            dep = _requirement_dependency(line, DependencyScope.PRODUCTION)
            if dep is not None and canonicalize_name(dep.name) not in declared:
                manifest.dependencies.append(dep)
                declared.add(canonicalize_name(dep.name))

        dev_declared = {canonicalize_name(d.name) for d in manifest.dev_dependencies}
        optional = project.get("optional-dependencies") or {}
        for group in _DEV_GROUPS:
            for line in optional.get(group) or []:
                dep = _requirement_dependency(line, DependencyScope.DEVELOPMENT)
                if dep is not None and canonicalize_name(dep.name) not in dev_declared:
                    manifest.dev_dependencies.append(dep)
                    dev_declared.add(canonicalize_name(dep.name))

    def requested_dependency(self, spec: str, scope: DependencyScope) -> Dependency:
        req = parse_requirement(spec)
        if req is None:
            return Dependency(name=spec.strip(), scope=scope)
        return Dependency(name=req.name, constraint=requirement_constraint(req), scope=scope)

    def version_source(self, client: RegistryClient) -> PyPISource:
        return PyPISource(client)

    def safe_name(self, name: str) -> str:
        return "".join(c if c.isalnum() or c in "_-" else "-" for c in name)

    def artifact_suffix(self, package: ResolvedPackage) -> str:
        return ".whl" if package.download_url.endswith(".whl") else ".tar.gz"

    # ── venv layout ────────────────────────────────────────────────────────

    @staticmethod
    def _venv(context: OperationContext) -> Path:
        return context.cwd / VENV_DIR

    @staticmethod
    def _site_dir(venv: Path) -> Path:
        lib = venv / "lib"
        if lib.is_dir():
            for entry in sorted(lib.iterdir()):
                if entry.name.startswith("python") and entry.is_dir():
                    return entry / "site-packages"
        return lib / f"python{sys.version_info.major}.{sys.version_info.minor}" / "site-packages"

    async def _ensure_venv(self, venv: Path) -> None:
        if (venv / "pyvenv.cfg").is_file():
            return
        log.info("venv.create", path=str(venv))
        last_error = ""
        for interpreter in ("python3", "python"):
            try:
                proc = await asyncio.create_subprocess_exec(
                    interpreter,
                    "-m",
                    "venv",
                    str(venv),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError as exc:
                last_error = str(exc)
                continue
            _, stderr = await proc.communicate()
            if proc.returncode == 0:
                return
            last_error = stderr.decode().strip()
        raise ForgeError(f"Failed to create virtual environment: {last_error}")

    async def site_packages(self, context: OperationContext, create: bool = True) -> Path | None:
        venv = self._venv(context)
        if create:
            await self._ensure_venv(venv)
        elif not venv.is_dir():
            return None
        site = self._site_dir(venv)
        if create:
            site.mkdir(parents=True, exist_ok=True)
        return site

    # ── install ────────────────────────────────────────────────────────────

    @classmethod
    def _place(cls, item: Path, target: Path) -> None:
        """Move *item* to *target*, merging into directories that already exist."""
        if item.is_dir() and target.is_dir():
            for child in sorted(item.iterdir()):
                cls._place(child, target / child.name)
        else:
            os.replace(item, target)

    @staticmethod
    def _archive_metadata(archive: Path) -> tuple[str, str]:
        """(name, version) read from the artifact's own metadata member."""
        if archive.name.endswith(".whl"):
            raw = read_zip_member(archive, ".dist-info/METADATA")
            if raw is None:
                raise ForgeError(f"{archive.name} has no .dist-info directory")
        else:
            raw = read_tar_member(archive, "PKG-INFO", strip=1)
            if raw is None:
                raise ForgeError(f"{archive.name} has no PKG-INFO")
        return parse_metadata(raw.decode("utf-8"))

    def _install_one(self, archive: Path, site: Path) -> tuple[str, str, str]:
        """Install one artifact into *site*. Returns (name, version, status)."""
        name, version = self._archive_metadata(archive)
        current = installed_distributions(site).get(canonicalize_name(name))
        if current is not None and current[1] == version:
            return name, version, "skipped"

        staging = make_staging_dir(site)
        try:
            wheel = archive.name.endswith(".whl")
            if wheel:
                extract_zip(archive, staging)
            else:
                extract_tar(archive, staging, strip=1)
            if current is not None:
                self._remove_distribution(site, current[2])

            if wheel:
                items = sorted(staging.iterdir(), key=lambda p: p.name.endswith(".dist-info"))
                for item in items:
                    self._place(item, site / item.name)
            else:
                self._install_sdist(staging, site, name, version)
            return name, version, ("updated" if current is not None else "installed")
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

    def _install_sdist(self, staging: Path, site: Path, name: str, version: str) -> None:
        """Copy the importable package out of an sdist and write a dist-info marker."""
        import_name = canonicalize_name(name).replace("-", "_")
        placed: list[Path] = []
        for base in (staging / "src", staging):
            for candidate in (base / import_name, base / f"{import_name}.py"):
                if candidate.exists():
                    self._place(candidate, site / candidate.name)
                    placed.append(site / candidate.name)
                    break
            if placed:
                break
        if not placed:
            log.warning("install.sdist_no_package", package=name, version=version)

        marker = make_staging_dir(site)
        (marker / "METADATA").write_text(
            f"Metadata-Version: 2.1\nName: {name}\nVersion: {version}\n", encoding="utf-8"
        )
        (marker / "INSTALLER").write_text("forge\n", encoding="utf-8")
        final = site / dist_info_name(name, version)
        self._write_record(marker, final.name, site, placed)
        place_directory(marker, final)

    @staticmethod
    def _write_record(info_dir: Path, final_name: str, site: Path, placed: list[Path]) -> None:
        buf = io.StringIO()
        writer = csv.writer(buf)
        for root in placed:
            files = [root] if root.is_file() else sorted(p for p in root.rglob("*") if p.is_file())
            for path in files:
                writer.writerow([path.relative_to(site).as_posix(), "", ""])
        for meta in ("METADATA", "INSTALLER", "RECORD"):
            writer.writerow([f"{final_name}/{meta}", "", ""])
        (info_dir / "RECORD").write_text(buf.getvalue(), encoding="utf-8")

    @staticmethod
    def _remove_distribution(site: Path, info_dir: Path) -> None:
        """Delete the files listed in RECORD, prune empty directories, drop the dist-info."""
        record = info_dir / "RECORD"
        parents: set[Path] = set()
        if record.is_file():
            site_resolved = site.resolve()
            for row in csv.reader(io.StringIO(record.read_text(encoding="utf-8"))):
                if not row or not row[0]:
                    continue
                path = (site / row[0]).resolve()
                if site_resolved not in path.parents or info_dir.resolve() in path.parents:
                    continue
                if path.is_file():
                    path.unlink()
                    parents.add(path.parent)
        for parent in sorted(parents, key=lambda p: len(p.parts), reverse=True):
            current = parent
            while current != site.resolve() and current.is_dir() and not any(current.iterdir()):
                current.rmdir()
                current = current.parent
        shutil.rmtree(info_dir, ignore_errors=True)

    async def install_artifacts(
        self, paths: list[Path], manifest: Manifest, context: OperationContext
    ) -> InstallResult:
        result = InstallResult()
        site = await self.site_packages(context)
        registry = self.registry_url(context)

        for archive in paths:
            try:
                name, version, status = await asyncio.to_thread(self._install_one, archive, site)
            except (ForgeError, OSError) as exc:
                log.error("install.failed", archive=archive.name, error=str(exc))
                result.add_error(archive.name, str(exc), fatal=False)
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
        site = await self.site_packages(context, create=False)
        installed = installed_distributions(site) if site else {}
        for name in names:
            current = installed.get(canonicalize_name(name))
            if current is None:
                result.add_error(name, f"Package {name} not found", fatal=False)
                continue
            try:
                await asyncio.to_thread(self._remove_distribution, site, current[2])
            except OSError as exc:
                result.add_error(name, str(exc), fatal=False)
                continue
            log.info("remove.done", package=name)
            result.removed.append(name)
        return result

    def list_installed(self, context: OperationContext) -> list[InstalledPackage]:
        venv = self._venv(context)
        if not venv.is_dir():
            return []
        return [
            InstalledPackage(name, version, path)
            for name, version, path in installed_distributions(self._site_dir(venv)).values()
        ]

    # ── registry queries ───────────────────────────────────────────────────

    async def get_package_info(self, name: str, context: OperationContext) -> PackageRegistryInfo:
        async with self.client(context) as client:
            doc = await client.get_json(f"pypi/{name}/json")
        if not isinstance(doc, dict) or not isinstance(doc.get("info"), dict):
            raise RegistryError(f"malformed registry document for {name}")
        info = doc["info"]
        urls = info.get("project_urls") or {}
        keywords = info.get("keywords") or ""
        if isinstance(keywords, str):
            keywords = [k.strip() for k in keywords.replace(",", " ").split() if k.strip()]
        return PackageRegistryInfo(
            name=info.get("name") or name,
            versions=list((doc.get("releases") or {}).keys()),
            latest=info.get("version") or "",
            description=info.get("summary"),
            homepage=info.get("home_page") or urls.get("Homepage"),
            repository=urls.get("Source") or urls.get("Repository"),
            license=info.get("license") or None,
            keywords=list(keywords),
        )

    async def search_packages(
        self, query: str, context: OperationContext
    ) -> list[PackageSearchResult]:
        try:
            async with self.client(context) as client:
                data = await client.get_json("search", params={"q": query})
        except ForgeError as exc:
            log.warning("search.failed", adapter=self.name, error=str(exc))
            return []
        rows = data.get("results", []) if isinstance(data, dict) else []
        return [
            PackageSearchResult(
                name=r.get("name", ""),
                version=r.get("version") or "latest",
                description=r.get("summary") or r.get("description") or "",
                keywords=list(r.get("keywords") or []),
                score=float(r.get("score") or 1.0),
                format=self.name,
            )
            for r in rows
            if isinstance(r, dict) and r.get("name")
        ]
