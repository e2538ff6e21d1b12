"""Format adapter contract shared by every ecosystem plugin."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path

import httpx
import structlog

from forge.cache import PackageCache
from forge.exceptions import FetchFailure
from forge.http import RegistryClient
from forge.lockfile import LockFile, build_lock
from forge.models import (
    Dependency,
    DependencyGraph,
    DependencyScope,
    InstalledPackage,
    InstallResult,
    Manifest,
    OperationContext,
    PackageRegistryInfo,
    PackageSearchResult,
    ResolvedPackage,
)
from forge.resolution import ResolutionPolicy, ResolutionReport, Resolver, VersionSource
from forge.versions import Dialect

log = structlog.get_logger("forge.adapters")


class FormatAdapter(ABC):
    """
    Abstract base class for package format adapters.

    Subclasses provide manifest parsing, registry translation and the
    install layout. Fetching, lock handling and resolution driving are
    shared here so that every format gets the same cache and concurrency
    behaviour.
    """

    name: str = ""
    version: str = "1.0.0"
    supported_formats: tuple[str, ...] = ()
    cache_namespace: str = ""
    lock_filename: str = ""
    lock_version: str = "1.0.0"
    registry_scope: str = ""
    default_registry_url: str = ""
    resolution_policy: ResolutionPolicy = ResolutionPolicy.DEEP
    dialect: Dialect = Dialect.NPM
    resolve_scopes: tuple[DependencyScope, ...] = (DependencyScope.PRODUCTION,)

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    def __repr__(self) -> str:
        return f"<{type(self).__name__} formats={list(self.supported_formats)}>"

    # ── detection & manifest ───────────────────────────────────────────────

    @abstractmethod
    def can_handle(self, directory: Path) -> bool:
        """Cheap existence checks. Returns False rather than raising."""
        ...

    @abstractmethod
    def parse_manifest(self, directory: Path) -> Manifest:
        """Parse the manifest, or synthesize a minimal one when absent."""
        ...

    def requested_dependency(self, spec: str, scope: DependencyScope) -> Dependency:
        """Turn a CLI package argument into a Dependency (constraint ``*`` if none)."""
        return Dependency(name=spec.strip(), scope=scope)

    # ── registry plumbing ──────────────────────────────────────────────────

    def registry_url(self, context: OperationContext) -> str:
        if context.registry_override:
            return context.registry_override.rstrip("/")
        reg = context.config.registry_for(self.registry_scope)
        return (reg.url if reg else self.default_registry_url).rstrip("/")

    def client(self, context: OperationContext, url: str | None = None) -> RegistryClient:
        base = url or self.registry_url(context)
        return RegistryClient(
            base,
            token=context.config.token_for(base),
            timeout=context.config.install.timeout,
            retries=context.config.install.retries,
            transport=self._transport,
        )

    def cache(self, context: OperationContext) -> PackageCache:
        return PackageCache(Path(context.config.cache.directory))

    @abstractmethod
    def version_source(self, client: RegistryClient) -> VersionSource:
        """Registry view the resolver selects versions from."""
        ...

    # ── resolution ─────────────────────────────────────────────────────────

    def resolution_roots(self, manifest: Manifest) -> list[Dependency]:
        return manifest.declared(*self.resolve_scopes)

    async def resolve_dependencies(
        self, manifest: Manifest, context: OperationContext
    ) -> ResolutionReport:
        """Resolve *manifest* into a graph plus any edge failures and warnings."""
        roots = self.resolution_roots(manifest)
        log.debug("resolve.start", adapter=self.name, roots=len(roots))
        async with self.client(context) as client:
            resolver = Resolver(self.version_source(client), self.dialect)
            return await resolver.resolve(manifest, roots, self.resolution_policy)

    # ── fetch ──────────────────────────────────────────────────────────────

    def safe_name(self, name: str) -> str:
        return name

    def artifact_suffix(self, package: ResolvedPackage) -> str:
        return ".tgz"

    def artifact_path(self, package: ResolvedPackage, context: OperationContext) -> Path:
        return self.cache(context).artifact_path(
            self.cache_namespace,
            self.safe_name(package.name),
            package.version,
            self.artifact_suffix(package),
        )

    async def fetch_artifacts(
        self, packages: list[ResolvedPackage], context: OperationContext
    ) -> list[Path]:
        """Fetch every package into the cache, at most ``install.parallel`` at once.

        Returns one path per input in input order. If any fetch fails, all
        others are still allowed to finish and then :class:`FetchFailure`
        reports every failure together.
        """
        cache = self.cache(context)
        sem = asyncio.Semaphore(context.config.install.parallel)
        clients: dict[str, RegistryClient] = {}

        def client_for(pkg: ResolvedPackage) -> RegistryClient:
            base = (pkg.registry or self.registry_url(context)).rstrip("/")
            if base not in clients:
                clients[base] = self.client(context, base)
            return clients[base]

        async def fetch_one(pkg: ResolvedPackage) -> Path:
            path = self.artifact_path(pkg, context)
            if path.is_file():
                log.debug("fetch.cache_hit", package=pkg.ident)
                return path
            async with sem:
                client = client_for(pkg)
                log.info("fetch.download", package=pkg.ident, url=pkg.download_url)
                return await cache.fetch(
                    path, lambda: client.stream(pkg.download_url), pkg.integrity
                )

        try:
            results = await asyncio.gather(
                *(fetch_one(pkg) for pkg in packages), return_exceptions=True
            )
        finally:
            for client in clients.values():
                await client.close()

        failures: dict[str, str] = {}
        paths: list[Path] = []
        for pkg, result in zip(packages, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                log.error("fetch.failed", package=pkg.ident, error=str(result))
                failures[pkg.ident] = str(result) or type(result).__name__
            else:
                paths.append(result)
        if failures:
            raise FetchFailure(failures)
        return paths

    # ── install ────────────────────────────────────────────────────────────

    @abstractmethod
    async def install_artifacts(
        self, paths: list[Path], manifest: Manifest, context: OperationContext
    ) -> InstallResult:
        """Materialise cached artifacts. Already-installed versions are skipped."""
        ...

    @abstractmethod
    async def remove_packages(self, names: list[str], context: OperationContext) -> InstallResult:
        """Best-effort removal; a missing package is a non-fatal error."""
        ...

    @abstractmethod
    def list_installed(self, context: OperationContext) -> list[InstalledPackage]: ...

    # ── lock ───────────────────────────────────────────────────────────────

    def lock_metadata(self) -> dict[str, object]:
        return {}

    def lock_path(self, directory: Path) -> Path:
        return directory / self.lock_filename

    def build_lock(self, graph: DependencyGraph) -> LockFile:
        return build_lock(graph, self.lock_version, self.lock_metadata())

    def create_lock(self, graph: DependencyGraph, directory: Path) -> LockFile:
        """Write a fresh lock for *graph*. Raises :class:`LockWriteFailure`."""
        lock = self.build_lock(graph)
        lock.write(self.lock_path(directory))
        return lock

    def read_lock(self, directory: Path) -> LockFile | None:
        return LockFile.read(self.lock_path(directory))

    # ── registry queries ───────────────────────────────────────────────────

    @abstractmethod
    async def get_package_info(self, name: str, context: OperationContext) -> PackageRegistryInfo:
        ...

    @abstractmethod
    async def search_packages(
        self, query: str, context: OperationContext
    ) -> list[PackageSearchResult]:
        """Registry search. Failures degrade to an empty list."""
        ...
