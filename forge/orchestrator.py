"""Install orchestrator: select → parse → narrow → resolve → fetch → install → lock."""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog

from forge.adapters.base import FormatAdapter
from forge.cache import CacheInfo, PackageCache
from forge.core.config import ForgeConfig
from forge.exceptions import FetchFailure, ForgeError, LockWriteFailure
from forge.lockfile import LockDiff, diff_locks
from forge.models import (
    DependencyGraph,
    DependencyScope,
    InstalledPackage,
    InstallResult,
    Manifest,
    OperationContext,
    PackageRegistryInfo,
    PackageSearchResult,
)
from forge.progress import PipelineProgress
from forge.registry import FormatRegistry, create_default_registry

log = structlog.get_logger("forge.orchestrator")


class Forge:
    """
    Format-agnostic driver for every package command.

    One instance holds one configuration snapshot. Each call builds its own
    :class:`OperationContext` and :class:`InstallResult`; nothing persists
    between calls except what adapters write to disk.
    """

    def __init__(
        self,
        config: ForgeConfig,
        registry: FormatRegistry | None = None,
        cwd: Path | None = None,
    ) -> None:
        self.config = config
        self.registry = registry or create_default_registry(config)
        self.cwd = Path(cwd) if cwd else Path.cwd()
        self.progress = PipelineProgress()

    def context(
        self,
        *,
        dry_run: bool = False,
        registry_override: str | None = None,
        verbose: bool = False,
    ) -> OperationContext:
        return OperationContext(
            cwd=self.cwd,
            config=self.config,
            verbose=verbose,
            dry_run=dry_run,
            registry_override=registry_override,
        )

    def select_adapter(self, fmt: str | None = None) -> FormatAdapter:
        return self.registry.select(self.cwd, fmt, self.config.plugin_priority)

    # ── install / update ───────────────────────────────────────────────────

    async def install(
        self,
        packages: list[str] | None = None,
        *,
        fmt: str | None = None,
        save_dev: bool = False,
        dry_run: bool = False,
        registry_override: str | None = None,
        verbose: bool = False,
    ) -> InstallResult:
        """Install *packages* (or everything the manifest declares).

        :class:`NoAdapterFound` / :class:`UnsupportedFormat` propagate. Every
        other problem is recorded on the returned result.
        """
        self.progress = progress = PipelineProgress()
        ctx = self.context(dry_run=dry_run, registry_override=registry_override, verbose=verbose)
        result = InstallResult(dry_run=dry_run)

        with progress.phase("select"):
            adapter = self.select_adapter(fmt)
        log.info("install.start", adapter=adapter.name, cwd=str(self.cwd), dry_run=dry_run)

        with progress.phase("parse"):
            manifest = adapter.parse_manifest(self.cwd)
            if packages:
                scope = DependencyScope.DEVELOPMENT if save_dev else DependencyScope.PRODUCTION
                manifest = manifest.narrowed(
                    [adapter.requested_dependency(spec, scope) for spec in packages]
                )

        with progress.phase("resolve"):
            report = await adapter.resolve_dependencies(manifest, ctx)
        result.errors.extend(report.errors)
        result.diagnostics.extend(report.diagnostics)
        result.warnings.extend(report.warnings)
        graph = report.graph
        resolved = graph.packages()

        unresolved = [e.package for e in report.errors if e.fatal]
        if unresolved:
            progress.abort("resolve", f"unresolved: {', '.join(unresolved)}")
            log.error("install.aborted", reason="resolve", failed=unresolved)
            return result
        progress["resolve"].detail = f"{len(resolved)} package(s)"

        progress.start("fetch")
        try:
            paths = await adapter.fetch_artifacts(resolved, ctx)
        except FetchFailure as exc:
            progress.abort("fetch", str(exc))
            for ident, message in exc.failures.items():
                result.add_error(ident, message, fatal=True)
            log.error("install.aborted", reason="fetch", failed=list(exc.failures))
            return result
        progress.complete("fetch", detail=f"{len(paths)} artifact(s)")

        if dry_run:
            progress.skip("install", "dry run")
            progress.skip("lock", "dry run")
            result.installed.extend(resolved)
            log.info("install.dry_run", packages=[p.ident for p in resolved])
            return result

        if paths:
            progress.start("install")
            try:
                result.merge(await adapter.install_artifacts(paths, manifest, ctx))
                progress.complete("install")
            except ForgeError as exc:
                progress.fail("install", str(exc))
                result.add_error(manifest.name, str(exc), fatal=True)
        else:
            progress.skip("install", "nothing to install")

        with progress.phase("lock"):
            self._write_lock(adapter, graph, result)

        log.info(
            "install.done",
            installed=len(result.installed),
            updated=len(result.updated),
            skipped=len(result.skipped),
            errors=len(result.errors),
        )
        return result

    async def update(self, **kwargs) -> InstallResult:
        """Re-run install against the existing manifest."""
        return await self.install(None, **kwargs)

    def lock_diff(self, adapter: FormatAdapter, graph: DependencyGraph) -> LockDiff:
        return diff_locks(adapter.read_lock(self.cwd), adapter.build_lock(graph))

    def _write_lock(
        self, adapter: FormatAdapter, graph: DependencyGraph, result: InstallResult
    ) -> None:
        diff = self.lock_diff(adapter, graph)
        if not diff.empty:
            log.info(
                "lock.diff",
                added=diff.added,
                removed=diff.removed,
                changed={k: f"{a} -> {b}" for k, (a, b) in diff.changed.items()},
            )
        try:
            adapter.create_lock(graph, self.cwd)
        except LockWriteFailure as exc:
            log.error("lock.write_failed", error=str(exc))
            result.add_error(adapter.lock_filename, str(exc), fatal=False)

    # ── remove ─────────────────────────────────────────────────────────────

    async def remove(
        self,
        packages: list[str],
        *,
        fmt: str | None = None,
        dry_run: bool = False,
        verbose: bool = False,
    ) -> InstallResult:
        ctx = self.context(dry_run=dry_run, verbose=verbose)
        adapter = self.select_adapter(fmt)

        if dry_run:
            result = InstallResult(dry_run=True)
            present = {p.name for p in adapter.list_installed(ctx)}
            for name in packages:
                if name in present:
                    result.removed.append(name)
                else:
                    result.add_error(name, f"Package {name} is not installed", fatal=False)
            return result

        result = await adapter.remove_packages(packages, ctx)
        if result.removed:
            self._prune_lock(adapter, result)
        return result

    def _prune_lock(self, adapter: FormatAdapter, result: InstallResult) -> None:
        lock = adapter.read_lock(self.cwd)
        if lock is None:
            return
        gone = set(result.removed)
        lock.packages = {
            key: entry
            for key, entry in lock.packages.items()
            if key not in gone and key.rpartition("@")[0] not in gone
        }
        try:
            lock.write(adapter.lock_path(self.cwd))
        except LockWriteFailure as exc:
            result.add_error(adapter.lock_filename, str(exc), fatal=False)

    # ── queries ────────────────────────────────────────────────────────────

    async def search(
        self, query: str, *, fmt: str | None = None, limit: int | None = None
    ) -> list[PackageSearchResult]:
        """Search every adapter (or one); results sorted by score, best first."""
        ctx = self.context()
        adapters = [self.registry.by_format(fmt)] if fmt else self.registry.list_all()
        outcomes = await asyncio.gather(
            *(a.search_packages(query, ctx) for a in adapters), return_exceptions=True
        )
        results: list[PackageSearchResult] = []
        for adapter, outcome in zip(adapters, outcomes):
            if isinstance(outcome, Exception):
                log.warning("search.adapter_failed", adapter=adapter.name, error=str(outcome))
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            results.extend(outcome)
        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit] if limit else results

    async def package_info(
        self, name: str, *, fmt: str | None = None, registry_override: str | None = None
    ) -> PackageRegistryInfo:
        adapter = self.select_adapter(fmt)
        return await adapter.get_package_info(name, self.context(registry_override=registry_override))

    def list_installed(self, fmt: str | None = None) -> dict[str, list[InstalledPackage]]:
        """Installed packages per adapter name.

        With no format, the detected adapter is used; if none matches, every
        adapter's install target is listed.
        """
        ctx = self.context()
        if fmt:
            adapters = [self.registry.by_format(fmt)]
        else:
            detected = self.registry.detect(self.cwd, self.config.plugin_priority)
            adapters = [detected] if detected else self.registry.list_all()
        return {a.name: a.list_installed(ctx) for a in adapters}

    def manifest(self, fmt: str | None = None) -> Manifest:
        return self.select_adapter(fmt).parse_manifest(self.cwd)

    # ── cache ──────────────────────────────────────────────────────────────

    def _cache(self) -> PackageCache:
        return PackageCache(Path(self.config.cache.directory))

    def _namespace(self, fmt: str | None) -> str | None:
        return self.registry.by_format(fmt).cache_namespace if fmt else None

    def cache_clear(self, fmt: str | None = None) -> int:
        return self._cache().clear(self._namespace(fmt))

    def cache_info(self, fmt: str | None = None) -> CacheInfo:
        return self._cache().info(self._namespace(fmt))
