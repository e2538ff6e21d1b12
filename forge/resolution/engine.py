"""Dependency resolution: version selection plus graph traversal.

Two policies are available:

- ``DEEP`` walks the full transitive closure. Traversal uses an explicit
  work stack; keys on the active path are tracked so that a key seen again
  while still in progress is reported as a cycle and its edge truncated. A
  depth ceiling stops runaway chains independently of cycle detection.
- ``SHALLOW`` resolves only the manifest's direct dependencies. Their own
  declared dependencies are recorded on the node but never resolved, so the
  resulting graph is intentionally incomplete.

Registry version lookups are memoised for the lifetime of one
:class:`Resolver` only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

import structlog

from forge.exceptions import CircularDependency, ForgeError, ResolutionEdgeFailure
from forge.models import (
    Dependency,
    DependencyGraph,
    InstallError,
    Manifest,
    ResolvedPackage,
    VersionRecord,
    VersionSet,
)
from forge.versions import Dialect, InvalidConstraint, max_satisfying, parse_constraint

log = structlog.get_logger("forge.resolve")

MAX_DEPTH = 100


class ResolutionPolicy(str, Enum):
    DEEP = "deep"
    SHALLOW = "shallow"


class VersionSource(Protocol):
    """What the resolver needs from a registry."""

    registry_url: str

    async def get_versions(self, name: str) -> VersionSet: ...

    async def get_record(self, version_set: VersionSet, version: str) -> VersionRecord: ...


@dataclass
class ResolutionReport:
    graph: DependencyGraph
    errors: list[InstallError] = field(default_factory=list)
    diagnostics: list[InstallError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def select_version(version_set: VersionSet, expression: str, dialect: Dialect) -> str:
    """Pick the highest version of *version_set* satisfying *expression*.

    A dist-tag name (``latest``, ``next``) selects the tagged version.
    Raises :class:`ResolutionEdgeFailure` when nothing matches.
    """
    expression = (expression or "*").strip()
    tagged = version_set.dist_tags.get(expression)
    if tagged and tagged in version_set.versions:
        return tagged
    try:
        constraint = parse_constraint(expression, dialect)
    except InvalidConstraint as exc:
        raise ResolutionEdgeFailure(version_set.name, expression, str(exc)) from exc
    chosen = max_satisfying(version_set.versions.keys(), constraint)
    if chosen is None:
        raise ResolutionEdgeFailure(
            version_set.name, expression, "no version satisfies the constraint"
        )
    return chosen


@dataclass
class _Enter:
    dep: Dependency
    depth: int


@dataclass
class _Exit:
    key: str


class Resolver:
    """One resolution run against one :class:`VersionSource`."""

    def __init__(
        self,
        source: VersionSource,
        dialect: Dialect,
        *,
        max_depth: int = MAX_DEPTH,
    ) -> None:
        self.source = source
        self.dialect = dialect
        self.max_depth = max_depth
        self._version_sets: dict[str, VersionSet] = {}

    async def resolve(
        self,
        manifest: Manifest,
        roots: list[Dependency],
        policy: ResolutionPolicy,
    ) -> ResolutionReport:
        report = ResolutionReport(graph=DependencyGraph(root=manifest.name))
        if policy is ResolutionPolicy.SHALLOW:
            await self._resolve_shallow(roots, report)
        else:
            await self._resolve_deep(roots, report)
        log.info(
            "resolve.done",
            project=manifest.name,
            policy=policy.value,
            packages=len(report.graph),
            errors=len(report.errors),
            warnings=len(report.warnings),
        )
        return report

    # ── policies ───────────────────────────────────────────────────────────

    async def _resolve_shallow(self, roots: list[Dependency], report: ResolutionReport) -> None:
        for dep in roots:
            if dep.key in report.graph:
                continue
            package = await self._pick(dep, 0, report)
            if package is not None:
                report.graph.add(dep.key, package, [d.key for d in package.dependencies])

    async def _resolve_deep(self, roots: list[Dependency], report: ResolutionReport) -> None:
        resolved: set[str] = set()
        active: list[str] = []  # keys on the current path, in order
        in_progress: set[str] = set()
        stack: list[_Enter | _Exit] = [_Enter(dep, 0) for dep in reversed(roots)]

        while stack:
            item = stack.pop()
            if isinstance(item, _Exit):
                in_progress.discard(item.key)
                active.pop()
                resolved.add(item.key)
                continue

            key = item.dep.key
            if key in in_progress:
                cycle = CircularDependency(active[active.index(key) :] + [key])
                log.warning("resolve.cycle", path=cycle.path)
                report.warnings.append(str(cycle))
                continue
            if key in resolved or key in report.graph:
                continue
            if item.depth > self.max_depth:
                log.warning("resolve.max_depth", key=key, depth=item.depth)
                report.warnings.append(
                    f"Maximum dependency depth {self.max_depth} exceeded at {key}"
                )
                continue

            package = await self._pick(item.dep, item.depth, report)
            if package is None:
                resolved.add(key)
                continue

            children = list(package.dependencies)
            report.graph.add(key, package, [d.key for d in children])
            in_progress.add(key)
            active.append(key)
            stack.append(_Exit(key))
            for child in reversed(children):
                stack.append(_Enter(child, item.depth + 1))

    # ── selection ──────────────────────────────────────────────────────────

    async def _pick(
        self, dep: Dependency, depth: int, report: ResolutionReport
    ) -> ResolvedPackage | None:
        """Select and materialise one edge; failures are recorded, not raised."""
        try:
            version_set = await self._versions(dep.name)
            version = select_version(version_set, dep.constraint, self.dialect)
            record = await self.source.get_record(version_set, version)
        except ForgeError as exc:
            failure = (
                exc
                if isinstance(exc, ResolutionEdgeFailure)
                else ResolutionEdgeFailure(dep.name, dep.constraint, str(exc))
            )
            fatal = depth == 0
            log.warning("resolve.edge_failed", key=dep.key, fatal=fatal, error=str(failure))
            entry = InstallError(package=dep.name, message=str(failure), fatal=fatal)
            (report.errors if fatal else report.diagnostics).append(entry)
            return None

        if record.deprecated:
            log.warning("resolve.deprecated", package=dep.name, version=version)
            report.warnings.append(f"{dep.name}@{version} is deprecated: {record.deprecated}")

        return ResolvedPackage(
            name=version_set.name or dep.name,
            version=version,
            registry=dep.registry or self.source.registry_url,
            download_url=record.download_url,
            integrity=record.integrity,
            dependencies=record.dependencies,
            deprecated=record.deprecated,
        )

    async def _versions(self, name: str) -> VersionSet:
        cached = self._version_sets.get(name)
        if cached is None:
            cached = await self.source.get_versions(name)
            self._version_sets[name] = cached
        return cached
