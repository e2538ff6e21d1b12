"""Data models shared by the orchestrator, the adapters and the resolver."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from forge.core.config import ForgeConfig


class DependencyScope(str, Enum):
    PRODUCTION = "production"
    DEVELOPMENT = "development"
    PEER = "peer"
    OPTIONAL = "optional"


@dataclass(frozen=True)
class Dependency:
    """A declared dependency: a name plus a version constraint expression."""

    name: str
    constraint: str = "*"
    scope: DependencyScope = DependencyScope.PRODUCTION
    registry: str | None = None

    @property
    def key(self) -> str:
        """Resolution key. Same name under two constraints gives two keys."""
        return f"{self.name}@{self.constraint}"


@dataclass
class Manifest:
    """Parsed or synthesized description of a project's declared dependencies."""

    name: str
    version: str = "1.0.0"
    description: str | None = None
    dependencies: list[Dependency] = field(default_factory=list)
    dev_dependencies: list[Dependency] = field(default_factory=list)
    peer_dependencies: list[Dependency] = field(default_factory=list)
    optional_dependencies: list[Dependency] = field(default_factory=list)
    scripts: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def synthetic(cls, directory: Path, fallback_name: str = "forge-project") -> Manifest:
        """Minimal in-memory manifest for a directory without one on disk."""
        return cls(
            name=directory.name or fallback_name,
            metadata={"generatedBy": "forge", "synthetic": True},
        )

    @property
    def is_synthetic(self) -> bool:
        return bool(self.metadata.get("synthetic"))

    def by_scope(self, scope: DependencyScope) -> list[Dependency]:
        return {
            DependencyScope.PRODUCTION: self.dependencies,
            DependencyScope.DEVELOPMENT: self.dev_dependencies,
            DependencyScope.PEER: self.peer_dependencies,
            DependencyScope.OPTIONAL: self.optional_dependencies,
        }[scope]

    def declared(self, *scopes: DependencyScope) -> list[Dependency]:
        """Dependencies of the given scopes, in scope order then manifest order."""
        out: list[Dependency] = []
        for scope in scopes:
            out.extend(self.by_scope(scope))
        return out

    def narrowed(self, requested: list[Dependency]) -> Manifest:
        """A new manifest declaring only *requested*.

        The rest of this manifest's dependencies are dropped, they are not
        installed alongside the requested names.
        """
        narrowed = Manifest(
            name=self.name,
            version=self.version,
            description=self.description,
            scripts=dict(self.scripts),
            metadata=dict(self.metadata),
        )
        for dep in requested:
            narrowed.by_scope(dep.scope).append(dep)
        return narrowed


@dataclass(frozen=True)
class ResolvedPackage:
    """A concrete version picked by the resolver. Immutable once created."""

    name: str
    version: str
    registry: str
    download_url: str
    integrity: str | None = None
    dependencies: tuple[Dependency, ...] = ()
    deprecated: str | None = None

    @property
    def ident(self) -> str:
        return f"{self.name}@{self.version}"


@dataclass
class GraphNode:
    package: ResolvedPackage
    dependencies: list[str] = field(default_factory=list)  # resolution keys


@dataclass
class DependencyGraph:
    """Resolved graph keyed by resolution key (``name@constraint``)."""

    root: str
    nodes: dict[str, GraphNode] = field(default_factory=dict)

    def __contains__(self, key: str) -> bool:
        return key in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def add(self, key: str, package: ResolvedPackage, dependencies: list[str]) -> GraphNode:
        node = GraphNode(package=package, dependencies=list(dependencies))
        self.nodes[key] = node
        return node

    def dependents(self, key: str) -> list[str]:
        """Keys of nodes that depend on *key*, derived on demand."""
        return [k for k, node in self.nodes.items() if key in node.dependencies]

    def packages(self) -> list[ResolvedPackage]:
        """Distinct packages by (name, version), in graph insertion order.

        Two keys that resolved to the same concrete version share one entry,
        so each (name, version) is fetched and installed at most once.
        """
        seen: set[tuple[str, str]] = set()
        out: list[ResolvedPackage] = []
        for node in self.nodes.values():
            ident = (node.package.name, node.package.version)
            if ident not in seen:
                seen.add(ident)
                out.append(node.package)
        return out

    def names(self) -> set[str]:
        return {node.package.name for node in self.nodes.values()}


@dataclass
class InstallError:
    package: str
    message: str
    fatal: bool = False


@dataclass
class InstallResult:
    """Accumulated outcome of one command. Never discarded on partial failure."""

    installed: list[ResolvedPackage] = field(default_factory=list)
    updated: list[ResolvedPackage] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[InstallError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    diagnostics: list[InstallError] = field(default_factory=list)
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def has_fatal(self) -> bool:
        return any(e.fatal for e in self.errors)

    @property
    def is_noop(self) -> bool:
        return not (self.installed or self.updated or self.removed)

    def add_error(self, package: str, message: str, fatal: bool = False) -> None:
        self.errors.append(InstallError(package=package, message=message, fatal=fatal))

    def merge(self, other: InstallResult) -> InstallResult:
        self.installed.extend(other.installed)
        self.updated.extend(other.updated)
        self.removed.extend(other.removed)
        self.skipped.extend(other.skipped)
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        self.diagnostics.extend(other.diagnostics)
        return self


@dataclass(frozen=True)
class OperationContext:
    """Everything an adapter call may depend on besides its arguments.

    *config* is an immutable snapshot taken once per operation. Adapters read
    settings from here only, never from a global.
    """

    cwd: Path
    config: ForgeConfig
    verbose: bool = False
    dry_run: bool = False
    registry_override: str | None = None


# ── registry query shapes ──────────────────────────────────────────────────


@dataclass(frozen=True)
class VersionRecord:
    """Metadata for one published version, as the resolver needs it."""

    version: str
    download_url: str
    dependencies: tuple[Dependency, ...] = ()
    integrity: str | None = None
    deprecated: str | None = None


@dataclass
class VersionSet:
    """All published versions of one package."""

    name: str
    versions: dict[str, VersionRecord] = field(default_factory=dict)
    dist_tags: dict[str, str] = field(default_factory=dict)


@dataclass
class PackageRegistryInfo:
    name: str
    versions: list[str]
    latest: str
    description: str | None = None
    homepage: str | None = None
    repository: str | None = None
    license: str | None = None
    keywords: list[str] = field(default_factory=list)


@dataclass
class PackageSearchResult:
    name: str
    version: str
    description: str = ""
    keywords: list[str] = field(default_factory=list)
    score: float = 0.0
    format: str = ""


@dataclass
class InstalledPackage:
    name: str
    version: str
    location: Path
