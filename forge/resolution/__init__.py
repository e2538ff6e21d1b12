"""Dependency resolution engine."""

from forge.resolution.engine import (
    MAX_DEPTH,
    ResolutionPolicy,
    ResolutionReport,
    Resolver,
    VersionSource,
    select_version,
)
from forge.resolution.filters import DroppedEdge, filter_requirements

__all__ = [
    "MAX_DEPTH",
    "DroppedEdge",
    "ResolutionPolicy",
    "ResolutionReport",
    "Resolver",
    "VersionSource",
    "filter_requirements",
    "select_version",
]
