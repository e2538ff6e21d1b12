"""Dependency edge filtering for PEP 508 requirement strings.

A package's declared requirements include edges that do not apply to this
install. Markers are evaluated against the running interpreter; edges whose
marker is false, or whose name the installer cannot lay out, are dropped before
they reach the graph. Dropping is never an error.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from packaging.markers import InvalidMarker, Marker, UndefinedComparison, UndefinedEnvironmentName
from packaging.requirements import InvalidRequirement, Requirement

from forge.models import Dependency, DependencyScope

_NAME_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9_-]*[A-Za-z0-9])?$")


@dataclass(frozen=True)
class DroppedEdge:
    requirement: str
    reason: str


def valid_name(name: str) -> bool:
    """Installable project name: no dots, no brackets, no whitespace."""
    return bool(_NAME_RE.match(name))


def parse_requirement(raw: str) -> Requirement | None:
    try:
        return Requirement(raw.strip())
    except InvalidRequirement:
        return None


def requirement_constraint(req: Requirement) -> str:
    return str(req.specifier) or "*"


def _marker_applies(marker: Marker, requested: set[str]) -> bool:
    """Evaluate *marker* once per requested extra (or with no extra)."""
    for extra in sorted(requested) or [""]:
        if marker.evaluate({"extra": extra}):
            return True
    return False


def filter_requirements(
    requirements: Iterable[str],
    extras: Iterable[str] = (),
    scope: DependencyScope = DependencyScope.PRODUCTION,
) -> tuple[list[Dependency], list[DroppedEdge]]:
    """Split *requirements* into kept :class:`Dependency` edges and dropped ones.

    Markers are evaluated against the running interpreter, with ``extra`` set
    to each requested extra in turn. Dropped: markers that evaluate false or
    cannot be evaluated, extras brackets, dotted or otherwise invalid names.
    """
    requested = {e.lower() for e in extras}
    kept: list[Dependency] = []
    dropped: list[DroppedEdge] = []
    for raw in requirements:
        req = parse_requirement(raw)
        if req is None:
            dropped.append(DroppedEdge(raw, "unparseable requirement"))
            continue
        if req.extras:
            dropped.append(DroppedEdge(raw, "requires extras"))
            continue
        if not valid_name(req.name):
            dropped.append(DroppedEdge(raw, "invalid package name"))
            continue
        if req.marker is not None:
            try:
                applies = _marker_applies(req.marker, requested)
            except (InvalidMarker, UndefinedComparison, UndefinedEnvironmentName):
                dropped.append(DroppedEdge(raw, "marker cannot be evaluated"))
                continue
            if not applies:
                dropped.append(DroppedEdge(raw, f"marker not satisfied: {req.marker}"))
                continue
        kept.append(Dependency(name=req.name, constraint=requirement_constraint(req), scope=scope))
    return kept, dropped
