"""Version constraint parsing and selection.

Two constraint dialects are understood:

- ``npm``: exact, ``^``/``~`` ranges, comparator lists, ``x`` wildcards,
  hyphen ranges and ``||`` unions.
- ``pep440``: ``==``, ``>=``, ``<``, ``!=``, ``~=`` and comma lists.

Both compile down to :class:`packaging.specifiers.SpecifierSet` so that
selection is one code path: the highest version satisfying the constraint
wins, and ``*`` means "any".
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version

ANY = "*"

_WILDCARDS = {"", "*", "x", "X", "latest"}
_OP_SPACE_RE = re.compile(r"(<=|>=|<|>|=|\^|~)\s+")
_HYPHEN_RE = re.compile(r"^\s*(\S+)\s+-\s+(\S+)\s*$")
_COMPARATOR_RE = re.compile(r"^(<=|>=|<|>|=|\^|~)?v?(.*)$")
_PRERELEASE_RE = re.compile(r"\d-[0-9A-Za-z]|\d(a|b|rc|alpha|beta|dev)\d*", re.IGNORECASE)


class Dialect(str, Enum):
    NPM = "npm"
    PEP440 = "pep440"


class InvalidConstraint(ValueError):
    """Raised when a constraint expression cannot be parsed."""


@dataclass(frozen=True)
class Constraint:
    """A parsed constraint: a union of specifier sets."""

    expression: str
    alternatives: tuple[SpecifierSet, ...]
    names_prerelease: bool = False

    @property
    def is_any(self) -> bool:
        return any(len(alt) == 0 for alt in self.alternatives)

    def allows(self, version: Version, prereleases: bool = False) -> bool:
        allow_pre = prereleases or self.names_prerelease
        return any(alt.contains(version, prereleases=allow_pre) for alt in self.alternatives)


def parse_version(text: str) -> Version | None:
    """Parse a version string, returning None when it is not a valid version."""
    try:
        return Version(text.strip().lstrip("v"))
    except InvalidVersion:
        return None


def compare_versions(a: str, b: str) -> int:
    """Return -1, 0 or 1. Unparseable versions sort below every valid one."""
    va, vb = parse_version(a), parse_version(b)
    if va is None or vb is None:
        return (va is not None) - (vb is not None)
    return (va > vb) - (va < vb)


# ── npm ────────────────────────────────────────────────────────────────────


def _partial(text: str) -> list[int] | None:
    """Leading numeric components of a possibly partial version ("1.2.x" -> [1, 2])."""
    nums: list[int] = []
    for part in text.split(".")[:3]:
        if part in ("x", "X", "*", ""):
            break
        m = re.match(r"^(\d+)", part)
        if not m:
            return None
        nums.append(int(m.group(1)))
        if m.group(1) != part:
            break
    return nums


def _norm(text: str) -> str:
    version = parse_version(text)
    if version is None:
        raise InvalidConstraint(f"invalid version: {text!r}")
    return str(version)


def _is_full(text: str) -> bool:
    return bool(re.match(r"^\d+\.\d+\.\d+", text))


def _npm_comparator(token: str) -> list[str]:
    m = _COMPARATOR_RE.match(token)
    if not m:
        raise InvalidConstraint(f"invalid comparator: {token!r}")
    op, ver = m.group(1) or "", m.group(2)
    if ver in _WILDCARDS:
        return []

    if op in ("<", "<=", ">", ">="):
        return [f"{op}{_norm(ver)}"]

    nums = _partial(ver)
    if nums is None:
        raise InvalidConstraint(f"invalid comparator: {token!r}")

    if op == "^":
        lower = _norm(ver) if _is_full(ver) else ".".join(map(str, nums + [0] * (3 - len(nums))))
        major, minor, patch = (nums + [0, 0, 0])[:3]
        if major > 0 or len(nums) == 1:
            upper = f"{major + 1}.0.0"
        elif minor > 0 or len(nums) == 2:
            upper = f"0.{minor + 1}.0"
        else:
            upper = f"0.0.{patch + 1}"
        return [f">={lower}", f"<{upper}"]

    if op == "~":
        lower = _norm(ver) if _is_full(ver) else ".".join(map(str, nums + [0] * (3 - len(nums))))
        if len(nums) == 1:
            upper = f"{nums[0] + 1}.0.0"
        else:
            upper = f"{nums[0]}.{nums[1] + 1}.0"
        return [f">={lower}", f"<{upper}"]

    # exact or x-range
    if _is_full(ver):
        return [f"=={_norm(ver)}"]
    if not nums:
        return []
    if len(nums) == 1:
        return [f">={nums[0]}.0.0", f"<{nums[0] + 1}.0.0"]
    return [f">={nums[0]}.{nums[1]}.0", f"<{nums[0]}.{nums[1] + 1}.0"]


def _npm_alternative(text: str) -> SpecifierSet:
    text = text.strip()
    hyphen = _HYPHEN_RE.match(text)
    if hyphen:
        return SpecifierSet(f">={_norm(hyphen.group(1))},<={_norm(hyphen.group(2))}")
    text = _OP_SPACE_RE.sub(r"\1", text.replace(",", " "))
    specs: list[str] = []
    for token in text.split():
        specs.extend(_npm_comparator(token))
    return SpecifierSet(",".join(specs))


# ── pep440 ─────────────────────────────────────────────────────────────────


def _pep440_alternative(text: str) -> SpecifierSet:
    text = text.strip().strip("()").strip()
    if text in _WILDCARDS:
        return SpecifierSet("")
    if re.match(r"^v?\d+(\.\d+)*$", text):
        return SpecifierSet(f"=={text.lstrip('v')}")
    if text.startswith("^") or (text.startswith("~") and not text.startswith("~=")):
        return _npm_alternative(text)
    return SpecifierSet(text)


def parse_constraint(expression: str, dialect: Dialect = Dialect.NPM) -> Constraint:
    """Compile *expression* into a :class:`Constraint`.

    Raises :class:`InvalidConstraint` when the expression is not understood.
    """
    expression = (expression or ANY).strip()
    try:
        if dialect is Dialect.NPM:
            parts = expression.split("||")
            alternatives = tuple(
                SpecifierSet("") if p.strip() in _WILDCARDS else _npm_alternative(p) for p in parts
            )
        else:
            alternatives = (_pep440_alternative(expression),)
    except InvalidSpecifier as exc:
        raise InvalidConstraint(f"invalid constraint {expression!r}: {exc}") from exc
    return Constraint(
        expression=expression,
        alternatives=alternatives,
        names_prerelease=bool(_PRERELEASE_RE.search(expression)),
    )


def max_satisfying(versions: Iterable[str], constraint: Constraint) -> str | None:
    """Highest version in *versions* satisfying *constraint*.

    Pre-releases are only considered when the constraint names one or when
    no final release satisfies it. Unparseable version strings are ignored.
    """
    parsed = [(v, parse_version(v)) for v in versions]
    valid = [(raw, ver) for raw, ver in parsed if ver is not None]

    stable = [(raw, ver) for raw, ver in valid if constraint.allows(ver)]
    if not stable:
        stable = [(raw, ver) for raw, ver in valid if constraint.allows(ver, prereleases=True)]
    if not stable:
        return None
    return max(stable, key=lambda pair: pair[1])[0]
