"""Tests for constraint parsing and version selection."""

from __future__ import annotations

import pytest
from packaging.version import Version

from forge.versions import (
    Dialect,
    InvalidConstraint,
    compare_versions,
    max_satisfying,
    parse_constraint,
    parse_version,
)


def allows(expr: str, version: str, dialect: Dialect = Dialect.NPM) -> bool:
    return parse_constraint(expr, dialect).allows(Version(version))


# ── npm dialect ───────────────────────────────────────────────────────────


class TestNpmConstraints:
    def test_caret_major(self):
        assert allows("^1.2.3", "1.2.3")
        assert allows("^1.2.3", "1.9.0")
        assert not allows("^1.2.3", "1.2.2")
        assert not allows("^1.2.3", "2.0.0")

    def test_caret_zero_major(self):
        assert allows("^0.2.3", "0.2.9")
        assert not allows("^0.2.3", "0.3.0")

    def test_caret_zero_minor(self):
        assert allows("^0.0.3", "0.0.3")
        assert not allows("^0.0.3", "0.0.4")

    def test_tilde(self):
        assert allows("~1.2.3", "1.2.9")
        assert not allows("~1.2.3", "1.3.0")

    def test_x_range(self):
        assert allows("1.x", "1.5.0")
        assert not allows("1.x", "2.0.0")
        assert allows("1.2.x", "1.2.7")
        assert not allows("1.2.x", "1.3.0")

    def test_hyphen_range_is_inclusive(self):
        assert allows("1.0.0 - 2.0.0", "2.0.0")
        assert not allows("1.0.0 - 2.0.0", "2.0.1")

    def test_union(self):
        assert allows("^1.0.0 || ^3.0.0", "3.1.0")
        assert not allows("^1.0.0 || ^3.0.0", "2.0.0")

    def test_comparators_with_spaces(self):
        assert allows(">= 1.0.0 < 2.0.0", "1.5.0")
        assert not allows(">= 1.0.0 < 2.0.0", "2.0.0")

    def test_exact(self):
        assert allows("1.2.3", "1.2.3")
        assert not allows("1.2.3", "1.2.4")

    @pytest.mark.parametrize("expr", ["*", "", "x", "latest"])
    def test_wildcards_match_anything(self, expr):
        assert parse_constraint(expr).is_any

    def test_invalid(self):
        with pytest.raises(InvalidConstraint):
            parse_constraint("^abc")
        with pytest.raises(InvalidConstraint):
            parse_constraint("not a version")


# ── pep440 dialect ────────────────────────────────────────────────────────


class TestPep440Constraints:
    def test_comma_list(self):
        assert allows(">=1.0,<2.0", "1.5", Dialect.PEP440)
        assert not allows(">=1.0,<2.0", "2.0", Dialect.PEP440)

    def test_bare_version_is_exact(self):
        assert allows("1.2.3", "1.2.3", Dialect.PEP440)
        assert not allows("1.2.3", "1.2.4", Dialect.PEP440)

    def test_compatible_release(self):
        assert allows("~=1.4", "1.9", Dialect.PEP440)
        assert not allows("~=1.4", "2.0", Dialect.PEP440)

    def test_caret_borrowed_from_npm(self):
        assert allows("^1.2", "1.8.0", Dialect.PEP440)
        assert not allows("^1.2", "2.0.0", Dialect.PEP440)

    def test_parenthesised(self):
        assert allows("(>=1.0)", "3.0", Dialect.PEP440)

    def test_invalid(self):
        with pytest.raises(InvalidConstraint):
            parse_constraint("=>1.0", Dialect.PEP440)


# ── selection ─────────────────────────────────────────────────────────────


class TestMaxSatisfying:
    VERSIONS = ["1.0.0", "1.2.0", "2.0.0"]

    def test_highest_in_range(self):
        assert max_satisfying(self.VERSIONS, parse_constraint("^1.0.0")) == "1.2.0"

    def test_comma_separated_range(self):
        assert max_satisfying(self.VERSIONS, parse_constraint(">=1.0.0, <2.0.0")) == "1.2.0"

    def test_any_picks_highest(self):
        assert max_satisfying(self.VERSIONS, parse_constraint("*")) == "2.0.0"

    def test_tilde_picks_patch_line(self):
        assert max_satisfying(self.VERSIONS, parse_constraint("~1.0.0")) == "1.0.0"

    def test_no_match(self):
        assert max_satisfying(self.VERSIONS, parse_constraint(">=3.0.0")) is None

    def test_prerelease_skipped_when_release_matches(self):
        versions = ["1.0.0", "1.1.0-beta.1"]
        assert max_satisfying(versions, parse_constraint("^1.0.0")) == "1.0.0"

    def test_prerelease_used_when_nothing_else_matches(self):
        assert max_satisfying(["2.0.0-rc.1"], parse_constraint("*")) == "2.0.0-rc.1"

    def test_unparseable_versions_ignored(self):
        assert max_satisfying(["garbage", "1.0.0"], parse_constraint("*")) == "1.0.0"


class TestVersionHelpers:
    def test_parse_version_strips_v(self):
        assert parse_version("v1.2.3") == Version("1.2.3")

    def test_parse_version_invalid(self):
        assert parse_version("not-a-version") is None

    def test_compare_numeric_not_lexical(self):
        assert compare_versions("1.10.0", "1.9.0") == 1
        assert compare_versions("1.0.0", "1.0.0") == 0
        assert compare_versions("1.0.0", "2.0.0") == -1

    def test_invalid_sorts_lowest(self):
        assert compare_versions("bad", "0.0.1") == -1
        assert compare_versions("0.0.1", "bad") == 1
