"""Tests for CLI commands (in-memory registries, isolated HOME)."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from forge import __version__
from forge.cli import main
from forge.core.config import load_config
from forge.orchestrator import Forge
from forge.registry import create_default_registry


@pytest.fixture
def home(tmp_path):
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def runner(home):
    return CliRunner(env={"HOME": str(home), "FORGE_LOG_LEVEL": "WARNING"})


@pytest.fixture
def fake_forge(config, npm_registry):
    """Patch the CLI so every command talks to the in-memory npm registry."""
    npm_registry.publish("a", "1.0.0", {"b": "^1.0.0"})
    npm_registry.publish("b", "1.0.0")

    def build(state):
        registry = create_default_registry(config, transport=npm_registry.transport)
        return Forge(config, registry=registry, cwd=state.cwd)

    with patch("forge.cli._make_forge", side_effect=build):
        yield npm_registry


def invoke(runner, project, *args):
    return runner.invoke(main, ["-C", str(project), *args])


class TestRoot:
    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self, runner):
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        for cmd in ("install", "remove", "update", "search", "cache", "registry", "login"):
            assert cmd in result.output


# ── package commands ──────────────────────────────────────────────────────


class TestPackageCommands:
    def test_install_alias(self, runner, project, fake_forge):
        (project / "package.json").write_text(json.dumps({"dependencies": {"a": "^1.0.0"}}))
        result = invoke(runner, project, "i")
        assert result.exit_code == 0, result.output
        assert "Installed: a@1.0.0" in result.output
        assert "Installed: b@1.0.0" in result.output
        assert (project / "node_modules" / "a").is_dir()

    def test_install_dry_run(self, runner, project, fake_forge):
        result = invoke(runner, project, "install", "a", "-f", "node", "--dry-run")
        assert result.exit_code == 0, result.output
        assert "Would install: a@1.0.0" in result.output
        assert not (project / "node_modules").exists()

    def test_install_summary(self, runner, project, fake_forge):
        result = invoke(runner, project, "install", "b", "-f", "node", "--summary")
        assert result.exit_code == 0, result.output
        assert "[+] lock" in result.output

    def test_install_failure_exits_1(self, runner, project, fake_forge):
        fake_forge.break_tarball("b", "1.0.0")
        result = invoke(runner, project, "install", "a", "-f", "node")
        assert result.exit_code == 1
        assert "b@1.0.0" in result.output

    def test_no_adapter_exits_1(self, runner, project, fake_forge):
        result = invoke(runner, project, "install", "a")
        assert result.exit_code == 1
        assert "No adapter found" in result.output

    def test_unsupported_format(self, runner, project, fake_forge):
        result = invoke(runner, project, "install", "a", "-f", "cobol")
        assert result.exit_code == 1
        assert "Unsupported format: cobol" in result.output

    def test_list_and_remove(self, runner, project, fake_forge):
        (project / "package.json").write_text(json.dumps({"dependencies": {"a": "^1.0.0"}}))
        invoke(runner, project, "install")

        listed = invoke(runner, project, "ls")
        assert "a@1.0.0" in listed.output and "b@1.0.0" in listed.output

        removed = invoke(runner, project, "rm", "b")
        assert removed.exit_code == 0, removed.output
        assert "Removed: b" in removed.output

        missing = invoke(runner, project, "rm", "b")
        assert missing.exit_code == 1

    def test_search(self, runner, project, fake_forge):
        result = invoke(runner, project, "search", "a", "--limit", "1")
        assert result.exit_code == 0
        assert "[node] a@1.0.0" in result.output

    def test_info(self, runner, project, fake_forge):
        result = invoke(runner, project, "info", "a", "-f", "node")
        assert result.exit_code == 0
        assert result.output.startswith("a@1.0.0")

    def test_cache(self, runner, project, fake_forge):
        invoke(runner, project, "install", "b", "-f", "node")
        info = invoke(runner, project, "cache", "info")
        assert "Files: 1" in info.output
        cleared = invoke(runner, project, "cache", "clear", "node")
        assert "Cleared 1 cached file(s)." in cleared.output


# ── configuration commands ────────────────────────────────────────────────


class TestConfigCommands:
    def test_set_then_get(self, runner, project, home):
        result = invoke(runner, project, "config", "set", "install.parallel", "8")
        assert result.exit_code == 0, result.output
        assert load_config(project, home, env={}).install.parallel == 8

        got = invoke(runner, project, "config", "get", "install.parallel")
        assert got.output.strip() == "8"

    def test_set_invalid(self, runner, project):
        result = invoke(runner, project, "config", "set", "install.parallel", "0")
        assert result.exit_code == 1
        assert "Invalid value" in result.output

    def test_get_missing(self, runner, project):
        result = invoke(runner, project, "config", "get", "nope")
        assert result.exit_code == 1

    def test_set_priority(self, runner, project, home):
        invoke(runner, project, "config", "set-priority", "python", "node")
        assert load_config(project, home, env={}).plugin_priority == ["python", "node"]

    def test_registry_lifecycle(self, runner, project, home):
        added = invoke(runner, project, "registry", "add", "corp", "https://npm.corp.test", "--default")
        assert added.exit_code == 0, added.output
        listed = invoke(runner, project, "registry", "list")
        assert "corp: https://npm.corp.test [node] (default)" in listed.output

        invoke(runner, project, "registry", "remove", "corp")
        assert "corp" not in load_config(project, home, env={}).registries

    def test_login_masks_token(self, runner, project, home):
        result = invoke(runner, project, "login", "--token", "s3cret")
        assert "Logged in to npm" in result.output
        assert load_config(project, home, env={}).token_for("https://registry.npmjs.org") == "s3cret"

        shown = invoke(runner, project, "config", "list")
        assert "s3cret" not in shown.output
        assert "***" in shown.output

    def test_logout_requires_target(self, runner, project):
        result = invoke(runner, project, "logout")
        assert result.exit_code == 1

    def test_logout_all(self, runner, project, home):
        invoke(runner, project, "login", "--token", "s3cret")
        invoke(runner, project, "logout", "--all")
        assert load_config(project, home, env={}).token_for("https://registry.npmjs.org") is None
