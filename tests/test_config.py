"""Tests for configuration loading, dotted access and registry management."""

from __future__ import annotations

import json

import pytest

from forge.core.config import (
    ForgeConfig,
    add_registry,
    get_config_value,
    load_config,
    login,
    logout,
    registry_name_for_url,
    remove_registry,
    save_config,
    set_config_value,
    set_default_registry,
)
from forge.exceptions import ConfigError


@pytest.fixture
def dirs(tmp_path):
    cwd = tmp_path / "proj"
    home = tmp_path / "home"
    cwd.mkdir()
    home.mkdir()
    return cwd, home


# ── loading ───────────────────────────────────────────────────────────────


class TestLoadConfig:
    def test_defaults(self, dirs):
        cwd, home = dirs
        config = load_config(cwd, home, env={})
        assert config.registry_for("node").url == "https://registry.npmjs.org"
        assert config.registry_for("python").url == "https://pypi.org"
        assert config.install.parallel == 4
        assert config.plugin_priority == ["node", "python"]

    def test_project_file_merged_over_defaults(self, dirs):
        cwd, home = dirs
        (cwd / ".forgerc.json").write_text(json.dumps({"install": {"parallel": 8}}))
        config = load_config(cwd, home, env={})
        assert config.install.parallel == 8
        assert config.install.retries == 3

    def test_project_file_wins_over_user_file(self, dirs):
        cwd, home = dirs
        (cwd / "forge.config.json").write_text(json.dumps({"install": {"parallel": 2}}))
        (home / ".forgerc.json").write_text(json.dumps({"install": {"parallel": 6}}))
        assert load_config(cwd, home, env={}).install.parallel == 2

    def test_corrupt_file_skipped(self, dirs):
        cwd, home = dirs
        (cwd / ".forgerc.json").write_text("{broken")
        (home / ".forgerc.json").write_text(json.dumps({"install": {"parallel": 6}}))
        assert load_config(cwd, home, env={}).install.parallel == 6

    def test_env_overrides(self, dirs):
        cwd, home = dirs
        env = {
            "FORGE_CACHE_DIR": "/tmp/forge-cache",
            "FORGE_INSTALL_PARALLEL": "9",
            "FORGE_NODE_REGISTRY": "https://npm.corp.test",
            "FORGE_NODE_TOKEN": "tok",
        }
        config = load_config(cwd, home, env=env)
        assert config.cache.directory == "/tmp/forge-cache"
        assert config.install.parallel == 9
        assert config.registry_for("node").url == "https://npm.corp.test"
        assert config.token_for("https://npm.corp.test/") == "tok"

    def test_bad_env_number_ignored(self, dirs):
        cwd, home = dirs
        config = load_config(cwd, home, env={"FORGE_INSTALL_PARALLEL": "many"})
        assert config.install.parallel == 4

    def test_invalid_values_rejected(self, dirs):
        cwd, home = dirs
        (cwd / ".forgerc.json").write_text(json.dumps({"install": {"parallel": 0}}))
        with pytest.raises(ConfigError):
            load_config(cwd, home, env={})

    def test_snapshot_is_immutable(self, dirs):
        config = load_config(*dirs, env={})
        with pytest.raises(Exception):
            config.install.parallel = 10


class TestSaveConfig:
    def test_saves_to_user_file(self, dirs):
        cwd, home = dirs
        config = set_config_value(load_config(cwd, home, env={}), "install.parallel", 7)
        path = save_config(config, cwd, home)
        assert path == home / ".config" / "forge" / "config.json"
        assert load_config(cwd, home, env={}).install.parallel == 7

    def test_updates_existing_project_file(self, dirs):
        cwd, home = dirs
        (cwd / ".forgerc.json").write_text("{}")
        path = save_config(ForgeConfig(), cwd, home)
        assert path == cwd / ".forgerc.json"
        assert "registries" in json.loads(path.read_text())


# ── dotted access ─────────────────────────────────────────────────────────


class TestDottedKeys:
    def test_get_nested(self):
        config = ForgeConfig()
        assert get_config_value(config, "install.parallel") == 4
        assert get_config_value(config, "registries.npm.url") == "https://registry.npmjs.org"

    def test_get_snake_case_alias(self):
        assert get_config_value(ForgeConfig(), "cache.max_size") == "1GB"
        assert get_config_value(ForgeConfig(), "cache.maxSize") == "1GB"

    def test_get_missing(self):
        with pytest.raises(ConfigError, match="not found"):
            get_config_value(ForgeConfig(), "install.nope")

    def test_set_returns_new_snapshot(self):
        original = ForgeConfig()
        updated = set_config_value(original, "install.timeout", 5)
        assert updated.install.timeout == 5
        assert original.install.timeout == 30.0

    def test_set_list(self):
        updated = set_config_value(ForgeConfig(), "pluginPriority", ["python", "node"])
        assert updated.plugin_priority == ["python", "node"]

    def test_set_invalid(self):
        with pytest.raises(ConfigError):
            set_config_value(ForgeConfig(), "install.parallel", "lots")


# ── registries & auth ─────────────────────────────────────────────────────


class TestRegistries:
    def test_registry_for_falls_back_to_scope(self):
        config = ForgeConfig.model_validate(
            {"registries": {"corp": {"url": "https://corp.test", "scope": "node"}}, "defaultRegistry": {}}
        )
        assert config.registry_for("node").url == "https://corp.test"
        assert config.registry_for("python") is None

    def test_add_and_set_default(self):
        config = add_registry(ForgeConfig(), "corp", "https://corp.test", scope="node")
        config = set_default_registry(config, "corp")
        assert config.registry_for("node").url == "https://corp.test"
        assert config.registry_for("python").url == "https://pypi.org"

    def test_remove_clears_default(self):
        config = remove_registry(ForgeConfig(), "npm")
        assert "npm" not in config.registries
        assert "node" not in config.default_registry

    def test_remove_unknown(self):
        with pytest.raises(ConfigError):
            remove_registry(ForgeConfig(), "ghost")

    def test_set_default_unknown(self):
        with pytest.raises(ConfigError):
            set_default_registry(ForgeConfig(), "ghost")

    def test_login_default_registry(self):
        config, name = login(ForgeConfig(), "t0k", scope="python")
        assert name == "pypi"
        assert config.token_for("https://pypi.org") == "t0k"

    def test_login_unknown_url_adds_registry(self):
        config, name = login(ForgeConfig(), "t0k", url="https://npm.example.com/")
        assert name == "npm_example_com"
        assert config.registries[name].token == "t0k"

    def test_login_requires_token(self):
        with pytest.raises(ConfigError):
            login(ForgeConfig(), "")

    def test_logout(self):
        config, _ = login(ForgeConfig(), "a")
        config, _ = login(config, "b", scope="python")
        one = logout(config, url="https://registry.npmjs.org")
        assert one.token_for("https://registry.npmjs.org") is None
        assert one.token_for("https://pypi.org") == "b"
        assert logout(config, all_registries=True).token_for("https://pypi.org") is None

    def test_registry_name_for_url(self):
        assert registry_name_for_url("https://registry.corp.io:8443/npm/") == "registry_corp_io_8443_npm"
