"""Configuration: immutable pydantic snapshot plus an explicit write path.

``load_config`` builds one :class:`ForgeConfig` per CLI invocation. Every
mutation helper in this module returns a *new* snapshot; nothing here writes
to disk except :func:`save_config`.
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from forge.exceptions import ConfigError

log = structlog.get_logger("forge.config")

PROJECT_CONFIG_FILES = (".forgerc.json", "forge.config.json")
USER_CONFIG_FILES = (".forgerc.json", ".config/forge/config.json")

_SNAPSHOT = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)


class RegistryConfig(BaseModel):
    model_config = _SNAPSHOT

    url: str
    scope: str = "node"
    token: str | None = None
    default: bool = False


class CacheConfig(BaseModel):
    model_config = _SNAPSHOT

    directory: str = Field(default_factory=lambda: str(Path.home() / ".forge" / "cache"))
    max_size: str = "1GB"
    ttl: int = 3600000


class InstallConfig(BaseModel):
    model_config = _SNAPSHOT

    parallel: int = Field(default=4, ge=1)
    retries: int = Field(default=3, ge=1)
    timeout: float = Field(default=30.0, gt=0)  # seconds


def _default_registries() -> dict[str, RegistryConfig]:
    return {
        "npm": RegistryConfig(url="https://registry.npmjs.org", scope="node", default=True),
        "pypi": RegistryConfig(url="https://pypi.org", scope="python", default=True),
    }


class ForgeConfig(BaseModel):
    model_config = _SNAPSHOT

    registries: dict[str, RegistryConfig] = Field(default_factory=_default_registries)
    default_registry: dict[str, str] = Field(
        default_factory=lambda: {"node": "npm", "python": "pypi"}
    )
    cache: CacheConfig = Field(default_factory=CacheConfig)
    install: InstallConfig = Field(default_factory=InstallConfig)
    formats: dict[str, bool] = Field(default_factory=lambda: {"node": True, "python": True})
    plugin_priority: list[str] = Field(default_factory=lambda: ["node", "python"])

    # ── lookups ────────────────────────────────────────────────────────────

    def registry_for(self, scope: str) -> RegistryConfig | None:
        """Default registry for a format scope.

        Order: ``default_registry[scope]`` by name, then a registry of that
        scope flagged ``default``, then the first registry of that scope.
        """
        name = self.default_registry.get(scope)
        if name and name in self.registries:
            return self.registries[name]
        scoped = [r for r in self.registries.values() if r.scope == scope]
        for reg in scoped:
            if reg.default:
                return reg
        return scoped[0] if scoped else None

    def token_for(self, url: str) -> str | None:
        """Auth token of the registry whose URL matches *url* (trailing slashes ignored)."""
        target = url.rstrip("/")
        for reg in self.registries.values():
            if reg.url.rstrip("/") == target and reg.token:
                return reg.token
        return None

    def format_enabled(self, fmt: str) -> bool:
        return self.formats.get(fmt, True)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ── loading ────────────────────────────────────────────────────────────────


def _candidate_paths(cwd: Path, home: Path) -> list[Path]:
    return [cwd / name for name in PROJECT_CONFIG_FILES] + [
        home / name for name in USER_CONFIG_FILES
    ]


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Section-wise merge: nested dicts update, everything else replaces.

    ``registries`` and ``pluginPriority`` replace wholesale when present.
    """
    merged = dict(base)
    for key, value in override.items():
        if key in ("registries", "pluginPriority", "plugin_priority"):
            merged[key] = value
        elif isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def _apply_env(data: dict[str, Any], env: dict[str, str]) -> dict[str, Any]:
    cache = dict(data.get("cache", {}))
    if env.get("FORGE_CACHE_DIR"):
        cache["directory"] = env["FORGE_CACHE_DIR"]
    if env.get("FORGE_CACHE_MAX_SIZE"):
        cache["maxSize"] = env["FORGE_CACHE_MAX_SIZE"]
    data["cache"] = cache

    if env.get("FORGE_INSTALL_PARALLEL"):
        try:
            parallel = int(env["FORGE_INSTALL_PARALLEL"])
        except ValueError:
            log.warning("config.bad_env", key="FORGE_INSTALL_PARALLEL")
        else:
            data["install"] = {**data.get("install", {}), "parallel": parallel}

    registries = {k: dict(v) for k, v in data.get("registries", {}).items()}
    defaults = data.get("defaultRegistry", {})
    for scope in ("node", "python"):
        name = defaults.get(scope)
        if not name or name not in registries:
            continue
        url = env.get(f"FORGE_{scope.upper()}_REGISTRY")
        token = env.get(f"FORGE_{scope.upper()}_TOKEN")
        if url:
            registries[name]["url"] = url
        if token:
            registries[name]["token"] = token
    data["registries"] = registries
    return data


def load_config(
    cwd: Path | None = None,
    home: Path | None = None,
    env: dict[str, str] | None = None,
) -> ForgeConfig:
    """Build the configuration snapshot for one operation.

    The first existing file among the project and user config paths is
    merged over the defaults, then ``FORGE_*`` environment overrides apply.
    """
    cwd = cwd or Path.cwd()
    home = home or Path.home()
    env = dict(os.environ) if env is None else env

    data = ForgeConfig().to_json_dict()
    for path in _candidate_paths(cwd, home):
        if not path.is_file():
            continue
        try:
            file_data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            log.warning("config.load_failed", path=str(path), error=str(exc))
            continue
        if isinstance(file_data, dict):
            data = _merge(data, file_data)
            log.debug("config.loaded", path=str(path))
            break

    data = _apply_env(data, env)
    try:
        return ForgeConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def save_config(config: ForgeConfig, cwd: Path | None = None, home: Path | None = None) -> Path:
    """Persist *config*. Updates the project ``.forgerc.json`` if one exists,
    otherwise the user config file. Returns the path written."""
    cwd = cwd or Path.cwd()
    home = home or Path.home()
    project_path = cwd / PROJECT_CONFIG_FILES[0]
    target = project_path if project_path.is_file() else home / USER_CONFIG_FILES[1]
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_name(target.name + ".tmp")
    tmp.write_text(json.dumps(config.to_json_dict(), indent=2) + "\n", encoding="utf-8")
    os.replace(tmp, target)
    log.info("config.saved", path=str(target))
    return target


# ── dotted-key access ──────────────────────────────────────────────────────


def _step(current: Any, key: str) -> str:
    if isinstance(current, dict):
        if key in current:
            return key
        camel = to_camel(key)
        if camel in current:
            return camel
    raise KeyError(key)


def get_config_value(config: ForgeConfig, key: str) -> Any:
    """Look up ``a.b.c`` in the config; snake_case and camelCase both work."""
    current: Any = config.to_json_dict()
    for part in key.split("."):
        try:
            current = current[_step(current, part)]
        except KeyError:
            raise ConfigError(f"Configuration key not found: {key}") from None
    return current


def set_config_value(config: ForgeConfig, key: str, value: Any) -> ForgeConfig:
    """Return a new snapshot with ``a.b.c`` set to *value* (validated)."""
    data = config.to_json_dict()
    parts = key.split(".")
    current = data
    for part in parts[:-1]:
        try:
            name = _step(current, part)
        except KeyError:
            name = part
            current[name] = {}
        if not isinstance(current[name], dict):
            current[name] = {}
        current = current[name]
    last = parts[-1]
    try:
        last = _step(current, last)
    except KeyError:
        pass
    current[last] = value
    try:
        return ForgeConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid value for {key}: {exc}") from exc


# ── registry management ────────────────────────────────────────────────────


def _with_registries(config: ForgeConfig, registries: dict[str, RegistryConfig]) -> ForgeConfig:
    return config.model_copy(update={"registries": registries})


def add_registry(
    config: ForgeConfig, name: str, url: str, scope: str = "node", token: str | None = None
) -> ForgeConfig:
    registries = dict(config.registries)
    registries[name] = RegistryConfig(url=url, scope=scope, token=token)
    return _with_registries(config, registries)


def remove_registry(config: ForgeConfig, name: str) -> ForgeConfig:
    if name not in config.registries:
        raise ConfigError(f"Registry '{name}' not found")
    registries = {k: v for k, v in config.registries.items() if k != name}
    defaults = {k: v for k, v in config.default_registry.items() if v != name}
    return config.model_copy(update={"registries": registries, "default_registry": defaults})


def set_default_registry(config: ForgeConfig, name: str) -> ForgeConfig:
    reg = config.registries.get(name)
    if reg is None:
        raise ConfigError(f"Registry '{name}' not found")
    defaults = {**config.default_registry, reg.scope: name}
    return config.model_copy(update={"default_registry": defaults})


def registry_name_for_url(url: str) -> str:
    name = re.sub(r"^https?://", "", url)
    name = re.sub(r"[^a-zA-Z0-9_]", "_", name)
    return re.sub(r"_+", "_", name).strip("_")


def login(config: ForgeConfig, token: str, url: str | None = None, scope: str = "node") -> tuple[ForgeConfig, str]:
    """Store *token* on the registry at *url* (default registry of *scope*).

    Unknown URLs get a new registry entry named after the URL. Returns the
    new snapshot and the registry name used.
    """
    if not token:
        raise ConfigError("Token is required for login")
    if url is None:
        default = config.registry_for(scope)
        if default is None:
            raise ConfigError(f"No default registry configured for {scope}")
        url = default.url
    registries = dict(config.registries)
    name = next((k for k, r in registries.items() if r.url.rstrip("/") == url.rstrip("/")), None)
    if name is None:
        name = registry_name_for_url(url)
        registries[name] = RegistryConfig(url=url, scope=scope)
    registries[name] = registries[name].model_copy(update={"token": token})
    return _with_registries(config, registries), name


def logout(config: ForgeConfig, url: str | None = None, all_registries: bool = False) -> ForgeConfig:
    registries = dict(config.registries)
    for name, reg in config.registries.items():
        if all_registries or (url and reg.url.rstrip("/") == url.rstrip("/")):
            registries[name] = reg.model_copy(update={"token": None})
    return _with_registries(config, registries)
