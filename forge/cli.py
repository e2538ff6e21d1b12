"""CLI entry point: forge.

Subcommands:
    forge install [PKG...]        # install manifest deps, or just PKG...
    forge remove PKG...           # uninstall
    forge update                  # re-resolve and install the manifest
    forge list | search | info    # queries
    forge cache | config | registry | login | logout
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Coroutine
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from forge import __version__
from forge.core import config as config_mod
from forge.core.config import ForgeConfig
from forge.core.logging import setup_logging
from forge.exceptions import ForgeError
from forge.models import InstallResult
from forge.orchestrator import Forge

T = TypeVar("T")

_ALIASES = {"i": "install", "rm": "remove", "ls": "list"}


class AliasedGroup(click.Group):
    """click group that also accepts the short command aliases."""

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        return super().get_command(ctx, _ALIASES.get(cmd_name, cmd_name))

    def resolve_command(self, ctx: click.Context, args: list[str]):
        _, cmd, rest = super().resolve_command(ctx, args)
        return cmd.name if cmd else None, cmd, rest


@dataclass
class _State:
    cwd: Path
    verbose: bool = False


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except ForgeError as e:
        _fail(str(e))
        raise  # unreachable


def _load_config(state: _State) -> ForgeConfig:
    try:
        return config_mod.load_config(state.cwd)
    except ForgeError as e:
        _fail(str(e))
        raise


def _make_forge(state: _State) -> Forge:
    return Forge(_load_config(state), cwd=state.cwd)


def _save(state: _State, config: ForgeConfig) -> None:
    path = config_mod.save_config(config, state.cwd)
    click.echo(f"Configuration saved to {path}")


def _print_result(result: InstallResult, forge: Forge | None = None) -> None:
    prefix = "Would install" if result.dry_run else "Installed"
    for pkg in result.installed:
        click.echo(f"  {prefix}: {pkg.name}@{pkg.version}")
    for pkg in result.updated:
        click.echo(f"  Updated: {pkg.name}@{pkg.version}")
    for name in result.removed:
        click.echo(f"  {'Would remove' if result.dry_run else 'Removed'}: {name}")
    for ident in result.skipped:
        click.echo(f"  Already installed: {ident}")
    for warning in result.warnings:
        click.echo(f"  Warning: {warning}", err=True)
    for diag in result.diagnostics:
        click.echo(f"  Note: {diag.package}: {diag.message}", err=True)
    for err in result.errors:
        tag = "Error" if err.fatal else "Failed"
        click.echo(f"  {tag}: {err.package}: {err.message}", err=True)

    if result.is_noop and not result.errors and not result.skipped:
        click.echo("Nothing to do.")
    elif result.ok:
        click.echo("Done." if not result.dry_run else "Dry run complete, nothing was changed.")

    if forge is not None and forge.progress.phases:
        summary = forge.progress.get_summary()
        click.echo(f"\nPipeline summary (total: {summary['total_duration']}s):")
        for p in summary["phases"]:
            status_icon = {
                "completed": "+",
                "failed": "!",
                "skipped": "-",
                "running": "~",
                "pending": ".",
            }.get(p["status"], "?")
            duration = f" ({p['duration']}s)" if p["duration"] else ""
            detail = f" - {p['detail']}" if p["detail"] else ""
            click.echo(f"  [{status_icon}] {p['phase']}{duration}{detail}")


def _exit_for(result: InstallResult) -> None:
    if result.errors:
        sys.exit(1)


# ── root ───────────────────────────────────────────────────────────────────


@click.group(cls=AliasedGroup)
@click.version_option(__version__, prog_name="forge")
@click.option("-v", "--verbose", is_flag=True, help="Verbose logging")
@click.option(
    "-C",
    "--cwd",
    "cwd",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Project directory (default: current directory)",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, cwd: Path | None) -> None:
    """forge: one package manager for npm and PyPI projects."""
    setup_logging(verbose)
    ctx.obj = _State(cwd=(cwd or Path.cwd()).resolve(), verbose=verbose)


# ── install / remove / update ──────────────────────────────────────────────


@main.command("install")
@click.argument("packages", nargs=-1)
@click.option("-f", "--format", "fmt", default=None, help="Package format (node, python, ...)")
@click.option("-D", "--save-dev", is_flag=True, help="Install as development dependencies")
@click.option("--dry-run", is_flag=True, help="Resolve and fetch only")
@click.option("--registry", default=None, help="Registry URL override")
@click.option("--summary", is_flag=True, help="Print the pipeline phase summary")
@click.pass_obj
def install(
    state: _State,
    packages: tuple[str, ...],
    fmt: str | None,
    save_dev: bool,
    dry_run: bool,
    registry: str | None,
    summary: bool,
) -> None:
    """Install the manifest's dependencies, or only PACKAGES."""
    forge = _make_forge(state)
    result = _run(
        forge.install(
            list(packages) or None,
            fmt=fmt,
            save_dev=save_dev,
            dry_run=dry_run,
            registry_override=registry,
            verbose=state.verbose,
        )
    )
    _print_result(result, forge if (summary or state.verbose) else None)
    _exit_for(result)


@main.command("remove")
@click.argument("packages", nargs=-1, required=True)
@click.option("-f", "--format", "fmt", default=None, help="Package format")
@click.option("--dry-run", is_flag=True, help="Show what would be removed")
@click.pass_obj
def remove(state: _State, packages: tuple[str, ...], fmt: str | None, dry_run: bool) -> None:
    """Remove installed PACKAGES."""
    forge = _make_forge(state)
    result = _run(forge.remove(list(packages), fmt=fmt, dry_run=dry_run, verbose=state.verbose))
    _print_result(result)
    _exit_for(result)


@main.command("update")
@click.option("-f", "--format", "fmt", default=None, help="Package format")
@click.option("--dry-run", is_flag=True, help="Resolve and fetch only")
@click.option("--registry", default=None, help="Registry URL override")
@click.pass_obj
def update(state: _State, fmt: str | None, dry_run: bool, registry: str | None) -> None:
    """Re-resolve the manifest and install the result."""
    forge = _make_forge(state)
    result = _run(
        forge.update(fmt=fmt, dry_run=dry_run, registry_override=registry, verbose=state.verbose)
    )
    _print_result(result, forge if state.verbose else None)
    _exit_for(result)


# ── queries ────────────────────────────────────────────────────────────────


@main.command("list")
@click.option("-f", "--format", "fmt", default=None, help="Package format")
@click.pass_obj
def list_packages(state: _State, fmt: str | None) -> None:
    """List installed packages."""
    forge = _make_forge(state)
    try:
        listing = forge.list_installed(fmt)
    except ForgeError as e:
        _fail(str(e))
    total = 0
    for adapter_name, packages in listing.items():
        if not packages:
            continue
        click.echo(f"{adapter_name}:")
        for pkg in packages:
            click.echo(f"  {pkg.name}@{pkg.version}")
        total += len(packages)
    if not total:
        click.echo("No packages installed.")


@main.command("search")
@click.argument("query")
@click.option("-f", "--format", "fmt", default=None, help="Only search one format")
@click.option("--limit", default=20, show_default=True, help="Maximum results")
@click.pass_obj
def search(state: _State, query: str, fmt: str | None, limit: int) -> None:
    """Search every registry for QUERY."""
    forge = _make_forge(state)
    results = _run(forge.search(query, fmt=fmt, limit=limit))
    if not results:
        click.echo("No packages found.")
        return
    for r in results:
        desc = f"  {r.description}" if r.description else ""
        click.echo(f"  [{r.format}] {r.name}@{r.version} ({r.score:.2f}){desc}")


@main.command("info")
@click.argument("name")
@click.option("-f", "--format", "fmt", default=None, help="Package format")
@click.option("--registry", default=None, help="Registry URL override")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_obj
def info(state: _State, name: str, fmt: str | None, registry: str | None, as_json: bool) -> None:
    """Show registry information for NAME."""
    forge = _make_forge(state)
    pkg = _run(forge.package_info(name, fmt=fmt, registry_override=registry))
    if as_json:
        click.echo(json.dumps(asdict(pkg), indent=2, default=str))
        return
    click.echo(f"{pkg.name}@{pkg.latest}")
    if pkg.description:
        click.echo(f"  {pkg.description}")
    for label, value in (
        ("Homepage", pkg.homepage),
        ("Repository", pkg.repository),
        ("License", pkg.license),
    ):
        if value:
            click.echo(f"  {label}: {value}")
    if pkg.keywords:
        click.echo(f"  Keywords: {', '.join(pkg.keywords)}")
    click.echo(f"  Versions: {len(pkg.versions)}")


# ── cache ──────────────────────────────────────────────────────────────────


@main.group("cache")
def cache_group() -> None:
    """Manage the artifact cache."""


@cache_group.command("clear")
@click.argument("fmt", required=False)
@click.pass_obj
def cache_clear(state: _State, fmt: str | None) -> None:
    """Delete cached artifacts (all, or one FORMAT)."""
    forge = _make_forge(state)
    try:
        removed = forge.cache_clear(fmt)
    except ForgeError as e:
        _fail(str(e))
    click.echo(f"Cleared {removed} cached file(s).")


@cache_group.command("info")
@click.argument("fmt", required=False)
@click.pass_obj
def cache_info(state: _State, fmt: str | None) -> None:
    """Show cache location and size."""
    forge = _make_forge(state)
    try:
        stats = forge.cache_info(fmt)
    except ForgeError as e:
        _fail(str(e))
    click.echo(f"Directory: {stats.directory}")
    click.echo(f"Files: {stats.file_count}")
    click.echo(f"Size: {stats.human_size}")


# ── config ─────────────────────────────────────────────────────────────────


def _parse_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


@main.group("config")
def config_group() -> None:
    """Read and change configuration."""


@config_group.command("get")
@click.argument("key")
@click.pass_obj
def config_get(state: _State, key: str) -> None:
    try:
        value = config_mod.get_config_value(_load_config(state), key)
    except ForgeError as e:
        _fail(str(e))
    click.echo(json.dumps(value, indent=2) if isinstance(value, (dict, list)) else str(value))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set(state: _State, key: str, value: str) -> None:
    """Set KEY (dotted path) to VALUE (JSON, or a plain string)."""
    try:
        updated = config_mod.set_config_value(_load_config(state), key, _parse_value(value))
    except ForgeError as e:
        _fail(str(e))
    _save(state, updated)


@config_group.command("list")
@click.pass_obj
def config_list(state: _State) -> None:
    data = _load_config(state).to_json_dict()
    for reg in data.get("registries", {}).values():
        if reg.get("token"):
            reg["token"] = "***"
    click.echo(json.dumps(data, indent=2))


@config_group.command("set-priority")
@click.argument("formats", nargs=-1, required=True)
@click.pass_obj
def config_set_priority(state: _State, formats: tuple[str, ...]) -> None:
    """Set the adapter detection order."""
    updated = config_mod.set_config_value(_load_config(state), "pluginPriority", list(formats))
    _save(state, updated)


# ── registries & auth ──────────────────────────────────────────────────────


@main.group("registry")
def registry_group() -> None:
    """Manage package registries."""


@registry_group.command("list")
@click.pass_obj
def registry_list(state: _State) -> None:
    config = _load_config(state)
    for name, reg in config.registries.items():
        default = " (default)" if config.default_registry.get(reg.scope) == name else ""
        auth = " [authenticated]" if reg.token else ""
        click.echo(f"  {name}: {reg.url} [{reg.scope}]{default}{auth}")


@registry_group.command("add")
@click.argument("name")
@click.argument("url")
@click.option("--scope", default="node", show_default=True, help="Format the registry serves")
@click.option("--token", default=None, help="Auth token")
@click.option("--default", "make_default", is_flag=True, help="Make it the scope's default")
@click.pass_obj
def registry_add(
    state: _State, name: str, url: str, scope: str, token: str | None, make_default: bool
) -> None:
    config = config_mod.add_registry(_load_config(state), name, url, scope=scope, token=token)
    if make_default:
        config = config_mod.set_default_registry(config, name)
    _save(state, config)


@registry_group.command("remove")
@click.argument("name")
@click.pass_obj
def registry_remove(state: _State, name: str) -> None:
    try:
        config = config_mod.remove_registry(_load_config(state), name)
    except ForgeError as e:
        _fail(str(e))
    _save(state, config)


@registry_group.command("set-default")
@click.argument("name")
@click.pass_obj
def registry_set_default(state: _State, name: str) -> None:
    try:
        config = config_mod.set_default_registry(_load_config(state), name)
    except ForgeError as e:
        _fail(str(e))
    _save(state, config)


@main.command("login")
@click.option("--registry", "url", default=None, help="Registry URL (default: scope default)")
@click.option("--scope", default="node", show_default=True)
@click.option("--token", prompt=True, hide_input=True, help="Auth token")
@click.pass_obj
def login(state: _State, url: str | None, scope: str, token: str) -> None:
    """Store an auth token for a registry."""
    try:
        config, name = config_mod.login(_load_config(state), token, url=url, scope=scope)
    except ForgeError as e:
        _fail(str(e))
    _save(state, config)
    click.echo(f"Logged in to {name}")


@main.command("logout")
@click.option("--registry", "url", default=None, help="Registry URL")
@click.option("--all", "all_registries", is_flag=True, help="Log out of every registry")
@click.pass_obj
def logout(state: _State, url: str | None, all_registries: bool) -> None:
    """Remove stored auth tokens."""
    if not url and not all_registries:
        _fail("Specify --registry URL or --all")
    config = config_mod.logout(_load_config(state), url=url, all_registries=all_registries)
    _save(state, config)


if __name__ == "__main__":
    main()
