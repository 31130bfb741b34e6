"""Command-line interface for taskweave."""

import asyncio
import json
import logging
import shlex
import signal
import sys
from pathlib import Path
from typing import Any, Optional

import click
import yaml

from taskweave import __version__
from taskweave.config import MAX_FORKS, RunConfig, load_config
from taskweave.exceptions import (
    ConfigParseError,
    InventoryCycleError,
    TaskweaveError,
    UnknownGroupError,
)
from taskweave.executor import PlaybookExecutor
from taskweave.host_filter import filter_hosts, format_filter_summary, get_group_hosts_mapping
from taskweave.inventory import Inventory, load_inventory, load_localhost
from taskweave.logging import configure_logging, get_level_from_name, get_level_from_verbosity, get_logger
from taskweave.playbook import Playbook, load_playbook
from taskweave.progress import create_progress_reporter
from taskweave.results import EXIT_PARSE_ERROR, ResultAggregator, format_results_json, format_results_text
from taskweave.secrets import SecretRef, create_secrets_provider, load_yaml
from taskweave.variables import MergePolicy, Precedence, ScopeStack, build_host_stack

logger = get_logger("taskweave.cli")

PARSE_ERRORS = (ConfigParseError, UnknownGroupError, InventoryCycleError)


def parse_extra_vars(values: tuple[str, ...] | list[str]) -> dict[str, Any]:
    """Parse ``-e`` options into a variables mapping.

    Each value is either ``@file`` (YAML or JSON mapping), a JSON object, or
    space-separated ``key=value`` pairs (quoted values allowed). Later
    values override earlier ones.

    Raises:
        ConfigParseError: If a value is malformed or a file cannot be read

    Example:
        >>> parse_extra_vars(["version=1.2 env='prod eu'"])
        {'version': '1.2', 'env': 'prod eu'}
        >>> parse_extra_vars(['{"port": 8080}'])
        {'port': 8080}
    """
    result: dict[str, Any] = {}
    for value in values:
        value = value.strip()
        if value.startswith("@"):
            path = Path(value[1:])
            try:
                data = load_yaml(path.read_text())
            except OSError as e:
                raise ConfigParseError(f"Cannot read extra vars file: {e}", path=str(path)) from e
            except yaml.YAMLError as e:
                raise ConfigParseError(f"Invalid extra vars file: {e}", path=str(path)) from e
            if not isinstance(data, dict):
                raise ConfigParseError("Extra vars file must contain a mapping", path=str(path))
            result.update(data)
        elif value.startswith("{"):
            try:
                data = json.loads(value)
            except json.JSONDecodeError as e:
                raise ConfigParseError(f"Invalid JSON extra vars: {e}", field="extra_vars") from e
            if not isinstance(data, dict):
                raise ConfigParseError("JSON extra vars must be an object", field="extra_vars")
            result.update(data)
        else:
            result.update(parse_key_value_args(value))
    return result


def parse_key_value_args(args: str | None) -> dict[str, str]:
    """Parse space-separated ``key=value`` pairs, honoring shell quoting.

    Raises:
        ConfigParseError: If a pair has no ``=`` or quoting is unbalanced

    Example:
        >>> parse_key_value_args("host=web01 port=80")
        {'host': 'web01', 'port': '80'}
        >>> parse_key_value_args("cmd='echo hello world'")
        {'cmd': 'echo hello world'}
    """
    if not args:
        return {}

    try:
        key_value_pairs = shlex.split(args)
    except ValueError as e:
        raise ConfigParseError(f"Failed to parse arguments: {e}", field="extra_vars") from e

    result = {}
    for pair in key_value_pairs:
        if "=" not in pair or pair.startswith("="):
            raise ConfigParseError(
                f"Invalid argument format: '{pair}'. Expected key=value format.",
                field="extra_vars",
            )
        key, value = pair.split("=", 1)
        result[key] = value

    return result


def _setup_logging(verbose: int, log_level: Optional[str], log_file: Optional[str], quiet_console: bool = False) -> None:
    if log_level:
        level = get_level_from_name(log_level)
    else:
        level = get_level_from_verbosity(verbose)

    # JSON output must stay parseable: keep the console quiet, file logging still applies
    console_level = logging.CRITICAL if quiet_console else level
    configure_logging(
        level=console_level,
        log_file=log_file,
        file_level=level if log_file else None,
        rich_console=sys.stderr.isatty(),
    )


def _load_inventory(inventory: Optional[str], config: RunConfig) -> Inventory:
    if inventory is None:
        return load_localhost()
    return load_inventory(inventory, config=config)


def _plain(value: Any) -> Any:
    """Make a variable value printable (secret references shown, not resolved)."""
    if isinstance(value, SecretRef):
        return str(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


async def run_playbook(
    executor: PlaybookExecutor,
    playbook: Playbook,
    inventory: Inventory,
    limit: Optional[str] = None,
) -> ResultAggregator:
    """Run a playbook, cancelling cleanly on SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, executor.cancel)
            installed.append(sig)
        except (NotImplementedError, RuntimeError, ValueError):
            logger.debug(f"Cannot install handler for {sig.name} on this platform")
    try:
        return await executor.run(playbook, inventory, limit=limit)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """taskweave - run declarative playbooks across an inventory of hosts."""
    if version:
        click.echo(f"taskweave {__version__}")
        ctx.exit(0)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command("run")
@click.argument("playbook", type=click.Path())
@click.option("--inventory", "-i", default=None,
              help="Inventory file or script (default: localhost only)")
@click.option("--forks", "-f", type=int, default=None,
              help=f"Number of hosts to run concurrently (max: {MAX_FORKS})")
@click.option("--extra-vars", "-e", multiple=True,
              help="Extra variables: key=value, JSON, or @file (repeatable)")
@click.option("--limit", "-l", type=str, default=None,
              help="Limit execution to matching hosts (patterns: web*,!db*,@group)")
@click.option("--timeout", "-t", type=float, default=None,
              help="Default per-task timeout in seconds")
@click.option("--format", "output_format", type=click.Choice(["text", "json"]),
              default="text", help="Output format (default: text)")
@click.option("--progress", is_flag=True,
              help="Show task results as they complete")
@click.option("--config", "config_path", type=click.Path(), default=None,
              help="Configuration file (YAML or JSON)")
@click.option("--log-file", type=click.Path(), default=None,
              help="Write logs to file (in addition to console)")
@click.option("--log-level", type=click.Choice(["trace", "debug", "info", "warning", "error"]),
              default=None, help="Set log level explicitly (overrides -v)")
@click.option("-v", "--verbose", count=True,
              help="Increase verbosity: -v=info, -vv=debug, -vvv=trace")
@click.pass_context
def run_command(
    ctx: click.Context,
    playbook: str,
    inventory: Optional[str],
    forks: Optional[int],
    extra_vars: tuple[str, ...],
    limit: Optional[str],
    timeout: Optional[float],
    output_format: str,
    progress: bool,
    config_path: Optional[str],
    log_file: Optional[str],
    log_level: Optional[str],
    verbose: int,
) -> None:
    """Run a playbook against the inventory.

    Exit codes: 0 success, 2 host failures, 3 unreachable hosts,
    4 parse or configuration error, 99 cancelled.

    Examples:
        taskweave run site.yml -i hosts.ini

        taskweave run deploy.yml -i hosts.yml -f 20 -e version=1.4 --limit web*

        taskweave run site.yml -i inventory.py --format json
    """
    _setup_logging(verbose, log_level, log_file, quiet_console=output_format == "json")

    try:
        config = load_config(
            config_path,
            forks=forks,
            timeout=timeout,
            extra_vars=parse_extra_vars(extra_vars) or None,
        )
        logger.debug("Run configuration:\n" + config.format_text())
        inv = _load_inventory(inventory, config)
        book = load_playbook(playbook)
        executor = PlaybookExecutor(
            config,
            reporter=create_progress_reporter(progress, json_format=output_format == "json"),
        )
        results = asyncio.run(run_playbook(executor, book, inv, limit))
    except PARSE_ERRORS as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_PARSE_ERROR)

    if output_format == "json":
        click.echo(format_results_json(results, playbook))
    else:
        click.echo(format_results_text(results, verbose=verbose > 0), nl=False)

    ctx.exit(results.exit_code())


@cli.group()
def inventory() -> None:
    """Inventory inspection commands."""


@inventory.command("list")
@click.option("--inventory", "-i", "inventory_path", required=True, help="Inventory file or script")
@click.option("--limit", "-l", type=str, default=None, help="Only show matching hosts")
@click.option("--format", "output_format", type=click.Choice(["text", "json"]),
              default="text", help="Output format")
@click.pass_context
def inventory_list(ctx: click.Context, inventory_path: str, limit: Optional[str], output_format: str) -> None:
    """List groups and hosts.

    Examples:
        taskweave inventory list -i hosts.ini

        taskweave inventory list -i hosts.yml --limit @webservers --format json
    """
    try:
        inv = load_inventory(inventory_path)
        hosts = inv.get_all_hosts()
        if limit:
            hosts = filter_hosts(hosts, limit, get_group_hosts_mapping(inv))
    except PARSE_ERRORS as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_PARSE_ERROR)

    if output_format == "json":
        output = {
            "groups": {
                group.name: sorted(h.name for h in inv.group_hosts(group.name) if h.name in hosts)
                for group in inv.list_groups()
            },
            "hosts": {
                name: {
                    "address": host.address,
                    "port": host.port,
                    "user": host.user,
                    "connection": host.connection,
                    "groups": host.groups,
                }
                for name, host in hosts.items()
            },
        }
        click.echo(json.dumps(output, indent=2))
        return

    if limit:
        click.echo(format_filter_summary(len(inv.hosts), len(hosts), limit))
    for group in inv.list_groups():
        members = [h for h in inv.group_hosts(group.name) if h.name in hosts]
        click.echo(f"{group.name} ({len(members)} host{'s' if len(members) != 1 else ''}):")
        for host in members:
            if host.is_local:
                click.echo(f"  - {host.name} (local)")
            else:
                click.echo(f"  - {host.name} ({host.user}@{host.address}:{host.port})")


@inventory.command("validate")
@click.option("--inventory", "-i", "inventory_path", required=True, help="Inventory file or script")
@click.pass_context
def inventory_validate(ctx: click.Context, inventory_path: str) -> None:
    """Validate inventory structure and show summary.

    Checks that the inventory parses, that group nesting has no cycles and
    reports hosts that may not be reachable as configured.
    """
    try:
        inv = load_inventory(inventory_path)
    except PARSE_ERRORS as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_PARSE_ERROR)

    all_hosts = inv.get_all_hosts()
    groups = inv.list_groups()
    click.echo(f"Inventory: {inventory_path}")
    click.echo(f"Loaded {len(all_hosts)} host(s) from {len(groups)} group(s)")

    warnings = []
    for host_name, host in all_hosts.items():
        if host.connection not in ("ssh", "local"):
            warnings.append(f"{host_name}: unknown connection type '{host.connection}'")
        if not 0 < host.port < 65536:
            warnings.append(f"{host_name}: invalid port {host.port}")
    for group in groups:
        if group.name not in ("all", "ungrouped") and not inv.group_hosts(group.name):
            warnings.append(f"group '{group.name}' has no hosts")

    click.echo("\nValidation:")
    if not warnings:
        click.echo("  All checks passed")
    for warning in warnings:
        click.echo(f"  Warning: {warning}")


@cli.group()
def vars() -> None:
    """Variable inspection commands."""


@vars.command("show")
@click.argument("hostname")
@click.option("--inventory", "-i", "inventory_path", required=True, help="Inventory file or script")
@click.option("--extra-vars", "-e", multiple=True, help="Extra variables (as for run)")
@click.option("--raw", is_flag=True, help="Show values without interpolation")
@click.option("--format", "output_format", type=click.Choice(["text", "json"]),
              default="text", help="Output format")
@click.pass_context
def vars_show(
    ctx: click.Context,
    hostname: str,
    inventory_path: str,
    extra_vars: tuple[str, ...],
    raw: bool,
    output_format: str,
) -> None:
    """Show the variables visible to a host.

    Values are resolved through group, host and extra variable layers;
    references that cannot be resolved are shown with their error.

    Examples:
        taskweave vars show web01 -i hosts.yml

        taskweave vars show db01 -i hosts.yml --format json
    """
    try:
        config = load_config(extra_vars=parse_extra_vars(extra_vars) or None)
        inv = load_inventory(inventory_path, config=config)
    except PARSE_ERRORS as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_PARSE_ERROR)

    host = inv.get_host(hostname)
    if host is None:
        available = ", ".join(sorted(inv.hosts))
        raise click.ClickException(
            f"Host '{hostname}' not found in inventory.\n"
            f"Available hosts: {available}"
        )

    base = ScopeStack(
        merge_policy=MergePolicy(config.merge_policy),
        secrets=create_secrets_provider(config.secrets_provider),
    )
    if config.extra_vars:
        base.push("extra_vars", Precedence.EXTRA, config.extra_vars)
    stack = build_host_stack(base, inv, host)

    values: dict[str, Any] = {}
    for key in sorted(stack.keys()):
        if raw:
            values[key] = _plain(stack.lookup_raw(key))
            continue
        try:
            values[key] = stack.resolve(key)
        except TaskweaveError as e:
            values[key] = f"<error: {e}>"

    if output_format == "json":
        click.echo(json.dumps({"host": hostname, "groups": host.groups, "vars": values}, indent=2, default=str))
    else:
        click.echo(f"Host: {hostname}")
        click.echo(f"Groups: {', '.join(host.groups) or '-'}")
        click.echo(yaml.safe_dump(_plain(values), default_flow_style=False, sort_keys=True).rstrip())


def main() -> None:
    """Package entry point for the taskweave command-line interface."""
    cli()


if __name__ == "__main__":
    cli()
