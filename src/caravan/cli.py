"""Command-line interface for caravan.

Every task is a subcommand; global options select the configuration,
inventory and logging. A task exits 0 when its transaction commits and
1 when it fails (after any rollback).
"""

import asyncio
import shlex
from dataclasses import dataclass, field
from typing import Any

import click
from rich.console import Console

from caravan import __version__
from caravan.config import load_config
from caravan.exceptions import CaravanError, CommandFailedError, HostCommandError
from caravan.inventory import Inventory, load_inventory, load_localhost
from caravan.logging import (
    configure_logging,
    get_level_from_name,
    get_level_from_verbosity,
    get_logger,
)
from caravan.recipes import TASKS, Deployment, TaskDefinition
from caravan.transaction import TransactionState

# Lines of host output shown per failed host in the failure summary
OUTPUT_TAIL_LINES = 10


@dataclass
class Settings:
    """Global options shared by every task subcommand."""

    config_file: str | None = None
    inventory_file: str | None = None
    local: bool = False
    overrides: dict[str, Any] = field(default_factory=dict)
    limit: str | None = None
    quiet: bool = False


def parse_options(args: tuple[str, ...] | list[str] | None) -> dict[str, str]:
    """Parse ``--set`` values of the form key=value.

    Each value may hold several space-separated assignments; quoting
    follows shell rules.

    Example:
        >>> parse_options(("keep-releases=3", "repository=svn://svn/app/trunk"))
        {'keep-releases': '3', 'repository': 'svn://svn/app/trunk'}
    """
    options: dict[str, str] = {}
    for arg in args or ():
        for token in shlex.split(arg):
            key, sep, value = token.partition("=")
            if not sep or not key:
                raise click.BadParameter(f"expected key=value, got {token!r}", param_hint="--set")
            options[key] = value
    return options


def format_failure(error: BaseException, deployment: Deployment | None) -> str:
    """Describe a failed task: the error, failed hosts and what was rolled back."""
    lines = ["", f"Error: {error}"]

    failures: list[HostCommandError] = []
    if isinstance(error, CommandFailedError):
        failures = error.failures
    elif isinstance(error, HostCommandError):
        failures = [error]

    if failures:
        lines.append("")
        lines.append("Failed hosts:")
        for failure in failures:
            lines.append(f"  {failure.host} (exit status {failure.exit_status})")
            tail = failure.output.rstrip().splitlines()[-OUTPUT_TAIL_LINES:]
            for line in tail:
                lines.append(f"    {line}")

    if deployment is not None:
        rolled_back = [
            name
            for tx in deployment.history
            if tx.state is TransactionState.ROLLED_BACK
            for name in tx.rolled_back
        ]
        errors = [
            (name, exc)
            for tx in deployment.history
            for name, exc in tx.rollback_errors
        ]
        lines.append("")
        if rolled_back:
            lines.append(f"Rolled back: {', '.join(rolled_back)}")
        else:
            lines.append("Nothing to roll back")
        for name, exc in errors:
            lines.append(f"  rollback of {name} failed: {exc}")

    lines.append("")
    return "\n".join(lines)


def _load_inventory(settings: Settings) -> Inventory:
    if settings.local:
        return load_localhost()
    if settings.inventory_file is None:
        return Inventory()
    try:
        return load_inventory(settings.inventory_file)
    except (OSError, ValueError) as e:
        raise click.ClickException(str(e))


async def _execute(deployment: Deployment, name: str) -> None:
    try:
        await deployment.execute(name)
    finally:
        await deployment.close()


def run_task(settings: Settings, name: str) -> None:
    """Build a Deployment from the global options and run one task."""
    try:
        config = load_config(settings.config_file, settings.overrides)
    except CaravanError as e:
        raise click.ClickException(str(e))

    output = Console(stderr=True)

    def show_output(host: str, stream: str, line: str) -> None:
        output.print(
            f"    [{stream} :: {host}] {line}",
            markup=False,
            highlight=False,
            style="red" if stream == "err" else None,
        )

    inventory = _load_inventory(settings)
    logger = get_logger("caravan.cli", task=name)
    deployment: Deployment | None = None
    try:
        deployment = Deployment(config, inventory, limit=settings.limit)
        if not settings.quiet:
            deployment.dispatcher.on_output = show_output
        logger.info("running task", hosts=len(inventory.hosts))
        asyncio.run(_execute(deployment, name))
    except CaravanError as e:
        logger.error("task failed", error=e.__class__.__name__)
        click.echo(format_failure(e, deployment), err=True)
        raise click.ClickException(f"task {name} failed")


def _task_command(definition: TaskDefinition) -> click.Command:
    @click.pass_obj
    def callback(settings: Settings) -> None:
        run_task(settings, definition.name)

    summary = definition.desc.split("\n", 1)[0]
    return click.Command(
        definition.name,
        callback=callback,
        help=definition.desc,
        short_help=summary,
    )


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.option("--config", "-c", "config_file", type=click.Path(exists=True, dir_okay=False),
              help="Deployment configuration file (YAML)")
@click.option("--inventory", "-i", "inventory_file", type=click.Path(exists=True, dir_okay=False),
              help="Inventory file (YAML or JSON)")
@click.option("--local", is_flag=True, help="Run every role on this machine instead of an inventory")
@click.option("--set", "-s", "set_options", multiple=True,
              help="Set a configuration option (key=value, repeatable)")
@click.option("--limit", "-l", default=None, help="Limit execution to matching hosts")
@click.option("--ask-pass", is_flag=True, help="Prompt for the default password")
@click.option("--quiet", "-q", is_flag=True, help="Do not echo remote output")
@click.option("-v", "--verbose", count=True, help="Increase verbosity (-v, -vv, -vvv)")
@click.option("--log-level", type=click.Choice(["trace", "debug", "info", "warning", "error"]),
              default=None, help="Set log level explicitly (overrides -v)")
@click.option("--log-file", type=click.Path(), default=None, help="Also write logs to this file")
@click.pass_context
def cli(
    ctx: click.Context,
    version: bool,
    config_file: str | None,
    inventory_file: str | None,
    local: bool,
    set_options: tuple[str, ...],
    limit: str | None,
    ask_pass: bool,
    quiet: bool,
    verbose: int,
    log_level: str | None,
    log_file: str | None,
) -> None:
    """caravan - deploy an application to a fleet of hosts."""
    if version:
        click.echo(f"caravan {__version__}")
        ctx.exit(0)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        return

    level = get_level_from_name(log_level) if log_level else get_level_from_verbosity(verbose)
    configure_logging(level=level, log_file=log_file)

    overrides: dict[str, Any] = parse_options(set_options)
    if ask_pass:
        overrides["password"] = click.prompt("Password", hide_input=True)

    ctx.obj = Settings(
        config_file=config_file,
        inventory_file=inventory_file,
        local=local,
        overrides=overrides,
        limit=limit,
        quiet=quiet,
    )


for _definition in TASKS.values():
    cli.add_command(_task_command(_definition))


def main() -> None:
    """Package entry point for the caravan command-line interface."""
    cli()


if __name__ == "__main__":
    cli()
