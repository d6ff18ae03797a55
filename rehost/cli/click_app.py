"""CLI entrypoint."""

from __future__ import annotations

from pathlib import Path

import click

from rehost import __version__
from rehost.cli.commands import (
    errors_command,
    pause_command,
    requeue_command,
    resume_command,
    run_command,
    status_command,
)
from rehost.cli.helpers import should_use_plain
from rehost.cli.types import AppEnv
from rehost.lib.log import configure_logging
from rehost.ui import create_ui


@click.group(context_settings={"help_option_names": ["-h", "--help"]}, invoke_without_command=True)
@click.option("--plain", is_flag=True, help="Force non-interactive plain output")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Path to config.json")
@click.version_option(__version__, prog_name="rehost")
@click.pass_context
def cli(ctx: click.Context, plain: bool, verbose: bool, json_logs: bool, config_path: Path | None) -> None:
    """Re-host attachment images and write their URLs back, under an upload quota."""
    configure_logging(verbose=verbose, json_logs=json_logs)
    ctx.obj = AppEnv(ui=create_ui(should_use_plain(plain=plain)), config_path=config_path)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


cli.add_command(run_command)
cli.add_command(status_command)
cli.add_command(errors_command)
cli.add_command(pause_command)
cli.add_command(resume_command)
cli.add_command(requeue_command)


def main() -> None:
    cli()


__all__ = ["cli", "main"]
