"""Main CLI entry point for deployctl."""

import sys
from typing import Any

import click
from rich.console import Console

from deployctl import __version__
from deployctl.config import load_config
from deployctl.core.context import DeployCtlContext
from deployctl.core.exceptions import ConfigError, DeployCtlError
from deployctl.core.output import OutputFormat


CONTEXT_SETTINGS = {
    "help_option_names": ["-h", "--help"],
    "max_content_width": 120,
}


class OutputFormatType(click.ParamType):
    """Custom Click parameter type for output format."""

    name = "format"

    def convert(
        self,
        value: Any,
        param: click.Parameter | None,
        ctx: click.Context | None,
    ) -> OutputFormat:
        if isinstance(value, OutputFormat):
            return value
        try:
            return OutputFormat(value.lower())
        except ValueError:
            self.fail(
                f"Invalid format '{value}'. Choose from: table, json, yaml, raw",
                param,
                ctx,
            )


OUTPUT_FORMAT = OutputFormatType()


def print_version(ctx: click.Context, param: click.Parameter, value: bool) -> None:
    """Print version and exit."""
    if not value or ctx.resilient_parsing:
        return
    console = Console()
    console.print(f"deployctl version {__version__}")
    ctx.exit()


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "-o",
    "--output",
    "output_format",
    type=OUTPUT_FORMAT,
    metavar="FORMAT",
    help="Output format: table, json, yaml, raw",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="Increase verbosity (-v for info, -vvv for debug)",
)
@click.option(
    "-q",
    "--quiet",
    is_flag=True,
    help="Suppress non-essential output",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would happen without touching any target",
)
@click.option(
    "--no-color",
    is_flag=True,
    help="Disable colored output",
)
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True),
    metavar="FILE",
    envvar="DEPLOYCTL_CONFIG",
    help="Path to config file",
)
@click.option(
    "--version",
    is_flag=True,
    callback=print_version,
    expose_value=False,
    is_eager=True,
    help="Show version and exit",
)
@click.pass_context
def cli(
    ctx: click.Context,
    output_format: OutputFormat | None,
    verbose: int,
    quiet: bool,
    dry_run: bool,
    no_color: bool,
    config_file: str | None,
) -> None:
    """deploy - staged multi-service deployment orchestrator.

    Runs declarative deployment plans against the hosts of an environment:
    transfer artifacts, restart services, wait for health, and roll back
    from backups when a critical stage fails.

    \b
    Examples:
        deploy run --env staging --plan deploy/api.yaml
        deploy status
        deploy rollback --target staging/api

    \b
    Configuration:
        ~/.deployctl/config.yaml    User configuration
        ./deployctl.yaml            Project configuration
        DEPLOYCTL_*                 Environment variables
    """
    try:
        config = load_config(config_file)

        ctx.obj = DeployCtlContext(
            config=config,
            output_format=output_format,
            verbose=verbose,
            quiet=quiet,
            dry_run=dry_run,
            color=not no_color,
        )

        if ctx.obj.dry_run and not quiet:
            ctx.obj.output.print_warning("Dry-run mode enabled - no target will be touched")

    except ConfigError as e:
        console = Console(stderr=True)
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)


def register_commands() -> None:
    """Register all commands."""
    from deployctl.commands.backups import backups
    from deployctl.commands.plan import plan
    from deployctl.commands.rollback import rollback
    from deployctl.commands.run import run
    from deployctl.commands.status import history, status

    cli.add_command(run)
    cli.add_command(rollback)
    cli.add_command(status)
    cli.add_command(history)
    cli.add_command(backups)
    cli.add_command(plan)


register_commands()


@cli.command()
@click.pass_context
def config(ctx: click.Context) -> None:
    """Show current configuration."""
    deploy_ctx: DeployCtlContext = ctx.obj
    cfg = deploy_ctx.config
    config_data = {
        "output_format": deploy_ctx.output_format.value,
        "dry_run": deploy_ctx.dry_run,
        "verbose": deploy_ctx.verbose,
        "state_dir": str(cfg.get_state_dir()),
        "command_timeout": cfg.global_settings.timeout,
        "health": {
            "poll_interval": cfg.health.poll_interval,
            "max_attempts": cfg.health.max_attempts,
            "expected_status": list(cfg.health.expected_status),
        },
        "environments": {
            name: sorted(env.services) for name, env in cfg.environments.items()
        },
    }
    deploy_ctx.output.print_data(config_data, title="Current Configuration")


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except DeployCtlError as e:
        console = Console(stderr=True)
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        console = Console(stderr=True)
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
