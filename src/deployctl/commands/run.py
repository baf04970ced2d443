"""deploy run - execute a deployment plan."""

import signal
import sys
from contextlib import contextmanager
from typing import Iterator

import click

from deployctl.core.cancellation import CancellationToken
from deployctl.core.context import DeployCtlContext, pass_context
from deployctl.core.exceptions import DeployCtlError
from deployctl.core.output import OutputFormatter
from deployctl.deploy.report import EXIT_ABORTED, EXIT_FAILURE, exit_code, render
from deployctl.deploy.schema import load_plan
from deployctl.deploy.sequencer import StageSequencer

# Environments that always ask before deploying
PROTECTED_ENVIRONMENTS = ("production", "prod")


@contextmanager
def interrupt_cancels(cancel: CancellationToken, output: OutputFormatter) -> Iterator[None]:
    """Turn the first Ctrl-C into a cooperative cancel; the second one is fatal."""

    def handler(signum: int, frame: object) -> None:
        if cancel.cancelled:
            raise KeyboardInterrupt
        output.print_warning(
            "Interrupt received: stopping at the next step and rolling back "
            "(press Ctrl-C again to force quit)"
        )
        cancel.cancel("interrupted by operator")

    try:
        previous = signal.signal(signal.SIGINT, handler)
    except ValueError:
        # not the main thread; signals cannot be handled here
        previous = None

    try:
        yield
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)


@click.command("run")
@click.option(
    "-p",
    "--plan",
    "plan_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Deployment plan YAML",
)
@click.option(
    "-e",
    "--env",
    "environment",
    envvar="DEPLOYCTL_ENV",
    help="Target environment (overrides the plan's)",
)
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation")
@pass_context
def run(ctx: DeployCtlContext, plan_path: str, environment: str | None, yes: bool) -> None:
    """Run a deployment plan.

    Exits 0 on success or partial success, 1 on failure, 2 when the
    operator aborts, and 3 when a rollback failed.

    \b
    Examples:
        deploy run --env staging --plan deploy/api.yaml
        deploy --dry-run run --env production --plan deploy/api.yaml
    """
    try:
        plan = load_plan(plan_path, environment)
        sequencer = StageSequencer.from_config(ctx.config, plan, dry_run=ctx.dry_run)
    except DeployCtlError as e:
        ctx.output.print_error(str(e))
        sys.exit(EXIT_FAILURE)

    if (
        plan.environment in PROTECTED_ENVIRONMENTS
        and not yes
        and not ctx.dry_run
        and ctx.config.global_settings.confirm_destructive
    ):
        if not ctx.confirm(
            f"Deploy '{plan.name}' to {plan.environment} ({len(plan.stages)} stage(s))?"
        ):
            ctx.output.print_info("Cancelled")
            sys.exit(EXIT_ABORTED)

    ctx.output.print_info(f"Run {sequencer.run_id}: deploying '{plan.name}' to {plan.environment}")

    with interrupt_cancels(sequencer.cancel_token, ctx.output):
        report = sequencer.run(plan)

    render(report, ctx.output)
    sys.exit(exit_code(report))
