"""deploy status / deploy history - inspect stored run reports."""

import sys

import click

from deployctl.core.context import DeployCtlContext, pass_context
from deployctl.core.exceptions import StateError
from deployctl.core.output import format_duration
from deployctl.deploy.report import EXIT_FAILURE, render


@click.command("status")
@click.option("-r", "--run", "run_id", help="Run id (default: most recent run)")
@pass_context
def status(ctx: DeployCtlContext, run_id: str | None) -> None:
    """Show the report of a deployment run.

    \b
    Examples:
        deploy status
        deploy status --run 3f2a9c1b7d4e
    """
    try:
        report = ctx.reports.load(run_id) if run_id else ctx.reports.latest()
    except StateError as e:
        ctx.output.print_error(str(e))
        sys.exit(EXIT_FAILURE)

    if report is None:
        ctx.output.print_info("No deployment runs recorded")
        return

    render(report, ctx.output)


@click.command("history")
@click.option("--limit", default=20, show_default=True, help="Max runs to show")
@pass_context
def history(ctx: DeployCtlContext, limit: int) -> None:
    """List recent deployment runs, newest first."""
    reports = ctx.reports.list(limit=limit)
    if not reports:
        ctx.output.print_info("No deployment runs recorded")
        return

    rows = [
        {
            "run_id": r.run_id,
            "plan": r.plan.get("name", ""),
            "environment": r.environment,
            "status": r.overall_status.value,
            "state": r.run_state.value,
            "started": r.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            "duration": format_duration(r.duration_seconds),
        }
        for r in reports
    ]
    ctx.output.print_data(rows, title="Deployment Runs")
