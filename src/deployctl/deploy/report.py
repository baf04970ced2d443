"""Turn stage results into a DeploymentReport and an exit code."""

from datetime import datetime
from typing import Iterable

from rich.table import Table

from deployctl.core.output import OutputFormat, OutputFormatter, format_duration
from deployctl.deploy.models import (
    DeploymentPlan,
    DeploymentReport,
    OverallStatus,
    RollbackResult,
    RunState,
    StageResult,
    StageState,
    StageStatus,
    new_id,
    utcnow,
)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_ABORTED = 2
EXIT_ROLLBACK_FAILED = 3

STATUS_STYLES = {
    StageStatus.SUCCESS: "green",
    StageStatus.WARNING: "yellow",
    StageStatus.FAILURE: "red",
    OverallStatus.SUCCESS: "green",
    OverallStatus.PARTIAL_SUCCESS: "yellow",
    OverallStatus.FAILURE: "red",
}


class ReportGenerator:
    """Aggregates StageResults into the run's single DeploymentReport."""

    def generate(
        self,
        results: Iterable[StageResult],
        run_id: str | None = None,
        plan: DeploymentPlan | None = None,
        stage_states: dict[str, StageState] | None = None,
        run_state: RunState = RunState.COMPLETED,
        started_at: datetime | None = None,
        finished_at: datetime | None = None,
        rollbacks: Iterable[RollbackResult] = (),
        cancelled: bool = False,
        dry_run: bool = False,
    ) -> DeploymentReport:
        """Build the report.

        Args:
            results: Every StageResult of the run, in the order recorded
            run_id: Run identifier
            plan: The executed plan
            stage_states: Final state per stage; derived from results if omitted
            run_state: Terminal run state
            started_at: Run start
            finished_at: Run end
            rollbacks: Rollbacks performed during the run
            cancelled: Whether the operator interrupted the run
            dry_run: Whether nothing was actually touched

        Returns:
            DeploymentReport
        """
        results = tuple(results)
        rollbacks = tuple(rollbacks)
        states = dict(stage_states) if stage_states is not None else self.stage_states(results)
        rollback_failed = any(not r.success for r in rollbacks) or any(
            r.error_type == "RollbackFailedError" for r in results
        )
        now = utcnow()

        return DeploymentReport(
            run_id=run_id or new_id(),
            plan=plan.to_dict() if plan is not None else {},
            results=results,
            overall_status=self.overall_status(states, rollbacks, rollback_failed, cancelled),
            run_state=run_state,
            started_at=started_at or now,
            finished_at=finished_at or now,
            stage_states=states,
            rollbacks=rollbacks,
            rollback_failed=rollback_failed,
            cancelled=cancelled,
            dry_run=dry_run,
        )

    @staticmethod
    def stage_states(results: Iterable[StageResult]) -> dict[str, StageState]:
        """Fold per-target results into one state per stage."""
        states: dict[str, StageState] = {}
        for result in results:
            current = states.get(result.stage, StageState.SUCCEEDED)
            if result.status == StageStatus.FAILURE or current == StageState.FAILED:
                states[result.stage] = StageState.FAILED
            elif result.status == StageStatus.WARNING or current == StageState.WARNED:
                states[result.stage] = StageState.WARNED
            else:
                states[result.stage] = StageState.SUCCEEDED
        return states

    @staticmethod
    def overall_status(
        stage_states: dict[str, StageState],
        rollbacks: tuple[RollbackResult, ...] = (),
        rollback_failed: bool = False,
        cancelled: bool = False,
    ) -> OverallStatus:
        """Derive the verdict.

        SUCCESS needs every stage succeeded. PARTIAL_SUCCESS needs at least one
        warned stage, and any failed stage restored by clean rollbacks.
        Everything else, including an interrupted run, is FAILURE.
        """
        states = list(stage_states.values())
        if states and all(s == StageState.SUCCEEDED for s in states) and not cancelled:
            return OverallStatus.SUCCESS
        if rollback_failed or cancelled:
            return OverallStatus.FAILURE
        if StageState.FAILED in states and not (rollbacks and all(r.success for r in rollbacks)):
            return OverallStatus.FAILURE
        if StageState.WARNED in states:
            return OverallStatus.PARTIAL_SUCCESS
        return OverallStatus.FAILURE


def exit_code(report: DeploymentReport) -> int:
    """Process exit code for a report.

    0 for success or partial success, 1 for failure, 2 when the operator
    aborted the run, 3 when a rollback failed and targets may be inconsistent.
    """
    if report.rollback_failed:
        return EXIT_ROLLBACK_FAILED
    if report.cancelled:
        return EXIT_ABORTED
    if report.overall_status in (OverallStatus.SUCCESS, OverallStatus.PARTIAL_SUCCESS):
        return EXIT_SUCCESS
    return EXIT_FAILURE


def render(report: DeploymentReport, output: OutputFormatter) -> None:
    """Print a report in the configured output format."""
    if output.format != OutputFormat.TABLE:
        output.print_data(report.to_dict())
        _alerts(report, output)
        return

    title = f"Run {report.run_id}"
    if report.dry_run:
        title += " (dry run)"
    output.print_header(title)
    output.print(
        f"Environment: {report.environment}  "
        f"Plan: {report.plan.get('name') or report.plan.get('source') or '-'}  "
        f"Duration: {format_duration(report.duration_seconds)}"
    )

    table = Table(show_header=True, header_style="bold")
    table.add_column("Stage")
    table.add_column("Target")
    table.add_column("Status")
    table.add_column("Duration")
    table.add_column("Detail", overflow="fold")

    for result in report.results:
        style = STATUS_STYLES[result.status]
        table.add_row(
            result.stage,
            result.target,
            f"[{style}]{result.status.value}[/{style}]",
            format_duration(result.duration_ms / 1000),
            result.detail,
        )

    for name, state in report.stage_states.items():
        if state == StageState.PENDING:
            table.add_row(name, "-", "[dim]not run[/dim]", "-", "")

    output.print_table(table)

    if report.rollbacks:
        rb = Table(show_header=True, header_style="bold", title="Rollbacks")
        rb.add_column("Backup")
        rb.add_column("Target")
        rb.add_column("Artifact")
        rb.add_column("Result")
        rb.add_column("Detail", overflow="fold")
        for r in report.rollbacks:
            rb.add_row(
                r.backup_id,
                r.target,
                r.artifact_name,
                "[green]restored[/green]" if r.success else "[red]FAILED[/red]",
                r.detail,
            )
        output.print_table(rb)

    style = STATUS_STYLES[report.overall_status]
    output.print(
        f"\nOverall: [{style}]{report.overall_status.value.upper()}[/{style}] "
        f"({report.run_state.value})"
    )
    _alerts(report, output)


def _alerts(report: DeploymentReport, output: OutputFormatter) -> None:
    if report.rollback_failed:
        failed = [r for r in report.rollbacks if not r.success]
        lines = [f"{r.target} ({r.artifact_name}, backup {r.backup_id}): {r.detail}" for r in failed]
        output.print_alert(
            "Rollback failed; targets may be in an inconsistent state.\n" + "\n".join(lines)
        )
    elif report.cancelled:
        output.print_warning("Run was cancelled by the operator")
