"""deploy rollback - restore a target from a recorded backup."""

import sys

import click

from deployctl.core.context import DeployCtlContext, pass_context
from deployctl.core.exceptions import RollbackFailedError, StateError
from deployctl.core.output import OutputFormat
from deployctl.deploy.report import EXIT_FAILURE, EXIT_ROLLBACK_FAILED


@click.command("rollback")
@click.option("-t", "--target", "target_key", required=True, metavar="ENV/SERVICE", help="Target to restore")
@click.option("-b", "--backup", "backup_id", help="Backup id (default: newest for the target)")
@click.option("-a", "--artifact", help="Restrict to one artifact when picking the newest backup")
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation")
@pass_context
def rollback(
    ctx: DeployCtlContext,
    target_key: str,
    backup_id: str | None,
    artifact: str | None,
    yes: bool,
) -> None:
    """Restore a target from a backup and verify it comes back healthy.

    \b
    Examples:
        deploy rollback --target staging/api
        deploy rollback --target staging/api --backup 3f2a9c1b7d4e
    """
    manager = ctx.backup_manager()

    try:
        if backup_id:
            record = ctx.backups.load(backup_id)
            if record.target.key != target_key:
                ctx.output.print_error(
                    f"Backup {backup_id} belongs to {record.target.key}, not {target_key}"
                )
                sys.exit(EXIT_FAILURE)
        else:
            record = manager.latest(target_key, artifact)
            if record is None:
                ctx.output.print_error(f"No confirmed backups recorded for {target_key}")
                sys.exit(EXIT_FAILURE)
    except StateError as e:
        ctx.output.print_error(str(e))
        sys.exit(EXIT_FAILURE)

    what = "remove the deployed artifact" if record.is_empty else f"restore {record.backup_path}"
    if ctx.dry_run:
        ctx.log_dry_run(
            f"rollback {record.artifact_name} on {target_key}",
            {"backup": record.id, "action": what},
        )
        return

    if not yes and ctx.config.global_settings.confirm_destructive:
        if not ctx.confirm(f"Roll back {record.artifact_name} on {target_key} ({what})?"):
            ctx.output.print_info("Cancelled")
            return

    try:
        result = manager.rollback(record)
    except RollbackFailedError as e:
        ctx.output.print_alert(f"Rollback of {target_key} failed: {e.message}")
        sys.exit(EXIT_ROLLBACK_FAILED)

    if ctx.output_format != OutputFormat.TABLE:
        ctx.output.print_data(result.to_dict())
        return

    ctx.output.print_success(f"Rolled back {record.artifact_name} on {target_key}: {result.detail}")
    if result.health is not None:
        ctx.output.print_info(f"Healthy after {result.health.attempts} attempt(s)")
