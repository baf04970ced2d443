"""deploy backups - list and prune recorded backups."""

import click

from deployctl.core.context import DeployCtlContext, pass_context


@click.group()
def backups() -> None:
    """Recorded backups.

    \b
    Examples:
        deploy backups list --target staging/api
        deploy backups prune --keep 2
    """
    pass


@backups.command("list")
@click.option("-t", "--target", "target_key", metavar="ENV/SERVICE", help="Filter by target")
@click.option("-a", "--artifact", help="Filter by artifact")
@pass_context
def list_backups(ctx: DeployCtlContext, target_key: str | None, artifact: str | None) -> None:
    """List backups, newest first."""
    records = ctx.backups.list(target_key, artifact)
    if not records:
        ctx.output.print_info("No backups recorded")
        return

    rows = [
        {
            "id": r.id,
            "target": r.target.key,
            "artifact": r.artifact_name,
            "path": r.backup_path or "(empty)",
            "verified": "yes" if r.verified else "no",
            "run": r.run_id or "-",
            "created": r.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        }
        for r in records
    ]
    ctx.output.print_data(rows, title="Backups")


@backups.command("prune")
@click.option("--keep", default=1, show_default=True, type=click.IntRange(min=0), help="Backups to keep per target and artifact")
@click.option("-t", "--target", "target_key", metavar="ENV/SERVICE", help="Only prune this target")
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation")
@pass_context
def prune(ctx: DeployCtlContext, keep: int, target_key: str | None, yes: bool) -> None:
    """Delete all but the newest backups."""
    if ctx.dry_run:
        ctx.log_dry_run("prune backups", {"keep": keep, "target": target_key or "all"})
        return

    if not yes and ctx.config.global_settings.confirm_destructive:
        if not ctx.confirm(f"Delete all but the newest {keep} backup(s) per target and artifact?"):
            ctx.output.print_info("Cancelled")
            return

    discarded = ctx.backup_manager().prune(keep=keep, target_key=target_key)
    ctx.output.print_success(f"Pruned {len(discarded)} backup(s)")
