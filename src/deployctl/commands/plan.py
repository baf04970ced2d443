"""deploy plan - validate plans before running them."""

import sys

import click

from deployctl.core.context import DeployCtlContext, pass_context
from deployctl.core.exceptions import DeployCtlError
from deployctl.deploy.executor import RemoteExecutor
from deployctl.deploy.models import DeploymentPlan, Target
from deployctl.deploy.report import EXIT_FAILURE
from deployctl.deploy.resolver import TargetResolver
from deployctl.deploy.schema import load_plan
from deployctl.deploy.transport import TransportRegistry


@click.group()
def plan() -> None:
    """Deployment plan utilities.

    \b
    Examples:
        deploy plan validate --plan deploy/api.yaml --env staging
        deploy plan check --plan deploy/api.yaml --env staging
    """
    pass


def _load(ctx: DeployCtlContext, plan_path: str, environment: str | None) -> tuple[DeploymentPlan, dict[str, list[Target]]]:
    """Load the plan and resolve every stage's targets, or exit 1."""
    try:
        deployment_plan = load_plan(plan_path, environment)
        resolver = TargetResolver.from_config(ctx.config, deployment_plan.environments)
        targets = {
            stage.name: resolver.resolve_all(deployment_plan.environment, stage.services)
            for stage in deployment_plan.stages
        }
    except DeployCtlError as e:
        ctx.output.print_error(str(e))
        sys.exit(EXIT_FAILURE)
    return deployment_plan, targets


def _summary(ctx: DeployCtlContext, deployment_plan: DeploymentPlan, targets: dict[str, list[Target]]) -> None:
    rows = [
        {
            "stage": stage.name,
            "criticality": stage.criticality.value,
            "parallel": "yes" if stage.parallel else "no",
            "targets": ", ".join(t.address for t in targets[stage.name]),
            "actions": ", ".join(a.describe() for a in stage.actions),
        }
        for stage in deployment_plan.stages
    ]
    ctx.output.print_data(rows, title=f"Plan '{deployment_plan.name}' ({deployment_plan.environment})")

    for artifact in deployment_plan.artifacts.values():
        if not artifact.local_path.exists():
            ctx.output.print_warning(f"Artifact '{artifact.name}' not built yet: {artifact.local_path}")


@plan.command("validate")
@click.option("-p", "--plan", "plan_path", required=True, type=click.Path(exists=True, dir_okay=False), help="Deployment plan YAML")
@click.option("-e", "--env", "environment", envvar="DEPLOYCTL_ENV", help="Target environment")
@pass_context
def validate(ctx: DeployCtlContext, plan_path: str, environment: str | None) -> None:
    """Check plan syntax and that every service resolves."""
    deployment_plan, targets = _load(ctx, plan_path, environment)
    _summary(ctx, deployment_plan, targets)
    services = deployment_plan.services()
    ctx.output.print_success(f"Plan is valid ({len(services)} service(s): {', '.join(services)})")


@plan.command("check")
@click.option("-p", "--plan", "plan_path", required=True, type=click.Path(exists=True, dir_okay=False), help="Deployment plan YAML")
@click.option("-e", "--env", "environment", envvar="DEPLOYCTL_ENV", help="Target environment")
@pass_context
def check(ctx: DeployCtlContext, plan_path: str, environment: str | None) -> None:
    """Validate the plan and probe connectivity to every target."""
    deployment_plan, targets = _load(ctx, plan_path, environment)
    _summary(ctx, deployment_plan, targets)

    executor = RemoteExecutor(TransportRegistry.from_config(ctx.config.transport))
    unique = {t.key: t for ts in targets.values() for t in ts}
    unreachable = []
    for key, target in unique.items():
        if executor.check_connectivity(target, timeout=ctx.config.transport.connect_timeout + 10):
            ctx.output.print_success(f"{key} ({target.address}) reachable")
        else:
            ctx.output.print_error(f"{key} ({target.address}) unreachable")
            unreachable.append(key)

    if unreachable:
        sys.exit(EXIT_FAILURE)
