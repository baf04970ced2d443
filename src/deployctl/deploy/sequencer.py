"""Execute a DeploymentPlan stage by stage."""

import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from deployctl.config import DeployCtlConfig, HealthDefaults
from deployctl.core.async_utils import map_in_threads, run_sync
from deployctl.core.cancellation import CancellationToken
from deployctl.core.exceptions import (
    BackupFailedError,
    DeployCtlError,
    DeploymentCancelledError,
    PlanError,
    RollbackFailedError,
    UnknownServiceError,
)
from deployctl.core.logging import StructuredLogger
from deployctl.core.output import format_bytes
from deployctl.deploy.backup import BackupManager
from deployctl.deploy.executor import RemoteExecutor
from deployctl.deploy.health import HealthVerifier
from deployctl.deploy.models import (
    Action,
    ActionType,
    Artifact,
    DeploymentPlan,
    DeploymentReport,
    HealthCheck,
    HealthResult,
    RollbackResult,
    RunState,
    Stage,
    StageResult,
    StageState,
    StageStatus,
    Target,
    new_id,
    utcnow,
)
from deployctl.deploy.report import ReportGenerator
from deployctl.deploy.resolver import TargetResolver
from deployctl.deploy.schema import render_command
from deployctl.deploy.state import BackupStore, ReportStore
from deployctl.deploy.transfer import ArtifactTransfer
from deployctl.deploy.transport import TransportRegistry

logger = StructuredLogger(__name__)


@dataclass
class _TargetOutcome:
    """What one target's pass through a stage produced."""

    notes: list[str] = field(default_factory=list)
    backup_ids: list[str] = field(default_factory=list)
    health: HealthResult | None = None
    rollbacks: list[RollbackResult] = field(default_factory=list)


class StageSequencer:
    """Runs stages in plan order against their resolved targets.

    Stage results are collected by the calling thread only; parallel-safe
    stages fan out over a pool sized to the stage's targets and hand their
    results back rather than recording them.
    """

    def __init__(
        self,
        resolver: TargetResolver,
        executor: RemoteExecutor,
        transfer: ArtifactTransfer,
        health: HealthVerifier,
        backups: BackupManager,
        run_id: str | None = None,
        health_defaults: HealthDefaults | None = None,
        command_timeout: float = 300,
        report_store: ReportStore | None = None,
        dry_run: bool = False,
        cancel: CancellationToken | None = None,
    ):
        self._resolver = resolver
        self._executor = executor
        self._transfer = transfer
        self._health = health
        self._backups = backups
        self._run_id = run_id or new_id()
        self._health_defaults = health_defaults or HealthDefaults()
        self._command_timeout = command_timeout
        self._report_store = report_store
        self._dry_run = dry_run
        self._cancel = cancel or CancellationToken()
        self._generator = ReportGenerator()

    @classmethod
    def from_config(
        cls,
        config: DeployCtlConfig,
        plan: DeploymentPlan,
        dry_run: bool = False,
        cancel: CancellationToken | None = None,
        http_client: httpx.Client | None = None,
    ) -> "StageSequencer":
        """Wire up every collaborator from configuration.

        Args:
            config: Loaded configuration
            plan: Plan whose own environment table overrides the configured one
            dry_run: Record what would happen without touching targets
            cancel: Run-scoped cancellation signal
            http_client: Client used for health probes
        """
        run_id = new_id()
        state_dir = config.get_state_dir()
        transports = TransportRegistry.from_config(config.transport)
        executor = RemoteExecutor(transports)
        health = HealthVerifier(client=http_client)
        command_timeout = config.global_settings.timeout
        backups = BackupManager(
            transports,
            BackupStore(state_dir),
            executor,
            health,
            run_id=run_id,
            command_timeout=command_timeout,
            transfer_timeout=config.transport.transfer_timeout,
        )
        return cls(
            resolver=TargetResolver.from_config(config, plan.environments),
            executor=executor,
            transfer=ArtifactTransfer(transports, timeout=config.transport.transfer_timeout),
            health=health,
            backups=backups,
            run_id=run_id,
            health_defaults=config.health,
            command_timeout=command_timeout,
            report_store=ReportStore(state_dir),
            dry_run=dry_run,
            cancel=cancel,
        )

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def cancel_token(self) -> CancellationToken:
        return self._cancel

    def run(self, plan: DeploymentPlan) -> DeploymentReport:
        """Execute ``plan`` to a terminal state and publish its report.

        Never raises for target-level failures: those become StageResults.
        The report is generated and saved exactly once.
        """
        log = logger.bind(run_id=self._run_id, environment=plan.environment)
        started_at = utcnow()
        stage_states = {s.name: StageState.PENDING for s in plan.stages}
        results: list[StageResult] = []
        rollbacks: list[RollbackResult] = []
        run_state = RunState.NOT_STARTED
        cancelled = False

        log.info(f"Starting run of '{plan.name or plan.source}' ({len(plan.stages)} stage(s))")

        targets, failure = self._preflight(plan)
        if failure is not None:
            results.append(failure)
            stage_states[failure.stage] = StageState.FAILED
            run_state = RunState.ABORTED
        else:
            run_state = RunState.IN_PROGRESS

        if run_state == RunState.IN_PROGRESS:
            cancelled = self._run_stages(plan, targets, stage_states, results, rollbacks)
            if cancelled or StageState.FAILED in stage_states.values():
                rollbacks.extend(self._rollback_run())
                run_state = RunState.ABORTED
            else:
                run_state = RunState.COMPLETED

        report = self._generator.generate(
            results,
            run_id=self._run_id,
            plan=plan,
            stage_states=stage_states,
            run_state=run_state,
            started_at=started_at,
            finished_at=utcnow(),
            rollbacks=rollbacks,
            cancelled=cancelled,
            dry_run=self._dry_run,
        )

        if run_state == RunState.COMPLETED and not self._dry_run and not report.rollback_failed:
            self._backups.supersede()

        if self._report_store is not None:
            self._report_store.save(report)

        log.info(f"Run finished: {report.overall_status.value}", run_state=run_state.value)
        return report

    def _run_stages(
        self,
        plan: DeploymentPlan,
        targets: dict[str, list[Target]],
        stage_states: dict[str, StageState],
        results: list[StageResult],
        rollbacks: list[RollbackResult],
    ) -> bool:
        """Drive stages through their states; returns True if the run was cancelled."""
        for stage in plan.stages:
            if self._cancel.cancelled:
                return True

            stage_states[stage.name] = StageState.RUNNING
            logger.info(f"Stage '{stage.name}' running", stage=stage.name, run_id=self._run_id)
            stage_results, stage_rollbacks = self._run_stage(plan, stage, targets[stage.name])
            results.extend(stage_results)
            rollbacks.extend(stage_rollbacks)

            failed = [r for r in stage_results if r.status != StageStatus.SUCCESS]
            cancelled = bool(failed) and (
                self._cancel.cancelled
                or any(r.error_type == DeploymentCancelledError.__name__ for r in failed)
            )

            if not failed:
                stage_states[stage.name] = StageState.SUCCEEDED
            elif stage.is_critical or cancelled:
                stage_states[stage.name] = StageState.FAILED
                logger.error(f"Stage '{stage.name}' failed", stage=stage.name, run_id=self._run_id)
                return cancelled
            else:
                stage_states[stage.name] = StageState.WARNED
                logger.warning(
                    f"Stage '{stage.name}' failed; continuing", stage=stage.name, run_id=self._run_id
                )
        return False

    def _preflight(
        self, plan: DeploymentPlan
    ) -> tuple[dict[str, list[Target]], StageResult | None]:
        """Resolve every stage's targets before anything remote happens."""
        targets: dict[str, list[Target]] = {}
        for stage in plan.stages:
            try:
                targets[stage.name] = self._resolver.resolve_all(plan.environment, stage.services)
            except UnknownServiceError as e:
                logger.error(e.message, stage=stage.name)
                return targets, StageResult(
                    stage=stage.name,
                    target=f"{e.environment}/{e.service_id}",
                    status=StageStatus.FAILURE,
                    detail=e.message,
                    error_type=type(e).__name__,
                )
        return targets, None

    def _run_stage(
        self,
        plan: DeploymentPlan,
        stage: Stage,
        targets: list[Target],
    ) -> tuple[list[StageResult], list[RollbackResult]]:
        if stage.parallel and len(targets) > 1:
            outcomes = run_sync(
                map_in_threads(
                    lambda t: self._run_target(plan, stage, t), targets, len(targets)
                )
            )
        else:
            outcomes = []
            for target in targets:
                outcome = self._run_target(plan, stage, target)
                outcomes.append(outcome)
                # later targets of a failed critical stage are left untouched
                if outcome[0].status != StageStatus.SUCCESS and stage.is_critical:
                    break

        results = [result for result, _ in outcomes]
        rollbacks = [r for _, rs in outcomes for r in rs]
        return results, rollbacks

    def _run_target(
        self,
        plan: DeploymentPlan,
        stage: Stage,
        target: Target,
    ) -> tuple[StageResult, list[RollbackResult]]:
        """Run every action of ``stage`` against one target.

        Errors stop the target at the failing action and are turned into a
        failure (critical stage) or warning (best-effort stage) result.
        """
        log = logger.bind(stage=stage.name, target=target.key)
        start = time.monotonic()
        outcome = _TargetOutcome()
        status = StageStatus.SUCCESS
        error_type = None

        try:
            context = self._template_context(plan, target)
            self._register_recovery(stage, target, context)
            for action in stage.actions:
                self._cancel.raise_if_cancelled()
                if self._dry_run:
                    outcome.notes.append(f"would {action.describe()}")
                    continue
                self._perform(plan, action, target, context, outcome)
                if outcome.health is not None and not outcome.health.healthy:
                    raise _Unhealthy(outcome.health)
        except _Unhealthy as e:
            status, error_type = self._failed(stage), "HealthCheckFailed"
            outcome.notes.append(
                f"unhealthy after {e.health.attempts} attempt(s): {e.health.last_error}"
            )
        except DeployCtlError as e:
            status, error_type = self._failed(stage), type(e).__name__
            if isinstance(e, DeploymentCancelledError):
                status = StageStatus.FAILURE
            outcome.notes.append(e.message)
            log.error(f"{error_type}: {e.message}")

        if self._dry_run:
            outcome.notes.insert(0, "dry run")

        return (
            StageResult(
                stage=stage.name,
                target=target.key,
                status=status,
                duration_ms=int((time.monotonic() - start) * 1000),
                detail="; ".join(outcome.notes),
                error_type=error_type,
                health=outcome.health,
                backup_ids=tuple(outcome.backup_ids),
            ),
            outcome.rollbacks,
        )

    def _failed(self, stage: Stage) -> StageStatus:
        return StageStatus.FAILURE if stage.is_critical else StageStatus.WARNING

    def _perform(
        self,
        plan: DeploymentPlan,
        action: Action,
        target: Target,
        context: dict[str, Any],
        outcome: _TargetOutcome,
    ) -> None:
        if action.type == ActionType.BACKUP:
            record = self._backups.backup(
                target,
                self._artifact(plan, action),
                allow_missing=action.allow_missing,
                cancel=self._cancel,
            )
            outcome.backup_ids.append(record.id)
            if record.is_empty:
                outcome.notes.append(f"nothing to back up for {action.artifact}")
            else:
                outcome.notes.append(f"backed up {action.artifact}")

        elif action.type == ActionType.TRANSFER:
            result = self._transfer.transfer(
                self._artifact(plan, action),
                target,
                self._backups,
                skip_backup=not action.backup,
                cancel=self._cancel,
            )
            if result.backup_id and result.backup_id not in outcome.backup_ids:
                outcome.backup_ids.append(result.backup_id)
            outcome.notes.append(
                f"transferred {action.artifact} ({format_bytes(result.size_bytes)})"
            )

        elif action.type == ActionType.EXECUTE:
            command = render_command(action.command or "", context)
            if action.requires_backup:
                self._backups.require(target)
            self._executor.execute_checked(
                target,
                command,
                action.timeout or self._command_timeout,
                self._cancel,
            )
            outcome.notes.append(f"ran '{command}'")

        elif action.type == ActionType.HEALTH_CHECK:
            check = self.health_check_for(action, target, context)
            outcome.health = self._health.wait_for_healthy(check, self._cancel)
            if outcome.health.healthy:
                outcome.notes.append(f"healthy after {outcome.health.attempts} attempt(s)")

        elif action.type == ActionType.ROLLBACK:
            record = self._backups.run_record(target, action.artifact or "") or self._backups.latest(
                target.key, action.artifact
            )
            if record is None:
                raise BackupFailedError(
                    f"No backup of '{action.artifact}' to roll back to", target=target.key
                )
            try:
                result = self._backups.rollback(record)
            except RollbackFailedError as e:
                outcome.rollbacks.append(_failed_rollback(record.id, target.key, record.artifact_name, e))
                raise
            outcome.rollbacks.append(result)
            outcome.notes.append(f"rolled back {action.artifact}")

    def _artifact(self, plan: DeploymentPlan, action: Action) -> Artifact:
        try:
            return plan.artifacts[action.artifact or ""]
        except KeyError:
            raise PlanError(f"Unknown artifact '{action.artifact}'", path=plan.source)

    def health_check_for(
        self,
        action: Action,
        target: Target,
        context: dict[str, Any] | None = None,
    ) -> HealthCheck:
        """Build the HealthCheck a health_check action describes for ``target``.

        A ``path`` is joined onto the target's base URL; unset fields fall back
        to the configured health defaults.
        """
        defaults = self._health_defaults
        if action.url:
            url = render_command(action.url, context or {})
        else:
            url = f"{target.base_url.rstrip('/')}/{(action.path or '').lstrip('/')}"

        return HealthCheck(
            url=url,
            target=target.key,
            expected_status=action.expected_status or defaults.expected_status,
            expected_body=action.expected_body,
            poll_interval=(
                action.poll_interval if action.poll_interval is not None else defaults.poll_interval
            ),
            max_attempts=action.max_attempts or defaults.max_attempts,
            timeout=action.probe_timeout or defaults.timeout,
            verify_tls=defaults.verify_tls,
        )

    def _register_recovery(self, stage: Stage, target: Target, context: dict[str, Any]) -> None:
        """Tell the backup manager how this stage brings ``target`` up."""
        if self._dry_run:
            return
        restart = [
            render_command(a.command or "", context)
            for a in stage.actions
            if a.type == ActionType.EXECUTE and a.restart
        ]
        check = next(
            (
                self.health_check_for(a, target, context)
                for a in stage.actions
                if a.type == ActionType.HEALTH_CHECK
            ),
            None,
        )
        if restart or check is not None:
            self._backups.set_recovery(target, restart, check)

    def _template_context(self, plan: DeploymentPlan, target: Target) -> dict[str, Any]:
        return {
            "environment": plan.environment,
            "target": target,
            "artifacts": {
                name: {**a.to_dict(), "destination": a.destination(target)}
                for name, a in plan.artifacts.items()
            },
            "vars": plan.vars,
            "plan": {"name": plan.name, "source": plan.source, "run_id": self._run_id},
        }

    def _rollback_run(self) -> list[RollbackResult]:
        """Restore every target backed up so far, most recent first."""
        records = list(reversed(self._backups.first_records()))
        if not records:
            logger.warning("Run aborted with no backups to restore", run_id=self._run_id)
            return []

        logger.warning(f"Rolling back {len(records)} backup(s)", run_id=self._run_id)
        results = []
        for record in records:
            try:
                results.append(self._backups.rollback(record))
            except DeployCtlError as e:
                logger.error(
                    f"Rollback failed: {e.message}",
                    target=record.target.key,
                    backup_id=record.id,
                )
                results.append(_failed_rollback(record.id, record.target.key, record.artifact_name, e))
        return results


class _Unhealthy(Exception):
    def __init__(self, health: HealthResult):
        super().__init__(health.last_error or "unhealthy")
        self.health = health


def _failed_rollback(
    backup_id: str, target_key: str, artifact_name: str, error: DeployCtlError
) -> RollbackResult:
    return RollbackResult(
        backup_id=backup_id,
        target=target_key,
        artifact_name=artifact_name,
        success=False,
        detail=error.message,
    )
