"""Deployment data models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def _parse_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class ArtifactKind(str, Enum):
    """Kinds of deployable artifacts."""

    BINARY = "binary"
    STATIC_BUNDLE = "static-bundle"


class Criticality(str, Enum):
    """Stage failure policy."""

    CRITICAL = "critical"
    BEST_EFFORT = "best-effort"


class ActionType(str, Enum):
    """Actions a stage can perform against each of its targets."""

    BACKUP = "backup"
    TRANSFER = "transfer"
    EXECUTE = "execute"
    HEALTH_CHECK = "health_check"
    ROLLBACK = "rollback"


class StageStatus(str, Enum):
    """Outcome recorded in a StageResult."""

    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


class StageState(str, Enum):
    """Lifecycle of a stage within a run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    WARNED = "warned"


class RunState(str, Enum):
    """Lifecycle of a whole run."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABORTED = "aborted"


class OverallStatus(str, Enum):
    """Final verdict of a deployment report."""

    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILURE = "failure"


@dataclass(frozen=True)
class Target:
    """A resolved deployment destination."""

    service_id: str
    environment: str
    host: str
    port: int
    base_url: str
    credential_ref: str | None = None
    user: str | None = None
    ssh_port: int = 22
    deploy_dir: str = "/opt/app"
    backup_dir: str = "/opt/app/backups"
    transport: str = "ssh"

    @property
    def key(self) -> str:
        """Stable identifier, ``<environment>/<service>``."""
        return f"{self.environment}/{self.service_id}"

    @property
    def address(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "service_id": self.service_id,
            "environment": self.environment,
            "host": self.host,
            "port": self.port,
            "base_url": self.base_url,
            "credential_ref": self.credential_ref,
            "user": self.user,
            "ssh_port": self.ssh_port,
            "deploy_dir": self.deploy_dir,
            "backup_dir": self.backup_dir,
            "transport": self.transport,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Target":
        """Create from dictionary."""
        return cls(**data)


@dataclass(frozen=True)
class Artifact:
    """A named, versioned deployable unit produced by an external build."""

    name: str
    local_path: Path
    kind: ArtifactKind = ArtifactKind.BINARY
    version: str = ""
    remote_name: str | None = None

    @property
    def destination_name(self) -> str:
        return self.remote_name or self.local_path.name

    def destination(self, target: Target) -> str:
        """Absolute path of this artifact on ``target``."""
        return f"{target.deploy_dir.rstrip('/')}/{self.destination_name}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "local_path": str(self.local_path),
            "kind": self.kind.value,
            "version": self.version,
            "remote_name": self.remote_name,
        }


@dataclass(frozen=True)
class HealthCheck:
    """A polled endpoint probe; declarative and never mutated."""

    url: str
    target: str | None = None  # target key, for attribution
    expected_status: tuple[int, int] = (200, 299)
    expected_body: str | None = None
    poll_interval: float = 5.0
    max_attempts: int = 60
    timeout: float = 5.0
    verify_tls: bool = True

    def accepts(self, status_code: int, body: str) -> bool:
        """Check a response against the expected status range and body."""
        low, high = self.expected_status
        if not low <= status_code <= high:
            return False
        if self.expected_body is not None and self.expected_body not in body:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "target": self.target,
            "expected_status": list(self.expected_status),
            "expected_body": self.expected_body,
            "poll_interval": self.poll_interval,
            "max_attempts": self.max_attempts,
            "timeout": self.timeout,
            "verify_tls": self.verify_tls,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HealthCheck":
        data = dict(data)
        data["expected_status"] = tuple(data.get("expected_status", (200, 299)))
        return cls(**data)


@dataclass(frozen=True)
class Action:
    """One step a stage performs against each of its targets.

    Only the fields relevant to ``type`` are meaningful.
    """

    type: ActionType
    artifact: str | None = None
    # execute
    command: str | None = None
    timeout: float | None = None
    restart: bool = False
    destructive: bool = False
    # transfer
    backup: bool = True
    # backup
    allow_missing: bool = False
    # health_check
    url: str | None = None
    path: str | None = None
    expected_status: tuple[int, int] | None = None
    expected_body: str | None = None
    poll_interval: float | None = None
    max_attempts: int | None = None
    probe_timeout: float | None = None

    @property
    def requires_backup(self) -> bool:
        """Whether this action overwrites or restarts something on the target."""
        if self.type == ActionType.TRANSFER:
            return self.backup
        if self.type == ActionType.EXECUTE:
            return self.restart or self.destructive
        return False

    def describe(self) -> str:
        if self.type == ActionType.EXECUTE:
            return f"execute '{self.command}'"
        if self.type == ActionType.HEALTH_CHECK:
            return f"health_check {self.url or self.path or '/'}"
        return f"{self.type.value} {self.artifact}"


@dataclass(frozen=True)
class Stage:
    """An ordered unit of work within a deployment plan."""

    name: str
    services: tuple[str, ...]
    actions: tuple[Action, ...]
    criticality: Criticality = Criticality.CRITICAL
    parallel: bool = False

    @property
    def is_critical(self) -> bool:
        return self.criticality == Criticality.CRITICAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "services": list(self.services),
            "criticality": self.criticality.value,
            "parallel": self.parallel,
            "actions": [a.describe() for a in self.actions],
        }


@dataclass(frozen=True)
class DeploymentPlan:
    """Top-level input: environment plus ordered stages."""

    environment: str
    stages: tuple[Stage, ...]
    name: str = ""
    artifacts: dict[str, Artifact] = field(default_factory=dict)
    vars: dict[str, Any] = field(default_factory=dict)
    environments: dict[str, Any] = field(default_factory=dict)
    source: str | None = None

    def services(self) -> list[str]:
        """All services referenced by the plan, in first-use order."""
        seen: list[str] = []
        for stage in self.stages:
            for service in stage.services:
                if service not in seen:
                    seen.append(service)
        return seen

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "environment": self.environment,
            "source": self.source,
            "artifacts": {k: a.to_dict() for k, a in self.artifacts.items()},
            "stages": [s.to_dict() for s in self.stages],
        }


@dataclass(frozen=True)
class ExecResult:
    """Outcome of one remote command."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class TransferResult:
    """Outcome of one artifact transfer."""

    artifact: str
    target: str
    destination: str
    size_bytes: int = 0
    duration_ms: int = 0
    backup_id: str | None = None


@dataclass(frozen=True)
class HealthResult:
    """Outcome of waiting for a health check."""

    healthy: bool
    attempts: int
    last_status: int | None = None
    last_error: str | None = None
    url: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "attempts": self.attempts,
            "last_status": self.last_status,
            "last_error": self.last_error,
            "url": self.url,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HealthResult":
        return cls(**data)


@dataclass
class BackupRecord:
    """Durable pointer to a target's pre-deployment artifact.

    ``backup_path`` is None for an empty backup: nothing existed at the
    destination, so restoring means removing what was deployed. ``size_bytes``
    is the size of the artifact when it was backed up; an unconfirmed backup
    is only trusted if its copy still matches it.
    """

    target: Target
    artifact_name: str
    destination_path: str
    backup_path: str | None
    artifact_kind: ArtifactKind = ArtifactKind.BINARY
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    run_id: str | None = None
    verified: bool = False
    size_bytes: int | None = None
    restart_commands: list[str] = field(default_factory=list)
    health_check: HealthCheck | None = None

    @property
    def is_empty(self) -> bool:
        return self.backup_path is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "target": self.target.to_dict(),
            "artifact_name": self.artifact_name,
            "destination_path": self.destination_path,
            "backup_path": self.backup_path,
            "artifact_kind": self.artifact_kind.value,
            "created_at": self.created_at.isoformat(),
            "run_id": self.run_id,
            "verified": self.verified,
            "size_bytes": self.size_bytes,
            "restart_commands": list(self.restart_commands),
            "health_check": self.health_check.to_dict() if self.health_check else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BackupRecord":
        return cls(
            id=data["id"],
            target=Target.from_dict(data["target"]),
            artifact_name=data["artifact_name"],
            destination_path=data["destination_path"],
            backup_path=data.get("backup_path"),
            artifact_kind=ArtifactKind(data.get("artifact_kind", "binary")),
            created_at=datetime.fromisoformat(data["created_at"]),
            run_id=data.get("run_id"),
            verified=data.get("verified", False),
            size_bytes=data.get("size_bytes"),
            restart_commands=list(data.get("restart_commands", [])),
            health_check=(
                HealthCheck.from_dict(data["health_check"]) if data.get("health_check") else None
            ),
        )


@dataclass(frozen=True)
class RollbackResult:
    """Outcome of restoring one backup."""

    backup_id: str
    target: str
    artifact_name: str
    success: bool
    detail: str = ""
    health: HealthResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "backup_id": self.backup_id,
            "target": self.target,
            "artifact_name": self.artifact_name,
            "success": self.success,
            "detail": self.detail,
            "health": self.health.to_dict() if self.health else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RollbackResult":
        data = dict(data)
        if data.get("health"):
            data["health"] = HealthResult.from_dict(data["health"])
        return cls(**data)


@dataclass(frozen=True)
class StageResult:
    """Outcome of one stage against one target. Immutable once recorded."""

    stage: str
    target: str
    status: StageStatus
    duration_ms: int = 0
    detail: str = ""
    error_type: str | None = None
    health: HealthResult | None = None
    backup_ids: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "target": self.target,
            "status": self.status.value,
            "duration_ms": self.duration_ms,
            "detail": self.detail,
            "error_type": self.error_type,
            "health": self.health.to_dict() if self.health else None,
            "backup_ids": list(self.backup_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StageResult":
        return cls(
            stage=data["stage"],
            target=data["target"],
            status=StageStatus(data["status"]),
            duration_ms=data.get("duration_ms", 0),
            detail=data.get("detail", ""),
            error_type=data.get("error_type"),
            health=HealthResult.from_dict(data["health"]) if data.get("health") else None,
            backup_ids=tuple(data.get("backup_ids", [])),
        )


@dataclass(frozen=True)
class DeploymentReport:
    """Terminal output of a run; written once, after the run concludes."""

    run_id: str
    plan: dict[str, Any]
    results: tuple[StageResult, ...]
    overall_status: OverallStatus
    run_state: RunState
    started_at: datetime
    finished_at: datetime
    stage_states: dict[str, StageState] = field(default_factory=dict)
    rollbacks: tuple[RollbackResult, ...] = ()
    rollback_failed: bool = False
    cancelled: bool = False
    dry_run: bool = False

    @property
    def environment(self) -> str:
        return self.plan.get("environment", "")

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "run_id": self.run_id,
            "plan": self.plan,
            "results": [r.to_dict() for r in self.results],
            "overall_status": self.overall_status.value,
            "run_state": self.run_state.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "stage_states": {k: v.value for k, v in self.stage_states.items()},
            "rollbacks": [r.to_dict() for r in self.rollbacks],
            "rollback_failed": self.rollback_failed,
            "cancelled": self.cancelled,
            "dry_run": self.dry_run,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeploymentReport":
        """Create from dictionary."""
        return cls(
            run_id=data["run_id"],
            plan=data.get("plan", {}),
            results=tuple(StageResult.from_dict(r) for r in data.get("results", [])),
            overall_status=OverallStatus(data["overall_status"]),
            run_state=RunState(data["run_state"]),
            started_at=_parse_time(data["started_at"]) or utcnow(),
            finished_at=_parse_time(data["finished_at"]) or utcnow(),
            stage_states={k: StageState(v) for k, v in data.get("stage_states", {}).items()},
            rollbacks=tuple(RollbackResult.from_dict(r) for r in data.get("rollbacks", [])),
            rollback_failed=data.get("rollback_failed", False),
            cancelled=data.get("cancelled", False),
            dry_run=data.get("dry_run", False),
        )
