"""Deployment orchestration module."""

from deployctl.deploy.models import (
    Artifact,
    BackupRecord,
    DeploymentPlan,
    DeploymentReport,
    HealthCheck,
    HealthResult,
    OverallStatus,
    Stage,
    StageResult,
    StageStatus,
    Target,
)
from deployctl.deploy.schema import load_plan
from deployctl.deploy.sequencer import StageSequencer
from deployctl.deploy.state import BackupStore, ReportStore

__all__ = [
    "Artifact",
    "BackupRecord",
    "BackupStore",
    "DeploymentPlan",
    "DeploymentReport",
    "HealthCheck",
    "HealthResult",
    "OverallStatus",
    "ReportStore",
    "Stage",
    "StageResult",
    "StageSequencer",
    "StageStatus",
    "Target",
    "load_plan",
]
