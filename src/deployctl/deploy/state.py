"""Persistence for deployment reports and backup records."""

import json
import os
import threading
from pathlib import Path
from typing import Any

from deployctl.core.exceptions import StateError
from deployctl.core.logging import StructuredLogger
from deployctl.deploy.models import BackupRecord, DeploymentReport

logger = StructuredLogger(__name__)


def _write_json(path: Path, data: dict[str, Any]) -> None:
    """Write JSON through a temp file so readers never see half a document."""
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp, path)


class ReportStore:
    """Store DeploymentReports, one JSON file per run."""

    def __init__(self, state_dir: str | Path):
        """Initialize report store.

        Args:
            state_dir: Root state directory; reports go under ``reports/``
        """
        self._dir = Path(state_dir).expanduser() / "reports"
        self._dir.mkdir(parents=True, exist_ok=True)

    def save(self, report: DeploymentReport) -> Path:
        """Save a report. Reports are written once per run."""
        path = self._dir / f"{report.run_id}.json"
        try:
            _write_json(path, report.to_dict())
        except (OSError, TypeError) as e:
            raise StateError(f"Failed to save report: {e}", {"run_id": report.run_id})

        logger.debug("Saved deployment report", run_id=report.run_id)
        return path

    def load(self, run_id: str) -> DeploymentReport:
        """Load a report by run id."""
        path = self._dir / f"{run_id}.json"

        if not path.exists():
            raise StateError(f"Run not found: {run_id}", {"run_id": run_id})

        try:
            with open(path) as f:
                data = json.load(f)
            return DeploymentReport.from_dict(data)
        except (OSError, ValueError, KeyError) as e:
            raise StateError(f"Failed to load report: {e}", {"run_id": run_id})

    def list(self, limit: int = 50) -> list[DeploymentReport]:
        """List reports, newest first.

        Args:
            limit: Maximum reports to return
        """
        reports: list[DeploymentReport] = []

        for path in self._dir.glob("*.json"):
            try:
                with open(path) as f:
                    reports.append(DeploymentReport.from_dict(json.load(f)))
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Skipping unreadable report {path}: {e}")

        reports.sort(key=lambda r: r.started_at, reverse=True)
        return reports[:limit]

    def latest(self) -> DeploymentReport | None:
        """Most recent report, if any."""
        reports = self.list(limit=1)
        return reports[0] if reports else None


class BackupStore:
    """Store BackupRecords, one JSON file per record.

    Records outlive the run that created them so that a later, independent
    rollback can find them.
    """

    def __init__(self, state_dir: str | Path):
        self._dir = Path(state_dir).expanduser() / "backups"
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def save(self, record: BackupRecord) -> None:
        path = self._dir / f"{record.id}.json"
        try:
            with self._lock:
                _write_json(path, record.to_dict())
        except (OSError, TypeError) as e:
            raise StateError(f"Failed to save backup record: {e}", {"backup_id": record.id})

        logger.debug("Saved backup record", backup_id=record.id, target=record.target.key)

    def load(self, backup_id: str) -> BackupRecord:
        path = self._dir / f"{backup_id}.json"

        if not path.exists():
            raise StateError(f"Backup not found: {backup_id}", {"backup_id": backup_id})

        try:
            with open(path) as f:
                return BackupRecord.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as e:
            raise StateError(f"Failed to load backup record: {e}", {"backup_id": backup_id})

    def delete(self, backup_id: str) -> None:
        path = self._dir / f"{backup_id}.json"
        with self._lock:
            if path.exists():
                path.unlink()
        logger.debug("Deleted backup record", backup_id=backup_id)

    def list(
        self,
        target_key: str | None = None,
        artifact_name: str | None = None,
    ) -> list[BackupRecord]:
        """List records, newest first, optionally filtered."""
        records: list[BackupRecord] = []

        for path in self._dir.glob("*.json"):
            try:
                with open(path) as f:
                    record = BackupRecord.from_dict(json.load(f))
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Skipping unreadable backup record {path}: {e}")
                continue

            if target_key and record.target.key != target_key:
                continue
            if artifact_name and record.artifact_name != artifact_name:
                continue
            records.append(record)

        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    def latest(
        self,
        target_key: str,
        artifact_name: str | None = None,
        verified_only: bool = True,
    ) -> BackupRecord | None:
        """Newest record for a target, skipping unconfirmed ones unless asked."""
        for record in self.list(target_key, artifact_name):
            if record.verified or not verified_only:
                return record
        return None
