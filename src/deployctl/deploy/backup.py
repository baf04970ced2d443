"""Backups taken before destructive steps, and restoring them."""

import os
import threading
from collections import OrderedDict

from deployctl.core.cancellation import CancellationToken
from deployctl.core.exceptions import (
    BackupFailedError,
    ExecutionError,
    RollbackFailedError,
    StateError,
    TransportError,
)
from deployctl.core.logging import StructuredLogger
from deployctl.deploy.executor import RemoteExecutor
from deployctl.deploy.health import HealthVerifier
from deployctl.deploy.models import (
    Artifact,
    ArtifactKind,
    BackupRecord,
    HealthCheck,
    RollbackResult,
    Target,
    new_id,
)
from deployctl.deploy.state import BackupStore
from deployctl.deploy.transfer import swap_into_place
from deployctl.deploy.transport import TransportRegistry

logger = StructuredLogger(__name__)


class BackupManager:
    """Takes, tracks and restores BackupRecords.

    Records taken during the current run double as backup tokens: a
    destructive step on a target is refused unless ``require`` finds one.
    At most one backup or restore runs against a given target at a time,
    across every manager in the process.
    """

    _target_locks: dict[str, threading.Lock] = {}
    _registry_lock = threading.Lock()

    def __init__(
        self,
        transports: TransportRegistry,
        store: BackupStore,
        executor: RemoteExecutor,
        health: HealthVerifier,
        run_id: str | None = None,
        command_timeout: float = 300,
        transfer_timeout: float = 600,
    ):
        self._transports = transports
        self._store = store
        self._executor = executor
        self._health = health
        self._run_id = run_id
        self._command_timeout = command_timeout
        self._transfer_timeout = transfer_timeout
        self._run: "OrderedDict[tuple[str, str], list[BackupRecord]]" = OrderedDict()
        self._recovery: dict[str, tuple[list[str], HealthCheck | None]] = {}
        self._lock = threading.Lock()

    @classmethod
    def lock_for(cls, target_key: str) -> threading.Lock:
        with cls._registry_lock:
            if target_key not in cls._target_locks:
                cls._target_locks[target_key] = threading.Lock()
            return cls._target_locks[target_key]

    def set_recovery(
        self,
        target: Target,
        restart_commands: list[str],
        health_check: HealthCheck | None,
    ) -> None:
        """Remember how to bring ``target`` back up after a restore.

        Applies to records taken from now on and to this run's earlier records
        for the target that have no recovery sequence yet.
        """
        with self._lock:
            self._recovery[target.key] = (list(restart_commands), health_check)
            pending = [
                r
                for (key, _), records in self._run.items()
                if key == target.key
                for r in records
                if not r.restart_commands and r.health_check is None
            ]
        for record in pending:
            record.restart_commands = list(restart_commands)
            record.health_check = health_check
            self._store.save(record)

    def backup(
        self,
        target: Target,
        artifact: Artifact,
        allow_missing: bool = False,
        cancel: CancellationToken | None = None,
    ) -> BackupRecord:
        """Copy the artifact currently deployed on ``target`` aside.

        Args:
            target: Target to back up
            artifact: Artifact whose destination is backed up
            allow_missing: Record an empty backup when nothing is deployed yet
            cancel: Run-scoped cancellation signal

        Returns:
            The verified BackupRecord

        Raises:
            BackupFailedError: If the copy fails, cannot be verified, or
                nothing exists at the destination and ``allow_missing`` is off
        """
        if cancel is not None:
            cancel.raise_if_cancelled()
        with self.lock_for(target.key):
            return self._take(target, artifact, allow_missing)

    def ensure(
        self,
        target: Target,
        artifact: Artifact,
        cancel: CancellationToken | None = None,
    ) -> BackupRecord:
        """Return this run's backup of ``artifact`` on ``target``, taking one if needed.

        The first backup of a run is the one that captures the pre-deployment
        state, so it is reused rather than replaced.
        """
        if cancel is not None:
            cancel.raise_if_cancelled()
        with self.lock_for(target.key):
            with self._lock:
                existing = self._run.get((target.key, artifact.name))
            if existing:
                return existing[0]
            return self._take(target, artifact, allow_missing=True)

    def require(self, target: Target, artifact_name: str | None = None) -> BackupRecord:
        """Return the backup token guarding a destructive step on ``target``.

        Raises:
            BackupFailedError: If no backup was taken for ``target`` in this run
        """
        with self._lock:
            records = [
                r
                for (key, name), rs in self._run.items()
                if key == target.key and (artifact_name is None or name == artifact_name)
                for r in rs
                if r.verified
            ]
        if not records:
            what = f"'{artifact_name}' on " if artifact_name else ""
            raise BackupFailedError(
                f"Refusing destructive step: no backup of {what}{target.key} in this run",
                target=target.key,
            )
        return records[-1]

    def run_records(self) -> list[BackupRecord]:
        """Backups taken in this run, in the order they were taken."""
        with self._lock:
            return [r for records in self._run.values() for r in records]

    def first_records(self) -> list[BackupRecord]:
        """The earliest backup per (target, artifact) in this run.

        These hold the pre-deployment state, which is what a rollback restores.
        """
        with self._lock:
            return [records[0] for records in self._run.values() if records]

    def run_record(self, target: Target, artifact_name: str) -> BackupRecord | None:
        with self._lock:
            records = self._run.get((target.key, artifact_name))
        return records[0] if records else None

    def latest(
        self,
        target_key: str,
        artifact_name: str | None = None,
        verified_only: bool = True,
    ) -> BackupRecord | None:
        return self._store.latest(target_key, artifact_name, verified_only)

    def _take(self, target: Target, artifact: Artifact, allow_missing: bool) -> BackupRecord:
        log = logger.bind(target=target.key, artifact=artifact.name)
        transport = self._transports.for_target(target)
        destination = artifact.destination(target)
        restart_commands, health_check = self._recovery.get(target.key, ([], None))

        record = BackupRecord(
            target=target,
            artifact_name=artifact.name,
            destination_path=destination,
            backup_path=None,
            artifact_kind=artifact.kind,
            run_id=self._run_id,
            restart_commands=list(restart_commands),
            health_check=health_check,
        )

        try:
            present = transport.exists(target, destination)
            if present:
                record.size_bytes = transport.size(target, destination)
        except (TransportError, ExecutionError) as e:
            raise BackupFailedError(
                f"Cannot inspect {destination}: {e.message}", target=target.key
            ) from e

        if not present:
            if not allow_missing:
                raise BackupFailedError(
                    f"Nothing to back up at {destination}", target=target.key
                )
            record.verified = True
            self._persist(record)
            log.info("Nothing deployed yet; recorded empty backup", backup_id=record.id)
            return self._remember(record)

        stamp = record.created_at.strftime("%Y%m%dT%H%M%S%fZ")
        record.backup_path = f"{target.backup_dir.rstrip('/')}/{artifact.name}-{stamp}"

        # Saved before copying so an interrupted backup is visible as unverified
        self._persist(record)
        try:
            transport.makedirs(target, target.backup_dir, self._command_timeout)
            transport.copy(target, destination, record.backup_path, self._transfer_timeout)
            if not transport.exists(target, record.backup_path):
                raise BackupFailedError(
                    f"Backup {record.backup_path} missing after copy", target=target.key
                )
            copied = transport.size(target, record.backup_path)
            if copied != record.size_bytes:
                raise BackupFailedError(
                    f"Backup {record.backup_path} is incomplete: "
                    f"{copied} of {record.size_bytes} bytes",
                    target=target.key,
                )
        except (TransportError, ExecutionError, BackupFailedError) as e:
            self._discard(record)
            if isinstance(e, BackupFailedError):
                raise
            raise BackupFailedError(
                f"Backup of {destination} failed: {e.message}", target=target.key
            ) from e

        record.verified = True
        self._persist(record)
        log.info(f"Backed up {destination} -> {record.backup_path}", backup_id=record.id)
        return self._remember(record)

    def _persist(self, record: BackupRecord) -> None:
        try:
            self._store.save(record)
        except StateError as e:
            raise BackupFailedError(
                f"Cannot record backup: {e.message}", target=record.target.key
            ) from e

    def _remember(self, record: BackupRecord) -> BackupRecord:
        with self._lock:
            self._run.setdefault((record.target.key, record.artifact_name), []).append(record)
        return record

    def rollback(self, record: BackupRecord) -> RollbackResult:
        """Restore ``record`` and replay the restart and health sequence.

        Restoring copies out of the backup, never moves it, so the same record
        can be restored any number of times with the same outcome. Not
        cancellable. An empty backup only removes the deployed artifact; there
        was no previous service to restart or check.

        Raises:
            RollbackFailedError: If the backup is gone, the restore fails, a
                restart command fails, or the target is unhealthy afterwards
        """
        target = record.target
        log = logger.bind(target=target.key, backup_id=record.id)

        with self.lock_for(target.key):
            transport = self._transports.for_target(target)
            try:
                self._verify(record)
                if record.is_empty:
                    log.info(f"Empty backup; removing {record.destination_path}")
                    transport.remove(target, record.destination_path, self._command_timeout)
                else:
                    parent, name = os.path.split(record.destination_path)
                    staged = f"{parent}/.{name}.restore-{new_id()}"
                    transport.copy(target, record.backup_path, staged, self._transfer_timeout)
                    try:
                        swap_into_place(
                            transport,
                            target,
                            staged,
                            record.destination_path,
                            record.artifact_kind == ArtifactKind.STATIC_BUNDLE,
                            self._transfer_timeout,
                        )
                    except TransportError:
                        transport.remove(target, staged, self._command_timeout)
                        raise
                    log.info(f"Restored {record.backup_path} -> {record.destination_path}")

                    for command in record.restart_commands:
                        self._executor.execute_checked(target, command, self._command_timeout)
            except (TransportError, ExecutionError) as e:
                log.error(f"Rollback failed: {e.message}")
                raise RollbackFailedError(
                    f"Rollback of '{record.artifact_name}' failed: {e.message}",
                    target=target.key,
                    backup_id=record.id,
                ) from e

        health = None
        if record.health_check is not None and not record.is_empty:
            health = self._health.wait_for_healthy(record.health_check)
            if not health.healthy:
                log.error(f"Unhealthy after rollback: {health.last_error}")
                raise RollbackFailedError(
                    f"Target unhealthy after rollback: {health.last_error}",
                    target=target.key,
                    backup_id=record.id,
                    details={"attempts": health.attempts},
                )

        detail = "removed deployed artifact" if record.is_empty else f"restored {record.backup_path}"
        log.info(f"Rollback complete: {detail}")
        return RollbackResult(
            backup_id=record.id,
            target=target.key,
            artifact_name=record.artifact_name,
            success=True,
            detail=detail,
            health=health,
        )

    def _verify(self, record: BackupRecord) -> None:
        """Check the backup is still there before trusting it."""
        if record.is_empty:
            return
        transport = self._transports.for_target(record.target)
        if not transport.exists(record.target, record.backup_path):
            raise RollbackFailedError(
                f"Backup {record.backup_path} no longer exists",
                target=record.target.key,
                backup_id=record.id,
            )
        if not record.verified:
            # An interrupted copy exists on disk but is shorter than the original
            actual = transport.size(record.target, record.backup_path)
            if record.size_bytes is None or actual != record.size_bytes:
                expected = "unknown" if record.size_bytes is None else record.size_bytes
                raise RollbackFailedError(
                    f"Backup {record.backup_path} was never confirmed and does not match "
                    f"the original ({actual} bytes, expected {expected})",
                    target=record.target.key,
                    backup_id=record.id,
                )
            logger.warning(
                "Backup was never confirmed; re-verified before restoring",
                backup_id=record.id,
                target=record.target.key,
            )
            record.verified = True
            self._store.save(record)

    def supersede(self) -> list[BackupRecord]:
        """Drop older backups for everything this run deployed successfully.

        Returns:
            The discarded records
        """
        current = {r.id for r in self.run_records()}
        discarded = []
        for target_key, artifact_name in list(self._run.keys()):
            for record in self._store.list(target_key, artifact_name):
                if record.id not in current:
                    self._discard(record)
                    discarded.append(record)
        if discarded:
            logger.info(f"Superseded {len(discarded)} older backup(s)", run_id=self._run_id)
        return discarded

    def prune(self, keep: int = 1, target_key: str | None = None) -> list[BackupRecord]:
        """Keep only the newest ``keep`` backups per (target, artifact)."""
        if keep < 0:
            raise ValueError("keep must be >= 0")

        seen: dict[tuple[str, str], int] = {}
        discarded = []
        for record in self._store.list(target_key):
            key = (record.target.key, record.artifact_name)
            seen[key] = seen.get(key, 0) + 1
            if seen[key] > keep:
                self._discard(record)
                discarded.append(record)
        return discarded

    def _discard(self, record: BackupRecord) -> None:
        if record.backup_path:
            try:
                transport = self._transports.for_target(record.target)
                transport.remove(record.target, record.backup_path, self._command_timeout)
            except (TransportError, ExecutionError) as e:
                logger.warning(
                    f"Could not remove {record.backup_path}: {e.message}",
                    target=record.target.key,
                )
        self._store.delete(record.id)
