"""Move build artifacts onto deployment targets."""

import time
from pathlib import Path
from typing import TYPE_CHECKING

from deployctl.core.cancellation import CancellationToken
from deployctl.core.exceptions import (
    ExecutionTimeoutError,
    TransferError,
    TransportError,
)
from deployctl.core.logging import StructuredLogger
from deployctl.core.output import format_bytes
from deployctl.deploy.models import Artifact, ArtifactKind, Target, TransferResult, new_id
from deployctl.deploy.transport import Transport, TransportRegistry, local_size

if TYPE_CHECKING:
    from deployctl.deploy.backup import BackupManager

logger = StructuredLogger(__name__)


def swap_into_place(
    transport: Transport,
    target: Target,
    staged: str,
    destination: str,
    is_dir: bool,
    timeout: float,
) -> None:
    """Replace ``destination`` with the fully written ``staged`` path.

    Files are renamed over the destination in one step. Directories cannot be
    renamed over a non-empty directory, so the old tree is moved aside to
    ``<destination>.old`` first and removed once the new one is in place. If
    the new tree cannot be moved in, the old one is moved back.
    """
    if is_dir and transport.exists(target, destination):
        aside = f"{destination}.old"
        transport.remove(target, aside, timeout)
        transport.move(target, destination, aside, timeout)
        try:
            transport.move(target, staged, destination, timeout)
        except TransportError:
            transport.move(target, aside, destination, timeout)
            raise
        transport.remove(target, aside, timeout)
    else:
        transport.move(target, staged, destination, timeout)


class ArtifactTransfer:
    """Stage an artifact next to its destination and swap it into place.

    A failure at any point leaves the previous artifact untouched; the
    partially written staging path is cleaned up on a best-effort basis.
    """

    def __init__(self, transports: TransportRegistry, timeout: float = 600):
        self._transports = transports
        self._timeout = timeout

    def transfer(
        self,
        artifact: Artifact,
        target: Target,
        backups: "BackupManager | None" = None,
        skip_backup: bool = False,
        cancel: CancellationToken | None = None,
    ) -> TransferResult:
        """Transfer ``artifact`` to ``target``.

        Args:
            artifact: What to deploy
            target: Where to deploy it
            backups: Backup manager asked for a backup before overwriting
            skip_backup: Explicit opt-out, e.g. first deploy to a clean host
            cancel: Run-scoped cancellation signal

        Returns:
            TransferResult

        Raises:
            TransferError: On a missing artifact or transport failure
            BackupFailedError: If the pre-transfer backup fails
        """
        log = logger.bind(target=target.key, artifact=artifact.name)
        start = time.monotonic()
        self._check_local(artifact, target)

        if cancel is not None:
            cancel.raise_if_cancelled()

        transport = self._transports.for_target(target)
        destination = artifact.destination(target)
        is_dir = artifact.kind == ArtifactKind.STATIC_BUNDLE

        backup_id = None
        if skip_backup:
            log.warning("Transferring without backup (explicit opt-out)")
        else:
            if backups is None:
                raise TransferError(
                    "No backup manager available and backup not opted out",
                    target=target.key,
                )
            record = backups.ensure(target, artifact, cancel=cancel)
            backup_id = record.id

        staged = f"{target.deploy_dir}/.{artifact.destination_name}.tmp-{new_id()}"
        log.info(f"Uploading {artifact.local_path} -> {destination}")

        try:
            transport.makedirs(target, target.deploy_dir, self._timeout)
            transport.upload(target, artifact.local_path, staged, self._timeout)
            if cancel is not None and cancel.cancelled:
                raise TransferError("Cancelled before swap", target=target.key)
            swap_into_place(transport, target, staged, destination, is_dir, self._timeout)
        except (TransportError, ExecutionTimeoutError, TransferError) as e:
            self._cleanup(transport, target, staged)
            if isinstance(e, TransferError):
                raise
            raise TransferError(
                f"Transfer of '{artifact.name}' failed: {e.message}",
                target=target.key,
            ) from e

        size = local_size(artifact.local_path)
        duration_ms = int((time.monotonic() - start) * 1000)
        log.info(f"Transferred {format_bytes(size)} in {duration_ms}ms")

        return TransferResult(
            artifact=artifact.name,
            target=target.key,
            destination=destination,
            size_bytes=size,
            duration_ms=duration_ms,
            backup_id=backup_id,
        )

    def _check_local(self, artifact: Artifact, target: Target) -> None:
        path = artifact.local_path
        if not path.exists():
            raise TransferError(f"Artifact not found: {path}", target=target.key)
        if artifact.kind == ArtifactKind.BINARY and not path.is_file():
            raise TransferError(f"Binary artifact is not a file: {path}", target=target.key)
        if artifact.kind == ArtifactKind.STATIC_BUNDLE and not path.is_dir():
            raise TransferError(f"Static bundle is not a directory: {path}", target=target.key)

    def _cleanup(self, transport: Transport, target: Target, staged: str) -> None:
        try:
            transport.remove(target, staged, 60)
        except (TransportError, ExecutionTimeoutError) as e:
            logger.warning(f"Could not remove staging path {staged}: {e}", target=target.key)
