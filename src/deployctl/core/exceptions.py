"""Custom exceptions for deployctl."""

from typing import Any


class DeployCtlError(Exception):
    """Base exception for all deployctl errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class ConfigError(DeployCtlError):
    """Configuration-related errors."""

    pass


class PlanError(DeployCtlError):
    """Invalid or unloadable deployment plan."""

    def __init__(
        self,
        message: str,
        path: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.path = path


class UnknownServiceError(DeployCtlError):
    """No target is registered for an (environment, service) pair."""

    def __init__(self, environment: str, service_id: str):
        super().__init__(
            f"Unknown service '{service_id}' in environment '{environment}'",
            {"environment": environment, "service": service_id},
        )
        self.environment = environment
        self.service_id = service_id


class TargetError(DeployCtlError):
    """Errors attributable to a single deployment target."""

    def __init__(
        self,
        message: str,
        target: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.target = target


class TransportError(TargetError):
    """The transport could not reach or operate on the target."""

    pass


class TransferError(TargetError):
    """Artifact could not be moved onto the target."""

    pass


class ExecutionError(TargetError):
    """A remote command could not be run or exited non-zero."""

    def __init__(
        self,
        message: str,
        target: str | None = None,
        exit_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, target, details)
        self.exit_code = exit_code


class ExecutionTimeoutError(ExecutionError):
    """A remote command did not finish within its timeout."""

    def __init__(
        self,
        message: str,
        target: str | None = None,
        timeout_seconds: float | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, target, None, details)
        self.timeout_seconds = timeout_seconds


class DeploymentCancelledError(DeployCtlError):
    """The run was cancelled by the operator."""

    pass


class BackupFailedError(TargetError):
    """A backup could not be taken, or a destructive step had no backup."""

    pass


class RollbackFailedError(TargetError):
    """A rollback could not restore or verify the previous state."""

    def __init__(
        self,
        message: str,
        target: str | None = None,
        backup_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, target, details)
        self.backup_id = backup_id


class StateError(DeployCtlError):
    """Persisted state could not be read or written."""

    pass
