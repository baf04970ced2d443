"""Run command lines on deployment targets."""

from deployctl.core.cancellation import CancellationToken
from deployctl.core.exceptions import DeployCtlError, ExecutionError, ExecutionTimeoutError
from deployctl.core.logging import StructuredLogger
from deployctl.deploy.models import ExecResult, Target
from deployctl.deploy.transport import TransportRegistry

logger = StructuredLogger(__name__)


class RemoteExecutor:
    """Runs commands over each target's transport.

    Success is the process exit code and nothing more; whether the service
    actually came up is the health verifier's concern.
    """

    def __init__(self, transports: TransportRegistry):
        self._transports = transports

    def execute(
        self,
        target: Target,
        command_line: str,
        timeout: float,
        cancel: CancellationToken | None = None,
    ) -> ExecResult:
        """Run ``command_line`` on ``target``.

        Args:
            target: Where to run
            command_line: Shell command line
            timeout: Seconds before the command is killed; required
            cancel: Run-scoped cancellation signal

        Returns:
            ExecResult with exit code and captured output

        Raises:
            ExecutionTimeoutError: If the command does not finish in time
            DeploymentCancelledError: If the run is cancelled meanwhile
            TransportError: If the target cannot be reached
        """
        if timeout is None or timeout <= 0:
            raise ValueError("timeout must be a positive number of seconds")
        if cancel is not None:
            cancel.raise_if_cancelled()

        log = logger.bind(target=target.key)
        log.info(f"Executing: {command_line}")

        try:
            result = self._transports.for_target(target).run(target, command_line, timeout, cancel)
        except ExecutionTimeoutError:
            log.error(f"Timed out after {timeout}s: {command_line}")
            raise

        log.debug("Command finished", exit_code=result.exit_code, duration_ms=result.duration_ms)
        return result

    def execute_checked(
        self,
        target: Target,
        command_line: str,
        timeout: float,
        cancel: CancellationToken | None = None,
    ) -> ExecResult:
        """Like ``execute`` but a non-zero exit raises ExecutionError."""
        result = self.execute(target, command_line, timeout, cancel)
        if not result.ok:
            stderr = result.stderr.strip().splitlines()
            raise ExecutionError(
                f"'{command_line}' exited with {result.exit_code}"
                + (f": {stderr[-1]}" if stderr else ""),
                target=target.key,
                exit_code=result.exit_code,
            )
        return result

    def check_connectivity(self, target: Target, timeout: float = 10) -> bool:
        """Probe that the target accepts commands at all."""
        try:
            result = self.execute(target, "echo connected", timeout)
        except DeployCtlError as e:
            logger.warning(f"Connectivity check failed: {e}", target=target.key)
            return False
        return result.ok and "connected" in result.stdout
