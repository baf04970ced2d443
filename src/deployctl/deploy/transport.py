"""Transports: the narrow file/command channel to a target host."""

import os
import shlex
import shutil
import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import Path

from deployctl.config import TransportConfig
from deployctl.core.cancellation import CancellationToken
from deployctl.core.exceptions import (
    DeploymentCancelledError,
    ExecutionTimeoutError,
    TransportError,
)
from deployctl.core.logging import get_logger
from deployctl.deploy.models import ExecResult, Target

logger = get_logger(__name__)

# How often a blocked command checks for cancellation
POLL_SLICE = 0.5


def local_size(path: Path) -> int:
    """Total size in bytes of a file, or of the regular files under a tree."""
    if path.is_file():
        return path.stat().st_size
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            total += os.lstat(os.path.join(root, name)).st_size
    return total


def communicate(
    argv: list[str] | str,
    timeout: float,
    cancel: CancellationToken | None = None,
    shell: bool = False,
    target: str | None = None,
) -> ExecResult:
    """Run a process to completion, bounded by ``timeout``.

    The wait is sliced so a cancelled run kills the process at the next
    slice boundary.

    Raises:
        ExecutionTimeoutError: If the process outlives ``timeout``
        DeploymentCancelledError: If ``cancel`` fires while waiting
        TransportError: If the process cannot be started
    """
    start = time.monotonic()
    try:
        proc = subprocess.Popen(
            argv,
            shell=shell,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except OSError as e:
        raise TransportError(f"Cannot start process: {e}", target=target)

    deadline = start + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            proc.kill()
            proc.communicate()
            raise ExecutionTimeoutError(
                f"Command timed out after {timeout}s",
                target=target,
                timeout_seconds=timeout,
            )
        try:
            stdout, stderr = proc.communicate(timeout=min(remaining, POLL_SLICE))
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.cancelled:
                proc.kill()
                proc.communicate()
                raise DeploymentCancelledError(cancel.reason or "cancelled")

    return ExecResult(
        exit_code=proc.returncode,
        stdout=stdout or "",
        stderr=stderr or "",
        duration_ms=int((time.monotonic() - start) * 1000),
    )


class Transport(ABC):
    """Abstract channel to a target: run commands and move files."""

    @abstractmethod
    def run(
        self,
        target: Target,
        command: str,
        timeout: float,
        cancel: CancellationToken | None = None,
    ) -> ExecResult:
        """Run a shell command line on the target."""

    @abstractmethod
    def upload(self, target: Target, local_path: Path, remote_path: str, timeout: float) -> None:
        """Copy a local file or directory tree to ``remote_path``."""

    @abstractmethod
    def exists(self, target: Target, path: str) -> bool:
        """Check whether ``path`` exists on the target."""

    @abstractmethod
    def copy(self, target: Target, src: str, dst: str, timeout: float) -> None:
        """Copy ``src`` to ``dst`` on the target, preserving attributes."""

    @abstractmethod
    def move(self, target: Target, src: str, dst: str, timeout: float) -> None:
        """Rename ``src`` to ``dst`` on the target (atomic within one filesystem)."""

    @abstractmethod
    def remove(self, target: Target, path: str, timeout: float) -> None:
        """Remove ``path`` (file or tree) if it exists."""

    @abstractmethod
    def makedirs(self, target: Target, path: str, timeout: float) -> None:
        """Create ``path`` and its parents."""

    @abstractmethod
    def size(self, target: Target, path: str) -> int:
        """Total size in bytes of the file, or of the regular files under a tree."""


class SSHTransport(Transport):
    """Transport over the system ``ssh``/``scp`` binaries."""

    def __init__(self, config: TransportConfig | None = None):
        self._config = config or TransportConfig()

    def _common_options(self, target: Target) -> list[str]:
        opts = [
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self._config.connect_timeout}",
            "-o", f"StrictHostKeyChecking={'yes' if self._config.strict_host_key_checking else 'no'}",
        ]
        for option in self._config.options:
            opts.extend(["-o", option])
        if target.credential_ref:
            opts.extend(["-i", str(Path(target.credential_ref).expanduser())])
        return opts

    def ssh_argv(self, target: Target, command: str) -> list[str]:
        return [
            self._config.ssh_binary,
            "-p", str(target.ssh_port),
            *self._common_options(target),
            target.address,
            command,
        ]

    def scp_argv(self, target: Target, local_path: Path, remote_path: str) -> list[str]:
        return [
            self._config.scp_binary,
            "-P", str(target.ssh_port),
            "-r", "-p", "-q",
            *self._common_options(target),
            str(local_path),
            f"{target.address}:{shlex.quote(remote_path)}",
        ]

    def run(
        self,
        target: Target,
        command: str,
        timeout: float,
        cancel: CancellationToken | None = None,
    ) -> ExecResult:
        logger.debug(f"ssh {target.address}: {command}")
        result = communicate(self.ssh_argv(target, command), timeout, cancel, target=target.key)
        if result.exit_code == 255:
            # ssh itself failed; the remote command never ran
            raise TransportError(
                f"ssh to {target.address} failed: {result.stderr.strip()}",
                target=target.key,
            )
        return result

    def _checked(self, target: Target, command: str, timeout: float) -> None:
        result = self.run(target, command, timeout)
        if not result.ok:
            raise TransportError(
                f"'{command}' failed with exit code {result.exit_code}: {result.stderr.strip()}",
                target=target.key,
            )

    def upload(self, target: Target, local_path: Path, remote_path: str, timeout: float) -> None:
        result = communicate(self.scp_argv(target, local_path, remote_path), timeout, target=target.key)
        if not result.ok:
            raise TransportError(
                f"scp to {target.address} failed: {result.stderr.strip()}",
                target=target.key,
            )

    def exists(self, target: Target, path: str) -> bool:
        q = shlex.quote(path)
        result = self.run(target, f"test -e {q} || test -L {q}", self._config.connect_timeout + 30)
        return result.ok

    def copy(self, target: Target, src: str, dst: str, timeout: float) -> None:
        self._checked(target, f"cp -a {shlex.quote(src)} {shlex.quote(dst)}", timeout)

    def move(self, target: Target, src: str, dst: str, timeout: float) -> None:
        self._checked(target, f"mv -fT {shlex.quote(src)} {shlex.quote(dst)}", timeout)

    def remove(self, target: Target, path: str, timeout: float) -> None:
        self._checked(target, f"rm -rf {shlex.quote(path)}", timeout)

    def makedirs(self, target: Target, path: str, timeout: float) -> None:
        self._checked(target, f"mkdir -p {shlex.quote(path)}", timeout)

    def size(self, target: Target, path: str) -> int:
        q = shlex.quote(path)
        command = f"test -e {q} && find {q} -type f -printf '%s\\n' | awk '{{s+=$1}} END {{print s+0}}'"
        result = self.run(target, command, self._config.connect_timeout + 30)
        if not result.ok or not result.stdout.strip().isdigit():
            raise TransportError(
                f"Cannot size {path}: {result.stderr.strip() or 'no such path'}",
                target=target.key,
            )
        return int(result.stdout.strip())


class LocalTransport(Transport):
    """Transport for targets living on the orchestrator host itself."""

    def run(
        self,
        target: Target,
        command: str,
        timeout: float,
        cancel: CancellationToken | None = None,
    ) -> ExecResult:
        logger.debug(f"local: {command}")
        return communicate(command, timeout, cancel, shell=True, target=target.key)

    def upload(self, target: Target, local_path: Path, remote_path: str, timeout: float) -> None:
        try:
            if local_path.is_dir():
                shutil.copytree(local_path, remote_path, symlinks=True)
            else:
                shutil.copy2(local_path, remote_path)
        except OSError as e:
            raise TransportError(f"Copy to {remote_path} failed: {e}", target=target.key)

    def exists(self, target: Target, path: str) -> bool:
        return os.path.lexists(path)

    def copy(self, target: Target, src: str, dst: str, timeout: float) -> None:
        try:
            if os.path.isdir(src) and not os.path.islink(src):
                shutil.copytree(src, dst, symlinks=True)
            else:
                shutil.copy2(src, dst, follow_symlinks=False)
        except OSError as e:
            raise TransportError(f"Copy {src} -> {dst} failed: {e}", target=target.key)

    def move(self, target: Target, src: str, dst: str, timeout: float) -> None:
        try:
            os.replace(src, dst)
        except OSError as e:
            raise TransportError(f"Rename {src} -> {dst} failed: {e}", target=target.key)

    def remove(self, target: Target, path: str, timeout: float) -> None:
        try:
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            elif os.path.lexists(path):
                os.unlink(path)
        except OSError as e:
            raise TransportError(f"Remove {path} failed: {e}", target=target.key)

    def makedirs(self, target: Target, path: str, timeout: float) -> None:
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as e:
            raise TransportError(f"mkdir {path} failed: {e}", target=target.key)

    def size(self, target: Target, path: str) -> int:
        try:
            return local_size(Path(path))
        except OSError as e:
            raise TransportError(f"Cannot size {path}: {e}", target=target.key)


class TransportRegistry:
    """Pick the transport named by each target."""

    def __init__(self, transports: dict[str, Transport]):
        self._transports = transports

    @classmethod
    def from_config(cls, config: TransportConfig) -> "TransportRegistry":
        return cls({"ssh": SSHTransport(config), "local": LocalTransport()})

    def for_target(self, target: Target) -> Transport:
        try:
            return self._transports[target.transport]
        except KeyError:
            raise TransportError(
                f"No transport named '{target.transport}'", target=target.key
            )
