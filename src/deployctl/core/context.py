"""Click context object for sharing state across commands."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import click
from rich.markup import escape

from deployctl.config import DeployCtlConfig, get_default_config
from deployctl.core.logging import LogLevel, StructuredLogger, setup_logging
from deployctl.core.output import OutputFormat, OutputFormatter

if TYPE_CHECKING:
    from deployctl.deploy.backup import BackupManager
    from deployctl.deploy.state import BackupStore, ReportStore


class DeployCtlContext:
    """Shared context object for deployctl commands.

    Passed through Click's context mechanism; gives commands the loaded
    configuration, the output formatter and the persisted state stores.
    """

    def __init__(
        self,
        config: DeployCtlConfig | None = None,
        output_format: OutputFormat | None = None,
        verbose: int = 0,
        quiet: bool = False,
        dry_run: bool = False,
        color: bool = True,
    ):
        self._config = config or get_default_config()

        # CLI flags override config
        self._output_format = output_format or self._config.global_settings.output_format
        self._verbose = verbose
        self._quiet = quiet
        self._dry_run = dry_run or self._config.global_settings.dry_run
        self._color = color and self._config.global_settings.color != "never"

        if verbose >= 3:
            log_level = LogLevel.DEBUG
        elif verbose >= 1:
            log_level = LogLevel.INFO
        elif quiet:
            log_level = LogLevel.ERROR
        else:
            log_level = self._config.global_settings.verbosity

        setup_logging(log_level, rich_output=self._color)
        self._logger = StructuredLogger("context")

        self._output = OutputFormatter(
            format=self._output_format,
            color=self._color,
            quiet=quiet,
        )

        self._report_store: ReportStore | None = None
        self._backup_store: BackupStore | None = None

    @property
    def config(self) -> DeployCtlConfig:
        """Get the loaded configuration."""
        return self._config

    @property
    def output(self) -> OutputFormatter:
        return self._output

    @property
    def output_format(self) -> OutputFormat:
        return self._output_format

    @property
    def dry_run(self) -> bool:
        """Check if dry-run mode is enabled."""
        return self._dry_run

    @property
    def verbose(self) -> int:
        return self._verbose

    @property
    def quiet(self) -> bool:
        return self._quiet

    @property
    def color(self) -> bool:
        return self._color

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    @property
    def reports(self) -> "ReportStore":
        """Get or create the report store."""
        if self._report_store is None:
            from deployctl.deploy.state import ReportStore

            self._report_store = ReportStore(self._config.get_state_dir())
        return self._report_store

    @property
    def backups(self) -> "BackupStore":
        """Get or create the backup record store."""
        if self._backup_store is None:
            from deployctl.deploy.state import BackupStore

            self._backup_store = BackupStore(self._config.get_state_dir())
        return self._backup_store

    def backup_manager(self, run_id: str | None = None) -> "BackupManager":
        """Build a BackupManager for work outside a deployment run."""
        from deployctl.deploy.backup import BackupManager
        from deployctl.deploy.executor import RemoteExecutor
        from deployctl.deploy.health import HealthVerifier
        from deployctl.deploy.transport import TransportRegistry

        transports = TransportRegistry.from_config(self._config.transport)
        return BackupManager(
            transports,
            self.backups,
            RemoteExecutor(transports),
            HealthVerifier(),
            run_id=run_id,
            command_timeout=self._config.global_settings.timeout,
            transfer_timeout=self._config.transport.transfer_timeout,
        )

    def confirm(self, message: str, default: bool = False) -> bool:
        """Ask for user confirmation.

        In dry-run mode, always returns True without prompting.
        """
        if self._dry_run:
            self._output.print(f"[dim]{escape(f'[dry-run] Would prompt: {message}')}[/dim]")
            return True
        return self._output.confirm(message, default)

    def log_dry_run(self, action: str, details: dict[str, Any] | None = None) -> None:
        """Log a dry-run action."""
        if self._dry_run:
            msg = f"[dry-run] {action}"
            if details:
                detail_str = ", ".join(f"{k}={v}" for k, v in details.items())
                msg = f"{msg} ({detail_str})"
            self._output.print(f"[dim]{escape(msg)}[/dim]")


pass_context = click.make_pass_decorator(DeployCtlContext, ensure=True)
