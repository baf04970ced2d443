"""Core utilities and shared components for deployctl."""

# Note: Import context lazily to avoid circular imports
# Use: from deployctl.core.context import DeployCtlContext, pass_context
from deployctl.core.cancellation import CancellationToken
from deployctl.core.exceptions import ConfigError, DeployCtlError
from deployctl.core.output import OutputFormatter, console

__all__ = [
    "CancellationToken",
    "ConfigError",
    "DeployCtlError",
    "OutputFormatter",
    "console",
]
