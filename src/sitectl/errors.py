"""Error taxonomy shared by the lifecycle components."""
from __future__ import annotations

from collections.abc import Iterable


class DeploymentError(RuntimeError):
    """Base class for failures that abort an orchestration step."""

    @property
    def kind(self) -> str:
        """Return the taxonomy name recorded in deployment outcomes."""
        return type(self).__name__


class ToolMissingError(DeploymentError):
    """Raised by preflight when required external tools are unavailable."""

    def __init__(self, tools: Iterable[str]) -> None:
        """Record the missing *tools* and build a readable message."""
        self.tools = tuple(tools)
        joined = ", ".join(self.tools)
        super().__init__(f"Required tools not found on PATH: {joined}.")


class RepositoryError(DeploymentError):
    """Raised when git operations on the working copy fail."""


class ConflictError(RepositoryError):
    """Raised when local modifications would be overwritten by a sync."""


class BuildError(DeploymentError):
    """Raised when the declared site build step fails."""


class SystemdError(DeploymentError):
    """Raised when systemd operations fail."""


class StartTimeoutError(SystemdError):
    """Raised when a unit does not report active within the start timeout."""


class ProxyError(DeploymentError):
    """Raised when Caddy route management fails."""


class ProxyReloadError(ProxyError):
    """Raised when a written route is rejected by validation or reload."""


PROBE_FAILURE = "ProbeFailure"


__all__ = [
    "PROBE_FAILURE",
    "BuildError",
    "ConflictError",
    "DeploymentError",
    "ProxyError",
    "ProxyReloadError",
    "RepositoryError",
    "StartTimeoutError",
    "SystemdError",
    "ToolMissingError",
]
