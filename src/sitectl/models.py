"""Data models describing deployment targets, component state and outcomes."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Literal

ENVIRONMENTS: tuple[str, ...] = ("dev", "staging", "prod")

StepStatus = Literal["success", "skipped", "warning", "error"]


class ServiceState(str, Enum):
    """Lifecycle state of the supervised site service."""

    UNDECLARED = "undeclared"
    STOPPED = "stopped"
    RUNNING = "running"


class TLSMode(str, Enum):
    """Certificate strategy for a proxy route."""

    AUTO_CERT = "auto-cert"
    INTERNAL = "internal"


class DeploymentState(str, Enum):
    """Ordered states of a single orchestration run."""

    PREFLIGHT = "preflight"
    SYNCED = "synced"
    SERVICE_UP = "service-up"
    PROXY_UP = "proxy-up"
    VERIFIED = "verified"
    DONE = "done"


@dataclass(slots=True, frozen=True)
class DeploymentTarget:
    """Where and how a command should act; fixed for one invocation."""

    host: str
    domain: str
    environment: str
    port: int

    @property
    def has_domain(self) -> bool:
        """Return ``True`` when a public domain is configured."""
        return bool(self.domain.strip())

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "host": self.host,
            "domain": self.domain,
            "environment": self.environment,
            "port": self.port,
        }


@dataclass(slots=True, frozen=True)
class RepositoryState:
    """Observed state of the site working copy."""

    path: Path
    revision: str | None
    desired_ref: str
    clean: bool = True
    branch: str | None = None

    @property
    def short_revision(self) -> str | None:
        """Return the abbreviated revision, if any."""
        return self.revision[:12] if self.revision else None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "path": str(self.path),
            "revision": self.revision,
            "desired_ref": self.desired_ref,
            "clean": self.clean,
            "branch": self.branch,
        }


@dataclass(slots=True, frozen=True)
class BuildResult:
    """Outcome of the optional site build step."""

    declared: bool
    output_dir: Path | None = None
    commands: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class ServiceDescriptor:
    """Declarative description of the supervised site process."""

    name: str
    exec_start: str
    working_directory: Path
    user: str = "www-data"
    restart_policy: str = "always"
    restart_sec: int = 5
    environment: tuple[str, ...] = ()
    description: str = "Static site server"
    desired_running: bool = True


@dataclass(slots=True, frozen=True)
class ServiceStatus:
    """Read-only snapshot of the supervised service."""

    name: str
    state: ServiceState
    unit_path: Path
    log_reference: str
    detail: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "state": self.state.value,
            "unit_path": str(self.unit_path),
            "log_reference": self.log_reference,
            "detail": self.detail,
        }


@dataclass(slots=True, frozen=True)
class ProxyRoute:
    """Reverse-proxy binding of a public domain to the local service."""

    domain: str
    upstream_port: int
    tls_mode: TLSMode
    log_path: Path
    upstream_host: str = "127.0.0.1"
    acme_email: str | None = None

    @property
    def upstream(self) -> str:
        """Return the ``host:port`` upstream address."""
        return f"{self.upstream_host}:{self.upstream_port}"


@dataclass(slots=True, frozen=True)
class HealthResult:
    """Result of a single reachability probe."""

    endpoint: str
    reachable: bool
    observation: str
    latency_ms: float | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "endpoint": self.endpoint,
            "reachable": self.reachable,
            "observation": self.observation,
            "latency_ms": self.latency_ms,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class StepResult:
    """One recorded step of an orchestration run."""

    name: str
    status: StepStatus
    detail: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "status": self.status, "detail": self.detail}


@dataclass(slots=True, frozen=True)
class FailureInfo:
    """Where a run stopped and why."""

    state: DeploymentState
    step: str
    kind: str
    message: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "state": self.state.value,
            "step": self.step,
            "kind": self.kind,
            "message": self.message,
        }


@dataclass(slots=True)
class DeploymentOutcome:
    """Externally visible record of one orchestration run."""

    command: str
    target: DeploymentTarget
    reached: DeploymentState | None = None
    steps: list[StepResult] = field(default_factory=list)
    health: list[HealthResult] = field(default_factory=list)
    revision: str | None = None
    service: ServiceStatus | None = None
    commits: list[str] = field(default_factory=list)
    failure: FailureInfo | None = None

    @property
    def success(self) -> bool:
        """Return ``True`` when the run finished without a failure."""
        return self.failure is None

    def add_step(self, name: str, *, status: StepStatus = "success", detail: str = "") -> None:
        """Append a step record."""
        self.steps.append(StepResult(name=name, status=status, detail=detail))

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "command": self.command,
            "target": self.target.to_dict(),
            "success": self.success,
            "reached": self.reached.value if self.reached is not None else None,
            "revision": self.revision,
            "steps": [step.to_dict() for step in self.steps],
            "health": [result.to_dict() for result in self.health],
            "service": self.service.to_dict() if self.service is not None else None,
            "commits": list(self.commits),
            "failure": self.failure.to_dict() if self.failure is not None else None,
        }


__all__ = [
    "ENVIRONMENTS",
    "BuildResult",
    "DeploymentOutcome",
    "DeploymentState",
    "DeploymentTarget",
    "FailureInfo",
    "HealthResult",
    "ProxyRoute",
    "RepositoryState",
    "ServiceDescriptor",
    "ServiceState",
    "ServiceStatus",
    "StepResult",
    "StepStatus",
    "TLSMode",
]
