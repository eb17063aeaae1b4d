"""Deployment state machine.

A run advances through ``preflight -> synced -> service-up -> proxy-up ->
verified``. Every step either completes or halts the run; the outcome then
records the furthest state reached together with the failing step and its
cause. Nothing is rolled back automatically: re-running ``deploy`` is safe
because each component skips work whose result is already in place.
"""
from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import TypeVar

from .config import AppConfig
from .errors import PROBE_FAILURE, DeploymentError
from .models import (
    ENVIRONMENTS,
    DeploymentOutcome,
    DeploymentState,
    DeploymentTarget,
    FailureInfo,
    ProxyRoute,
    ServiceDescriptor,
    ServiceState,
)
from .preflight import PreflightReport, run_preflight
from .providers import CaddyProvider, GitProvider, HealthProvider, SystemdProvider
from .providers.caddy import resolve_tls_mode
from .templates import TemplateEngine

T = TypeVar("T")

PYTHON_BIN = "/usr/bin/python3"
JOURNAL_TAIL_LINES = 20
COMMANDS: tuple[str, ...] = ("deploy", "start", "stop", "restart", "status", "rollback", "verify")


class _Halt(Exception):
    """Internal signal that the current run stopped at a failed step."""


def build_target(config: AppConfig, host: str, environment: str) -> DeploymentTarget:
    """Create the :class:`DeploymentTarget` for one invocation."""
    if environment not in ENVIRONMENTS:
        allowed = ", ".join(ENVIRONMENTS)
        raise ValueError(f"Unknown environment '{environment}'. Allowed: {allowed}.")
    name = host.strip()
    return DeploymentTarget(host=name, domain=name, environment=environment, port=config.port)


class DeploymentOrchestrator:
    """Sequence repository, service, proxy and health components per command."""

    def __init__(
        self,
        config: AppConfig,
        *,
        repository: GitProvider,
        service: SystemdProvider,
        proxy: CaddyProvider,
        health: HealthProvider,
        preflight: Callable[[Mapping[str, str]], PreflightReport] = run_preflight,
    ) -> None:
        """Wire the orchestrator to its components."""
        self.config = config
        self.repository = repository
        self.service = service
        self.proxy = proxy
        self.health = health
        self.preflight = preflight

    @classmethod
    def from_config(cls, config: AppConfig, templates: TemplateEngine) -> DeploymentOrchestrator:
        """Build an orchestrator with providers configured from *config*."""
        return cls(
            config,
            repository=GitProvider(
                git_bin=config.git.git_bin,
                npm_bin=config.build.npm_bin,
                build_enabled=config.build.enabled,
                output_dir=config.build.output_dir,
            ),
            service=SystemdProvider(
                templates=templates,
                systemd_dir=config.systemd.unit_dir,
                systemctl_bin=config.systemd.systemctl_bin,
                journalctl_bin=config.systemd.journalctl_bin,
                start_timeout=config.start_timeout,
            ),
            proxy=CaddyProvider(
                templates=templates,
                caddyfile=config.proxy.caddyfile,
                sites_dir=config.proxy.sites_dir,
                caddy_bin=config.proxy.caddy_bin,
            ),
            health=HealthProvider(timeout=config.probe_timeout),
        )

    # Declarative artefacts ------------------------------------------------
    def descriptor(self, target: DeploymentTarget) -> ServiceDescriptor:
        """Return the unit description for *target*."""
        serve_root = self.repository.serve_root(self.config.site_dir)
        return ServiceDescriptor(
            name=self.config.service_name,
            exec_start=f"{PYTHON_BIN} -m http.server {target.port} --bind 127.0.0.1",
            working_directory=serve_root,
            user=self.config.service_user,
            restart_policy="always",
            restart_sec=self.config.systemd.restart_sec,
            environment=(f"PORT={target.port}", f"SITE_ENVIRONMENT={target.environment}"),
            description="Static site server",
        )

    def route(self, target: DeploymentTarget) -> ProxyRoute:
        """Return the proxy route for *target*."""
        proxy = self.config.proxy
        return ProxyRoute(
            domain=target.domain,
            upstream_port=target.port,
            tls_mode=resolve_tls_mode(
                proxy.tls_mode,
                domain=target.domain,
                environment=target.environment,
            ),
            log_path=proxy.log_dir / f"{self.config.service_name}.log",
            acme_email=proxy.acme_email,
        )

    # Commands -------------------------------------------------------------
    def run(self, command: str, target: DeploymentTarget) -> DeploymentOutcome:
        """Dispatch *command* by name."""
        if command not in COMMANDS:
            raise ValueError(f"Unknown command: {command}")
        handler: Callable[[DeploymentTarget], DeploymentOutcome] = getattr(self, command)
        return handler(target)

    def deploy(self, target: DeploymentTarget) -> DeploymentOutcome:
        """Sync, build, (re)start the service, route the proxy and verify."""
        outcome = DeploymentOutcome(command="deploy", target=target)
        try:
            tools = self._tools("git", "systemctl", "caddy")
            if self.repository.build_declared(self.config.site_dir):
                tools["npm"] = self.config.build.npm_bin
            self._preflight(outcome, tools)
            self._sync(outcome, npm_checked="npm" in tools)
            self._service_up(outcome, target)
            self._proxy_up(outcome, target)
            self._verify(outcome, target, state=DeploymentState.VERIFIED)
            outcome.reached = DeploymentState.VERIFIED
        except _Halt:
            pass
        return outcome

    def start(self, target: DeploymentTarget) -> DeploymentOutcome:
        """Install and start the service, then configure the proxy route."""
        outcome = DeploymentOutcome(command="start", target=target)
        try:
            self._preflight(outcome, self._tools("systemctl", "caddy"))
            self._service_up(outcome, target)
            self._proxy_up(outcome, target)
            outcome.reached = DeploymentState.DONE
        except _Halt:
            pass
        return outcome

    def stop(self, target: DeploymentTarget) -> DeploymentOutcome:
        """Stop the service; stopping a stopped service succeeds."""
        outcome = DeploymentOutcome(command="stop", target=target)
        try:
            self._preflight(outcome, self._tools("systemctl"))
            name = self.config.service_name
            stopped = self._attempt(
                outcome, DeploymentState.SERVICE_UP, "service.stop", self.service.stop, name
            )
            outcome.add_step(
                "service.stop",
                status="success" if stopped else "skipped",
                detail=f"unit={self.service.unit_name(name)}"
                + ("" if stopped else " already stopped"),
            )
            outcome.reached = DeploymentState.DONE
        except _Halt:
            pass
        return outcome

    def restart(self, target: DeploymentTarget) -> DeploymentOutcome:
        """Restart the service and wait for it to report active."""
        outcome = DeploymentOutcome(command="restart", target=target)
        try:
            self._preflight(outcome, self._tools("systemctl"))
            name = self.config.service_name
            self._attempt(
                outcome, DeploymentState.SERVICE_UP, "service.restart", self.service.restart, name
            )
            outcome.add_step("service.restart", detail=f"unit={self.service.unit_name(name)} active")
            outcome.reached = DeploymentState.DONE
        except _Halt:
            pass
        return outcome

    def status(self, target: DeploymentTarget) -> DeploymentOutcome:
        """Report service state and recent revisions without mutating anything."""
        outcome = DeploymentOutcome(command="status", target=target)
        name = self.config.service_name
        service_status = self.service.status(name)
        outcome.service = service_status
        outcome.add_step(
            "service.status",
            status="success" if service_status.state is ServiceState.RUNNING else "warning",
            detail=f"state={service_status.state.value} {service_status.detail}".strip(),
        )
        site_dir = self.config.site_dir
        outcome.revision = self.repository.revision(site_dir)
        outcome.commits = self.repository.recent_commits(site_dir)
        outcome.add_step(
            "repository.status",
            status="success" if outcome.revision else "warning",
            detail=f"path={site_dir} revision={outcome.revision or 'not a git repository'}",
        )
        if target.has_domain:
            exists = self.proxy.route_exists(target.domain)
            outcome.add_step(
                "proxy.route",
                status="success" if exists else "warning",
                detail=f"{self.proxy.route_path(target.domain)} "
                + ("present" if exists else "missing"),
            )
        outcome.reached = DeploymentState.DONE
        return outcome

    def rollback(self, target: DeploymentTarget) -> DeploymentOutcome:
        """Move the working copy back one revision and restart the service."""
        outcome = DeploymentOutcome(command="rollback", target=target)
        try:
            self._preflight(outcome, self._tools("git", "systemctl"))
            site_dir = self.config.site_dir
            state = self._attempt(
                outcome,
                DeploymentState.SYNCED,
                "repository.rollback",
                self.repository.rollback,
                site_dir,
            )
            outcome.revision = state.revision
            outcome.add_step("repository.rollback", detail=f"revision={state.short_revision}")
            self._build(outcome)
            outcome.reached = DeploymentState.SYNCED

            descriptor = self.descriptor(target)
            self._install(outcome, descriptor)
            self._attempt(
                outcome,
                DeploymentState.SERVICE_UP,
                "service.restart",
                self.service.restart,
                descriptor.name,
            )
            outcome.add_step(
                "service.restart", detail=f"unit={self.service.unit_name(descriptor.name)} active"
            )
            outcome.reached = DeploymentState.DONE
        except _Halt:
            pass
        return outcome

    def verify(self, target: DeploymentTarget) -> DeploymentOutcome:
        """Probe the backend and public endpoint."""
        outcome = DeploymentOutcome(command="verify", target=target)
        try:
            self._verify(outcome, target, state=DeploymentState.VERIFIED)
            outcome.reached = DeploymentState.DONE
        except _Halt:
            pass
        return outcome

    # Steps ----------------------------------------------------------------
    def _tools(self, *names: str) -> dict[str, str]:
        binaries = {
            "git": self.config.git.git_bin,
            "systemctl": self.config.systemd.systemctl_bin,
            "caddy": self.config.proxy.caddy_bin,
        }
        return {name: binaries[name] for name in names}

    def _preflight(self, outcome: DeploymentOutcome, tools: Mapping[str, str]) -> None:
        self._check_tools(outcome, DeploymentState.PREFLIGHT, tools)
        outcome.reached = DeploymentState.PREFLIGHT

    def _check_tools(
        self,
        outcome: DeploymentOutcome,
        state: DeploymentState,
        tools: Mapping[str, str],
        *,
        warn: bool = True,
    ) -> None:
        report = self.preflight(tools)
        for check in report.checks:
            outcome.add_step(
                f"preflight.{check.name}",
                status="success" if check.available else "error",
                detail=check.binary if check.available else f"{check.binary} not found",
            )
        for warning in report.warnings if warn else ():
            outcome.add_step("preflight.user", status="warning", detail=warning)
        self._attempt(outcome, state, "preflight", report.raise_for_missing)

    def _sync(self, outcome: DeploymentOutcome, *, npm_checked: bool) -> None:
        config = self.config
        state = self._attempt(
            outcome,
            DeploymentState.SYNCED,
            "repository.sync",
            self.repository.sync,
            config.site_dir,
            config.repo_url,
            config.branch,
        )
        outcome.revision = state.revision
        outcome.add_step(
            "repository.sync",
            detail=f"ref={config.branch} revision={state.short_revision}",
        )
        self._build(outcome, npm_checked=npm_checked)
        outcome.reached = DeploymentState.SYNCED

    def _build(self, outcome: DeploymentOutcome, *, npm_checked: bool = False) -> None:
        site_dir = self.config.site_dir
        if not npm_checked and self.repository.build_declared(site_dir):
            # A fresh clone or an older revision can declare a build preflight never saw.
            self._check_tools(
                outcome,
                DeploymentState.SYNCED,
                {"npm": self.config.build.npm_bin},
                warn=False,
            )
        result = self._attempt(
            outcome,
            DeploymentState.SYNCED,
            "repository.build",
            self.repository.build,
            site_dir,
        )
        if result.declared:
            outcome.add_step("repository.build", detail=f"output={result.output_dir}")
        else:
            outcome.add_step("repository.build", status="skipped", detail="no build declared")

    def _install(self, outcome: DeploymentOutcome, descriptor: ServiceDescriptor) -> None:
        changed = self._attempt(
            outcome,
            DeploymentState.SERVICE_UP,
            "service.install",
            self.service.install,
            descriptor,
        )
        outcome.add_step(
            "service.install",
            status="success" if changed else "skipped",
            detail=f"unit={self.service.unit_path(descriptor.name)} changed={changed}",
        )

    def _service_up(self, outcome: DeploymentOutcome, target: DeploymentTarget) -> None:
        descriptor = self.descriptor(target)
        self._install(outcome, descriptor)
        unit = self.service.unit_name(descriptor.name)
        try:
            self._attempt(
                outcome,
                DeploymentState.SERVICE_UP,
                "service.start",
                self.service.start,
                descriptor.name,
            )
        except _Halt:
            self._attach_journal(outcome, descriptor.name)
            raise
        outcome.add_step(
            "service.start",
            detail=f"unit={unit} active on 127.0.0.1:{target.port}",
        )
        outcome.reached = DeploymentState.SERVICE_UP

    def _attach_journal(self, outcome: DeploymentOutcome, service: str) -> None:
        try:
            result = self.service.logs(service, lines=JOURNAL_TAIL_LINES)
        except DeploymentError as exc:
            outcome.add_step("service.logs", status="warning", detail=f"journal unavailable: {exc}")
            return
        tail = result.stdout.strip()
        if tail:
            outcome.add_step("service.logs", status="warning", detail=tail)

    def _proxy_up(self, outcome: DeploymentOutcome, target: DeploymentTarget) -> None:
        if not target.has_domain:
            outcome.add_step("proxy.configure", status="skipped", detail="no domain configured")
            outcome.reached = DeploymentState.PROXY_UP
            return
        route = self.route(target)
        result = self._attempt(
            outcome,
            DeploymentState.PROXY_UP,
            "proxy.configure",
            self.proxy.configure,
            route,
        )
        outcome.add_step(
            "proxy.configure",
            status="success" if result.changed else "skipped",
            detail=(
                f"{route.domain} -> {route.upstream} tls={route.tls_mode.value} "
                f"changed={result.changed}"
            ),
        )
        outcome.reached = DeploymentState.PROXY_UP

    def _verify(
        self,
        outcome: DeploymentOutcome,
        target: DeploymentTarget,
        *,
        state: DeploymentState,
    ) -> None:
        tls_mode = self.route(target).tls_mode
        results = self.health.verify(target, tls_mode=tls_mode)
        outcome.health = list(results)
        failures: list[str] = []
        for result in results:
            outcome.add_step(
                "health.probe",
                status="success" if result.reachable else "error",
                detail=f"{result.endpoint} {result.observation}",
            )
            if not result.reachable:
                failures.append(f"{result.endpoint} ({result.observation})")
        if failures:
            hint = self.service.log_reference(self.config.service_name)
            message = f"Unreachable: {'; '.join(failures)}. Check logs with: {hint}"
            outcome.failure = FailureInfo(
                state=state,
                step="health.verify",
                kind=PROBE_FAILURE,
                message=message,
            )
            raise _Halt

    def _attempt(
        self,
        outcome: DeploymentOutcome,
        state: DeploymentState,
        step: str,
        action: Callable[..., T],
        *args: object,
    ) -> T:
        try:
            return action(*args)
        except DeploymentError as exc:
            outcome.add_step(step, status="error", detail=str(exc))
            outcome.failure = FailureInfo(
                state=state,
                step=step,
                kind=exc.kind,
                message=str(exc),
            )
            raise _Halt from exc


__all__ = ["COMMANDS", "DeploymentOrchestrator", "build_target"]
