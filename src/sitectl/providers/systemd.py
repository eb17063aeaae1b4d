"""Systemd provider for the supervised site service."""
from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import StartTimeoutError, SystemdError
from ..models import ServiceDescriptor, ServiceState, ServiceStatus
from ..operations import MISSING_BINARY_RC, OperationResult, run_operation
from ..templates import TemplateEngine


@dataclass(slots=True)
class SystemdProvider:
    """Render and control the systemd unit that serves the site.

    The unit moves between three states: ``undeclared`` (no unit file),
    ``stopped`` and ``running``. Only this provider writes the unit file.
    """

    templates: TemplateEngine
    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"
    start_timeout: float = 15.0
    poll_interval: float = 0.5
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def unit_name(self, service: str) -> str:
        """Return the systemd unit name for *service*."""
        safe = service.replace("/", "-")
        return f"{safe}.service"

    def unit_path(self, service: str) -> Path:
        """Return the full path for the unit file."""
        return self.systemd_dir / self.unit_name(service)

    def log_reference(self, service: str) -> str:
        """Return the command an operator runs to read the service journal."""
        return f"{self.journalctl_bin} -u {self.unit_name(service)}"

    def install(self, descriptor: ServiceDescriptor) -> bool:
        """Write the unit for *descriptor* and enable it at boot.

        Returns ``True`` when the unit file changed. Identical content leaves
        the file, the daemon and the running process alone.
        """
        context = {
            "service_name": descriptor.name,
            "description": descriptor.description,
            "service_user": descriptor.user,
            "working_directory": str(descriptor.working_directory),
            "exec_start": descriptor.exec_start,
            "environment": list(descriptor.environment),
            "restart_policy": descriptor.restart_policy,
            "restart_sec": descriptor.restart_sec,
        }
        path = self.unit_path(descriptor.name)
        changed = self.templates.render_to_path("systemd/service.j2", path, context, mode=0o644)
        if changed:
            self._reload_daemon()
        if changed or not self.is_enabled(descriptor.name):
            self._systemctl("enable", self.unit_name(descriptor.name))
        return changed

    def state(self, service: str) -> ServiceState:
        """Return the current lifecycle state of *service*."""
        if not self.unit_path(service).exists():
            return ServiceState.UNDECLARED
        if self.is_active(service):
            return ServiceState.RUNNING
        return ServiceState.STOPPED

    def is_active(self, service: str) -> bool:
        """Return ``True`` when systemd reports the unit active."""
        result = self._systemctl("is-active", self.unit_name(service), check=False)
        return result.stdout.strip() == "active"

    def is_enabled(self, service: str) -> bool:
        """Return ``True`` when the unit is enabled for boot."""
        result = self._systemctl("is-enabled", self.unit_name(service), check=False)
        return result.stdout.strip() == "enabled"

    def start(self, service: str) -> ServiceState:
        """Bring *service* to ``running``, restarting it when already up."""
        current = self.state(service)
        if current is ServiceState.UNDECLARED:
            raise SystemdError(f"Unit {self.unit_name(service)} is not installed.")
        if current is ServiceState.RUNNING:
            self._systemctl("stop", self.unit_name(service))
        self._systemctl("start", self.unit_name(service))
        self.wait_until_active(service)
        return ServiceState.RUNNING

    def stop(self, service: str) -> bool:
        """Stop *service*; return ``False`` when it was not running."""
        if self.state(service) is not ServiceState.RUNNING:
            return False
        self._systemctl("stop", self.unit_name(service))
        return True

    def restart(self, service: str) -> ServiceState:
        """Restart *service* and wait for it to report active."""
        if self.state(service) is ServiceState.UNDECLARED:
            raise SystemdError(f"Unit {self.unit_name(service)} is not installed.")
        self._systemctl("restart", self.unit_name(service))
        self.wait_until_active(service)
        return ServiceState.RUNNING

    def wait_until_active(self, service: str) -> None:
        """Poll until the unit is active or the start timeout elapses."""
        deadline = self.clock() + self.start_timeout
        while True:
            if self.is_active(service):
                return
            if self.clock() >= deadline:
                raise StartTimeoutError(
                    f"{self.unit_name(service)} did not become active within "
                    f"{self.start_timeout:g}s; see `{self.log_reference(service)}`."
                )
            self.sleep(self.poll_interval)

    def status(self, service: str) -> ServiceStatus:
        """Return a read-only snapshot of *service*."""
        state = self.state(service)
        detail = "unit file not installed"
        if state is not ServiceState.UNDECLARED:
            result = self._systemctl(
                "show",
                self.unit_name(service),
                "--property=ActiveState",
                "--property=SubState",
                check=False,
            )
            detail = _format_show_output(result)
        return ServiceStatus(
            name=service,
            state=state,
            unit_path=self.unit_path(service),
            log_reference=self.log_reference(service),
            detail=detail,
        )

    def logs(self, service: str, *, lines: int | None = 50) -> OperationResult:
        """Return journalctl output for the unit."""
        args: list[str] = ["--unit", self.unit_name(service), "--no-pager"]
        if lines is not None:
            args.extend(["--lines", str(lines)])
        return self._journalctl(args)

    # ------------------------------------------------------------------
    def _reload_daemon(self) -> None:
        try:
            self._systemctl("daemon-reload")
        except SystemdError as exc:
            if "not found" in str(exc).lower():
                return
            raise

    def _systemctl(
        self,
        command: str,
        *extra: str,
        check: bool = True,
    ) -> OperationResult:
        args: list[str] = [self.systemctl_bin, command, *extra]
        return self._run_command(args, check=check, error_prefix=f"{self.systemctl_bin} {command}")

    def _journalctl(self, args: Sequence[str], *, check: bool = True) -> OperationResult:
        command = [self.journalctl_bin, *args]
        joined = " ".join(args)
        return self._run_command(
            command,
            check=check,
            error_prefix=f"{self.journalctl_bin} {joined}".rstrip(),
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> OperationResult:
        result = run_operation(args)
        if result.returncode == MISSING_BINARY_RC and check:
            raise SystemdError(result.message)
        if check and not result.ok:
            raise SystemdError(
                f"{error_prefix} failed (exit {result.returncode}): {result.message}"
            )
        return result


def _format_show_output(result: OperationResult) -> str:
    values: dict[str, str] = {}
    for line in result.stdout.splitlines():
        key, _, value = line.partition("=")
        if key:
            values[key.strip()] = value.strip()
    active = values.get("ActiveState")
    sub = values.get("SubState")
    if active and sub:
        return f"{active} ({sub})"
    return active or result.message


__all__ = ["SystemdProvider"]
