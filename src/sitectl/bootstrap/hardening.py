"""Plan and apply the one-time host hardening procedure.

Hardening is deliberately separate from the deployment lifecycle: it is run
once against a fresh host through ``sitectl-provision harden`` and is not
designed to be repeated safely (package upgrades, firewall enablement and
hostname changes are applied unconditionally).
"""
from __future__ import annotations

import pwd
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from ..operations import OperationResult, Runner, run_operation
from ..templates import TemplateEngine, write_atomic

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}

DEFAULT_SYSCTL: tuple[tuple[str, str], ...] = (
    ("net.ipv4.tcp_syncookies", "1"),
    ("net.ipv4.conf.all.rp_filter", "1"),
    ("net.ipv4.conf.default.rp_filter", "1"),
    ("net.ipv4.icmp_echo_ignore_broadcasts", "1"),
    ("net.ipv4.conf.all.accept_redirects", "0"),
    ("net.ipv4.conf.default.accept_redirects", "0"),
    ("net.ipv4.conf.all.send_redirects", "0"),
    ("net.ipv4.conf.default.send_redirects", "0"),
    ("net.ipv4.conf.all.accept_source_route", "0"),
    ("net.ipv4.conf.default.accept_source_route", "0"),
    ("kernel.randomize_va_space", "2"),
)


@dataclass(slots=True)
class HardeningSpec:
    """Desired security posture for a freshly provisioned host."""

    hostname: str = "site"
    deploy_user: str = "deploy"
    deploy_sudo_nopasswd: bool = False
    ssh_password_auth: bool = False
    ssh_max_auth_tries: int = 3
    firewall_allow: tuple[str, ...] = ("ssh", "http", "https")
    fail2ban_maxretry: int = 3
    fail2ban_bantime: int = 3600
    fail2ban_findtime: int = 600
    unattended_upgrades: bool = True
    automatic_reboot: bool = False
    auditd: bool = True
    sysctl: tuple[tuple[str, str], ...] = DEFAULT_SYSCTL
    etc_dir: Path = Path("/etc")


@dataclass(slots=True)
class HardeningAction:
    """Single command to run or file to write."""

    kind: Literal["command", "file"]
    description: str
    command: list[str] | None = None
    path: Path | None = None
    content: str | None = None
    mode: int = 0o644

    def render(self) -> str:
        """Return a one-line human readable form of the action."""
        if self.kind == "file":
            return f"write {self.path} (mode {self.mode:o})"
        return " ".join(self.command or [])


@dataclass(slots=True)
class HardeningPlan:
    """Ordered actions required to harden the host, plus advisories."""

    spec: HardeningSpec
    actions: list[HardeningAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "hostname": self.spec.hostname,
            "deploy_user": self.spec.deploy_user,
            "actions": [
                {"kind": action.kind, "description": action.description, "step": action.render()}
                for action in self.actions
            ],
            "warnings": list(self.warnings),
        }


@dataclass(slots=True, frozen=True)
class HardeningActionResult:
    """What happened when one action was applied."""

    action: HardeningAction
    status: Literal["success", "skipped", "error"]
    detail: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "description": self.action.description,
            "step": self.action.render(),
            "status": self.status,
            "detail": self.detail,
        }


def _user_exists(name: str) -> bool:
    try:
        pwd.getpwnam(name)
    except KeyError:
        return False
    return True


def _command(description: str, *command: str) -> HardeningAction:
    return HardeningAction(kind="command", description=description, command=list(command))


def plan_hardening(
    spec: HardeningSpec,
    templates: TemplateEngine,
    *,
    user_exists: Callable[[str], bool] = _user_exists,
) -> HardeningPlan:
    """Return the ordered hardening actions for *spec*."""
    plan = HardeningPlan(spec=spec)
    etc = spec.etc_dir
    actions = plan.actions

    actions.append(_command("Refresh package index.", "apt-get", "update", "-qq"))
    actions.append(_command("Upgrade installed packages.", "apt-get", "upgrade", "-y", "-qq"))
    actions.append(
        _command(f"Set hostname to '{spec.hostname}'.", "hostnamectl", "set-hostname", spec.hostname)
    )

    if user_exists(spec.deploy_user):
        plan.warnings.append(f"User '{spec.deploy_user}' already exists; leaving it unchanged.")
    else:
        actions.append(
            _command(
                f"Create deployment user '{spec.deploy_user}'.",
                "useradd", "-m", "-s", "/bin/bash", "-G", "sudo", spec.deploy_user,
            )
        )
    if spec.deploy_sudo_nopasswd:
        actions.append(
            HardeningAction(
                kind="file",
                description=f"Grant '{spec.deploy_user}' passwordless sudo.",
                path=etc / "sudoers.d" / spec.deploy_user,
                content=templates.render_to_string(
                    "hardening/sudoers.j2", {"user": spec.deploy_user}
                ),
                mode=0o440,
            )
        )

    actions.append(
        HardeningAction(
            kind="file",
            description="Harden the SSH daemon.",
            path=etc / "ssh" / "sshd_config.d" / "hardening.conf",
            content=templates.render_to_string(
                "hardening/sshd.conf.j2",
                {
                    "password_auth": spec.ssh_password_auth,
                    "max_auth_tries": spec.ssh_max_auth_tries,
                },
            ),
        )
    )
    actions.append(_command("Reload the SSH daemon.", "systemctl", "reload", "ssh"))
    if not spec.ssh_password_auth:
        plan.warnings.append(
            f"Password login is disabled; install a key in "
            f"~{spec.deploy_user}/.ssh/authorized_keys before disconnecting."
        )

    actions.append(_command("Install the firewall.", "apt-get", "install", "-y", "-qq", "ufw"))
    actions.append(_command("Deny inbound traffic by default.", "ufw", "default", "deny", "incoming"))
    actions.append(
        _command("Allow outbound traffic by default.", "ufw", "default", "allow", "outgoing")
    )
    for service in spec.firewall_allow:
        actions.append(
            _command(f"Allow inbound {service}.", "ufw", "allow", service, "comment", service.upper())
        )
    actions.append(_command("Enable the firewall.", "ufw", "--force", "enable"))

    actions.append(_command("Install Fail2Ban.", "apt-get", "install", "-y", "-qq", "fail2ban"))
    actions.append(
        HardeningAction(
            kind="file",
            description="Configure the Fail2Ban SSH jail.",
            path=etc / "fail2ban" / "jail.local",
            content=templates.render_to_string(
                "hardening/jail.local.j2",
                {
                    "maxretry": spec.fail2ban_maxretry,
                    "bantime": spec.fail2ban_bantime,
                    "findtime": spec.fail2ban_findtime,
                },
            ),
        )
    )
    actions.append(
        _command("Enable and start Fail2Ban.", "systemctl", "enable", "--now", "fail2ban")
    )

    if spec.unattended_upgrades:
        actions.append(
            _command(
                "Install unattended upgrades.",
                "apt-get", "install", "-y", "-qq", "unattended-upgrades",
            )
        )
        actions.append(
            HardeningAction(
                kind="file",
                description="Configure automatic security updates.",
                path=etc / "apt" / "apt.conf.d" / "50unattended-upgrades",
                content=templates.render_to_string(
                    "hardening/unattended-upgrades.j2",
                    {"automatic_reboot": spec.automatic_reboot},
                ),
            )
        )

    if spec.auditd:
        actions.append(_command("Install audit logging.", "apt-get", "install", "-y", "-qq", "auditd"))

    actions.append(
        HardeningAction(
            kind="file",
            description="Harden kernel network parameters.",
            path=etc / "sysctl.d" / "99-sitectl-hardening.conf",
            content=templates.render_to_string(
                "hardening/sysctl.conf.j2", {"settings": list(spec.sysctl)}
            ),
        )
    )
    actions.append(_command("Load kernel parameters.", "sysctl", "--system"))

    actions.append(
        _command(
            "Restrict account database permissions.",
            "chmod", "644", str(etc / "passwd"), str(etc / "group"),
        )
    )
    actions.append(_command("Restrict shadow file permissions.", "chmod", "640", str(etc / "shadow")))
    actions.append(_command("Restrict root home permissions.", "chmod", "700", "/root"))
    return plan


def _default_runner(command: Sequence[str]) -> OperationResult:
    return run_operation(command, env=APT_ENV)


def apply_hardening_plan(
    plan: HardeningPlan,
    *,
    runner: Runner | None = None,
    dry_run: bool = False,
) -> list[HardeningActionResult]:
    """Execute *plan* in order, stopping at the first failing action.

    Actions after a failure are reported as ``skipped``.
    """
    if runner is None:
        runner = _default_runner

    results: list[HardeningActionResult] = []
    failed = False
    for action in plan.actions:
        if failed or dry_run:
            detail = "dry-run" if dry_run else "not attempted after earlier failure"
            results.append(HardeningActionResult(action, "skipped", detail))
            continue
        if action.kind == "file":
            if action.path is None or action.content is None:
                raise ValueError(f"File action '{action.description}' has no path or content.")
            try:
                action.path.parent.mkdir(parents=True, exist_ok=True)
                changed = write_atomic(action.path, action.content, mode=action.mode)
            except OSError as exc:
                results.append(HardeningActionResult(action, "error", str(exc)))
                failed = True
                continue
            results.append(
                HardeningActionResult(action, "success", "written" if changed else "unchanged")
            )
            continue
        outcome = runner(action.command or [])
        if outcome.ok:
            results.append(HardeningActionResult(action, "success", outcome.describe()))
        else:
            results.append(HardeningActionResult(action, "error", outcome.describe()))
            failed = True
    return results


__all__ = [
    "HardeningAction",
    "HardeningActionResult",
    "HardeningPlan",
    "HardeningSpec",
    "apply_hardening_plan",
    "plan_hardening",
]
