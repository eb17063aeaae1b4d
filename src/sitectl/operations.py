"""Typed wrapper around external commands.

Every interaction with git, systemctl, caddy, npm or the hardening tools goes
through :func:`run_operation`, which never raises for a failing or missing
binary. Callers receive an :class:`OperationResult` carrying the return code
and captured output and decide which component error to raise.
"""
from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

MISSING_BINARY_RC = 127
TIMEOUT_RC = 124


@dataclass(slots=True, frozen=True)
class OperationResult:
    """Outcome of one external command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """Return ``True`` when the command exited successfully."""
        return self.returncode == 0

    @property
    def message(self) -> str:
        """Return the most useful diagnostic text from the captured output."""
        return self.stderr.strip() or self.stdout.strip() or "no output"

    def describe(self) -> str:
        """Format a compact ``command=... rc=...`` detail string."""
        detail = f"command={' '.join(self.args)} rc={self.returncode}"
        if not self.ok:
            detail += f" output={self.message}"
        return detail


Runner = Callable[[Sequence[str]], OperationResult]


def run_operation(
    args: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    dry_run: bool = False,
) -> OperationResult:
    """Execute *args* and capture its result."""
    command = tuple(str(item) for item in args)
    if dry_run:
        return OperationResult(command, returncode=0)
    env_vars: dict[str, str] | None = None
    if env is not None:
        env_vars = os.environ.copy()
        env_vars.update(env)
    try:
        result = subprocess.run(  # noqa: S603
            list(command),
            cwd=str(cwd) if cwd is not None else None,
            env=env_vars,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        return OperationResult(
            command,
            returncode=MISSING_BINARY_RC,
            stderr=f"{command[0]} not found: {exc}",
        )
    except subprocess.TimeoutExpired:
        return OperationResult(
            command,
            returncode=TIMEOUT_RC,
            stderr=f"{command[0]} timed out after {timeout}s",
        )
    return OperationResult(
        command,
        returncode=result.returncode,
        stdout=result.stdout or "",
        stderr=result.stderr or "",
    )


def command_exists(command: str) -> bool:
    """Return ``True`` when *command* resolves to an executable."""
    path = Path(command)
    if path.is_absolute() or (path.parent and str(path.parent) not in {"", "."}):
        return path.exists() and os.access(path, os.X_OK)
    resolved = shutil.which(command)
    return resolved is not None and os.access(resolved, os.X_OK)


__all__ = [
    "MISSING_BINARY_RC",
    "OperationResult",
    "Runner",
    "command_exists",
    "run_operation",
]
