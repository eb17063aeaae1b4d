"""Pre-flight checks run before any command touches the host."""
from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from .errors import ToolMissingError
from .operations import command_exists


@dataclass(slots=True, frozen=True)
class ToolCheck:
    """Availability of one external tool."""

    name: str
    binary: str
    available: bool


@dataclass(slots=True)
class PreflightReport:
    """Aggregated tool checks and advisory warnings."""

    checks: list[ToolCheck] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def missing(self) -> list[str]:
        """Return the binaries that could not be found."""
        return [check.binary for check in self.checks if not check.available]

    def raise_for_missing(self) -> None:
        """Raise :class:`ToolMissingError` naming every missing tool at once."""
        if self.missing:
            raise ToolMissingError(self.missing)


def run_preflight(
    tools: Mapping[str, str],
    *,
    exists: Callable[[str], bool] = command_exists,
    euid: Callable[[], int] | None = None,
) -> PreflightReport:
    """Check every tool in *tools* (name -> binary) without mutating anything."""
    report = PreflightReport()
    for name, binary in tools.items():
        report.checks.append(ToolCheck(name=name, binary=binary, available=exists(binary)))
    get_euid = euid if euid is not None else getattr(os, "geteuid", None)
    if get_euid is not None and get_euid() == 0:
        report.warnings.append(
            "Running as root. Consider a dedicated deploy user for better security."
        )
    return report


__all__ = ["PreflightReport", "ToolCheck", "run_preflight"]
