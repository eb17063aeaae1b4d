"""Helper utilities used by the host provisioning workflow."""
from __future__ import annotations

from .hardening import (
    HardeningAction,
    HardeningActionResult,
    HardeningPlan,
    HardeningSpec,
    apply_hardening_plan,
    plan_hardening,
)

__all__ = [
    "HardeningAction",
    "HardeningActionResult",
    "HardeningPlan",
    "HardeningSpec",
    "apply_hardening_plan",
    "plan_hardening",
]
