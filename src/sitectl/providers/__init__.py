"""Provider interfaces for sitectl."""
from __future__ import annotations

from .caddy import CaddyProvider, ProxyResult, resolve_tls_mode
from .health import HealthProvider
from .repository import GitProvider
from .systemd import SystemdProvider

__all__ = [
    "CaddyProvider",
    "GitProvider",
    "HealthProvider",
    "ProxyResult",
    "SystemdProvider",
    "resolve_tls_mode",
]
