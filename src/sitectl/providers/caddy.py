"""Caddy provider for managing per-domain reverse proxy routes."""
from __future__ import annotations

import ipaddress
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import ProxyError, ProxyReloadError
from ..models import ProxyRoute, TLSMode
from ..operations import OperationResult, run_operation
from ..templates import TemplateEngine, write_atomic


@dataclass(slots=True)
class ProxyResult:
    """Outcome of configuring a proxy route."""

    changed: bool
    route_path: Path
    validation: OperationResult | None = None
    reload: OperationResult | None = None


@dataclass(slots=True)
class CaddyProvider:
    """Render route files, validate them and live-reload Caddy."""

    templates: TemplateEngine
    caddyfile: Path = Path("/etc/caddy/Caddyfile")
    sites_dir: Path = Path("/etc/caddy/sites")
    caddy_bin: str = "caddy"

    def route_name(self, domain: str) -> str:
        """Return the route file name for *domain*."""
        safe = domain.strip().lower().replace("/", "-")
        return f"{safe}.caddy"

    def route_path(self, domain: str) -> Path:
        """Return the path of the route file for *domain*."""
        return self.sites_dir / self.route_name(domain)

    def route_exists(self, domain: str) -> bool:
        """Return ``True`` when a route file for *domain* is installed."""
        return self.route_path(domain).exists()

    def configure(self, route: ProxyRoute) -> ProxyResult:
        """Install *route* and reload Caddy when anything changed.

        Writing goes through a temp file and ``os.replace``. When validation
        or reload fails, the previous route file is restored so the on-disk
        configuration keeps matching what Caddy is serving.
        """
        destination = self.route_path(route.domain)
        previous = _snapshot(destination)
        previous_root = _snapshot(self.caddyfile)

        root_changed = self.templates.render_to_path(
            "caddy/Caddyfile.j2",
            self.caddyfile,
            {"sites_dir": str(self.sites_dir)},
            mode=0o644,
        )
        context = {
            "domain": route.domain,
            "upstream": route.upstream,
            "tls_mode": route.tls_mode.value,
            "acme_email": route.acme_email or "",
            "log_path": str(route.log_path),
        }
        route_changed = self.templates.render_to_path(
            "caddy/site.caddy.j2",
            destination,
            context,
            mode=0o644,
        )
        if not (root_changed or route_changed):
            return ProxyResult(changed=False, route_path=destination)

        try:
            validation = self.validate()
            reload_result = self.reload()
        except ProxyError as exc:
            if route_changed:
                _restore(destination, previous)
            if root_changed:
                _restore(self.caddyfile, previous_root)
            raise ProxyReloadError(str(exc)) from exc
        return ProxyResult(
            changed=True,
            route_path=destination,
            validation=validation,
            reload=reload_result,
        )

    def remove(self, domain: str) -> bool:
        """Remove the route file for *domain*; return whether it existed."""
        path = self.route_path(domain)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def validate(self) -> OperationResult:
        """Run ``caddy validate`` against the root Caddyfile."""
        return self._caddy(["validate", "--config", str(self.caddyfile), "--adapter", "caddyfile"])

    def reload(self) -> OperationResult:
        """Apply the configuration with a zero-downtime ``caddy reload``."""
        return self._caddy(["reload", "--config", str(self.caddyfile), "--adapter", "caddyfile"])

    # ------------------------------------------------------------------
    def _caddy(self, args: Sequence[str]) -> OperationResult:
        result = run_operation([self.caddy_bin, *args])
        if not result.ok:
            raise ProxyError(
                f"{self.caddy_bin} {' '.join(args)} failed (exit {result.returncode}): "
                f"{result.message}"
            )
        return result


def _snapshot(path: Path) -> tuple[str, int] | None:
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8"), path.stat().st_mode & 0o777


def _restore(destination: Path, previous: tuple[str, int] | None) -> None:
    if previous is None:
        destination.unlink(missing_ok=True)
        return
    content, mode = previous
    write_atomic(destination, content, mode=mode)


def resolve_tls_mode(setting: str, *, domain: str, environment: str) -> TLSMode:
    """Translate the configured TLS mode into a concrete :class:`TLSMode`.

    ``auto`` issues real certificates only for public names outside ``dev``.
    """
    if setting == TLSMode.AUTO_CERT.value:
        return TLSMode.AUTO_CERT
    if setting == TLSMode.INTERNAL.value:
        return TLSMode.INTERNAL
    if environment == "dev" or _is_local_name(domain):
        return TLSMode.INTERNAL
    return TLSMode.AUTO_CERT


def _is_local_name(domain: str) -> bool:
    name = domain.strip().lower()
    if name == "localhost" or name.endswith(".localhost"):
        return True
    try:
        ipaddress.ip_address(name)
    except ValueError:
        return False
    return True


__all__ = ["CaddyProvider", "ProxyResult", "resolve_tls_mode"]
