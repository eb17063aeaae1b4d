"""Reachability probes for the site backend and its public endpoint."""
from __future__ import annotations

import time
import warnings
from dataclasses import dataclass, field

import requests
from urllib3.exceptions import InsecureRequestWarning

from ..models import DeploymentTarget, HealthResult, TLSMode


@dataclass(slots=True)
class HealthProvider:
    """Single-shot HTTP probes; never retries and never mutates state."""

    timeout: float = 5.0
    session: requests.Session = field(default_factory=requests.Session, repr=False)

    def verify(
        self,
        target: DeploymentTarget,
        *,
        tls_mode: TLSMode = TLSMode.AUTO_CERT,
    ) -> list[HealthResult]:
        """Probe the direct backend and, when a domain is set, the public URL."""
        results = [self.probe(f"http://127.0.0.1:{target.port}/")]
        if target.has_domain:
            results.append(
                self.probe(
                    f"https://{target.domain}/",
                    verify_tls=tls_mode is TLSMode.AUTO_CERT,
                )
            )
        return results

    def probe(self, url: str, *, verify_tls: bool = True) -> HealthResult:
        """Issue one GET against *url* bounded by the probe timeout."""
        started = time.monotonic()
        try:
            with warnings.catch_warnings():
                if not verify_tls:
                    warnings.simplefilter("ignore", InsecureRequestWarning)
                response = self.session.get(
                    url,
                    timeout=self.timeout,
                    verify=verify_tls,
                    allow_redirects=False,
                )
        except requests.RequestException as exc:
            return HealthResult(
                endpoint=url,
                reachable=False,
                observation=f"{type(exc).__name__}: {exc}",
                latency_ms=None,
            )
        latency_ms = round((time.monotonic() - started) * 1000, 1)
        response.close()
        return HealthResult(
            endpoint=url,
            reachable=response.status_code < 400,
            observation=f"HTTP {response.status_code}",
            latency_ms=latency_ms,
        )


__all__ = ["HealthProvider"]
