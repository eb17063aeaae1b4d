"""Tests for the HTTP health probes."""
from __future__ import annotations

import warnings

import requests
from urllib3.exceptions import InsecureRequestWarning

from sitectl.models import DeploymentTarget, TLSMode
from sitectl.providers.health import HealthProvider


class FakeResponse:
    """Minimal response object."""

    def __init__(self, status_code: int) -> None:
        """Store the status code."""
        self.status_code = status_code
        self.closed = False

    def close(self) -> None:
        """Record that the response was released."""
        self.closed = True


class FakeSession:
    """Session returning canned responses or raising per URL."""

    def __init__(self, outcomes: dict[str, object]) -> None:
        """Map each URL to a status code or an exception."""
        self.outcomes = outcomes
        self.calls: list[tuple[str, dict[str, object]]] = []

    def get(self, url: str, **kwargs: object) -> FakeResponse:
        """Return or raise the configured outcome for *url*."""
        self.calls.append((url, kwargs))
        if kwargs.get("verify") is False:
            warnings.warn(f"Unverified HTTPS request is being made to {url}", InsecureRequestWarning)
        outcome = self.outcomes[url]
        if isinstance(outcome, Exception):
            raise outcome
        assert isinstance(outcome, int)
        return FakeResponse(outcome)


def _target(domain: str = "example.com") -> DeploymentTarget:
    return DeploymentTarget(host=domain, domain=domain, environment="prod", port=8000)


def test_verify_probes_backend_and_public_endpoint() -> None:
    """Both endpoints are probed once with the configured timeout."""
    session = FakeSession({"http://127.0.0.1:8000/": 200, "https://example.com/": 200})
    provider = HealthProvider(timeout=2.5, session=session)  # type: ignore[arg-type]

    results = provider.verify(_target())

    assert [result.endpoint for result in results] == [
        "http://127.0.0.1:8000/",
        "https://example.com/",
    ]
    assert all(result.reachable for result in results)
    assert results[0].observation == "HTTP 200"
    assert results[0].latency_ms is not None
    assert session.calls[0][1]["timeout"] == 2.5
    assert session.calls[1][1]["verify"] is True


def test_internal_tls_skips_certificate_verification() -> None:
    """Locally issued certificates are not verified against public CAs."""
    session = FakeSession({"http://127.0.0.1:8000/": 200, "https://localhost/": 200})
    provider = HealthProvider(session=session)  # type: ignore[arg-type]

    provider.verify(_target("localhost"), tls_mode=TLSMode.INTERNAL)

    assert session.calls[1][1]["verify"] is False


def test_connection_errors_are_reported_not_raised() -> None:
    """Network failures become unreachable results."""
    session = FakeSession(
        {
            "http://127.0.0.1:8000/": requests.ConnectionError("refused"),
            "https://example.com/": requests.Timeout("timed out"),
        }
    )
    provider = HealthProvider(session=session)  # type: ignore[arg-type]

    results = provider.verify(_target())

    assert [result.reachable for result in results] == [False, False]
    assert results[0].observation.startswith("ConnectionError")
    assert results[1].observation.startswith("Timeout")
    assert results[0].latency_ms is None


def test_server_errors_are_unreachable() -> None:
    """HTTP 5xx responses count as failed probes."""
    session = FakeSession({"http://127.0.0.1:8000/": 502})
    provider = HealthProvider(session=session)  # type: ignore[arg-type]

    result = provider.probe("http://127.0.0.1:8000/")

    assert result.reachable is False
    assert result.observation == "HTTP 502"


def test_redirects_count_as_reachable() -> None:
    """A redirect proves the endpoint answers."""
    session = FakeSession({"http://127.0.0.1:8000/": 301})
    provider = HealthProvider(session=session)  # type: ignore[arg-type]

    assert provider.probe("http://127.0.0.1:8000/").reachable is True


def test_internal_tls_request_is_quiet() -> None:
    """Skipping certificate checks does not leak urllib3 warnings."""
    session = FakeSession({"http://127.0.0.1:8000/": 200, "https://localhost/": 200})
    provider = HealthProvider(session=session)  # type: ignore[arg-type]

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        results = provider.verify(_target("localhost"), tls_mode=TLSMode.INTERNAL)

    assert all(result.reachable for result in results)
