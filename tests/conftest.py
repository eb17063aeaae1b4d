"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from sitectl.config import AppConfig, load_config
from sitectl.templates import TemplateEngine


@pytest.fixture
def templates() -> TemplateEngine:
    """Return a template engine using only built-in templates."""
    return TemplateEngine.with_overrides(None)


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Return a configuration rooted entirely under *tmp_path*."""
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "site_dir": str(tmp_path / "site"),
            "repo_url": "https://example.com/site.git",
            "logs_dir": str(tmp_path / "logs"),
            "templates_dir": str(tmp_path / "templates"),
            "systemd": {"unit_dir": str(tmp_path / "systemd")},
            "proxy": {
                "caddyfile": str(tmp_path / "caddy" / "Caddyfile"),
                "sites_dir": str(tmp_path / "caddy" / "sites"),
                "log_dir": str(tmp_path / "caddy-logs"),
            },
        },
    )
