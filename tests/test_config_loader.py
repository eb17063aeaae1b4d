"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from sitectl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "absent.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.site_dir == Path("/var/www/site")
    assert config.branch == "main"
    assert config.service_name == "site"
    assert config.port == 8000
    assert config.templates_dir == Path("/etc/sitectl/templates")
    assert config.systemd.unit_dir == Path("/etc/systemd/system")
    assert config.proxy.caddyfile == Path("/etc/caddy/Caddyfile")
    assert config.proxy.tls_mode == "auto"
    assert config.proxy.acme_email is None
    assert config.build.enabled is True
    assert config.build.output_dir == "dist"


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "sitectl.yml"
    cfg.write_text(
        "site_dir: /srv/portfolio\n"
        "repo_url: https://example.com/portfolio.git\n"
        "branch: release\n"
        "proxy:\n"
        "  tls_mode: internal\n"
        "  acme_email: ops@example.com\n"
        "build:\n"
        "  enabled: false\n",
        encoding="utf-8",
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.site_dir == Path("/srv/portfolio")
    assert config.repo_url == "https://example.com/portfolio.git"
    assert config.branch == "release"
    assert config.proxy.tls_mode == "internal"
    assert config.proxy.acme_email == "ops@example.com"
    assert config.build.enabled is False


def test_port_env_var_sets_backend_port(tmp_path: Path) -> None:
    """``PORT`` selects the backend listen port."""
    config = load_config(config_file=tmp_path / "absent.yml", env={"PORT": "9100"})

    assert config.port == 9100


def test_port_env_var_is_decimal(tmp_path: Path) -> None:
    """A leading zero in ``PORT`` does not switch to octal."""
    config = load_config(config_file=tmp_path / "absent.yml", env={"PORT": "08080"})

    assert config.port == 8080
    assert load_config(config_file=tmp_path / "absent.yml", env={"PORT": "010"}).port == 10


def test_port_env_var_rejects_non_numbers(tmp_path: Path) -> None:
    """A non-numeric ``PORT`` is a configuration error."""
    with pytest.raises(ConfigError, match="PORT"):
        load_config(config_file=tmp_path / "absent.yml", env={"PORT": "http"})


def test_prefixed_env_overrides_take_precedence(tmp_path: Path) -> None:
    """``SITECTL_*`` variables override the file and ``PORT``."""
    cfg = tmp_path / "sitectl.yml"
    cfg.write_text("port: 7000\nsystemd:\n  restart_sec: 2\n", encoding="utf-8")
    env = {
        "PORT": "9100",
        "SITECTL_PORT": "9200",
        "SITECTL_SYSTEMD__RESTART_SEC": "10",
        "SITECTL_PROXY__TLS_MODE": "auto-cert",
        "SITECTL_BUILD__ENABLED": "false",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.port == 9200
    assert config.systemd.restart_sec == 10
    assert config.proxy.tls_mode == "auto-cert"
    assert config.build.enabled is False


def test_config_file_env_var_selects_file(tmp_path: Path) -> None:
    """``SITECTL_CONFIG_FILE`` points the loader at another file."""
    cfg = tmp_path / "alt.yml"
    cfg.write_text("service_name: portfolio\n", encoding="utf-8")

    config = load_config(env={"SITECTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.service_name == "portfolio"


def test_overrides_apply_last(tmp_path: Path) -> None:
    """Programmatic overrides beat environment values."""
    config = load_config(
        config_file=tmp_path / "absent.yml",
        env={"SITECTL_BRANCH": "develop"},
        overrides={"branch": "hotfix"},
    )

    assert config.branch == "hotfix"


def test_unknown_keys_raise(tmp_path: Path) -> None:
    """Unknown top-level keys raise ``ConfigError``."""
    cfg = tmp_path / "sitectl.yml"
    cfg.write_text("unknown_key: true\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="unknown_key"):
        load_config(config_file=cfg, env={})


def test_unknown_section_keys_raise(tmp_path: Path) -> None:
    """Unknown keys inside a section raise ``ConfigError``."""
    cfg = tmp_path / "sitectl.yml"
    cfg.write_text("proxy:\n  listen: 443\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="proxy"):
        load_config(config_file=cfg, env={})


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("port: 70000\n", "port"),
        ("port: web\n", "port"),
        ("proxy:\n  tls_mode: self-signed\n", "tls_mode"),
        ("service_name: a/b\n", "service_name"),
        ("systemd:\n  restart_sec: -1\n", "restart_sec"),
        ("build:\n  output_dir: /tmp/out\n", "output_dir"),
        ("build:\n  enabled: sometimes\n", "build.enabled"),
        ("start_timeout: 0\n", "start_timeout"),
    ],
)
def test_invalid_values_raise(tmp_path: Path, content: str, message: str) -> None:
    """Invalid values are rejected with a descriptive error."""
    cfg = tmp_path / "sitectl.yml"
    cfg.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError, match=message):
        load_config(config_file=cfg, env={})


def test_top_level_must_be_mapping(tmp_path: Path) -> None:
    """A YAML list at the top level is rejected."""
    cfg = tmp_path / "sitectl.yml"
    cfg.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="mapping"):
        load_config(config_file=cfg, env={})


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """``to_dict`` renders paths as strings."""
    config = load_config(config_file=tmp_path / "absent.yml", env={})

    payload = config.to_dict()

    assert payload["site_dir"] == "/var/www/site"
    assert payload["proxy"]["sites_dir"] == "/etc/caddy/sites"  # type: ignore[index]
    assert payload["systemd"]["restart_sec"] == 5  # type: ignore[index]
