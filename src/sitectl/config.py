"""Configuration loader for sitectl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/sitectl/config.yml`` (or an override path).
3. Environment variables: ``PORT`` for the backend listen port, then any
   variable prefixed with ``SITECTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SITECTL_PROXY__TLS_MODE=internal
    export SITECTL_SYSTEMD__RESTART_SEC=10

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load sitectl configuration. Install with "
        "`pip install sitectl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "SITECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
PORT_ENV_VAR = "PORT"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"
    restart_sec: int = 5

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir),
            "systemctl_bin": self.systemctl_bin,
            "journalctl_bin": self.journalctl_bin,
            "restart_sec": self.restart_sec,
        }


@dataclass(frozen=True)
class ProxyConfig:
    """Caddy reverse proxy configuration values."""

    caddyfile: Path = Path("/etc/caddy/Caddyfile")
    sites_dir: Path = Path("/etc/caddy/sites")
    caddy_bin: str = "caddy"
    tls_mode: str = "auto"
    acme_email: str | None = None
    log_dir: Path = Path("/var/log/caddy")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "caddyfile": str(self.caddyfile),
            "sites_dir": str(self.sites_dir),
            "caddy_bin": self.caddy_bin,
            "tls_mode": self.tls_mode,
            "acme_email": self.acme_email,
            "log_dir": str(self.log_dir),
        }


@dataclass(frozen=True)
class GitConfig:
    """Version-control client settings."""

    git_bin: str = "git"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"git_bin": self.git_bin}


@dataclass(frozen=True)
class BuildConfig:
    """Optional site build step settings."""

    enabled: bool = True
    npm_bin: str = "npm"
    output_dir: str = "dist"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "npm_bin": self.npm_bin,
            "output_dir": self.output_dir,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for sitectl."""

    config_file: Path
    site_dir: Path
    repo_url: str
    branch: str
    service_name: str
    service_user: str
    port: int
    logs_dir: Path
    templates_dir: Path
    start_timeout: float
    probe_timeout: float
    systemd: SystemdConfig
    proxy: ProxyConfig
    git: GitConfig
    build: BuildConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "site_dir": str(self.site_dir),
            "repo_url": self.repo_url,
            "branch": self.branch,
            "service_name": self.service_name,
            "service_user": self.service_user,
            "port": self.port,
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "start_timeout": self.start_timeout,
            "probe_timeout": self.probe_timeout,
            "systemd": self.systemd.to_dict(),
            "proxy": self.proxy.to_dict(),
            "git": self.git.to_dict(),
            "build": self.build.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/sitectl/config.yml",
    "site_dir": "/var/www/site",
    "repo_url": "",
    "branch": "main",
    "service_name": "site",
    "service_user": "www-data",
    "port": 8000,
    "logs_dir": "/var/log/sitectl",
    "templates_dir": "/etc/sitectl/templates",
    "start_timeout": 15.0,
    "probe_timeout": 5.0,
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "systemctl_bin": "systemctl",
        "journalctl_bin": "journalctl",
        "restart_sec": 5,
    },
    "proxy": {
        "caddyfile": "/etc/caddy/Caddyfile",
        "sites_dir": "/etc/caddy/sites",
        "caddy_bin": "caddy",
        "tls_mode": "auto",
        "acme_email": None,
        "log_dir": "/var/log/caddy",
    },
    "git": {
        "git_bin": "git",
    },
    "build": {
        "enabled": True,
        "npm_bin": "npm",
        "output_dir": "dist",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_TLS_MODES = {"auto", "auto-cert", "internal"}
_SECTION_KEYS: dict[str, set[str]] = {
    "systemd": {"unit_dir", "systemctl_bin", "journalctl_bin", "restart_sec"},
    "proxy": {"caddyfile", "sites_dir", "caddy_bin", "tls_mode", "acme_email", "log_dir"},
    "git": {"git_bin"},
    "build": {"enabled", "npm_bin", "output_dir"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    if PORT_ENV_VAR in resolved_env:
        merged["port"] = _parse_port(resolved_env[PORT_ENV_VAR])

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    proxy_map = _as_dict(raw.get("proxy"), "proxy")
    tls_mode = proxy_map.get("tls_mode")
    if tls_mode is not None and str(tls_mode) not in ALLOWED_TLS_MODES:
        allowed = ", ".join(sorted(ALLOWED_TLS_MODES))
        raise ConfigError(f"Unsupported proxy.tls_mode '{tls_mode}'. Allowed: {allowed}.")

    service_name = raw.get("service_name")
    if service_name is not None:
        name = str(service_name).strip()
        if not name or "/" in name:
            raise ConfigError("service_name must be a non-empty name without '/'.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    port = _expect_int(raw.get("port"), "port", default=8000)
    if not 0 < port < 65536:
        raise ConfigError(f"port must be between 1 and 65535. Got {port}.")

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    restart_sec = _expect_int(
        systemd_mapping.get("restart_sec"), "systemd.restart_sec", default=5
    )
    if restart_sec < 0:
        raise ConfigError("systemd.restart_sec must be non-negative.")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_mapping.get("unit_dir", "/etc/systemd/system")),
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
        journalctl_bin=str(systemd_mapping.get("journalctl_bin", "journalctl")),
        restart_sec=restart_sec,
    )

    proxy_mapping = _as_dict(raw.get("proxy"), "proxy")
    acme_email_value = proxy_mapping.get("acme_email")
    acme_email = str(acme_email_value).strip() if acme_email_value else None
    proxy = ProxyConfig(
        caddyfile=_to_path(proxy_mapping.get("caddyfile", "/etc/caddy/Caddyfile")),
        sites_dir=_to_path(proxy_mapping.get("sites_dir", "/etc/caddy/sites")),
        caddy_bin=str(proxy_mapping.get("caddy_bin", "caddy")),
        tls_mode=str(proxy_mapping.get("tls_mode", "auto")),
        acme_email=acme_email or None,
        log_dir=_to_path(proxy_mapping.get("log_dir", "/var/log/caddy")),
    )

    git_mapping = _as_dict(raw.get("git"), "git")
    git = GitConfig(git_bin=str(git_mapping.get("git_bin", "git")))

    build_mapping = _as_dict(raw.get("build"), "build")
    output_dir = str(build_mapping.get("output_dir", "dist")).strip()
    if not output_dir or Path(output_dir).is_absolute() or ".." in Path(output_dir).parts:
        raise ConfigError("build.output_dir must be a relative path inside the site directory.")
    build = BuildConfig(
        enabled=_expect_bool(build_mapping.get("enabled"), "build.enabled", default=True),
        npm_bin=str(build_mapping.get("npm_bin", "npm")),
        output_dir=output_dir,
    )

    repo_url_value = raw.get("repo_url")
    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        site_dir=_to_path(raw.get("site_dir")),
        repo_url=str(repo_url_value).strip() if repo_url_value else "",
        branch=str(raw.get("branch", "main")).strip() or "main",
        service_name=str(raw.get("service_name", "site")).strip(),
        service_user=str(raw.get("service_user", "www-data")),
        port=port,
        logs_dir=_to_path(raw.get("logs_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        start_timeout=_expect_positive_float(
            raw.get("start_timeout"), "start_timeout", default=15.0
        ),
        probe_timeout=_expect_positive_float(
            raw.get("probe_timeout"), "probe_timeout", default=5.0
        ),
        systemd=systemd,
        proxy=proxy,
        git=git,
        build=build,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _parse_port(raw: str) -> int:
    """Read ``PORT`` as a decimal integer; leading zeros are not octal."""
    try:
        return int(raw.strip(), 10)
    except ValueError as exc:
        raise ConfigError(f"PORT must be a decimal integer, got '{raw}'.") from exc


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BuildConfig",
    "ConfigError",
    "GitConfig",
    "ProxyConfig",
    "SystemdConfig",
    "load_config",
]
