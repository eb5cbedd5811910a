"""Configuration loader for n8nctl.

This module centralises the logic for reading the tool's own settings from
multiple sources:

1. Built-in defaults.
2. ``/etc/n8nctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``N8NCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export N8NCTL_DEPLOY_ROOT=/srv/n8n
    export N8NCTL_BACKUPS__SCHEDULE="15 3 * * *"

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.

These settings describe *where* and *how* the deployment is provisioned. The
deployment parameters themselves (domain, credentials, retention) live in the
environment file managed by :mod:`n8nctl.environment`.
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
        "PyYAML is required to load n8nctl configuration. Install with "
        "`pip install n8nctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "N8NCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class NginxConfig:
    """Reverse proxy locations and binaries."""

    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    site_name: str = "n8n.conf"
    webroot: Path = Path("/var/www/html")
    nginx_bin: str = "nginx"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "sites_available": str(self.sites_available),
            "sites_enabled": str(self.sites_enabled),
            "site_name": self.site_name,
            "webroot": str(self.webroot),
            "nginx_bin": self.nginx_bin,
        }


@dataclass(frozen=True)
class TLSConfig:
    """Let's Encrypt issuance and renewal settings."""

    enabled: bool = True
    live_dir: Path = Path("/etc/letsencrypt/live")
    certbot_bin: str = "certbot"
    renew_before_days: int = 30
    renewal_schedule: str = "0 12 * * *"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "live_dir": str(self.live_dir),
            "certbot_bin": self.certbot_bin,
            "renew_before_days": self.renew_before_days,
            "renewal_schedule": self.renewal_schedule,
        }


@dataclass(frozen=True)
class DockerConfig:
    """Container runtime settings for the application stack."""

    docker_bin: str = "docker"
    project: str = "n8n"
    postgres_image: str = "postgres:15"
    n8n_image: str = "n8nio/n8n:latest"
    data_uid: int = 1000
    data_gid: int = 1000

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "docker_bin": self.docker_bin,
            "project": self.project,
            "postgres_image": self.postgres_image,
            "n8n_image": self.n8n_image,
            "data_uid": self.data_uid,
            "data_gid": self.data_gid,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup schedule and cron integration."""

    schedule: str = "30 2 * * *"
    log_file: Path = Path("/var/log/n8n-backup.log")
    command: str = "n8nctl backup run"
    crontab_bin: str = "crontab"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "schedule": self.schedule,
            "log_file": str(self.log_file),
            "command": self.command,
            "crontab_bin": self.crontab_bin,
        }


@dataclass(frozen=True)
class DeploymentDefaults:
    """Operator-provided values for the deployment settings.

    ``None`` means "keep whatever the environment file already records, or use
    the built-in default on first install".
    """

    timezone: str | None = None
    retention_days: int | None = None
    s3_bucket: str | None = None
    s3_prefix: str | None = None
    aws_region: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "timezone": self.timezone,
            "retention_days": self.retention_days,
            "s3_bucket": self.s3_bucket,
            "s3_prefix": self.s3_prefix,
            "aws_region": self.aws_region,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for n8nctl."""

    config_file: Path
    deploy_root: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    step_timeout: float
    packages: tuple[str, ...]
    nginx: NginxConfig
    tls: TLSConfig
    docker: DockerConfig
    backups: BackupConfig
    deployment: DeploymentDefaults

    @property
    def env_file(self) -> Path:
        """Return the path of the deployment environment file."""
        return self.deploy_root / ".env"

    @property
    def compose_file(self) -> Path:
        """Return the path of the rendered compose descriptor."""
        return self.deploy_root / "docker-compose.yml"

    @property
    def app_data_dir(self) -> Path:
        """Return the n8n state directory mounted into the container."""
        return self.deploy_root / "n8n"

    @property
    def db_data_dir(self) -> Path:
        """Return the postgres data directory mounted into the container."""
        return self.deploy_root / "db"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "deploy_root": str(self.deploy_root),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "step_timeout": self.step_timeout,
            "packages": list(self.packages),
            "nginx": self.nginx.to_dict(),
            "tls": self.tls.to_dict(),
            "docker": self.docker.to_dict(),
            "backups": self.backups.to_dict(),
            "deployment": self.deployment.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/n8nctl/config.yml",
    "deploy_root": "/var/n8n",
    "logs_dir": "/var/log/n8nctl",
    "runtime_dir": "/run/n8nctl",
    "templates_dir": "/etc/n8nctl/templates",
    "lock_timeout": 30.0,
    "step_timeout": 900.0,
    "packages": ["curl", "nginx", "certbot", "docker.io", "docker-compose-v2"],
    "nginx": {
        "sites_available": "/etc/nginx/sites-available",
        "sites_enabled": "/etc/nginx/sites-enabled",
        "site_name": "n8n.conf",
        "webroot": "/var/www/html",
        "nginx_bin": "nginx",
    },
    "tls": {
        "enabled": True,
        "live_dir": "/etc/letsencrypt/live",
        "certbot_bin": "certbot",
        "renew_before_days": 30,
        "renewal_schedule": "0 12 * * *",
    },
    "docker": {
        "docker_bin": "docker",
        "project": "n8n",
        "postgres_image": "postgres:15",
        "n8n_image": "n8nio/n8n:latest",
        "data_uid": 1000,
        "data_gid": 1000,
    },
    "backups": {
        "schedule": "30 2 * * *",
        "log_file": "/var/log/n8n-backup.log",
        "command": "n8nctl backup run",
        "crontab_bin": "crontab",
    },
    "deployment": {
        "timezone": None,
        "retention_days": None,
        "s3_bucket": None,
        "s3_prefix": None,
        "aws_region": None,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("nginx", "tls", "docker", "backups", "deployment")
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
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    for schedule_key in (("backups", "schedule"), ("tls", "renewal_schedule")):
        section_map = _as_dict(raw.get(schedule_key[0]), schedule_key[0])
        value = section_map.get(schedule_key[1])
        if value is not None:
            _validate_cron_schedule(str(value), ".".join(schedule_key))


def _validate_cron_schedule(value: str, label: str) -> None:
    fields = value.split()
    if len(fields) != 5:
        raise ConfigError(
            f"{label} must be a five-field cron expression. Got {value!r}."
        )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)
    step_timeout = _expect_positive_float(raw.get("step_timeout"), "step_timeout", default=900.0)

    packages_raw = raw.get("packages") or []
    if isinstance(packages_raw, str) or not isinstance(packages_raw, (list, tuple)):
        raise ConfigError("packages must be a list of package names.")
    packages = tuple(str(item) for item in packages_raw)

    nginx_map = _as_dict(raw.get("nginx"), "nginx")
    nginx = NginxConfig(
        sites_available=_to_path(nginx_map.get("sites_available", "/etc/nginx/sites-available")),
        sites_enabled=_to_path(nginx_map.get("sites_enabled", "/etc/nginx/sites-enabled")),
        site_name=str(nginx_map.get("site_name", "n8n.conf")),
        webroot=_to_path(nginx_map.get("webroot", "/var/www/html")),
        nginx_bin=str(nginx_map.get("nginx_bin", "nginx")),
    )

    tls_map = _as_dict(raw.get("tls"), "tls")
    renew_before = _expect_int(
        tls_map.get("renew_before_days"), "tls.renew_before_days", default=30
    )
    if renew_before < 0:
        raise ConfigError("tls.renew_before_days must be non-negative.")
    tls = TLSConfig(
        enabled=bool(tls_map.get("enabled", True)),
        live_dir=_to_path(tls_map.get("live_dir", "/etc/letsencrypt/live")),
        certbot_bin=str(tls_map.get("certbot_bin", "certbot")),
        renew_before_days=renew_before,
        renewal_schedule=str(tls_map.get("renewal_schedule", "0 12 * * *")),
    )

    docker_map = _as_dict(raw.get("docker"), "docker")
    docker = DockerConfig(
        docker_bin=str(docker_map.get("docker_bin", "docker")),
        project=str(docker_map.get("project", "n8n")),
        postgres_image=str(docker_map.get("postgres_image", "postgres:15")),
        n8n_image=str(docker_map.get("n8n_image", "n8nio/n8n:latest")),
        data_uid=_expect_int(docker_map.get("data_uid"), "docker.data_uid", default=1000),
        data_gid=_expect_int(docker_map.get("data_gid"), "docker.data_gid", default=1000),
    )

    backups_map = _as_dict(raw.get("backups"), "backups")
    backups = BackupConfig(
        schedule=str(backups_map.get("schedule", "30 2 * * *")),
        log_file=_to_path(backups_map.get("log_file", "/var/log/n8n-backup.log")),
        command=str(backups_map.get("command", "n8nctl backup run")),
        crontab_bin=str(backups_map.get("crontab_bin", "crontab")),
    )

    deployment_map = _as_dict(raw.get("deployment"), "deployment")
    retention_raw = deployment_map.get("retention_days")
    retention_days: int | None = None
    if retention_raw is not None:
        retention_days = _expect_int(retention_raw, "deployment.retention_days", default=7)
        if retention_days < 1:
            raise ConfigError("deployment.retention_days must be at least 1.")
    deployment = DeploymentDefaults(
        timezone=_optional_str(deployment_map.get("timezone")),
        retention_days=retention_days,
        s3_bucket=_optional_str(deployment_map.get("s3_bucket")),
        s3_prefix=_optional_str(deployment_map.get("s3_prefix")),
        aws_region=_optional_str(deployment_map.get("aws_region")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        deploy_root=_to_path(raw.get("deploy_root")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        lock_timeout=lock_timeout,
        step_timeout=step_timeout,
        packages=packages,
        nginx=nginx,
        tls=tls,
        docker=docker,
        backups=backups,
        deployment=deployment,
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
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


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


def _optional_str(value: object | None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


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
    "BackupConfig",
    "ConfigError",
    "DeploymentDefaults",
    "DockerConfig",
    "NginxConfig",
    "TLSConfig",
    "load_config",
]
