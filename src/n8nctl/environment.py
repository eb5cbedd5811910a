"""Deployment settings and the environment file that persists them.

The environment file (``<deploy_root>/.env``) is the single source of truth
for the deployment: Docker Compose interpolates its keys into the service
definitions and the backup routine reads it at invocation time. Secrets in
this file are generated once and preserved across re-provisioning.
"""
from __future__ import annotations

import os
import re
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

from dotenv import dotenv_values

from . import secretgen
from .config import DeploymentDefaults

SECRET_KEYS = ("POSTGRES_PASSWORD", "N8N_ENCRYPTION_KEY")
REQUIRED_KEYS = (
    "DOMAIN",
    "N8N_ENCRYPTION_KEY",
    "POSTGRES_USER",
    "POSTGRES_PASSWORD",
    "POSTGRES_DB",
    "BACKUP_DIR",
)

DEFAULT_TIMEZONE = "Asia/Kolkata"
DEFAULT_RETENTION_DAYS = 7
DEFAULT_S3_PREFIX = "n8n-backups"
DEFAULT_AWS_REGION = "ap-south-1"

_BARE_VALUE = re.compile(r"[A-Za-z0-9_@%+=:,./-]*")
_FORBIDDEN_CHARS = ("\n", "\r", '"', "'", "$", "\\", "`")


class PersistenceError(RuntimeError):
    """Raised when the environment file cannot be read or written."""


class ConfigurationMissing(PersistenceError):
    """Raised when a command needs the environment file and none exists."""


class InvalidConfiguration(RuntimeError):
    """Raised when deployment settings lack required values."""

    def __init__(self, missing: list[str] | tuple[str, ...], message: str | None = None) -> None:
        """Record the missing keys and build a readable message."""
        self.missing = tuple(missing)
        super().__init__(
            message or f"Deployment settings are missing required keys: {', '.join(self.missing)}."
        )


@dataclass(frozen=True)
class RemoteStorage:
    """Optional S3 mirror target for backups."""

    bucket: str = ""
    prefix: str = DEFAULT_S3_PREFIX
    access_key_id: str = ""
    secret_access_key: str = ""
    region: str = DEFAULT_AWS_REGION

    @property
    def enabled(self) -> bool:
        """Return True when a bucket has been configured."""
        return bool(self.bucket.strip())


@dataclass(frozen=True)
class DeploymentSettings:
    """Resolved deployment parameters shared by every component."""

    domain: str
    admin_email: str
    backup_dir: Path
    encryption_key: str = ""
    postgres_password: str = ""
    postgres_user: str = "n8n"
    postgres_db: str = "n8n"
    port: int = 5678
    protocol: str = "https"
    timezone: str = DEFAULT_TIMEZONE
    retention_days: int = DEFAULT_RETENTION_DAYS
    remote: RemoteStorage = field(default_factory=RemoteStorage)

    @property
    def host(self) -> str:
        """Return the public hostname n8n advertises."""
        return self.domain

    @property
    def webhook_url(self) -> str:
        """Return the public webhook base URL."""
        return f"{self.protocol}://{self.domain}/"

    def missing_keys(self) -> list[str]:
        """Return environment keys that are required but empty."""
        values = self.to_env()
        return [key for key in REQUIRED_KEYS if not values.get(key, "").strip()]

    def to_env(self) -> dict[str, str]:
        """Return the ordered key/value pairs written to the environment file."""
        return {
            "DOMAIN": self.domain,
            "ADMIN_EMAIL": self.admin_email,
            "N8N_HOST": self.host,
            "N8N_PORT": str(self.port),
            "N8N_PROTOCOL": self.protocol,
            "WEBHOOK_URL": self.webhook_url if self.domain else "",
            "GENERIC_TIMEZONE": self.timezone,
            "N8N_ENCRYPTION_KEY": self.encryption_key,
            "POSTGRES_USER": self.postgres_user,
            "POSTGRES_PASSWORD": self.postgres_password,
            "POSTGRES_DB": self.postgres_db,
            "BACKUP_DIR": str(self.backup_dir),
            "BACKUP_RETENTION_DAYS": str(self.retention_days),
            "S3_BUCKET": self.remote.bucket,
            "S3_PREFIX": self.remote.prefix,
            "AWS_ACCESS_KEY_ID": self.remote.access_key_id,
            "AWS_SECRET_ACCESS_KEY": self.remote.secret_access_key,
            "AWS_DEFAULT_REGION": self.remote.region,
        }

    @classmethod
    def from_env(cls, values: Mapping[str, str | None]) -> DeploymentSettings:
        """Build settings from parsed environment-file values."""

        def get(key: str, default: str = "") -> str:
            raw = values.get(key)
            return default if raw is None else str(raw).strip()

        return cls(
            domain=get("DOMAIN"),
            admin_email=get("ADMIN_EMAIL"),
            backup_dir=Path(get("BACKUP_DIR") or "backups"),
            encryption_key=get("N8N_ENCRYPTION_KEY"),
            postgres_password=get("POSTGRES_PASSWORD"),
            postgres_user=get("POSTGRES_USER", "n8n") or "n8n",
            postgres_db=get("POSTGRES_DB", "n8n") or "n8n",
            port=_parse_int(get("N8N_PORT"), "N8N_PORT", default=5678),
            protocol=get("N8N_PROTOCOL", "https") or "https",
            timezone=get("GENERIC_TIMEZONE") or DEFAULT_TIMEZONE,
            retention_days=_parse_int(
                get("BACKUP_RETENTION_DAYS"),
                "BACKUP_RETENTION_DAYS",
                default=DEFAULT_RETENTION_DAYS,
            ),
            remote=RemoteStorage(
                bucket=get("S3_BUCKET"),
                prefix=get("S3_PREFIX") or DEFAULT_S3_PREFIX,
                access_key_id=get("AWS_ACCESS_KEY_ID"),
                secret_access_key=get("AWS_SECRET_ACCESS_KEY"),
                region=get("AWS_DEFAULT_REGION") or DEFAULT_AWS_REGION,
            ),
        )


@dataclass(slots=True)
class EnvironmentStore:
    """Load and persist :class:`DeploymentSettings` at *path*."""

    path: Path

    def __post_init__(self) -> None:
        """Normalise the path after initialisation."""
        self.path = self.path.expanduser()

    def exists(self) -> bool:
        """Return True when the environment file is present."""
        return self.path.exists()

    def load(self) -> DeploymentSettings | None:
        """Return the persisted settings or ``None`` when no file exists."""
        if not self.path.exists():
            return None
        try:
            values = dotenv_values(self.path, interpolate=False)
        except OSError as exc:
            raise PersistenceError(f"Failed to read {self.path}: {exc}") from exc
        return DeploymentSettings.from_env(values)

    def require(self) -> DeploymentSettings:
        """Return the persisted settings, raising when they are absent."""
        settings = self.load()
        if settings is None:
            raise ConfigurationMissing(f"Missing {self.path}; run `n8nctl install` first.")
        return settings

    def save(self, settings: DeploymentSettings) -> DeploymentSettings:
        """Persist *settings*, keeping any secrets already on disk.

        Returns the settings that were actually written, which differ from
        *settings* when previously stored secrets took precedence.
        """
        existing = self.load()
        effective = _preserve_secrets(settings, existing)
        payload = _render_env(effective.to_env())

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent),
                prefix=f".{self.path.name}.",
            )
        except OSError as exc:
            raise PersistenceError(f"Failed to prepare {self.path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
            os.chmod(self.path, 0o600)
        except OSError as exc:
            raise PersistenceError(f"Failed to write {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        return effective


def resolve_settings(
    existing: DeploymentSettings | None,
    *,
    domain: str,
    admin_email: str,
    backup_dir: Path,
    defaults: DeploymentDefaults | None = None,
    generator: Callable[[], str] = secretgen.generate,
) -> tuple[DeploymentSettings, tuple[str, ...]]:
    """Merge operator input with stored settings for a provisioning run.

    Secrets are generated only when missing. Returns the merged settings and
    the environment keys whose secrets were freshly generated.
    """
    defaults = defaults or DeploymentDefaults()
    base = existing or DeploymentSettings(domain="", admin_email="", backup_dir=backup_dir)

    generated: list[str] = []
    postgres_password = base.postgres_password
    if not postgres_password:
        postgres_password = generator()
        generated.append("POSTGRES_PASSWORD")
    encryption_key = base.encryption_key
    if not encryption_key:
        encryption_key = generator()
        generated.append("N8N_ENCRYPTION_KEY")

    remote = replace(
        base.remote,
        bucket=defaults.s3_bucket if defaults.s3_bucket is not None else base.remote.bucket,
        prefix=defaults.s3_prefix or base.remote.prefix,
        region=defaults.aws_region or base.remote.region,
    )
    merged = replace(
        base,
        domain=domain,
        admin_email=admin_email,
        backup_dir=backup_dir if existing is None else base.backup_dir,
        postgres_password=postgres_password,
        encryption_key=encryption_key,
        timezone=defaults.timezone or base.timezone,
        retention_days=defaults.retention_days or base.retention_days,
        remote=remote,
    )
    return merged, tuple(generated)


def mask_secret(value: str) -> str:
    """Return a display-safe rendition of *value*."""
    if not value:
        return ""
    return f"{value[:4]}…" if len(value) > 8 else "****"


def _preserve_secrets(
    settings: DeploymentSettings,
    existing: DeploymentSettings | None,
) -> DeploymentSettings:
    if existing is None:
        return settings
    updates: dict[str, str] = {}
    if existing.postgres_password and existing.postgres_password != settings.postgres_password:
        updates["postgres_password"] = existing.postgres_password
    if existing.encryption_key and existing.encryption_key != settings.encryption_key:
        updates["encryption_key"] = existing.encryption_key
    return replace(settings, **updates) if updates else settings


def _render_env(values: Mapping[str, str]) -> str:
    lines = [f"{key}={_format_value(key, value)}" for key, value in values.items()]
    return "\n".join(lines) + "\n"


def _format_value(key: str, value: str) -> str:
    if any(char in value for char in _FORBIDDEN_CHARS):
        raise InvalidConfiguration(
            [key],
            f"{key} contains characters that cannot be stored in the environment file.",
        )
    if _BARE_VALUE.fullmatch(value):
        return value
    return f'"{value}"'


def _parse_int(raw: str, label: str, *, default: int) -> int:
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise PersistenceError(f"{label} must be an integer, got {raw!r}.") from exc


__all__ = [
    "ConfigurationMissing",
    "DeploymentSettings",
    "EnvironmentStore",
    "InvalidConfiguration",
    "PersistenceError",
    "RemoteStorage",
    "REQUIRED_KEYS",
    "SECRET_KEYS",
    "mask_secret",
    "resolve_settings",
]
