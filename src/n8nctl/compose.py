"""Render the Docker Compose descriptor for the n8n stack.

Service environments reference keys of the deployment environment file
(``${POSTGRES_PASSWORD}`` and friends) instead of embedding values, so the
descriptor never carries secrets and Compose performs the interpolation.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml

from .environment import DeploymentSettings, InvalidConfiguration
from .templates import write_if_changed

POSTGRES_SERVICE = "postgres"
N8N_SERVICE = "n8n"


def _ref(key: str) -> str:
    return "${" + key + "}"


@dataclass(frozen=True)
class StackDescriptor:
    """Service definitions consumed by ``docker compose``."""

    services: Mapping[str, Mapping[str, object]]

    def service_names(self) -> tuple[str, ...]:
        """Return service identifiers in declaration order."""
        return tuple(self.services)

    def to_dict(self) -> dict[str, object]:
        """Return the compose document as plain data."""
        return {"services": {name: dict(spec) for name, spec in self.services.items()}}

    def to_yaml(self) -> str:
        """Serialise the descriptor; equal descriptors yield identical text."""
        return yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False)


@dataclass(slots=True)
class StackComposer:
    """Derive a :class:`StackDescriptor` from deployment settings."""

    postgres_image: str = "postgres:15"
    n8n_image: str = "n8nio/n8n:latest"

    def render(self, settings: DeploymentSettings) -> StackDescriptor:
        """Return the descriptor for *settings*.

        The n8n service waits for the postgres healthcheck rather than a fixed
        delay.
        """
        missing = settings.missing_keys()
        if missing:
            raise InvalidConfiguration(missing)

        postgres: dict[str, object] = {
            "image": self.postgres_image,
            "restart": "always",
            "environment": {
                "POSTGRES_USER": _ref("POSTGRES_USER"),
                "POSTGRES_PASSWORD": _ref("POSTGRES_PASSWORD"),
                "POSTGRES_DB": _ref("POSTGRES_DB"),
            },
            "volumes": ["./db:/var/lib/postgresql/data"],
            "healthcheck": {
                "test": ["CMD-SHELL", "pg_isready -U $${POSTGRES_USER} -d $${POSTGRES_DB}"],
                "interval": "10s",
                "timeout": "5s",
                "retries": 10,
            },
        }
        n8n: dict[str, object] = {
            "image": self.n8n_image,
            "restart": "always",
            "ports": [f"127.0.0.1:{settings.port}:{settings.port}"],
            "environment": {
                "N8N_HOST": _ref("N8N_HOST"),
                "N8N_PORT": _ref("N8N_PORT"),
                "N8N_PROTOCOL": _ref("N8N_PROTOCOL"),
                "WEBHOOK_URL": _ref("WEBHOOK_URL"),
                "DB_TYPE": "postgresdb",
                "DB_POSTGRESDB_HOST": POSTGRES_SERVICE,
                "DB_POSTGRESDB_PORT": "5432",
                "DB_POSTGRESDB_DATABASE": _ref("POSTGRES_DB"),
                "DB_POSTGRESDB_USER": _ref("POSTGRES_USER"),
                "DB_POSTGRESDB_PASSWORD": _ref("POSTGRES_PASSWORD"),
                "GENERIC_TIMEZONE": _ref("GENERIC_TIMEZONE"),
                "TZ": _ref("GENERIC_TIMEZONE"),
                "N8N_ENCRYPTION_KEY": _ref("N8N_ENCRYPTION_KEY"),
            },
            "depends_on": {POSTGRES_SERVICE: {"condition": "service_healthy"}},
            "volumes": ["./n8n:/home/node/.n8n"],
        }
        return StackDescriptor(services={POSTGRES_SERVICE: postgres, N8N_SERVICE: n8n})

    def write(self, descriptor: StackDescriptor, path: Path) -> bool:
        """Persist *descriptor* at *path*; return True when the file changed."""
        return write_if_changed(path, descriptor.to_yaml(), mode=0o640)


__all__ = ["N8N_SERVICE", "POSTGRES_SERVICE", "StackComposer", "StackDescriptor"]
