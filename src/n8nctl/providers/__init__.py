"""Providers wrapping the external tools driven by n8nctl."""
from __future__ import annotations

from .certbot import CertificateError, CertificateManager
from .cron import CronEntry, CronError, CronTable
from .docker import DockerComposeProvider, StackError
from .nginx import InvalidProxyConfig, NginxError, NginxProvider, NginxRenderResult

__all__ = [
    "CertificateError",
    "CertificateManager",
    "CronEntry",
    "CronError",
    "CronTable",
    "DockerComposeProvider",
    "InvalidProxyConfig",
    "NginxError",
    "NginxProvider",
    "NginxRenderResult",
    "StackError",
]
