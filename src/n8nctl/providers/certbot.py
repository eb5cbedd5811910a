"""Certbot provider for obtaining and renewing Let's Encrypt certificates."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from ..tls import Certificate, TLSInspectionError, inspect_certificate, lets_encrypt_material
from .cron import CronEntry, CronError, CronTable

RENEWAL_MARKER = "certbot renew"


class CertificateError(RuntimeError):
    """Raised when a certificate cannot be issued or inspected."""


@dataclass(slots=True)
class CertificateManager:
    """Ensure a valid certificate exists for the deployment domain."""

    live_dir: Path = Path("/etc/letsencrypt/live")
    webroot: Path = Path("/var/www/html")
    certbot_bin: str = "certbot"
    nginx_bin: str = "nginx"
    renew_before_days: int = 30
    renewal_schedule: str = "0 12 * * *"
    cron: CronTable | None = None
    timeout: float | None = None

    def current(self, domain: str) -> Certificate | None:
        """Return the installed certificate for *domain*, if any."""
        try:
            return inspect_certificate(domain, lets_encrypt_material(self.live_dir, domain))
        except TLSInspectionError as exc:
            raise CertificateError(str(exc)) from exc

    def ensure(
        self,
        domain: str,
        contact_email: str,
        *,
        now: datetime | None = None,
    ) -> Certificate:
        """Return a certificate for *domain*, issuing one only when needed.

        A certificate that is valid for more than ``renew_before_days`` is
        reused untouched. Issuance failures raise :class:`CertificateError`.
        """
        existing = self.current(domain)
        if existing is not None and not existing.expires_within(self.renew_before_days, now=now):
            self.schedule_renewal()
            return existing

        self.webroot.mkdir(parents=True, exist_ok=True)
        self._run_certbot(
            [
                "certonly",
                "--webroot",
                "-w",
                str(self.webroot),
                "-d",
                domain,
                "-m",
                contact_email,
                "--agree-tos",
                "-n",
                "--keep-until-expiring",
            ]
        )
        issued = self.current(domain)
        if issued is None:
            raise CertificateError(
                f"{self.certbot_bin} reported success but no certificate exists for {domain}."
            )
        self.schedule_renewal()
        return issued

    def schedule_renewal(self) -> bool:
        """Register the daily ``certbot renew`` job; return True when it changed."""
        if self.cron is None:
            return False
        entry = CronEntry(
            schedule=self.renewal_schedule,
            command=(
                f"{self.certbot_bin} renew --quiet "
                f"--deploy-hook \"{self.nginx_bin} -s reload\""
            ),
        )
        try:
            return self.cron.install(entry, marker=RENEWAL_MARKER)
        except CronError as exc:
            raise CertificateError(f"Failed to schedule certificate renewal: {exc}") from exc

    # ------------------------------------------------------------------
    def _run_certbot(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.certbot_bin, *args]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise CertificateError(f"{self.certbot_bin} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise CertificateError(f"{self.certbot_bin} {args[0]} timed out") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise CertificateError(
                f"{self.certbot_bin} {args[0]} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = ["CertificateError", "CertificateManager", "RENEWAL_MARKER"]
