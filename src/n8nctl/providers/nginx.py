"""Nginx provider for managing the n8n reverse proxy site."""
from __future__ import annotations

import re
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..templates import TemplateEngine
from ..tls import TLSMaterial

CLIENT_MAX_BODY_SIZE = "50m"
PROXY_READ_TIMEOUT = 600


class NginxError(RuntimeError):
    """Raised when nginx operations fail."""


class InvalidProxyConfig(NginxError):
    """Raised when a rendered site fails ``nginx -t``; the previous site stays active."""


@dataclass(slots=True)
class NginxRenderResult:
    """Outcome of rendering the nginx site configuration."""

    changed: bool
    validation: subprocess.CompletedProcess[str] | None = None
    reload: subprocess.CompletedProcess[str] | None = None


@dataclass(slots=True)
class NginxProvider:
    """Render and manage the nginx site fronting the n8n container."""

    templates: TemplateEngine
    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    site_name: str = "n8n.conf"
    acme_root: Path = Path("/var/www/html")
    nginx_bin: str = "nginx"
    timeout: float | None = None

    def site_path(self) -> Path:
        """Return the path to the nginx site configuration file."""
        return self.sites_available / self.site_name

    def enabled_path(self) -> Path:
        """Return the path of the symlink in sites-enabled."""
        return self.sites_enabled / self.site_name

    def build_context(
        self,
        domain: str,
        upstream_url: str,
        tls: TLSMaterial | None = None,
    ) -> dict[str, object]:
        """Return the template context routing *domain* to *upstream_url*."""
        tls_context: dict[str, object] = {"enabled": False}
        if tls is not None:
            tls_context = {
                "enabled": True,
                "certificate": str(tls.certificate),
                "certificate_key": str(tls.key),
            }
        return {
            "http_listen_port": 80,
            "https_listen_port": 443,
            "server_name": validate_domain(domain),
            "upstream_url": upstream_url,
            "acme_root": str(self.acme_root),
            "client_max_body_size": CLIENT_MAX_BODY_SIZE,
            "proxy_read_timeout": PROXY_READ_TIMEOUT,
            "tls": tls_context,
        }

    def apply(
        self,
        domain: str,
        upstream_url: str,
        tls: TLSMaterial | None = None,
        *,
        reload_on_change: bool = True,
    ) -> NginxRenderResult:
        """Route *domain* to *upstream_url*, validating before any reload."""
        self.acme_root.mkdir(parents=True, exist_ok=True)
        context = self.build_context(domain, upstream_url, tls)
        return self.render_site(context, reload_on_change=reload_on_change)

    def render_site(
        self,
        context: Mapping[str, object],
        *,
        reload_on_change: bool = True,
    ) -> NginxRenderResult:
        """Render the site configuration from *context*.

        When the on-disk configuration changes the new file is enabled and
        validated with ``nginx -t`` prior to reloading the service. Validation
        failures restore the previous configuration and raise
        :class:`InvalidProxyConfig`, so nginx keeps serving the old rule.
        """
        template_name = "nginx/site.conf.j2"
        destination = self.site_path()
        destination.parent.mkdir(parents=True, exist_ok=True)

        previous: tuple[str, int] | None = None
        if destination.exists():
            previous = (
                destination.read_text(encoding="utf-8"),
                destination.stat().st_mode,
            )
        was_enabled = self.is_enabled()

        changed = self.templates.render_to_path(
            template_name,
            destination,
            context,
            mode=0o644,
        )
        if not changed and was_enabled:
            return NginxRenderResult(changed=False)

        self.enable()
        try:
            validation_result = self.test_config()
        except NginxError as exc:
            if previous is None:
                destination.unlink(missing_ok=True)
            else:
                content, mode = previous
                destination.write_text(content, encoding="utf-8")
                destination.chmod(mode)
            if not was_enabled:
                self.disable()
            raise InvalidProxyConfig(str(exc)) from exc

        reload_result: subprocess.CompletedProcess[str] | None = None
        if reload_on_change:
            reload_result = self.reload()
        return NginxRenderResult(
            changed=True,
            validation=validation_result,
            reload=reload_result,
        )

    def enable(self) -> None:
        """Enable the site by creating a symlink in sites-enabled."""
        source = self.site_path()
        target = self.enabled_path()
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists() or target.is_symlink():
            try:
                if target.resolve() == source.resolve():
                    return
            except FileNotFoundError:
                # Broken symlink; replace it with a fresh one.
                pass
            target.unlink()
        target.symlink_to(source)

    def disable(self) -> None:
        """Disable the site by removing the symlink."""
        try:
            self.enabled_path().unlink()
        except FileNotFoundError:
            pass

    def is_enabled(self) -> bool:
        """Return True when the site is enabled via sites-enabled symlink."""
        target = self.enabled_path()
        if not target.exists() and not target.is_symlink():
            return False
        try:
            return target.is_symlink() and target.resolve() == self.site_path().resolve()
        except FileNotFoundError:
            return False

    def diagnostics(self) -> dict[str, object]:
        """Return diagnostic metadata for the managed site."""
        site_path = self.site_path()
        return {
            "site_path": str(site_path),
            "site_exists": site_path.exists(),
            "enabled_path": str(self.enabled_path()),
            "enabled": self.is_enabled(),
        }

    def test_config(self) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t`` to validate the configuration."""
        return self._run_nginx(["-t"])

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Gracefully reload nginx; in-flight connections are drained by the old workers."""
        return self._run_nginx(["-s", "reload"])

    # ------------------------------------------------------------------
    def _run_nginx(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.nginx_bin, *args]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise NginxError(f"{self.nginx_bin} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise NginxError(f"{self.nginx_bin} {' '.join(args)} timed out") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise NginxError(
                f"{self.nginx_bin} {' '.join(args)} failed (exit {result.returncode}): {message}"
            )
        return result


def validate_domain(value: str) -> str:
    """Validate and normalise a domain/FQDN."""
    normalised = value.strip().lower()
    if not normalised:
        raise ValueError("Domain must be a non-empty string.")
    if len(normalised) > 255:
        raise ValueError("Domain must be 255 characters or fewer.")
    if normalised.startswith(("-", ".")) or normalised.endswith(("-", ".")):
        raise ValueError("Domain cannot start or end with a hyphen or dot.")
    if not re.fullmatch(r"[a-z0-9.-]+", normalised):
        raise ValueError("Domain may contain letters, numbers, dots, and hyphens.")
    return normalised


__all__ = [
    "InvalidProxyConfig",
    "NginxError",
    "NginxProvider",
    "NginxRenderResult",
    "validate_domain",
]
