"""TLS helpers for locating and inspecting Let's Encrypt certificates."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from cryptography import x509


class TLSInspectionError(RuntimeError):
    """Raised when certificate material cannot be parsed."""


@dataclass(frozen=True)
class TLSMaterial:
    """Concrete TLS assets (certificate, private key, optional chain)."""

    certificate: Path
    key: Path
    chain: Path | None = None

    def exists(self) -> bool:
        """Return True when both the certificate and key are present."""
        return self.certificate.exists() and self.key.exists()


@dataclass(frozen=True)
class Certificate:
    """A certificate bound to a domain with its validity window."""

    domain: str
    material: TLSMaterial
    not_valid_before: datetime
    not_valid_after: datetime

    def expires_within(self, days: int, *, now: datetime | None = None) -> bool:
        """Return True when the certificate expires in *days* or fewer."""
        now = now or datetime.now(UTC)
        return self.not_valid_after - now <= timedelta(days=days)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "domain": self.domain,
            "certificate": str(self.material.certificate),
            "key": str(self.material.key),
            "not_valid_before": self.not_valid_before.isoformat(),
            "not_valid_after": self.not_valid_after.isoformat(),
        }


def lets_encrypt_material(live_dir: Path, domain: str) -> TLSMaterial:
    """Return the certbot ``live`` paths for *domain*."""
    domain_dir = live_dir / domain
    chain_path = domain_dir / "chain.pem"
    return TLSMaterial(
        certificate=domain_dir / "fullchain.pem",
        key=domain_dir / "privkey.pem",
        chain=chain_path if chain_path.exists() else None,
    )


def inspect_certificate(domain: str, material: TLSMaterial) -> Certificate | None:
    """Return certificate details for *material*, or ``None`` when absent."""
    if not material.exists():
        return None
    try:
        cert_obj = _load_certificate(material.certificate)
    except (OSError, ValueError) as exc:
        raise TLSInspectionError(
            f"Failed to parse certificate {material.certificate}: {exc}"
        ) from exc
    not_before_attr = getattr(cert_obj, "not_valid_before_utc", None)
    not_after_attr = getattr(cert_obj, "not_valid_after_utc", None)
    if isinstance(not_before_attr, datetime) and isinstance(not_after_attr, datetime):
        not_before = not_before_attr
        not_after = not_after_attr
    else:  # pragma: no cover - compatibility fallback
        not_before = _as_utc(cert_obj.not_valid_before)
        not_after = _as_utc(cert_obj.not_valid_after)
    return Certificate(
        domain=domain,
        material=material,
        not_valid_before=not_before,
        not_valid_after=not_after,
    )


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


__all__ = [
    "Certificate",
    "TLSInspectionError",
    "TLSMaterial",
    "inspect_certificate",
    "lets_encrypt_material",
]
