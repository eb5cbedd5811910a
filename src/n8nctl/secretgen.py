"""Secret generation for deployment credentials and encryption keys."""
from __future__ import annotations

import secrets

SECRET_BYTES = 32


class EntropySourceUnavailable(RuntimeError):
    """Raised when the operating system random source cannot be read."""


def generate(nbytes: int = SECRET_BYTES) -> str:
    """Return a URL-safe secret carrying *nbytes* bytes of randomness.

    The alphabet is ``[A-Za-z0-9_-]`` so values can be written to the
    environment file and passed to shells without quoting.
    """
    if nbytes < SECRET_BYTES:
        raise ValueError(f"Secrets must carry at least {SECRET_BYTES} bytes of entropy.")
    try:
        return secrets.token_urlsafe(nbytes)
    except (NotImplementedError, OSError) as exc:
        raise EntropySourceUnavailable(f"Secure random source unavailable: {exc}") from exc


__all__ = ["EntropySourceUnavailable", "SECRET_BYTES", "generate"]
