"""Tests for secret generation."""
from __future__ import annotations

import re

import pytest

from n8nctl import secretgen
from n8nctl.secretgen import EntropySourceUnavailable, generate


def test_generate_uses_shell_safe_alphabet() -> None:
    """Secrets only contain URL-safe characters."""
    value = generate()

    assert re.fullmatch(r"[A-Za-z0-9_-]+", value)
    # 32 bytes of entropy encode to 43 base64 characters.
    assert len(value) >= 43


def test_generate_returns_distinct_values() -> None:
    """Two calls never return the same secret."""
    assert generate() != generate()


def test_generate_rejects_short_secrets() -> None:
    """Callers cannot request less than the minimum entropy."""
    with pytest.raises(ValueError):
        generate(16)


def test_generate_reports_missing_entropy(monkeypatch: pytest.MonkeyPatch) -> None:
    """An unavailable random source surfaces as EntropySourceUnavailable."""
    def broken(nbytes: int) -> str:
        raise OSError("getrandom failed")

    monkeypatch.setattr(secretgen.secrets, "token_urlsafe", broken)

    with pytest.raises(EntropySourceUnavailable):
        generate()
