"""Crontab provider for registering recurring jobs idempotently."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path


class CronError(RuntimeError):
    """Raised when the crontab cannot be read or written."""


@dataclass(slots=True)
class CronEntry:
    """A single scheduled command."""

    schedule: str
    command: str
    log_file: Path | None = None

    def render(self) -> str:
        """Return the crontab line for this entry."""
        line = f"{self.schedule} {self.command}"
        if self.log_file is not None:
            line = f"{line} >> {self.log_file} 2>&1"
        return line


@dataclass(slots=True)
class CronTable:
    """Manage entries in the invoking account's crontab."""

    crontab_bin: str = "crontab"
    timeout: float | None = None

    def read(self) -> list[str]:
        """Return the current crontab lines (empty when no table exists)."""
        result = self._run(["-l"], check=False)
        if result.returncode != 0:
            # ``crontab -l`` exits non-zero when the account has no table yet.
            if "no crontab for" in (result.stderr or "").lower():
                return []
            message = (result.stderr or result.stdout or "no output").strip()
            raise CronError(f"{self.crontab_bin} -l failed (exit {result.returncode}): {message}")
        return [line for line in result.stdout.splitlines() if line.strip()]

    def install(self, entry: CronEntry, *, marker: str | None = None) -> bool:
        """Register *entry*, replacing any line containing *marker*.

        *marker* identifies the job and defaults to the entry's command. Returns
        True when the table changed.
        """
        identity = marker or entry.command
        current = self.read()
        kept = [line for line in current if identity not in line]
        desired = [*kept, entry.render()]
        if desired == current:
            return False
        self.write(desired)
        return True

    def remove(self, marker: str) -> bool:
        """Remove lines containing *marker*; return True when the table changed."""
        current = self.read()
        kept = [line for line in current if marker not in line]
        if kept == current:
            return False
        self.write(kept)
        return True

    def write(self, lines: Sequence[str]) -> None:
        """Replace the crontab with *lines*."""
        payload = "\n".join(lines) + "\n" if lines else ""
        self._run(["-"], check=True, stdin=payload)

    # ------------------------------------------------------------------
    def _run(
        self,
        args: Sequence[str],
        *,
        check: bool,
        stdin: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.crontab_bin, *args]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                input=stdin,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise CronError(f"{self.crontab_bin} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise CronError(f"{self.crontab_bin} {' '.join(args)} timed out") from exc
        if check and result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise CronError(
                f"{self.crontab_bin} {' '.join(args)} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = ["CronEntry", "CronError", "CronTable"]
