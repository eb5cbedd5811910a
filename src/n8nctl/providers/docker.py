"""Docker Compose provider that runs the n8n service set."""
from __future__ import annotations

import gzip
import os
import shutil
import signal
import subprocess
import tempfile
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..compose import POSTGRES_SERVICE

_CHUNK_SIZE = 1024 * 1024


class StackError(RuntimeError):
    """Raised when a docker compose invocation fails."""


@dataclass(slots=True)
class DockerComposeProvider:
    """Invoke ``docker compose`` against the rendered descriptor."""

    compose_file: Path
    env_file: Path
    project: str = "n8n"
    docker_bin: str = "docker"
    timeout: float | None = None

    def base_command(self) -> list[str]:
        """Return the ``docker compose`` prefix bound to this deployment."""
        return [
            self.docker_bin,
            "compose",
            "--project-name",
            self.project,
            "--project-directory",
            str(self.compose_file.parent),
            "--env-file",
            str(self.env_file),
            "-f",
            str(self.compose_file),
        ]

    def pull(self) -> subprocess.CompletedProcess[str]:
        """Pull every service image without touching running containers."""
        return self._compose(["pull", "--quiet"])

    def up(self) -> subprocess.CompletedProcess[str]:
        """Pull images, then converge the running stack on the descriptor.

        ``up -d`` recreates only services whose configuration or image changed
        and leaves an unchanged stack alone. A failed pull raises before any
        container is recreated.
        """
        self.pull()
        return self._compose(["up", "-d", "--remove-orphans"])

    def ps(self) -> subprocess.CompletedProcess[str]:
        """Return ``docker compose ps`` output."""
        return self._compose(["ps"])

    def dump_database(self, user: str, database: str, destination: Path) -> int:
        """Stream ``pg_dump`` from the postgres service into gzip at *destination*.

        Returns the number of uncompressed bytes written.
        """
        command = [
            *self.base_command(),
            "exec",
            "-T",
            POSTGRES_SERVICE,
            "pg_dump",
            "-U",
            user,
            "-d",
            database,
        ]
        destination.parent.mkdir(parents=True, exist_ok=True)
        written = 0
        with tempfile.TemporaryFile() as stderr_sink:
            try:
                process = subprocess.Popen(  # noqa: S603, S607
                    command,
                    stdout=subprocess.PIPE,
                    stderr=stderr_sink,
                    start_new_session=True,
                )
            except FileNotFoundError as exc:
                raise StackError(f"{self.docker_bin} not found: {exc}") from exc
            assert process.stdout is not None
            expired = threading.Event()
            timer: threading.Timer | None = None
            if self.timeout is not None:
                timer = threading.Timer(self.timeout, _kill_session, (process, expired))
                timer.daemon = True
                timer.start()
            try:
                with gzip.open(destination, "wb") as handle:
                    shutil.copyfileobj(process.stdout, handle, _CHUNK_SIZE)
                    written = handle.tell()
                returncode = process.wait()
            finally:
                if timer is not None:
                    timer.cancel()
                process.stdout.close()
                if process.poll() is None:
                    _kill_session(process)
                    process.wait()
            if expired.is_set():
                raise StackError(f"pg_dump timed out after {self.timeout}s")
            if returncode != 0:
                stderr_sink.seek(0)
                message = stderr_sink.read().decode("utf-8", "replace").strip() or "no output"
                raise StackError(f"pg_dump failed (exit {returncode}): {message}")
        return written

    # ------------------------------------------------------------------
    def _compose(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [*self.base_command(), *args]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise StackError(f"{self.docker_bin} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise StackError(
                f"docker compose {args[0]} timed out after {self.timeout}s"
            ) from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise StackError(
                f"docker compose {args[0]} failed (exit {result.returncode}): {message}"
            )
        return result


def _kill_session(
    process: subprocess.Popen[bytes], expired: threading.Event | None = None
) -> None:
    """Kill *process* and anything it spawned in its session."""
    if expired is not None:
        expired.set()
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


__all__ = ["DockerComposeProvider", "StackError"]
