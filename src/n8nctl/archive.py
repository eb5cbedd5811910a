"""Tarball helpers used by the backup executor."""
from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path


class ArchiveError(RuntimeError):
    """Raised when an archive cannot be produced."""


def create_archive(
    source_dir: Path,
    archive_path: Path,
    *,
    compression_level: int | None = None,
    timeout: float | None = None,
) -> None:
    """Create a gzip-compressed tarball of *source_dir* at *archive_path*.

    Entries are stored relative to the parent of *source_dir*, so the archive
    unpacks into a single directory named after it. A partial archive is
    removed when tar fails.
    """
    if not source_dir.is_dir():
        raise ArchiveError(f"Archive source {source_dir} is not a directory.")
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError("The 'tar' command is required to create archives.")

    env = os.environ.copy()
    if compression_level is not None:
        env["GZIP"] = f"-{compression_level}"
    cmd = [
        tar_bin,
        "-czf",
        str(archive_path),
        "-C",
        str(source_dir.parent),
        source_dir.name,
    ]
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        result = subprocess.run(  # noqa: S603, S607 - controlled command execution
            cmd,
            capture_output=True,
            text=True,
            env=env,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        archive_path.unlink(missing_ok=True)
        raise ArchiveError(f"tar timed out archiving {source_dir}") from exc
    # GNU tar exits 1 when a live file changed mid-read; the archive is still usable.
    live_change = result.returncode == 1 and "file changed as we read it" in result.stderr
    if result.returncode != 0 and not live_change:
        archive_path.unlink(missing_ok=True)
        message = result.stderr or result.stdout or "tar command failed"
        raise ArchiveError(message.strip())

    os.chmod(archive_path, 0o640)


__all__ = ["ArchiveError", "create_archive"]
