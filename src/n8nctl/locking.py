"""Advisory file locks that serialise mutating operations."""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

PROVISION_LOCK = "provision"
BACKUP_LOCK = "backup"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the allotted time."""

    def __init__(self, path: Path, timeout: float) -> None:
        self.path = path
        self.timeout = timeout
        holder = _read_holder(path)
        suffix = f" (held by pid {holder})" if holder is not None else ""
        super().__init__(f"Timed out after {timeout:g}s waiting for lock {path}{suffix}.")


@dataclass(slots=True)
class LockHandle:
    """Details about an acquired lock."""

    name: str
    path: Path
    wait_ms: int


class LockManager:
    """Create and acquire named lock files under *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = float(default_timeout)

    def path_for(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        return self.runtime_dir / f"{name}.lock"

    @contextmanager
    def lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock called *name* for the duration of the block.

        A *timeout* of ``0`` makes a single non-blocking attempt. The lock
        file is left behind on release so the last holder stays visible.
        """
        wait = self.default_timeout if timeout is None else float(timeout)
        path = self.path_for(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            wait_ms = _acquire(fd, path, wait)
            _write_metadata(fd, path)
            try:
                yield LockHandle(name=name, path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def provision_lock(
        self, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Return the lock guarding install runs."""
        return self.lock(PROVISION_LOCK, timeout=timeout)

    def backup_lock(self) -> AbstractContextManager[LockHandle]:
        """Return the non-blocking lock guarding backup runs."""
        return self.lock(BACKUP_LOCK, timeout=0)


def _acquire(fd: int, path: Path, timeout: float) -> int:
    started = time.monotonic()
    deadline = started + max(timeout, 0.0)
    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return int((time.monotonic() - started) * 1000)
        except BlockingIOError as exc:
            if time.monotonic() >= deadline:
                raise LockTimeoutError(path, timeout) from exc
            time.sleep(_POLL_INTERVAL)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(UTC).isoformat(),
    }
    data = json.dumps(payload, sort_keys=True).encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, data)
    os.fsync(fd)


def _read_holder(path: Path) -> int | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    pid = data.get("pid") if isinstance(data, dict) else None
    return pid if isinstance(pid, int) else None


__all__ = [
    "BACKUP_LOCK",
    "PROVISION_LOCK",
    "LockHandle",
    "LockManager",
    "LockTimeoutError",
]
