"""Backup execution, retention and scheduling for the deployment."""
from __future__ import annotations

import os
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .archive import ArchiveError, create_archive
from .environment import EnvironmentStore, RemoteStorage
from .locking import LockManager, LockTimeoutError
from .providers.cron import CronEntry, CronTable
from .providers.docker import DockerComposeProvider, StackError
from .remote import S3Mirror, SyncFailed

TIMESTAMP_FORMAT = "%Y%m%d-%H%M"
DATABASE_KIND = "database"
CONFIG_KIND = "config"
BACKUP_MARKER = "n8nctl backup run"

_SECONDS_PER_DAY = 86400
_ARTIFACT_PATTERN = re.compile(
    r"^(?:postgres-(?P<db>\d{8}-\d{4})\.sql\.gz|n8n-config-(?P<cfg>\d{8}-\d{4})\.tar\.gz)$"
)


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class DumpFailed(BackupError):
    """Raised when the database dump cannot be produced."""


class RetentionPruneFailed(BackupError):
    """Describes an expired artifact that could not be deleted."""

    def __init__(self, path: Path, cause: OSError) -> None:
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to prune {path}: {cause}")


def database_filename(stamp: str) -> str:
    """Return the dump file name for timestamp *stamp*."""
    return f"postgres-{stamp}.sql.gz"


def config_filename(stamp: str) -> str:
    """Return the application-state archive name for timestamp *stamp*."""
    return f"n8n-config-{stamp}.tar.gz"


@dataclass(frozen=True)
class BackupArtifact:
    """A dump or archive produced by a backup run."""

    path: Path
    kind: str
    timestamp: datetime
    size_bytes: int
    modified: datetime

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.path.name,
            "path": str(self.path),
            "kind": self.kind,
            "timestamp": self.timestamp.strftime(TIMESTAMP_FORMAT),
            "size_bytes": self.size_bytes,
            "modified": self.modified.isoformat(timespec="seconds"),
        }


def parse_artifact(path: Path) -> BackupArtifact | None:
    """Return artifact details for *path*, or ``None`` for unrelated files."""
    match = _ARTIFACT_PATTERN.match(path.name)
    if match is None or not path.is_file():
        return None
    stamp = match.group("db") or match.group("cfg")
    try:
        timestamp = datetime.strptime(stamp, TIMESTAMP_FORMAT)
    except ValueError:
        return None
    stat_result = path.stat()
    return BackupArtifact(
        path=path,
        kind=DATABASE_KIND if match.group("db") else CONFIG_KIND,
        timestamp=timestamp,
        size_bytes=stat_result.st_size,
        modified=datetime.fromtimestamp(stat_result.st_mtime),
    )


def list_artifacts(directory: Path) -> list[BackupArtifact]:
    """Return backup artifacts in *directory* ordered by timestamp."""
    if not directory.is_dir():
        return []
    artifacts = [
        artifact
        for artifact in (parse_artifact(path) for path in directory.iterdir())
        if artifact is not None
    ]
    artifacts.sort(key=lambda item: (item.timestamp, item.kind))
    return artifacts


def prune_artifacts(
    directory: Path,
    retention_days: int,
    *,
    now: datetime | None = None,
) -> tuple[list[Path], list[RetentionPruneFailed]]:
    """Delete artifacts whose modification time is older than *retention_days*.

    Only recognised artifact names are considered. Deletion failures are
    returned rather than raised so one stuck file does not block the rest.
    """
    reference = (now or datetime.now()).timestamp()
    cutoff = reference - retention_days * _SECONDS_PER_DAY
    removed: list[Path] = []
    failures: list[RetentionPruneFailed] = []
    for artifact in list_artifacts(directory):
        if artifact.modified.timestamp() >= cutoff:
            continue
        try:
            artifact.path.unlink()
        except OSError as exc:
            failures.append(RetentionPruneFailed(artifact.path, exc))
            continue
        removed.append(artifact.path)
    return removed, failures


@dataclass(slots=True)
class BackupResult:
    """Outcome of a backup run."""

    database: Path
    archive: Path
    pruned: list[Path] = field(default_factory=list)
    uploaded: list[str] = field(default_factory=list)
    synced: bool = False
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "database": str(self.database),
            "archive": str(self.archive),
            "pruned": [str(path) for path in self.pruned],
            "uploaded": list(self.uploaded),
            "synced": self.synced,
            "warnings": list(self.warnings),
        }


MirrorFactory = Callable[[RemoteStorage], S3Mirror]


@dataclass(slots=True)
class BackupExecutor:
    """Dump, archive, prune and optionally mirror the deployment state."""

    store: EnvironmentStore
    stack: DockerComposeProvider
    locks: LockManager
    app_data_dir: Path
    mirror_factory: MirrorFactory = S3Mirror
    step_timeout: float | None = None

    def run(self, now: datetime | None = None) -> BackupResult:
        """Perform one backup run.

        Raises :class:`~n8nctl.environment.ConfigurationMissing` when the
        deployment has not been provisioned, :class:`DumpFailed` when the
        database dump fails and :class:`BackupError` for archive failures or
        a concurrent run. Prune and sync problems are reported as warnings.
        """
        try:
            with self.locks.backup_lock():
                return self._run(now or datetime.now())
        except LockTimeoutError as exc:
            raise BackupError("A backup run is already in progress.") from exc

    def _run(self, now: datetime) -> BackupResult:
        settings = self.store.require()
        backup_dir = settings.backup_dir
        backup_dir.mkdir(parents=True, exist_ok=True)
        stamp = now.strftime(TIMESTAMP_FORMAT)

        database_path = backup_dir / database_filename(stamp)
        try:
            self.stack.dump_database(
                settings.postgres_user,
                settings.postgres_db,
                database_path,
            )
        except (StackError, OSError) as exc:
            database_path.unlink(missing_ok=True)
            raise DumpFailed(f"Database dump failed: {exc}") from exc
        os.chmod(database_path, 0o640)

        archive_path = backup_dir / config_filename(stamp)
        try:
            create_archive(self.app_data_dir, archive_path, timeout=self.step_timeout)
        except (ArchiveError, OSError) as exc:
            database_path.unlink(missing_ok=True)
            raise BackupError(f"Failed to archive {self.app_data_dir}: {exc}") from exc

        result = BackupResult(database=database_path, archive=archive_path)
        removed, failures = prune_artifacts(backup_dir, settings.retention_days, now=now)
        result.pruned.extend(removed)
        result.warnings.extend(str(failure) for failure in failures)

        if settings.remote.enabled:
            mirror = self.mirror_factory(settings.remote)
            try:
                report = mirror.sync(artifact.path for artifact in list_artifacts(backup_dir))
            except SyncFailed as exc:
                result.warnings.append(str(exc))
            else:
                result.synced = True
                result.uploaded.extend(report.uploaded)
        return result


@dataclass(slots=True)
class BackupScheduler:
    """Register the recurring backup command in the crontab."""

    cron: CronTable

    def install(
        self,
        command: str,
        schedule: str,
        log_file: Path | None,
        *,
        marker: str | None = None,
    ) -> bool:
        """Install or replace the backup job; return True when it changed."""
        entry = CronEntry(schedule=schedule, command=command, log_file=log_file)
        return self.cron.install(entry, marker=marker or _default_marker(command))


def _default_marker(command: str) -> str:
    return BACKUP_MARKER if BACKUP_MARKER in command else command


__all__ = [
    "BACKUP_MARKER",
    "BackupArtifact",
    "BackupError",
    "BackupExecutor",
    "BackupResult",
    "BackupScheduler",
    "DumpFailed",
    "RetentionPruneFailed",
    "SyncFailed",
    "TIMESTAMP_FORMAT",
    "config_filename",
    "database_filename",
    "list_artifacts",
    "parse_artifact",
    "prune_artifacts",
]
