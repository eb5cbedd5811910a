"""Additive mirroring of the backup directory to S3."""
from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError

from .environment import RemoteStorage


class SyncFailed(RuntimeError):
    """Raised when mirroring to remote storage fails."""


ClientFactory = Callable[[RemoteStorage], Any]


def default_client_factory(remote: RemoteStorage) -> Any:
    """Return a boto3 S3 client for *remote*.

    Explicit keys are passed only when both are configured; otherwise boto3
    falls back to its usual credential chain (instance profile, env, files).
    """
    kwargs: dict[str, str] = {}
    if remote.region:
        kwargs["region_name"] = remote.region
    if remote.access_key_id and remote.secret_access_key:
        kwargs["aws_access_key_id"] = remote.access_key_id
        kwargs["aws_secret_access_key"] = remote.secret_access_key
    return boto3.client("s3", **kwargs)


@dataclass(slots=True)
class SyncReport:
    """Outcome of a mirror run."""

    uploaded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"uploaded": list(self.uploaded), "skipped": list(self.skipped)}


@dataclass(slots=True)
class S3Mirror:
    """Upload new or changed local files below ``s3://bucket/prefix/``.

    Remote objects are never deleted, so the bucket keeps history beyond the
    local retention window.
    """

    remote: RemoteStorage
    client_factory: ClientFactory = default_client_factory

    def key_for(self, name: str) -> str:
        """Return the object key used for a local file called *name*."""
        prefix = (self.remote.prefix or "").strip("/")
        return f"{prefix}/{name}" if prefix else name

    def sync(self, files: Iterable[Path]) -> SyncReport:
        """Mirror *files*; raise :class:`SyncFailed` on any remote error."""
        if not self.remote.enabled:
            raise SyncFailed("No S3 bucket is configured.")
        report = SyncReport()
        try:
            client = self.client_factory(self.remote)
            existing = self._remote_index(client)
            for path in sorted(files):
                key = self.key_for(path.name)
                stat_result = path.stat()
                current = existing.get(key)
                if current is not None and not _differs(stat_result, current):
                    report.skipped.append(key)
                    continue
                client.upload_file(
                    str(path),
                    self.remote.bucket,
                    key,
                    ExtraArgs={"ServerSideEncryption": "AES256"},
                )
                report.uploaded.append(key)
        except (BotoCoreError, ClientError, S3UploadFailedError, OSError) as exc:
            raise SyncFailed(
                f"Failed to mirror backups to s3://{self.remote.bucket}/"
                f"{self.key_for('')}: {exc}"
            ) from exc
        return report

    def _remote_index(self, client: Any) -> dict[str, tuple[int, datetime]]:
        prefix = self.key_for("")
        index: dict[str, tuple[int, datetime]] = {}
        paginator = client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.remote.bucket, Prefix=prefix):
            for item in page.get("Contents", []):
                index[item["Key"]] = (int(item["Size"]), item["LastModified"])
        return index


def _differs(stat_result: Any, remote: tuple[int, datetime]) -> bool:
    size, last_modified = remote
    if stat_result.st_size != size:
        return True
    if last_modified.tzinfo is None:
        last_modified = last_modified.replace(tzinfo=UTC)
    local_mtime = datetime.fromtimestamp(stat_result.st_mtime, tz=UTC)
    return local_mtime > last_modified


__all__ = ["S3Mirror", "SyncFailed", "SyncReport", "default_client_factory"]
