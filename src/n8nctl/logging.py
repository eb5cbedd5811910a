"""Structured operation logging.

Every CLI operation appends one JSON object to ``operations.jsonl`` and a
one-line summary to the human-readable ``n8nctl.log``. Logging never aborts
an operation: if the log directory cannot be created or written, the logger
disables itself and the command carries on.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from . import __version__

OPERATIONS_LOG_NAME = "operations.jsonl"
HUMAN_LOG_NAME = "n8nctl.log"
_HUMAN_LOG_BYTES = 5 * 1024 * 1024
_HUMAN_LOG_BACKUPS = 3


def _sanitize(value: object) -> Any:
    """Return a JSON-safe rendition of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _current_actor() -> dict[str, object]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = str(os.getuid())
    return {"user": user, "uid": os.getuid(), "pid": os.getpid()}


@dataclass
class OperationScope:
    """Mutable record describing an in-flight operation."""

    command: str
    args: dict[str, Any]
    target: dict[str, Any] | None
    actor: dict[str, object] = field(default_factory=_current_actor)
    op_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    steps: list[dict[str, Any]] = field(default_factory=list)
    result: dict[str, Any] | None = None
    lock_wait_ms: int | None = None

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record a sub-step of the operation."""
        step: dict[str, Any] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

    def set_lock_wait_ms(self, value: int) -> None:
        """Record how long the operation waited for its lock."""
        self.lock_wait_ms = int(value)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
        backups: Iterable[object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            context=context,
            backups=backups,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=list(warnings) if warnings is not None else [message],
            errors=list(errors) if errors is not None else None,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors is not None else [message],
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int | None = None,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        backups: Iterable[object] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, Any] = {"status": status, "message": message}
        if changed is not None:
            result["changed"] = changed
        if warnings is not None:
            result["warnings"] = list(warnings)
        if errors is not None:
            result["errors"] = list(errors)
        if backups is not None:
            result["backups"] = _sanitize(list(backups))
        if rc is not None:
            result["rc"] = rc
        if context is not None:
            result["context"] = _sanitize(dict(context))
        self.result = result


class StructuredLogger:
    """Write operation records under *logs_dir*."""

    def __init__(self, logs_dir: Path) -> None:
        self._logs_dir = Path(logs_dir)
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG_NAME
        self._human_log_path = self._logs_dir / HUMAN_LOG_NAME
        self._enabled = True
        self._human: logging.Logger | None = None
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        self._human = self._build_human_logger()

    @property
    def logs_dir(self) -> Path:
        """Directory receiving log files."""
        return self._logs_dir

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit.

        Exceptions escaping the block are re-raised; they are recorded as errors
        unless the scope already carries a result.
        """
        scope = OperationScope(
            command=command,
            args=_sanitize(dict(args or {})),
            target=_sanitize(dict(target)) if target is not None else None,
        )
        started = time.monotonic()
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or exc.__class__.__name__)
            raise
        finally:
            duration_ms = int((time.monotonic() - started) * 1000)
            if scope.result is None:
                scope.success("Completed.")
            self._write(scope, duration_ms)

    # ------------------------------------------------------------------
    def _build_human_logger(self) -> logging.Logger | None:
        human = logging.getLogger(f"n8nctl.operations.{self._human_log_path}")
        human.propagate = False
        human.setLevel(logging.INFO)
        for stale in list(human.handlers):
            human.removeHandler(stale)
            stale.close()
        try:
            handler = RotatingFileHandler(
                self._human_log_path,
                maxBytes=_HUMAN_LOG_BYTES,
                backupCount=_HUMAN_LOG_BACKUPS,
                encoding="utf-8",
            )
        except OSError:
            return None
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        human.addHandler(handler)
        return human

    def _write(self, scope: OperationScope, duration_ms: int) -> None:
        if not self._enabled:
            return
        result = scope.result or {}
        record = {
            "ts": scope.started_at.isoformat(),
            "op_id": scope.op_id,
            "command": scope.command,
            "args": scope.args,
            "target": scope.target,
            "actor": scope.actor,
            "lock_wait_ms": scope.lock_wait_ms,
            "duration_ms": duration_ms,
            "steps": scope.steps,
            "result": result,
            "context": {"n8nctl_version": __version__},
        }
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError:
            self._enabled = False
            return
        if self._human is not None:
            status = str(result.get("status", "success"))
            level = {"error": logging.ERROR, "warning": logging.WARNING}.get(status, logging.INFO)
            self._human.log(
                level,
                "%s [%s] %s (%sms)",
                scope.command,
                status,
                result.get("message", ""),
                duration_ms,
            )


__all__ = ["OperationScope", "StructuredLogger"]
