"""Directory planning helpers for the deployment layout."""
from __future__ import annotations

import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal


class DirectoryError(RuntimeError):
    """Raised when a planned directory action cannot be applied."""


@dataclass(slots=True)
class DirectorySpec:
    """Desired state of a directory on the host."""

    path: Path
    mode: int = 0o750
    uid: int | None = None
    gid: int | None = None


@dataclass(slots=True)
class DirectoryAction:
    """Single change required to satisfy a :class:`DirectorySpec`."""

    kind: Literal["mkdir", "chmod", "chown"]
    spec: DirectorySpec
    description: str


@dataclass(slots=True)
class DirectoryPlan:
    """Aggregated directory actions and warnings."""

    actions: list[DirectoryAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def plan_directories(specs: Iterable[DirectorySpec]) -> DirectoryPlan:
    """Return the actions needed to bring *specs* into place."""
    plan = DirectoryPlan()
    for spec in specs:
        path = spec.path
        if path.exists() and not path.is_dir():
            plan.warnings.append(f"{path} exists but is not a directory.")
            continue
        if not path.exists():
            plan.actions.append(DirectoryAction("mkdir", spec, f"Create {path}"))
            if spec.uid is not None or spec.gid is not None:
                plan.actions.append(DirectoryAction("chown", spec, f"Set owner of {path}"))
            continue
        stat_result = path.stat()
        if stat_result.st_mode & 0o777 != spec.mode:
            plan.actions.append(
                DirectoryAction("chmod", spec, f"Set mode {spec.mode:04o} on {path}")
            )
        uid_differs = spec.uid is not None and stat_result.st_uid != spec.uid
        gid_differs = spec.gid is not None and stat_result.st_gid != spec.gid
        if uid_differs or gid_differs:
            plan.actions.append(DirectoryAction("chown", spec, f"Set owner of {path}"))
    return plan


def apply_directory_plan(plan: DirectoryPlan) -> None:
    """Execute the actions described by *plan*."""
    for action in plan.actions:
        spec = action.spec
        try:
            if action.kind == "mkdir":
                spec.path.mkdir(parents=True, exist_ok=True)
                os.chmod(spec.path, spec.mode)
            elif action.kind == "chmod":
                os.chmod(spec.path, spec.mode)
            else:
                os.chown(
                    spec.path,
                    -1 if spec.uid is None else spec.uid,
                    -1 if spec.gid is None else spec.gid,
                )
        except OSError as exc:
            raise DirectoryError(f"{action.description} failed: {exc}") from exc


__all__ = [
    "DirectoryAction",
    "DirectoryError",
    "DirectoryPlan",
    "DirectorySpec",
    "apply_directory_plan",
    "plan_directories",
]
