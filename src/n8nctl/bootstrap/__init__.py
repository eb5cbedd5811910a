"""Helper utilities used to prepare the host before provisioning."""
from __future__ import annotations

from .filesystem import (
    DirectoryAction,
    DirectoryError,
    DirectoryPlan,
    DirectorySpec,
    apply_directory_plan,
    plan_directories,
)
from .packages import (
    DEFAULT_PREREQUISITES,
    PackagePlan,
    PrerequisiteError,
    apply_package_plan,
    plan_packages,
)

__all__ = [
    # filesystem helpers
    "DirectoryAction",
    "DirectoryError",
    "DirectoryPlan",
    "DirectorySpec",
    "plan_directories",
    "apply_directory_plan",
    # package helpers
    "DEFAULT_PREREQUISITES",
    "PackagePlan",
    "PrerequisiteError",
    "plan_packages",
    "apply_package_plan",
]
