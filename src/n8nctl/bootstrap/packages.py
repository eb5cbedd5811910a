"""Prerequisite detection and apt-based installation."""
from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field

# Binary name -> distribution package providing it.
DEFAULT_PREREQUISITES: dict[str, str] = {
    "docker": "docker.io",
    "nginx": "nginx",
    "certbot": "certbot",
    "crontab": "cron",
    "tar": "tar",
}

# Distribution package -> systemd unit that must be running once installed.
PACKAGE_SERVICES: dict[str, str] = {
    "docker.io": "docker",
}


class PrerequisiteError(RuntimeError):
    """Raised when required host tooling is missing or cannot be installed."""


@dataclass(slots=True)
class PackagePlan:
    """Missing binaries and the packages that would provide them."""

    missing: list[str] = field(default_factory=list)
    packages: list[str] = field(default_factory=list)

    @property
    def satisfied(self) -> bool:
        """Return True when every prerequisite binary is present."""
        return not self.missing


Which = Callable[[str], str | None]
Runner = Callable[[list[str]], subprocess.CompletedProcess[str]]


def plan_packages(
    prerequisites: Mapping[str, str] | None = None,
    *,
    extra_packages: Iterable[str] = (),
    which: Which = shutil.which,
) -> PackagePlan:
    """Return which prerequisite binaries are missing and what to install."""
    prerequisites = DEFAULT_PREREQUISITES if prerequisites is None else prerequisites
    plan = PackagePlan()
    for binary, package in prerequisites.items():
        if which(binary) is None:
            plan.missing.append(binary)
            if package not in plan.packages:
                plan.packages.append(package)
    if plan.missing:
        for package in extra_packages:
            if package not in plan.packages:
                plan.packages.append(package)
    return plan


def apply_package_plan(
    plan: PackagePlan,
    *,
    runner: Runner | None = None,
    apt_bin: str = "apt-get",
    systemctl_bin: str = "systemctl",
    timeout: float | None = None,
) -> None:
    """Install the packages listed in *plan* with apt.

    Daemons shipped by freshly installed packages (the Docker engine) are
    enabled and started so the following stages can talk to them.
    """
    if not plan.packages:
        return
    if runner is None:

        def runner(command: list[str]) -> subprocess.CompletedProcess[str]:
            return _default_runner(command, timeout=timeout)

    runner([apt_bin, "update"])
    runner([apt_bin, "install", "-y", *plan.packages])
    for package in plan.packages:
        service = PACKAGE_SERVICES.get(package)
        if service is not None:
            runner([systemctl_bin, "enable", "--now", service])


def _default_runner(
    command: Sequence[str],
    *,
    timeout: float | None,
) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    env["DEBIAN_FRONTEND"] = "noninteractive"
    try:
        result = subprocess.run(  # noqa: S603, S607
            list(command),
            capture_output=True,
            text=True,
            check=False,
            env=env,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise PrerequisiteError(f"{command[0]} not found: {exc}") from exc
    except subprocess.TimeoutExpired as exc:
        raise PrerequisiteError(f"{' '.join(command[:2])} timed out") from exc
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "no output").strip()
        raise PrerequisiteError(
            f"{' '.join(command[:2])} failed (exit {result.returncode}): {message}"
        )
    return result


__all__ = [
    "DEFAULT_PREREQUISITES",
    "PACKAGE_SERVICES",
    "PackagePlan",
    "PrerequisiteError",
    "apply_package_plan",
    "plan_packages",
]
