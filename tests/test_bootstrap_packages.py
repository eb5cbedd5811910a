"""Tests for prerequisite detection and apt installation."""
from __future__ import annotations

import subprocess

import pytest

from n8nctl.bootstrap.packages import (
    PackagePlan,
    PrerequisiteError,
    apply_package_plan,
    plan_packages,
)


def _which_from(available: set[str]):
    def which(name: str) -> str | None:
        return f"/usr/bin/{name}" if name in available else None

    return which


def test_plan_is_satisfied_when_all_binaries_exist() -> None:
    """No packages are planned when every tool resolves."""
    plan = plan_packages(
        which=_which_from({"docker", "nginx", "certbot", "crontab", "tar"}),
        extra_packages=["curl"],
    )

    assert plan.satisfied
    assert plan.packages == []


def test_plan_maps_missing_binaries_to_packages() -> None:
    """Missing binaries are reported along with their providing packages."""
    plan = plan_packages(
        which=_which_from({"tar"}),
        extra_packages=["curl", "nginx"],
    )

    assert plan.missing == ["docker", "nginx", "certbot", "crontab"]
    assert plan.packages == ["docker.io", "nginx", "certbot", "cron", "curl"]


def test_apply_runs_update_then_install() -> None:
    """apt-get update precedes a non-interactive install."""
    calls: list[list[str]] = []

    def runner(command: list[str]) -> subprocess.CompletedProcess[str]:
        calls.append(command)
        return subprocess.CompletedProcess(command, 0, "", "")

    apply_package_plan(PackagePlan(missing=["nginx"], packages=["nginx"]), runner=runner)

    assert calls == [["apt-get", "update"], ["apt-get", "install", "-y", "nginx"]]


def test_apply_enables_docker_after_install() -> None:
    """Installing the Docker engine also enables and starts its daemon."""
    calls: list[list[str]] = []

    def runner(command: list[str]) -> subprocess.CompletedProcess[str]:
        calls.append(command)
        return subprocess.CompletedProcess(command, 0, "", "")

    apply_package_plan(
        PackagePlan(missing=["docker", "nginx"], packages=["docker.io", "nginx"]),
        runner=runner,
    )

    assert calls == [
        ["apt-get", "update"],
        ["apt-get", "install", "-y", "docker.io", "nginx"],
        ["systemctl", "enable", "--now", "docker"],
    ]


def test_apply_is_noop_without_packages() -> None:
    """An empty plan never shells out."""
    def runner(command: list[str]) -> subprocess.CompletedProcess[str]:
        raise AssertionError("runner should not be called")

    apply_package_plan(PackagePlan(), runner=runner)


def test_default_runner_reports_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    """A failing apt invocation raises PrerequisiteError with its output."""
    def fake_run(*args, **kwargs):
        return subprocess.CompletedProcess(args[0], 100, "", "E: Unable to locate package")

    monkeypatch.setattr("n8nctl.bootstrap.packages.subprocess.run", fake_run)

    with pytest.raises(PrerequisiteError, match="Unable to locate package"):
        apply_package_plan(PackagePlan(missing=["nginx"], packages=["nginx"]))
