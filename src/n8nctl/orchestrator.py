"""Ordered provisioning stages for a single-host n8n deployment.

Each stage is idempotent, so a failed run is recovered by running again.
Nothing is rolled back: stages that completed before a fatal failure keep
their effects.
"""
from __future__ import annotations

import shlex
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Literal

from . import secretgen
from .backups import BackupScheduler
from .bootstrap import (
    DirectoryError,
    DirectorySpec,
    PrerequisiteError,
    apply_directory_plan,
    apply_package_plan,
    plan_directories,
    plan_packages,
)
from .bootstrap.packages import Runner
from .compose import StackComposer
from .config import CONFIG_ENV_VAR, DEFAULTS, AppConfig
from .environment import (
    SECRET_KEYS,
    DeploymentSettings,
    EnvironmentStore,
    InvalidConfiguration,
    PersistenceError,
    resolve_settings,
)
from .locking import LockManager
from .providers.certbot import CertificateError, CertificateManager
from .providers.cron import CronError
from .providers.docker import DockerComposeProvider, StackError
from .providers.nginx import NginxError, NginxProvider
from .templates import TemplateRenderError
from .tls import Certificate

StageStatus = Literal["changed", "unchanged", "skipped", "warning"]

_STAGE_ERRORS: tuple[type[BaseException], ...] = (
    PrerequisiteError,
    DirectoryError,
    secretgen.EntropySourceUnavailable,
    PersistenceError,
    InvalidConfiguration,
    TemplateRenderError,
    NginxError,
    CertificateError,
    StackError,
    CronError,
    OSError,
    ValueError,
)


class ProvisionError(RuntimeError):
    """Raised when a fatal stage fails."""

    def __init__(self, step: str, cause: BaseException) -> None:
        self.step = step
        self.cause = cause
        super().__init__(f"Stage '{step}' failed: {cause}")


@dataclass(slots=True)
class ProvisionRequest:
    """Operator input for a provisioning run."""

    domain: str
    admin_email: str
    timezone: str | None = None
    install_packages: bool = False


@dataclass(slots=True)
class StageOutcome:
    """Result of a single stage."""

    name: str
    status: StageStatus
    detail: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "status": self.status, "detail": self.detail}


@dataclass(slots=True)
class ProvisionReport:
    """Summary of a provisioning run.

    ``generated_secrets`` holds the values created during this run only; it is
    empty on re-runs and is never serialised by :meth:`to_dict`. They are
    handed to ``Provisioner.on_secrets`` as soon as they are stored.
    """

    stages: list[StageOutcome] = field(default_factory=list)
    generated_secrets: dict[str, str] = field(default_factory=dict)
    settings: DeploymentSettings | None = None
    certificate: Certificate | None = None
    lock_wait_ms: int = 0

    @property
    def warnings(self) -> list[str]:
        """Return the details of stages that completed with a warning."""
        return [
            f"{stage.name}: {stage.detail}" for stage in self.stages if stage.status == "warning"
        ]

    @property
    def changed(self) -> int:
        """Return the number of stages that modified the host."""
        return sum(1 for stage in self.stages if stage.status == "changed")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation without secret values."""
        return {
            "stages": [stage.to_dict() for stage in self.stages],
            "generated_secrets": sorted(self.generated_secrets),
            "domain": self.settings.domain if self.settings else None,
            "certificate": self.certificate.to_dict() if self.certificate else None,
            "warnings": self.warnings,
        }


@dataclass(slots=True)
class _RunState:
    request: ProvisionRequest
    existing: DeploymentSettings | None = None
    settings: DeploymentSettings | None = None
    certificate: Certificate | None = None
    proxy_has_tls: bool = False

    def require_settings(self) -> DeploymentSettings:
        if self.settings is None:
            raise InvalidConfiguration(["DOMAIN"], "Deployment settings were not resolved.")
        return self.settings


StageAction = Callable[[_RunState, ProvisionReport], StageOutcome]


@dataclass(frozen=True)
class Stage:
    """A named provisioning step and its failure policy."""

    name: str
    action: StageAction
    fatal: bool = True


@dataclass(slots=True)
class Provisioner:
    """Bring the host to the desired deployment state."""

    config: AppConfig
    locks: LockManager
    store: EnvironmentStore
    composer: StackComposer
    nginx: NginxProvider
    certificates: CertificateManager
    stack: DockerComposeProvider
    scheduler: BackupScheduler
    which: Callable[[str], str | None] | None = None
    package_runner: Runner | None = None
    generator: Callable[[], str] = secretgen.generate
    on_stage: Callable[[StageOutcome], None] | None = None
    on_secrets: Callable[[dict[str, str]], None] | None = None

    def stages(self) -> list[Stage]:
        """Return the ordered stage list."""
        return [
            Stage("prerequisites", self._prerequisites),
            Stage("directories", self._directories),
            Stage("environment", self._environment),
            Stage("compose", self._compose),
            Stage("proxy", self._proxy),
            Stage("certificate", self._certificate, fatal=False),
            Stage("proxy-tls", self._proxy_tls),
            Stage("stack", self._stack),
            Stage("backup-schedule", self._backup_schedule),
        ]

    def run(self, request: ProvisionRequest) -> ProvisionReport:
        """Execute every stage under the provisioning lock.

        Raises :class:`ProvisionError` naming the first fatal stage that
        failed. Non-fatal failures are recorded as warnings in the report.
        """
        report = ProvisionReport()
        state = _RunState(request=request)
        with self.locks.provision_lock() as handle:
            report.lock_wait_ms = handle.wait_ms
            for stage in self.stages():
                try:
                    outcome = stage.action(state, report)
                except _STAGE_ERRORS as exc:
                    if stage.fatal:
                        raise ProvisionError(stage.name, exc) from exc
                    outcome = StageOutcome(stage.name, "warning", str(exc))
                report.stages.append(outcome)
                if self.on_stage is not None:
                    self.on_stage(outcome)
        report.settings = state.settings
        report.certificate = state.certificate
        return report

    # Stages ---------------------------------------------------------
    def _prerequisites(self, state: _RunState, report: ProvisionReport) -> StageOutcome:
        which = self.which or shutil.which
        plan = plan_packages(extra_packages=self.config.packages, which=which)
        if plan.satisfied:
            return StageOutcome("prerequisites", "unchanged", "All required tools present.")
        if not state.request.install_packages:
            raise PrerequisiteError(
                f"Missing required tools: {', '.join(plan.missing)}. "
                "Install them or re-run with --install-packages."
            )
        apply_package_plan(
            plan,
            runner=self.package_runner,
            timeout=self.config.step_timeout,
        )
        remaining = plan_packages(which=which)
        if not remaining.satisfied:
            raise PrerequisiteError(
                f"Still missing after installation: {', '.join(remaining.missing)}."
            )
        return StageOutcome(
            "prerequisites",
            "changed",
            f"Installed {', '.join(plan.packages)}.",
        )

    def _directories(self, state: _RunState, report: ProvisionReport) -> StageOutcome:
        state.existing = self.store.load()
        backup_dir = (
            state.existing.backup_dir
            if state.existing is not None
            else self.config.deploy_root / "backups"
        )
        docker = self.config.docker
        specs = [
            DirectorySpec(self.config.deploy_root, mode=0o750),
            DirectorySpec(self.config.db_data_dir, mode=0o700),
            DirectorySpec(
                self.config.app_data_dir,
                mode=0o750,
                uid=docker.data_uid,
                gid=docker.data_gid,
            ),
            DirectorySpec(backup_dir, mode=0o750),
        ]
        plan = plan_directories(specs)
        if plan.warnings:
            raise DirectoryError("; ".join(plan.warnings))
        apply_directory_plan(plan)
        if not plan.actions:
            return StageOutcome("directories", "unchanged")
        return StageOutcome(
            "directories",
            "changed",
            "; ".join(action.description for action in plan.actions),
        )

    def _environment(self, state: _RunState, report: ProvisionReport) -> StageOutcome:
        defaults = self.config.deployment
        if state.request.timezone:
            defaults = replace(defaults, timezone=state.request.timezone)
        settings, generated = resolve_settings(
            state.existing,
            domain=state.request.domain,
            admin_email=state.request.admin_email,
            backup_dir=self.config.deploy_root / "backups",
            defaults=defaults,
            generator=self.generator,
        )
        effective = self.store.save(settings)
        state.settings = effective
        stored = {
            "POSTGRES_PASSWORD": effective.postgres_password,
            "N8N_ENCRYPTION_KEY": effective.encryption_key,
        }
        report.generated_secrets = {
            key: stored[key] for key in SECRET_KEYS if key in generated
        }
        # Shown before any later stage can fail.
        if report.generated_secrets and self.on_secrets is not None:
            self.on_secrets(dict(report.generated_secrets))
        if effective == state.existing:
            return StageOutcome("environment", "unchanged", str(self.store.path))
        detail = str(self.store.path)
        if generated:
            detail = f"{detail} (generated {', '.join(generated)})"
        return StageOutcome("environment", "changed", detail)

    def _compose(self, state: _RunState, report: ProvisionReport) -> StageOutcome:
        descriptor = self.composer.render(state.require_settings())
        changed = self.composer.write(descriptor, self.config.compose_file)
        return StageOutcome(
            "compose",
            "changed" if changed else "unchanged",
            str(self.config.compose_file),
        )

    def _proxy(self, state: _RunState, report: ProvisionReport) -> StageOutcome:
        settings = state.require_settings()
        tls = None
        if self.config.tls.enabled:
            try:
                current = self.certificates.current(settings.domain)
            except CertificateError:
                current = None
            if current is not None:
                tls = current.material
        result = self.nginx.apply(settings.domain, _upstream(settings), tls)
        state.proxy_has_tls = tls is not None
        mode = "https" if tls is not None else "http"
        return StageOutcome(
            "proxy",
            "changed" if result.changed else "unchanged",
            f"{self.nginx.site_path()} ({mode})",
        )

    def _certificate(self, state: _RunState, report: ProvisionReport) -> StageOutcome:
        if not self.config.tls.enabled:
            return StageOutcome("certificate", "skipped", "TLS disabled in configuration.")
        settings = state.require_settings()
        certificate = self.certificates.ensure(settings.domain, settings.admin_email)
        state.certificate = certificate
        return StageOutcome(
            "certificate",
            "unchanged" if state.proxy_has_tls else "changed",
            f"valid until {certificate.not_valid_after.isoformat()}",
        )

    def _proxy_tls(self, state: _RunState, report: ProvisionReport) -> StageOutcome:
        if state.certificate is None:
            return StageOutcome("proxy-tls", "skipped", "No certificate available.")
        settings = state.require_settings()
        result = self.nginx.apply(settings.domain, _upstream(settings), state.certificate.material)
        state.proxy_has_tls = True
        return StageOutcome(
            "proxy-tls",
            "changed" if result.changed else "unchanged",
            str(self.nginx.site_path()),
        )

    def _stack(self, state: _RunState, report: ProvisionReport) -> StageOutcome:
        self.stack.up()
        return StageOutcome("stack", "changed", "docker compose up -d")

    def _backup_schedule(self, state: _RunState, report: ProvisionReport) -> StageOutcome:
        backups = self.config.backups
        command = self._backup_command()
        changed = self.scheduler.install(
            command,
            backups.schedule,
            backups.log_file,
        )
        return StageOutcome(
            "backup-schedule",
            "changed" if changed else "unchanged",
            f"{backups.schedule} {command}",
        )

    def _backup_command(self) -> str:
        """Return the cron command, made independent of cron's minimal PATH."""
        command = self.config.backups.command
        executable, _, rest = command.partition(" ")
        if "/" not in executable:
            resolved = (self.which or shutil.which)(executable)
            if resolved:
                command = f"{resolved} {rest}".strip()
        config_file = self.config.config_file
        if str(config_file) != DEFAULTS["config_file"] and config_file.exists():
            command = f"{CONFIG_ENV_VAR}={shlex.quote(str(config_file))} {command}"
        return command


def _upstream(settings: DeploymentSettings) -> str:
    return f"http://127.0.0.1:{settings.port}"


__all__ = [
    "ProvisionError",
    "ProvisionReport",
    "ProvisionRequest",
    "Provisioner",
    "Stage",
    "StageOutcome",
]
