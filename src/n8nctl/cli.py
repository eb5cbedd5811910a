"""Typer-powered command line interface for ``n8nctl``.

``n8nctl install`` provisions (or re-converges) the deployment and
``n8nctl backup run`` is the entry point the crontab invokes nightly. Every
command records a structured operation in ``operations.jsonl``.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import (
    BackupError,
    BackupExecutor,
    BackupScheduler,
    DumpFailed,
    list_artifacts,
)
from .compose import StackComposer
from .config import AppConfig, ConfigError, load_config
from .environment import (
    SECRET_KEYS,
    ConfigurationMissing,
    DeploymentSettings,
    EnvironmentStore,
    InvalidConfiguration,
    PersistenceError,
    mask_secret,
)
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .orchestrator import (
    ProvisionError,
    Provisioner,
    ProvisionRequest,
    StageOutcome,
)
from .providers import (
    CertificateManager,
    CronTable,
    DockerComposeProvider,
    NginxProvider,
)
from .providers.nginx import validate_domain
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to n8nctl's YAML config file.",
)

_MASKED_ENV_KEYS = frozenset({*SECRET_KEYS, "AWS_SECRET_ACCESS_KEY"})
_STAGE_STYLE = {
    "changed": "[green]changed[/green]",
    "unchanged": "[dim]ok[/dim]",
    "skipped": "[dim]skipped[/dim]",
    "warning": "[yellow]warning[/yellow]",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Provision and maintain a single-host n8n deployment.

        n8n and PostgreSQL run under Docker Compose behind an Nginx reverse
        proxy with a Let's Encrypt certificate; a nightly cron job backs up the
        database and application state.
        """
    ).strip(),
)
backups_app = typer.Typer(help="Run and inspect deployment backups.")
config_app = typer.Typer(help="Inspect n8nctl and deployment configuration.")

app.add_typer(backups_app, name="backup")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    store: EnvironmentStore
    composer: StackComposer
    nginx: NginxProvider
    certificates: CertificateManager
    cron: CronTable
    stack: DockerComposeProvider
    scheduler: BackupScheduler

    def provisioner(
        self,
        *,
        on_stage: Callable[[StageOutcome], None] | None = None,
        on_secrets: Callable[[dict[str, str]], None] | None = None,
    ) -> Provisioner:
        """Return a :class:`Provisioner` wired to this runtime."""
        return Provisioner(
            config=self.config,
            locks=self.locks,
            store=self.store,
            composer=self.composer,
            nginx=self.nginx,
            certificates=self.certificates,
            stack=self.stack,
            scheduler=self.scheduler,
            on_stage=on_stage,
            on_secrets=on_secrets,
        )

    def backup_executor(self) -> BackupExecutor:
        """Return a :class:`BackupExecutor` wired to this runtime."""
        return BackupExecutor(
            store=self.store,
            stack=self.stack,
            locks=self.locks,
            app_data_dir=self.config.app_data_dir,
            step_timeout=self.config.step_timeout,
        )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Invalid configuration: {exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    timeout = config.step_timeout
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    cron = CronTable(crontab_bin=config.backups.crontab_bin, timeout=timeout)
    nginx_provider = NginxProvider(
        templates=templates,
        sites_available=config.nginx.sites_available,
        sites_enabled=config.nginx.sites_enabled,
        site_name=config.nginx.site_name,
        acme_root=config.nginx.webroot,
        nginx_bin=config.nginx.nginx_bin,
        timeout=timeout,
    )
    certificates = CertificateManager(
        live_dir=config.tls.live_dir,
        webroot=config.nginx.webroot,
        certbot_bin=config.tls.certbot_bin,
        nginx_bin=config.nginx.nginx_bin,
        renew_before_days=config.tls.renew_before_days,
        renewal_schedule=config.tls.renewal_schedule,
        cron=cron,
        timeout=timeout,
    )
    stack = DockerComposeProvider(
        compose_file=config.compose_file,
        env_file=config.env_file,
        project=config.docker.project,
        docker_bin=config.docker.docker_bin,
        timeout=timeout,
    )
    runtime = RuntimeContext(
        config=config,
        locks=locks,
        logger=logger,
        templates=templates,
        store=EnvironmentStore(config.env_file),
        composer=StackComposer(
            postgres_image=config.docker.postgres_image,
            n8n_image=config.docker.n8n_image,
        ),
        nginx=nginx_provider,
        certificates=certificates,
        cron=cron,
        stack=stack,
        scheduler=BackupScheduler(cron),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the n8nctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"n8nctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _load_settings(op: OperationScope, store: EnvironmentStore) -> DeploymentSettings | None:
    try:
        return store.load()
    except PersistenceError as exc:
        _command_error(op, f"Failed to read {store.path}: {exc}", rc=ExitCode.ENVIRONMENT)


def _validate_email(value: str) -> str:
    normalised = value.strip()
    local, _, domain = normalised.partition("@")
    if not local or "." not in domain or any(char.isspace() for char in normalised):
        raise ValueError(f"'{value}' is not a valid email address.")
    return normalised


def _masked_env(settings: DeploymentSettings) -> dict[str, str]:
    return {
        key: mask_secret(value) if key in _MASKED_ENV_KEYS else value
        for key, value in settings.to_env().items()
    }


def _provision_exit_code(exc: ProvisionError) -> ExitCode:
    if isinstance(exc.cause, (InvalidConfiguration, ValueError)):
        return ExitCode.VALIDATION
    if exc.step in {"prerequisites", "directories", "environment"}:
        return ExitCode.ENVIRONMENT
    return ExitCode.PROVIDER


def _print_stage(outcome: StageOutcome) -> None:
    label = _STAGE_STYLE.get(outcome.status, outcome.status)
    detail = f" {outcome.detail}" if outcome.detail else ""
    console.print(f"  {label} [bold]{outcome.name}[/bold]{detail}")


def _show_generated_secrets(secrets: Mapping[str, str], env_file: Path) -> None:
    if not secrets:
        return
    table = Table(show_header=True, header_style="bold magenta", title="Generated secrets")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key, value in secrets.items():
        table.add_row(key, value)
    console.print(table)
    console.print(
        "[yellow]These values are shown only once. They are stored in "
        f"{env_file}; keep a copy of N8N_ENCRYPTION_KEY somewhere safe, "
        "credentials stored in n8n cannot be decrypted without it.[/yellow]"
    )


@app.command()
def install(
    ctx: typer.Context,
    domain: str | None = typer.Option(
        None,
        "--domain",
        help="Public domain name for n8n (prompted when omitted).",
    ),
    email: str | None = typer.Option(
        None,
        "--email",
        help="Contact email for Let's Encrypt registration (prompted when omitted).",
    ),
    timezone: str | None = typer.Option(
        None,
        "--timezone",
        help="Timezone passed to n8n (defaults to the stored or built-in value).",
    ),
    install_packages: bool = typer.Option(
        False,
        "--install-packages",
        help="Install missing prerequisites with apt before provisioning.",
    ),
) -> None:
    """Provision or re-converge the n8n deployment on this host."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "install",
        args={
            "domain": domain,
            "email": email,
            "timezone": timezone,
            "install_packages": install_packages,
        },
        target={"kind": "deployment", "root": str(runtime.config.deploy_root)},
    ) as op:
        existing = _load_settings(op, runtime.store)
        if domain is None:
            domain = typer.prompt(
                "Domain for n8n (e.g. n8n.example.com)",
                default=existing.domain if existing and existing.domain else None,
            )
        if email is None:
            email = typer.prompt(
                "Email for Let's Encrypt notices",
                default=existing.admin_email if existing and existing.admin_email else None,
            )
        try:
            domain_value = validate_domain(str(domain))
            email_value = _validate_email(str(email))
        except ValueError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        def record(outcome: StageOutcome) -> None:
            _print_stage(outcome)
            op.add_step(
                f"stage.{outcome.name}",
                status=outcome.status,
                detail=outcome.detail or None,
            )

        console.print(f"Provisioning n8n for [bold]{domain_value}[/bold]")
        def reveal(secrets: dict[str, str]) -> None:
            _show_generated_secrets(secrets, runtime.config.env_file)
            op.add_step("secrets.shown", detail=", ".join(sorted(secrets)))

        provisioner = runtime.provisioner(on_stage=record, on_secrets=reveal)
        request = ProvisionRequest(
            domain=domain_value,
            admin_email=email_value,
            timezone=timezone,
            install_packages=install_packages,
        )
        try:
            report = provisioner.run(request)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)
        except ProvisionError as exc:
            op.add_step(f"stage.{exc.step}", status="error", detail=str(exc.cause))
            console.print(f"[red]Stage '{exc.step}' failed.[/red]")
            _command_error(
                op,
                f"Provisioning failed: {exc.cause}",
                rc=_provision_exit_code(exc),
                errors=[str(exc)],
            )
        op.set_lock_wait_ms(report.lock_wait_ms)

        context = report.to_dict()
        if report.warnings:
            for warning in report.warnings:
                console.print(f"[yellow]Warning:[/yellow] {warning}")
            console.print(
                f"[yellow]n8n is reachable at http://{domain_value}/ until a "
                "certificate is issued; re-run `n8nctl install` to retry.[/yellow]"
            )
            op.warning(
                "Provisioning completed with warnings.",
                warnings=report.warnings,
                changed=report.changed,
                context=context,
            )
            return
        scheme = "https" if report.certificate is not None else "http"
        console.print(f"[green]n8n is available at {scheme}://{domain_value}/[/green]")
        op.success("Provisioning complete.", changed=report.changed, context=context)


@backups_app.command("run")
def backup_run(ctx: typer.Context) -> None:
    """Dump the database, archive n8n state, prune and mirror (cron entry point)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup run",
        args={},
        target={"kind": "backup", "root": str(runtime.config.deploy_root)},
    ) as op:
        executor = runtime.backup_executor()
        try:
            result = executor.run()
        except ConfigurationMissing as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except PersistenceError as exc:
            _command_error(
                op,
                f"Failed to load deployment settings: {exc}",
                rc=ExitCode.ENVIRONMENT,
            )
        except DumpFailed as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)
        except BackupError as exc:
            _command_error(op, f"Backup failed: {exc}", rc=ExitCode.PROVIDER)

        op.add_step("backup.dump", status="success", detail=str(result.database))
        op.add_step("backup.archive", status="success", detail=str(result.archive))
        op.add_step(
            "backup.prune",
            status="warning" if any("prune" in item for item in result.warnings) else "success",
            detail=f"{len(result.pruned)} removed",
        )
        op.add_step(
            "backup.sync",
            status="success" if result.synced else "skipped",
            detail=f"{len(result.uploaded)} uploaded" if result.synced else None,
        )

        console.print(f"[green]Database dump:[/green] {result.database}")
        console.print(f"[green]State archive:[/green] {result.archive}")
        for path in result.pruned:
            console.print(f"Pruned {path}")
        if result.synced:
            console.print(f"Mirrored {len(result.uploaded)} file(s) to S3.")
        artifacts = [str(result.database), str(result.archive)]
        if result.warnings:
            for warning in result.warnings:
                console.print(f"[yellow]Warning:[/yellow] {warning}")
            op.warning(
                "Backup completed with warnings.",
                warnings=result.warnings,
                changed=2,
                backups=artifacts,
                context=result.to_dict(),
            )
            return
        op.success("Backup completed.", changed=2, backups=artifacts, context=result.to_dict())


@backups_app.command("list")
def backup_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit backup details as JSON.",
    ),
) -> None:
    """List backup artifacts in the deployment's backup directory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list",
        args={"json": json_output},
        target={"kind": "backup", "scope": "local"},
    ) as op:
        settings = _load_settings(op, runtime.store)
        backup_dir = (
            settings.backup_dir
            if settings is not None
            else runtime.config.deploy_root / "backups"
        )
        artifacts = list_artifacts(backup_dir)
        if json_output:
            console.print_json(
                data={
                    "backup_dir": str(backup_dir),
                    "artifacts": [artifact.to_dict() for artifact in artifacts],
                }
            )
            op.success("Reported backups as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Kind")
        table.add_column("Size", justify="right")
        table.add_column("Modified")
        if not artifacts:
            table.add_row("(none)", "", "", "")
        for artifact in artifacts:
            table.add_row(
                artifact.path.name,
                artifact.kind,
                _format_size(artifact.size_bytes),
                artifact.modified.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(f"Backups in {backup_dir}")
        console.print(table)
        op.success("Reported backups.", changed=0)


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration and deployment settings (secrets masked)."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        settings = _load_settings(op, runtime.store)
        deployment = _masked_env(settings) if settings is not None else None
        data: dict[str, object] = {
            "config": runtime.config.to_dict(),
            "deployment": deployment,
        }
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in runtime.config.to_dict().items():
            table.add_row(key, _render_value(value))
        console.print(table)

        if deployment is None:
            console.print(
                f"[yellow]No deployment settings at {runtime.config.env_file}; "
                "run `n8nctl install`.[/yellow]"
            )
        else:
            env_table = Table(show_header=True, header_style="bold magenta")
            env_table.add_column(str(runtime.config.env_file), style="bold")
            env_table.add_column("Value")
            for key, value in deployment.items():
                env_table.add_row(key, value)
            console.print(env_table)
        op.success("Rendered configuration table.", changed=0)


def _render_value(value: object) -> str:
    if isinstance(value, Mapping):
        return json.dumps(value, indent=2, sort_keys=True)
    if isinstance(value, list):
        return ", ".join(str(item) for item in value)
    return str(value)


def main() -> None:
    """Console script entry point."""
    app()
