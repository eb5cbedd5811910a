"""Tests for the n8nctl CLI."""
from __future__ import annotations

import gzip
import json
import os
import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from n8nctl import __version__
from n8nctl.cli import app
from n8nctl.environment import DeploymentSettings, EnvironmentStore
from n8nctl.providers.certbot import CertificateError, CertificateManager
from n8nctl.providers.cron import CronTable
from n8nctl.providers.docker import DockerComposeProvider, StackError
from n8nctl.providers.nginx import NginxProvider

runner = CliRunner()
DOMAIN = "n8n.example.com"
_REAL_WHICH = shutil.which


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


class Host:
    """Records every external command the CLI would have run."""

    def __init__(self) -> None:
        self.crontab: list[str] = []
        self.nginx: list[tuple[str, ...]] = []
        self.compose: list[tuple[str, ...]] = []
        self.certbot: list[tuple[str, ...]] = []


@pytest.fixture
def host(monkeypatch: pytest.MonkeyPatch) -> Host:
    """Replace subprocess boundaries with in-memory fakes."""
    state = Host()

    def fake_nginx(self: NginxProvider, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        state.nginx.append(tuple(args))
        return subprocess.CompletedProcess(args, 0, "", "")

    def fake_crontab(
        self: CronTable,
        args: Sequence[str],
        *,
        check: bool,
        stdin: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        if list(args) == ["-l"]:
            output = "\n".join(state.crontab) + "\n" if state.crontab else ""
            return subprocess.CompletedProcess(args, 0, output, "")
        state.crontab = (stdin or "").splitlines()
        return subprocess.CompletedProcess(args, 0, "", "")

    def fake_compose(
        self: DockerComposeProvider, args: Sequence[str]
    ) -> subprocess.CompletedProcess[str]:
        state.compose.append(tuple(args))
        return subprocess.CompletedProcess(args, 0, "", "")

    def fake_dump(self: DockerComposeProvider, user: str, database: str, destination: Path) -> int:
        with gzip.open(destination, "wb") as handle:
            handle.write(b"-- dump")
        return 7

    def fake_certbot(
        self: CertificateManager, args: Sequence[str]
    ) -> subprocess.CompletedProcess[str]:
        state.certbot.append(tuple(args))
        raise CertificateError("certbot certonly failed (exit 1): DNS problem: NXDOMAIN")

    def fake_which(name: str, *args: object, **kwargs: object) -> str | None:
        return _REAL_WHICH(name) or f"/usr/bin/{name}"

    monkeypatch.setattr(NginxProvider, "_run_nginx", fake_nginx)
    monkeypatch.setattr(CronTable, "_run", fake_crontab)
    monkeypatch.setattr(DockerComposeProvider, "_compose", fake_compose)
    monkeypatch.setattr(DockerComposeProvider, "dump_database", fake_dump)
    monkeypatch.setattr(CertificateManager, "_run_certbot", fake_certbot)
    monkeypatch.setattr("n8nctl.orchestrator.shutil.which", fake_which)
    return state


@pytest.fixture
def env(tmp_path: Path) -> dict[str, str]:
    """Point n8nctl at a config file rooted in *tmp_path*."""
    config = {
        "deploy_root": str(tmp_path / "n8n"),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "templates_dir": str(tmp_path / "templates"),
        "lock_timeout": 2,
        "nginx": {
            "sites_available": str(tmp_path / "nginx" / "sites-available"),
            "sites_enabled": str(tmp_path / "nginx" / "sites-enabled"),
            "webroot": str(tmp_path / "www"),
        },
        "tls": {"live_dir": str(tmp_path / "letsencrypt" / "live")},
        "docker": {"data_uid": os.getuid(), "data_gid": os.getgid()},
        "backups": {"log_file": str(tmp_path / "logs" / "backup.log")},
    }
    config_path = tmp_path / "n8nctl.yml"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")
    # Wide console so rich does not wrap messages asserted below.
    return {"N8NCTL_CONFIG_FILE": str(config_path), "COLUMNS": "200"}


def _install(env: dict[str, str]):
    return runner.invoke(
        app,
        ["install", "--domain", DOMAIN, "--email", "ops@example.com"],
        env=env,
    )


def _operations(tmp_path: Path) -> list[dict[str, object]]:
    log_path = tmp_path / "logs" / "operations.jsonl"
    return [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]


def test_version_flag(env: dict[str, str]) -> None:
    """--version prints the package version."""
    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert f"n8nctl {__version__}" in result.stdout


def test_help_lists_commands(env: dict[str, str]) -> None:
    """Running without a command shows help."""
    result = runner.invoke(app, [], env=env)

    assert result.exit_code == 0
    assert "install" in result.stdout
    assert "backup" in result.stdout


def test_invalid_config_exits_with_validation_code(tmp_path: Path) -> None:
    """A broken config file maps to exit code 2."""
    config_path = tmp_path / "bad.yml"
    config_path.write_text("unknown: 1\n", encoding="utf-8")

    result = runner.invoke(app, ["config", "show"], env={"N8NCTL_CONFIG_FILE": str(config_path)})

    assert result.exit_code == 2
    assert "Invalid configuration" in result.stdout


def test_install_completes_with_certificate_warning(
    tmp_path: Path, env: dict[str, str], host: Host
) -> None:
    """Certificate failure leaves a working HTTP deployment and exit code 0."""
    result = _install(env)

    assert result.exit_code == 0, result.stdout
    assert "Warning" in result.stdout
    assert "NXDOMAIN" in result.stdout
    assert host.certbot and host.certbot[0][0] == "certonly"
    assert ("up", "-d", "--remove-orphans") in host.compose

    deploy_root = tmp_path / "n8n"
    env_file = deploy_root / ".env"
    assert env_file.stat().st_mode & 0o777 == 0o600
    assert (deploy_root / "docker-compose.yml").exists()
    site = tmp_path / "nginx" / "sites-available" / "n8n.conf"
    assert f"server_name {DOMAIN};" in site.read_text(encoding="utf-8")

    backup_lines = [line for line in host.crontab if "backup run" in line]
    assert len(backup_lines) == 1
    assert backup_lines[0].startswith(f"30 2 * * * N8NCTL_CONFIG_FILE={env['N8NCTL_CONFIG_FILE']} ")

    record = _operations(tmp_path)[-1]
    assert record["command"] == "install"
    assert record["result"]["status"] == "warning"  # type: ignore[index]
    step_names = [step["name"] for step in record["steps"]]  # type: ignore[index]
    assert "stage.certificate" in step_names
    assert "stage.backup-schedule" in step_names


@pytest.mark.mutation_timeout
def test_install_shows_secrets_only_once(
    tmp_path: Path, env: dict[str, str], host: Host
) -> None:
    """Generated secrets are printed on the first run and never again."""
    first = _install(env)
    settings = EnvironmentStore(tmp_path / "n8n" / ".env").require()

    second = _install(env)

    assert first.exit_code == 0, first.stdout
    assert second.exit_code == 0, second.stdout
    assert "Generated secrets" in first.stdout
    assert settings.postgres_password in first.stdout
    assert "Generated secrets" not in second.stdout
    assert settings.postgres_password not in second.stdout
    rerun = EnvironmentStore(tmp_path / "n8n" / ".env").require()
    assert rerun.encryption_key == settings.encryption_key
    assert len([line for line in host.crontab if "backup run" in line]) == 1
    operations_log = (tmp_path / "logs" / "operations.jsonl").read_text(encoding="utf-8")
    assert settings.encryption_key not in operations_log


def test_install_rejects_invalid_domain(env: dict[str, str], host: Host) -> None:
    """Bad operator input exits with the validation code before any stage runs."""
    result = runner.invoke(
        app,
        ["install", "--domain", "not a domain", "--email", "ops@example.com"],
        env=env,
    )

    assert result.exit_code == 2
    assert host.compose == []


def test_install_rejects_invalid_email(env: dict[str, str], host: Host) -> None:
    """Email addresses need a domain part."""
    result = runner.invoke(
        app,
        ["install", "--domain", DOMAIN, "--email", "ops"],
        env=env,
    )

    assert result.exit_code == 2
    assert "not a valid email" in result.stdout


def test_install_prompts_for_missing_values(
    tmp_path: Path, env: dict[str, str], host: Host
) -> None:
    """Domain and email are prompted for when not passed as options."""
    result = runner.invoke(app, ["install"], env=env, input=f"{DOMAIN}\nops@example.com\n")

    assert result.exit_code == 0, result.stdout
    assert EnvironmentStore(tmp_path / "n8n" / ".env").require().domain == DOMAIN


def test_install_stage_failure_maps_to_provider_code(
    tmp_path: Path,
    env: dict[str, str],
    host: Host,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failed docker stage exits with code 4 and names the stage."""
    def failing_compose(self: DockerComposeProvider, args: Sequence[str]):
        raise StackError("docker compose pull failed (exit 1): manifest unknown")

    monkeypatch.setattr(DockerComposeProvider, "_compose", failing_compose)

    result = _install(env)

    assert result.exit_code == 4
    assert "Stage 'stack' failed" in result.stdout
    record = _operations(tmp_path)[-1]
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert record["result"]["rc"] == 4  # type: ignore[index]


@pytest.mark.mutation_timeout
def test_install_shows_secrets_when_a_later_stage_fails(
    tmp_path: Path,
    env: dict[str, str],
    host: Host,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Secrets stored before a fatal stage are still printed on that run."""
    def failing_compose(self: DockerComposeProvider, args: Sequence[str]):
        raise StackError("docker compose pull failed (exit 1): manifest unknown")

    with monkeypatch.context() as patch:
        patch.setattr(DockerComposeProvider, "_compose", failing_compose)
        failed = _install(env)
    settings = EnvironmentStore(tmp_path / "n8n" / ".env").require()

    retried = _install(env)

    assert failed.exit_code == 4
    assert "Generated secrets" in failed.stdout
    assert settings.encryption_key in failed.stdout
    assert settings.postgres_password in failed.stdout
    assert retried.exit_code == 0, retried.stdout
    assert "Generated secrets" not in retried.stdout


def test_backup_run_without_install_exits_environment(
    tmp_path: Path, env: dict[str, str], host: Host
) -> None:
    """The cron entry point fails clearly on an unprovisioned host."""
    result = runner.invoke(app, ["backup", "run"], env=env)

    assert result.exit_code == 3
    assert "n8nctl install" in result.stdout
    assert not (tmp_path / "n8n" / "backups").exists()


@pytest.mark.mutation_timeout
def test_backup_run_and_list(tmp_path: Path, env: dict[str, str], host: Host) -> None:
    """A backup run produces artifacts that backup list reports."""
    assert _install(env).exit_code == 0
    (tmp_path / "n8n" / "n8n" / "config").write_text("{}", encoding="utf-8")

    run = runner.invoke(app, ["backup", "run"], env=env)
    assert run.exit_code == 0, run.stdout

    listing = runner.invoke(app, ["backup", "list", "--json"], env=env)
    assert listing.exit_code == 0, listing.stdout
    payload = _extract_json(listing.stdout)
    assert payload["backup_dir"] == str(tmp_path / "n8n" / "backups")
    kinds = sorted(item["kind"] for item in payload["artifacts"])  # type: ignore[union-attr]
    assert kinds == ["config", "database"]

    record = [op for op in _operations(tmp_path) if op["command"] == "backup run"][-1]
    assert record["result"]["status"] == "success"  # type: ignore[index]
    step_names = [step["name"] for step in record["steps"]]  # type: ignore[index]
    assert step_names == ["backup.dump", "backup.archive", "backup.prune", "backup.sync"]


def test_backup_list_table_when_empty(env: dict[str, str]) -> None:
    """An empty backup directory renders a placeholder row."""
    result = runner.invoke(app, ["backup", "list"], env=env)

    assert result.exit_code == 0
    assert "(none)" in result.stdout


def test_config_show_masks_secrets(tmp_path: Path, env: dict[str, str]) -> None:
    """Secrets from the environment file are never displayed in full."""
    EnvironmentStore(tmp_path / "n8n" / ".env").save(
        DeploymentSettings(
            domain=DOMAIN,
            admin_email="ops@example.com",
            backup_dir=tmp_path / "n8n" / "backups",
            encryption_key="encryptionkeyvalue-" + "e" * 24,
            postgres_password="postgrespassword-" + "p" * 24,
        )
    )

    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    deployment = payload["deployment"]
    assert deployment["DOMAIN"] == DOMAIN  # type: ignore[index]
    assert deployment["N8N_ENCRYPTION_KEY"] == "encr…"  # type: ignore[index]
    assert "encryptionkeyvalue" not in result.stdout
    assert "postgrespassword" not in result.stdout
    assert payload["config"]["deploy_root"] == str(tmp_path / "n8n")  # type: ignore[index]


def test_config_show_without_deployment(env: dict[str, str]) -> None:
    """Before install, config show points the operator at install."""
    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == 0
    assert "n8nctl install" in result.stdout
