"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from n8nctl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.deploy_root == Path("/var/n8n")
    assert config.env_file == Path("/var/n8n/.env")
    assert config.compose_file == Path("/var/n8n/docker-compose.yml")
    assert config.app_data_dir == Path("/var/n8n/n8n")
    assert config.db_data_dir == Path("/var/n8n/db")
    assert config.templates_dir == Path("/etc/n8nctl/templates")
    assert config.lock_timeout == 30.0
    assert config.step_timeout == 900.0
    assert config.tls.enabled is True
    assert config.tls.renew_before_days == 30
    assert config.nginx.site_name == "n8n.conf"
    assert config.nginx.webroot == Path("/var/www/html")
    assert config.docker.postgres_image == "postgres:15"
    assert config.docker.n8n_image == "n8nio/n8n:latest"
    assert config.backups.schedule == "30 2 * * *"
    assert config.backups.log_file == Path("/var/log/n8n-backup.log")
    assert config.deployment.s3_bucket is None


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "n8nctl.yml"
    cfg.write_text(
        f"deploy_root: {tmp_path / 'n8n'}\n"
        "tls:\n"
        "  enabled: false\n"
        "docker:\n"
        "  n8n_image: n8nio/n8n:1.60.0\n"
        "backups:\n"
        "  schedule: '15 3 * * *'\n"
        "deployment:\n"
        "  s3_bucket: my-bucket\n"
        "  retention_days: 14\n",
        encoding="utf-8",
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.deploy_root == tmp_path / "n8n"
    assert config.env_file == tmp_path / "n8n" / ".env"
    assert config.tls.enabled is False
    assert config.docker.n8n_image == "n8nio/n8n:1.60.0"
    assert config.backups.schedule == "15 3 * * *"
    assert config.deployment.s3_bucket == "my-bucket"
    assert config.deployment.retention_days == 14


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "n8nctl.yml"
    cfg.write_text("lock_timeout: 10\n", encoding="utf-8")
    env = {
        "N8NCTL_TLS__ENABLED": "false",
        "N8NCTL_DEPLOY_ROOT": str(tmp_path / "srv"),
        "N8NCTL_LOCK_TIMEOUT": "45",
        "N8NCTL_TEMPLATES_DIR": str(tmp_path / "templates"),
        "N8NCTL_BACKUPS__SCHEDULE": "0 4 * * *",
        "N8NCTL_DOCKER__DATA_UID": "1001",
        "N8NCTL_DEPLOYMENT__TIMEZONE": "Europe/Berlin",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.tls.enabled is False
    assert config.deploy_root == tmp_path / "srv"
    assert config.lock_timeout == 45.0
    assert config.templates_dir == tmp_path / "templates"
    assert config.backups.schedule == "0 4 * * *"
    assert config.docker.data_uid == 1001
    assert config.deployment.timezone == "Europe/Berlin"


def test_overrides_beat_environment(tmp_path: Path) -> None:
    """Programmatic overrides (CLI flags) win over environment variables."""
    env = {"N8NCTL_LOCK_TIMEOUT": "45"}

    config = load_config(
        config_file=tmp_path / "missing.yml",
        env=env,
        overrides={"lock_timeout": 5},
    )

    assert config.lock_timeout == 5.0


def test_env_can_select_config_file(tmp_path: Path) -> None:
    """Environment variable selects an alternate config file."""
    cfg = tmp_path / "override.yml"
    cfg.write_text("step_timeout: 120\n", encoding="utf-8")

    config = load_config(env={"N8NCTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.step_timeout == 120.0


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """Invalid YAML raises a ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unexpected top-level keys trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("unknown: value\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_nested_keys_raise(tmp_path: Path) -> None:
    """Extra section keys produce ConfigError for clarity."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("tls:\n  enabled: true\n  extra: true\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown tls configuration keys"):
        load_config(config_file=cfg, env={})


def test_invalid_cron_schedule_raises(tmp_path: Path) -> None:
    """Backup schedules must be five-field cron expressions."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("backups:\n  schedule: '@daily'\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="five-field cron expression"):
        load_config(config_file=cfg, env={})


@pytest.mark.parametrize(
    ("key", "value"),
    [("lock_timeout", "0"), ("step_timeout", "-5"), ("lock_timeout", "soon")],
)
def test_invalid_timeouts_raise(tmp_path: Path, key: str, value: str) -> None:
    """Timeouts must be positive numbers."""
    with pytest.raises(ConfigError):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={f"N8NCTL_{key.upper()}": value},
        )


def test_retention_must_be_positive(tmp_path: Path) -> None:
    """A zero retention window would delete every backup and is rejected."""
    with pytest.raises(ConfigError, match="retention_days"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={"N8NCTL_DEPLOYMENT__RETENTION_DAYS": "0"},
        )


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """The config renders to plain data for ``config show --json``."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    data = config.to_dict()

    assert data["deploy_root"] == "/var/n8n"
    assert data["backups"]["schedule"] == "30 2 * * *"  # type: ignore[index]
    assert data["deployment"]["s3_bucket"] is None  # type: ignore[index]
