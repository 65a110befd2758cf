"""
Unit tests for configuration models and the YAML/env loader.
"""

import pytest
from pydantic import ValidationError

from position_guard.config import (
    AppConfig,
    ConfigLoader,
    MonitorConfig,
    SafetyExitConfig,
)


@pytest.fixture
def config_dir(tmp_path):
    directory = tmp_path / "config"
    directory.mkdir()
    return directory


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("ENVIRONMENT", "LOG_LEVEL", "PAPER_TRADING", "IDEMPOTENCY_DB_PATH", "TEST_DB_PATH"):
        monkeypatch.delenv(name, raising=False)


def loader_for(config_dir, tmp_path):
    return ConfigLoader(config_dir=config_dir, env_file=tmp_path / "missing.env")


def test_defaults():
    config = AppConfig()

    assert config.monitor.exit_check_interval_seconds == 300
    assert config.monitor.liquidation_check_interval_seconds == 120
    assert config.safety_exits.leveraged_domains == ["perps"]
    assert config.safety_exits.liquidation_margin_threshold == 0.25
    assert config.liquidation.maintenance_margin == 0.03
    assert config.idempotency.failed_retry_after_minutes == 10
    assert config.execution.paper_trading is True
    assert config.system.log_level == "INFO"


def test_missing_file_falls_back_to_defaults(config_dir, tmp_path):
    config = loader_for(config_dir, tmp_path).load_app_config()

    assert config.monitor.exit_check_interval_seconds == 300


def test_yaml_with_placeholders(config_dir, tmp_path, monkeypatch):
    monkeypatch.setenv("TEST_DB_PATH", "/var/lib/guard/idem.duckdb")
    (config_dir / "config.yaml").write_text(
        "monitor:\n"
        "  exit_check_interval_seconds: 60\n"
        "  liquidation_check_interval_seconds: 30\n"
        "idempotency:\n"
        "  database_path: ${TEST_DB_PATH}\n"
        "execution:\n"
        "  paper_trading: ${PAPER_TRADING:true}\n"
    )

    config = loader_for(config_dir, tmp_path).load_app_config()

    assert config.monitor.exit_check_interval_seconds == 60
    assert config.idempotency.database_path == "/var/lib/guard/idem.duckdb"
    assert config.execution.paper_trading is True


def test_env_overrides(config_dir, tmp_path, monkeypatch):
    monkeypatch.setenv("PAPER_TRADING", "false")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    config = loader_for(config_dir, tmp_path).load_app_config()

    assert config.execution.paper_trading is False
    assert config.system.log_level == "DEBUG"


def test_cached_until_reload(config_dir, tmp_path):
    loader = loader_for(config_dir, tmp_path)
    first = loader.load_app_config()

    (config_dir / "config.yaml").write_text("monitor:\n  exit_check_interval_seconds: 600\n")

    assert loader.load_app_config() is first
    assert loader.reload().monitor.exit_check_interval_seconds == 600


def test_validation_errors():
    with pytest.raises(ValidationError):
        MonitorConfig(exit_check_interval_seconds=60, liquidation_check_interval_seconds=120)

    with pytest.raises(ValidationError):
        SafetyExitConfig(leveraged_stop_loss_pct=0.2, default_stop_loss_pct=0.1)

    with pytest.raises(ValidationError):
        MonitorConfig(exit_check_interval_seconds=0)


def test_package_exposes_loader_class_only():
    import position_guard.config as config_package

    assert "ConfigLoader" in config_package.__all__
    for name in ("get_app_config", "reload_config", "get_config_loader"):
        assert not hasattr(config_package, name)
