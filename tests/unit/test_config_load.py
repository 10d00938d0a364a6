"""
Configuration loading and validation.

If config loading is broken the worker cannot start, so these run first.
"""
import pytest
from pathlib import Path

from copytrader.config.config import Config, WatcherConfig, load_config

CONFIG_PATH = "copytrader/config/config.yaml"


def test_config_yaml_exists():
    assert Path(CONFIG_PATH).exists(), f"Config file not found at {CONFIG_PATH}"


def test_config_loads_successfully():
    config = load_config(CONFIG_PATH)
    assert config is not None
    assert config.exchange.market_type == "spot"


def test_default_path_is_packaged_yaml():
    assert load_config().exchange.name == load_config(CONFIG_PATH).exchange.name


def test_copy_defaults_are_sane():
    config = load_config(CONFIG_PATH)
    assert 0 < config.copy_trading.default_ratio_percent <= 100
    assert config.copy_trading.max_order_attempts == 3
    assert config.copy_trading.retry_base_delay_seconds == 1.0
    assert config.copy_trading.trade_fee_percent == 2.0
    assert config.watcher.reconnect_floor_seconds == 5.0
    assert config.watcher.reconnect_ceiling_seconds == 60.0


def test_unset_env_references_fall_back_to_defaults(monkeypatch):
    for name in ("SMTP_HOST", "SMTP_USER", "SMTP_PASS", "APP_BASE_URL", "ENCRYPTION_KEY"):
        monkeypatch.delenv(name, raising=False)
    config = load_config(CONFIG_PATH)
    assert config.billing.smtp_host is None
    assert config.billing.app_base_url == "http://localhost:3000"
    assert config.security.encryption_key is None


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///worker.db")
    monkeypatch.setenv("ENVIRONMENT", "dev")
    monkeypatch.setenv("SMTP_HOST", "smtp.example.com")
    config = load_config(CONFIG_PATH)
    assert config.data.database_url == "sqlite:///worker.db"
    assert config.environment == "dev"
    assert config.billing.smtp_host == "smtp.example.com"


def test_bad_encryption_key_rejected(monkeypatch):
    monkeypatch.setenv("ENCRYPTION_KEY", "not-hex")
    with pytest.raises(ValueError):
        load_config(CONFIG_PATH)


def test_ceiling_below_floor_rejected():
    with pytest.raises(ValueError):
        WatcherConfig(reconnect_floor_seconds=10.0, reconnect_ceiling_seconds=5.0)


def test_missing_file():
    with pytest.raises(FileNotFoundError):
        Config.from_yaml("does/not/exist.yaml")
