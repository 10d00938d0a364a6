"""
Configuration models for the copy-trading worker.

Uses Pydantic for validation and type safety.
"""
import os
import re
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ExchangeConfig(BaseSettings):
    """Exchange configuration (ccxt exchange id and market)."""
    model_config = SettingsConfigDict(extra="ignore")

    name: str = "bybit"
    market_type: Literal["spot"] = "spot"
    quote_currency: str = "USDT"
    use_sandbox: bool = False
    timeout_ms: int = Field(default=30000, ge=1000, le=120000)


class CopyConfig(BaseSettings):
    """Trade copier sizing, retry and fee settings."""
    model_config = SettingsConfigDict(extra="ignore")

    default_ratio_percent: float = Field(default=10.0, gt=0.0, le=100.0)
    min_trade_usd: float = Field(default=1.0, ge=0.0)
    max_order_attempts: int = Field(default=3, ge=1, le=10)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0.0, le=30.0)
    # Per-position performance fee recorded on profitable follower closes
    trade_fee_percent: float = Field(default=2.0, ge=0.0, le=50.0)
    default_approval_window_minutes: int = Field(default=5, ge=1, le=1440)


class WatcherConfig(BaseSettings):
    """Leader order stream reconnect policy."""
    model_config = SettingsConfigDict(extra="ignore")

    reconnect_floor_seconds: float = Field(default=5.0, gt=0.0)
    reconnect_ceiling_seconds: float = Field(default=60.0, gt=0.0)

    @field_validator("reconnect_ceiling_seconds")
    @classmethod
    def validate_ceiling(cls, v, info):
        floor = info.data.get("reconnect_floor_seconds", 5.0)
        if v < floor:
            raise ValueError("reconnect_ceiling_seconds must be >= reconnect_floor_seconds")
        return v


class ReconciliationConfig(BaseSettings):
    """Startup backfill of leader orders missed during downtime."""
    model_config = SettingsConfigDict(extra="ignore")

    reconcile_enabled: bool = True
    lookback_hours: int = Field(default=24, ge=1, le=168)
    order_fetch_limit: int = Field(default=100, ge=1, le=1000)


class SchedulerConfig(BaseSettings):
    """Timer cadences for the background jobs."""
    model_config = SettingsConfigDict(extra="ignore")

    heartbeat_seconds: float = Field(default=15.0, gt=0.0)
    job_check_seconds: float = Field(default=300.0, gt=0.0)
    pending_sweep_seconds: float = Field(default=30.0, gt=0.0)
    transfer_lookback_days: int = Field(default=30, ge=1, le=365)
    heartbeat_stale_seconds: float = Field(default=60.0, gt=0.0)


class BillingConfig(BaseSettings):
    """Quarterly invoicing and invoice email delivery."""
    model_config = SettingsConfigDict(extra="ignore")

    min_invoice_amount: float = Field(default=0.01, ge=0.0)
    app_base_url: str = "http://localhost:3000"
    smtp_host: Optional[str] = None
    smtp_port: int = Field(default=587, ge=1, le=65535)
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_sender: str = "billing@localhost"


class DataConfig(BaseSettings):
    """Persistence configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: Optional[str] = None


class SecurityConfig(BaseSettings):
    """API key encryption."""
    model_config = SettingsConfigDict(extra="ignore")

    encryption_key: Optional[str] = None

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, v):
        if v is None or v == "" or v.startswith("${"):
            return None
        if not re.fullmatch(r"[0-9a-fA-F]{64}", v):
            raise ValueError("encryption_key must be a 64-character hex string (32 bytes)")
        return v


class MonitoringConfig(BaseSettings):
    """Logging and alerting."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = "logs/worker.log"


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    copy_trading: CopyConfig = Field(default_factory=CopyConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "prod"] = "prod"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # ${VAR} or $VAR, left untouched when unset
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = _drop_unresolved(yaml.safe_load(expanded_content) or {})

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        db_url = os.getenv("DATABASE_URL")
        if db_url:
            config_dict.setdefault("data", {})["database_url"] = db_url

        encryption_key = os.getenv("ENCRYPTION_KEY")
        if encryption_key:
            config_dict.setdefault("security", {})["encryption_key"] = encryption_key

        return cls(**config_dict)


def _drop_unresolved(node):
    """Remove values still holding an unexpanded ${VAR} so field defaults apply."""
    if isinstance(node, dict):
        return {
            k: _drop_unresolved(v)
            for k, v in node.items()
            if not (isinstance(v, str) and v.startswith("${"))
        }
    return node


def load_config(config_path: str | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses copytrader/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    return Config.from_yaml(config_path)
