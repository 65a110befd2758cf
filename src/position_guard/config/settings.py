"""
Configuration models using Pydantic for type-safe validation.

This module defines all configuration models for the risk core:
- SystemConfig: Log level, data directory
- MonitorConfig: Sweep intervals
- SafetyExitConfig: Auto-generated exit rules
- LiquidationConfig: Maintenance margin
- IdempotencyConfig: Key TTL, retry window, cleanup cadence
- CacheConfig: Snapshot cache file
- ExecutionConfig: Simulated vs live execution
"""

from typing import List, Optional
from pydantic import BaseModel, Field, validator
from enum import Enum
from pathlib import Path


# ============================================================================
# Enums for Configuration
# ============================================================================

class Environment(str, Enum):
    """Deployment environment."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging level."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


# ============================================================================
# System Configuration
# ============================================================================

class SystemConfig(BaseModel):
    """System-wide settings."""

    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Deployment environment"
    )

    log_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Logging level"
    )

    json_logs: bool = Field(
        default=True,
        description="Emit JSON log lines"
    )

    log_file: Optional[str] = Field(
        default=None,
        description="Optional log file path"
    )

    class Config:
        use_enum_values = True


# ============================================================================
# Monitor Configuration
# ============================================================================

class MonitorConfig(BaseModel):
    """Cadence of the background sweeps."""

    exit_check_interval_seconds: float = Field(
        default=300.0,
        gt=0,
        description="General exit-condition sweep interval"
    )

    liquidation_check_interval_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Leverage liquidation-risk sweep interval"
    )

    run_immediately: bool = Field(
        default=True,
        description="Run the first tick as soon as a monitor starts"
    )

    persist_marks: bool = Field(
        default=True,
        description="Write refreshed marks back to the position store"
    )

    @validator('liquidation_check_interval_seconds')
    def liquidation_not_slower_than_exits(cls, v, values):
        """Liquidation sweep must run at least as often as the exit sweep."""
        exit_interval = values.get('exit_check_interval_seconds')
        if exit_interval is not None and v > exit_interval:
            raise ValueError('liquidation_check_interval_seconds must be <= exit_check_interval_seconds')
        return v


# ============================================================================
# Safety Exit Configuration
# ============================================================================

class SafetyExitConfig(BaseModel):
    """Exit rules auto-registered for every newly opened position."""

    leveraged_domains: List[str] = Field(
        default=["perps"],
        description="Domains whose positions carry leverage"
    )

    liquidation_margin_threshold: float = Field(
        default=0.25,
        gt=0,
        lt=1,
        description="Margin ratio at which the liquidation_risk rule fires"
    )

    leveraged_stop_loss_pct: float = Field(
        default=0.05,
        gt=0,
        lt=1,
        description="Default stop-loss distance for leveraged positions"
    )

    default_stop_loss_pct: float = Field(
        default=0.15,
        gt=0,
        lt=1,
        description="Default stop-loss distance for non-leveraged positions"
    )

    @validator('default_stop_loss_pct')
    def leveraged_stop_is_tighter(cls, v, values):
        """Leveraged stop must not be wider than the spot stop."""
        leveraged = values.get('leveraged_stop_loss_pct')
        if leveraged is not None and leveraged > v:
            raise ValueError('leveraged_stop_loss_pct must be <= default_stop_loss_pct')
        return v


# ============================================================================
# Liquidation Configuration
# ============================================================================

class LiquidationConfig(BaseModel):
    """Liquidation price parameters."""

    maintenance_margin: float = Field(
        default=0.03,
        ge=0,
        lt=1,
        description="Maintenance margin fraction used for liquidation prices"
    )


# ============================================================================
# Idempotency Configuration
# ============================================================================

class IdempotencyConfig(BaseModel):
    """Deduplication of side-effecting actions."""

    ttl_hours: float = Field(
        default=24.0,
        gt=0,
        description="Lifetime of an idempotency record"
    )

    failed_retry_after_minutes: float = Field(
        default=10.0,
        ge=0,
        description="Age after which a failed record no longer blocks a retry"
    )

    amount_bucket_usd: float = Field(
        default=10.0,
        gt=0,
        description="USD bucket width used in keys"
    )

    cleanup_interval_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Expired-record cleanup interval"
    )

    database_path: str = Field(
        default=".position_guard/idempotency.duckdb",
        description="DuckDB file holding idempotency records (':memory:' for none)"
    )


# ============================================================================
# Cache Configuration
# ============================================================================

class CacheConfig(BaseModel):
    """Position snapshot cache."""

    cache_file: Path = Field(
        default=Path(".position_guard/cache/positions.json"),
        description="JSON document holding the snapshot cache"
    )


# ============================================================================
# Execution Configuration
# ============================================================================

class ExecutionConfig(BaseModel):
    """Execution mode."""

    paper_trading: bool = Field(
        default=True,
        description="Simulated mode: reductions only touch the position store"
    )


# ============================================================================
# Application Configuration
# ============================================================================

class AppConfig(BaseModel):
    """Complete risk-core configuration."""

    system: SystemConfig = Field(default_factory=SystemConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    safety_exits: SafetyExitConfig = Field(default_factory=SafetyExitConfig)
    liquidation: LiquidationConfig = Field(default_factory=LiquidationConfig)
    idempotency: IdempotencyConfig = Field(default_factory=IdempotencyConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
