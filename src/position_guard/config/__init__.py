"""
Configuration management module.

Loads configuration from YAML files and provides easy access.
"""

from .settings import (
    AppConfig,
    SystemConfig,
    MonitorConfig,
    SafetyExitConfig,
    LiquidationConfig,
    IdempotencyConfig,
    CacheConfig,
    ExecutionConfig,
)
from .loader import ConfigLoader

__all__ = [
    'AppConfig',
    'SystemConfig',
    'MonitorConfig',
    'SafetyExitConfig',
    'LiquidationConfig',
    'IdempotencyConfig',
    'CacheConfig',
    'ExecutionConfig',
    'ConfigLoader',
]
