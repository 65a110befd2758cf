"""
Configuration loader with YAML + environment variable support.

Supports:
- Loading from a YAML file in the config directory
- ${ENV_VAR} / ${ENV_VAR:default} placeholders
- Environment variable overrides
- Pydantic validation
- Caching and hot reload
"""

import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional
from dotenv import load_dotenv
import logging

from .settings import AppConfig


logger = logging.getLogger(__name__)

# Default config directory: ./config relative to the working directory
DEFAULT_CONFIG_DIR = Path(os.getenv("POSITION_GUARD_CONFIG_DIR", "config"))

_TRUE_VALUES = {"1", "true", "yes", "on"}


# ============================================================================
# ConfigLoader - Main Configuration Loader
# ============================================================================

class ConfigLoader:
    """
    Configuration loader with YAML + environment variable support.

    Features:
    - Loads configuration from config.yaml
    - Overrides with environment variables
    - Validates using Pydantic models
    - Caches the loaded configuration
    """

    def __init__(self, config_dir: Optional[Path] = None, env_file: Optional[Path] = None):
        """
        Initialize configuration loader.

        Args:
            config_dir: Configuration directory (defaults to ./config)
            env_file: Optional .env file to load before resolving placeholders
        """
        self.config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        self._cache: Dict[str, Any] = {}

        env_path = Path(env_file) if env_file else Path(".env")
        if env_path.exists():
            load_dotenv(env_path)

        logger.info(f"ConfigLoader initialized with config_dir: {self.config_dir}")

    def load_yaml(self, config_name: str) -> Dict[str, Any]:
        """
        Load a YAML configuration file.

        Args:
            config_name: Name of the config file (without .yaml extension)

        Returns:
            Dictionary containing configuration data

        Raises:
            FileNotFoundError: If config file doesn't exist
        """
        config_path = self.config_dir / f"{config_name}.yaml"

        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        logger.debug(f"Loading YAML config from: {config_path}")

        with open(config_path, 'r') as f:
            config = yaml.safe_load(f) or {}

        return self._replace_env_vars(config)

    def _replace_env_vars(self, config: Any) -> Any:
        """
        Recursively replace environment variable placeholders in config.

        Placeholders format: ${ENV_VAR_NAME} or ${ENV_VAR_NAME:default_value}
        """
        if isinstance(config, dict):
            return {k: self._replace_env_vars(v) for k, v in config.items()}
        elif isinstance(config, list):
            return [self._replace_env_vars(item) for item in config]
        elif isinstance(config, str):
            if config.startswith("${") and config.endswith("}"):
                env_expr = config[2:-1]

                if ":" in env_expr:
                    var_name, default_value = env_expr.split(":", 1)
                    return os.getenv(var_name.strip(), default_value.strip())
                else:
                    var_name = env_expr.strip()
                    value = os.getenv(var_name)
                    if value is None:
                        logger.warning(f"Environment variable {var_name} not set, using empty string")
                        return ""
                    return value

        return config

    def load_app_config(self, use_cache: bool = True) -> AppConfig:
        """
        Load complete application configuration.

        Args:
            use_cache: Use cached config if available

        Returns:
            Validated AppConfig instance
        """
        cache_key = "app_config"

        if use_cache and cache_key in self._cache:
            logger.debug("Returning cached app config")
            return self._cache[cache_key]

        config_data: Dict[str, Any] = {}

        try:
            config_data.update(self.load_yaml("config"))
        except FileNotFoundError:
            logger.warning("config.yaml not found, using defaults")

        config_data = self._apply_env_overrides(config_data)

        try:
            app_config = AppConfig(**config_data)
            logger.info("Configuration loaded and validated successfully")
        except Exception as e:
            logger.error(f"Configuration validation failed: {e}")
            raise

        if use_cache:
            self._cache[cache_key] = app_config

        return app_config

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply environment variable overrides to configuration.

        Example: LOG_LEVEL=DEBUG, PAPER_TRADING=false
        """
        config.setdefault("system", {})
        config.setdefault("execution", {})
        config.setdefault("idempotency", {})

        if env_val := os.getenv("ENVIRONMENT"):
            config["system"]["environment"] = env_val

        if env_val := os.getenv("LOG_LEVEL"):
            config["system"]["log_level"] = env_val.upper()

        if env_val := os.getenv("PAPER_TRADING"):
            config["execution"]["paper_trading"] = env_val.strip().lower() in _TRUE_VALUES

        if env_val := os.getenv("IDEMPOTENCY_DB_PATH"):
            config["idempotency"]["database_path"] = env_val

        return config

    def reload(self) -> AppConfig:
        """Reload configuration from disk (hot reload)."""
        logger.info("Reloading configuration from disk")
        self._cache.clear()
        return self.load_app_config(use_cache=False)

    def clear_cache(self):
        """Clear the configuration cache."""
        self._cache.clear()
