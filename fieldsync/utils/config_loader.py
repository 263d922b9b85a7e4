"""Configuration loader for the fieldsync server and device clients."""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import yaml
from pydantic import ValidationError

from fieldsync.models.config import AppConfig

log = structlog.stdlib.get_logger()

CONFIG_DIR = Path(__file__).resolve().parent.parent.parent / "config"


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class ConfigLoader:
    """Loads and validates application configuration from YAML files and environment variables."""

    def __init__(self, config_dir: Path | None = None) -> None:
        self.config_dir = config_dir or CONFIG_DIR
        self.env_var_pattern = re.compile(r"\$\{([^}]+)\}")

    def load_config(self, config_path: Optional[str] = None) -> AppConfig:
        """Load configuration from YAML file with environment variable overrides.

        Values given in the YAML file take precedence over ``FIELDSYNC_*``
        environment variables for the same keys; keys absent from the file
        fall back to the environment and then to model defaults.

        Args:
            config_path: Path to the configuration YAML file. If None, uses
                config/<APP_ENV>.yaml or config/default.yaml

        Returns:
            AppConfig: Validated application configuration

        Raises:
            ConfigurationError: If configuration file is missing or invalid
        """
        if config_path is None:
            config_path = self._get_default_config_path()

        log.info("loading_configuration", config_path=config_path)

        config_dict = self._load_yaml_file(config_path)
        config_dict = self._substitute_env_vars(config_dict)

        try:
            app_config = AppConfig(**config_dict)
        except ValidationError as e:
            log.error("configuration_validation_failed", error=str(e))
            raise ConfigurationError(f"Configuration validation failed: {e}") from e

        log.info("configuration_loaded_successfully")
        return app_config

    def _get_default_config_path(self) -> str:
        """Get the default configuration file path based on APP_ENV."""
        env = os.getenv("APP_ENV", "default")
        config_file = self.config_dir / f"{env}.yaml"

        if not config_file.exists():
            config_file = self.config_dir / "default.yaml"

        if not config_file.exists():
            raise ConfigurationError(
                f"Configuration file not found: {config_file}. "
                f"Please create config/default.yaml or set APP_ENV to a valid environment."
            )

        return str(config_file)

    def _load_yaml_file(self, config_path: str) -> Dict[str, Any]:
        """Load a YAML configuration file.

        Raises:
            ConfigurationError: If file cannot be read or parsed
        """
        try:
            with open(config_path, "r") as f:
                config_dict = yaml.safe_load(f)
        except FileNotFoundError as e:
            raise ConfigurationError(f"Configuration file not found: {config_path}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML file {config_path}: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to load configuration file {config_path}: {e}") from e

        if config_dict is None:
            raise ConfigurationError(f"Configuration file is empty: {config_path}")
        if not isinstance(config_dict, dict):
            raise ConfigurationError(f"Configuration file must contain a mapping: {config_path}")

        log.debug("yaml_file_loaded", config_path=config_path)
        return config_dict

    def _substitute_env_vars(self, config: Any) -> Any:
        """Recursively substitute ${VAR_NAME} references in configuration values."""
        if isinstance(config, dict):
            return {key: self._substitute_env_vars(value) for key, value in config.items()}
        elif isinstance(config, list):
            return [self._substitute_env_vars(item) for item in config]
        elif isinstance(config, str):
            return self._substitute_env_var_in_string(config)
        else:
            return config

    def _substitute_env_var_in_string(self, value: str) -> str:
        """Substitute environment variables in a string.

        Raises:
            ConfigurationError: If a referenced environment variable is not set
        """
        for var_name in self.env_var_pattern.findall(value):
            env_value = os.getenv(var_name)
            if env_value is None:
                raise ConfigurationError(
                    f"Required environment variable not set: {var_name}. "
                    f"Please set {var_name} in your environment or .env file."
                )
            value = value.replace(f"${{{var_name}}}", env_value)

        return value

    def validate_config(self, config: AppConfig) -> list[str]:
        """Return warnings for settings that are valid but likely mistaken."""
        warnings = []

        if config.client.push_batch_size > config.sync.max_push_batch_size:
            warnings.append(
                f"client.push_batch_size ({config.client.push_batch_size}) exceeds "
                f"sync.max_push_batch_size ({config.sync.max_push_batch_size}); "
                "pushes will be refused by the server"
            )

        if config.client.retry_base_delay_seconds > config.client.retry_max_delay_seconds:
            warnings.append(
                f"client.retry_base_delay_seconds ({config.client.retry_base_delay_seconds}) "
                f"is above client.retry_max_delay_seconds ({config.client.retry_max_delay_seconds})"
            )

        if config.database.url.startswith("sqlite") and ":memory:" in config.database.url:
            warnings.append("database.url is an in-memory SQLite database; data is lost on restart")

        if not config.database.url.startswith("sqlite") and config.sync.pull_settle_seconds == 0:
            warnings.append(
                "sync.pull_settle_seconds is 0 on a database with concurrent writers; "
                "rows committed late can be missed by pulls"
            )

        if warnings:
            log.warning("configuration_validation_warnings", warnings=warnings)

        return warnings
