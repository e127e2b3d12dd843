import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import ValidationError

from .errors import ConfigError
from .models import PyroConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = "PYRO_"


class ConfigManager:
    def __init__(self, config_path: Union[str, Path] = "config.yaml"):
        self.config_path = Path(config_path)
        self.config: Optional[PyroConfig] = None
        self.load_config()

    def load_config(self) -> PyroConfig:
        """Load configuration from file, writing the defaults if it is missing"""
        if not self.config_path.exists():
            logger.warning(f"Config file {self.config_path} not found, creating default config")
            self.config = PyroConfig()
            self.save_config()
            return self.config

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                config_data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read configuration {self.config_path}: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigError(f"Configuration {self.config_path} must be a mapping")

        # Merge with environment variables
        config_data = self._merge_env_vars(config_data)

        try:
            self.config = PyroConfig(**config_data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration in {self.config_path}: {e}") from e

        return self.config

    def _merge_env_vars(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Merge environment variables with configuration"""
        for key, value in os.environ.items():
            if not key.startswith(ENV_PREFIX):
                continue
            config_key = key[len(ENV_PREFIX):].lower()

            # PYRO_SCANNING_TEMP_DIR -> scanning.temp_dir
            if '_' not in config_key:
                continue
            section, nested_key = config_key.split('_', 1)
            if section not in PyroConfig.model_fields:
                continue

            section_data = config_data.get(section) or {}
            if not isinstance(section_data, dict):
                raise ConfigError(f"Configuration section '{section}' must be a mapping")
            section_data[nested_key] = value
            config_data[section] = section_data

        return config_data

    def get_config(self) -> PyroConfig:
        """Get current configuration"""
        if self.config is None:
            self.load_config()
        return self.config

    def save_config(self):
        """Save configuration to file"""
        if self.config is None:
            return

        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w', encoding='utf-8') as f:
                yaml.safe_dump(self.config.model_dump(), f, default_flow_style=False)
        except OSError as e:
            raise ConfigError(f"Failed to write configuration {self.config_path}: {e}") from e
