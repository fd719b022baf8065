"""Configuration loader with JSON file and environment variable support."""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from resilience_kernel.models.config import KernelConfig

CONFIG_PATH_ENV = "RESILIENCE_CONFIG_PATH"

# Environment variable -> (section, field)
ENV_OVERRIDES = {
    "RESILIENCE_DAEMON_URL": ("daemon", "base_url"),
    "RESILIENCE_DAEMON_API_KEY": ("daemon", "api_key"),
    "RESILIENCE_DAEMON_BINARY": ("daemon", "binary_path"),
}


def load_config(config_path: Optional[str] = None) -> KernelConfig:
    """
    Load configuration from a JSON file with environment variable overrides.

    Priority: env vars > config file > defaults

    Args:
        config_path: Path to a JSON config file. If None, RESILIENCE_CONFIG_PATH
                     is used; if that is unset too, only defaults and env
                     overrides apply.

    Raises:
        FileNotFoundError: If a config file was named but doesn't exist
        json.JSONDecodeError: If the config file has invalid JSON
        pydantic.ValidationError: If config values are invalid
    """
    if config_path is None:
        config_path = os.environ.get(CONFIG_PATH_ENV)

    config_data: Dict[str, Any] = {}
    if config_path:
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_file}")
        with open(config_file) as f:
            config_data = json.load(f)

    for env_name, (section, field) in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            config_data.setdefault(section, {})[field] = value

    return KernelConfig(**config_data)
