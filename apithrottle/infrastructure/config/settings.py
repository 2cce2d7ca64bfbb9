"""Provides functions for loading and accessing configuration settings.

Supports loading from .env files, environment variables, and a dedicated
YAML configuration file (~/.apithrottle/config.yaml).
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional, Dict

import yaml
from dotenv import load_dotenv

from apithrottle.domain.models.common import LimiterOptions

logger = logging.getLogger(__name__)

# --- Configuration Constants ---
DEFAULT_CONFIG_DIR = Path.home() / ".apithrottle"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
ENV_FILE_NAME = ".env"
ENV_PREFIX = "APITHROTTLE_"

# --- Global Configuration Store ---
_config: Dict[str, Any] = {}
_test_config: Dict[str, Any] = {}
_loaded = False


def _flatten(data: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flattens nested YAML sections into dotted keys.

    Nested sections are also kept under their own key, so both
    'rate_limiter.requests_per_second' and 'rate_limiter.endpoints'
    (a mapping) can be looked up.
    """
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        full_key = f"{prefix}{key}"
        flat[full_key] = value
        if isinstance(value, dict) and full_key != "rate_limiter.endpoints":
            flat.update(_flatten(value, f"{full_key}."))
    return flat


def load_configuration(config_file: Path = DEFAULT_CONFIG_FILE, env_file: Optional[Path] = None, force: bool = False) -> None:
    """Loads configuration from environment, .env file, and YAML file.

    Priority order (highest to lowest):
    1. Environment Variables
    2. .env file
    3. YAML configuration file
    4. Default values passed to get_config

    Args:
        config_file: Path to the YAML configuration file.
        env_file: Path to the .env file (searches upwards from cwd if None).
        force: Reload even if configuration was already loaded.
    """
    global _config, _loaded
    if _loaded and not force:
        logger.debug("Configuration already loaded.")
        return

    _config = {}

    # 1. YAML file (lowest priority)
    if config_file.exists():
        try:
            with open(config_file, 'r') as f:
                yaml_config = yaml.safe_load(f)
            if isinstance(yaml_config, dict):
                _config.update(_flatten(yaml_config))
                logger.info(f"Loaded configuration from YAML: {config_file}")
            elif yaml_config is not None:
                logger.warning(f"YAML config file {config_file} did not contain a dictionary.")
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load or parse YAML config {config_file}: {e}")
    else:
        logger.debug(f"YAML config file not found: {config_file}")

    # 2. .env file (medium priority); override=False keeps real env vars on top
    dotenv_path = env_file or find_dotenv_path()
    if dotenv_path:
        if load_dotenv(dotenv_path=dotenv_path, override=False):
            logger.info(f"Loaded environment variables from: {dotenv_path}")
        else:
            logger.debug(f"No variables loaded from {dotenv_path}")
    else:
        logger.debug("Skipping .env file loading (path not found).")

    # 3. Environment variables (highest priority) are read lazily in get_config
    _loaded = True
    logger.debug("Configuration loading process completed.")


def _coerce(value: str) -> Any:
    if value.lower() == 'true':
        return True
    if value.lower() == 'false':
        return False
    try:
        if '.' in value:
            return float(value)
        return int(value)
    except (ValueError, TypeError):
        return value


def _env_keys(key: str) -> list:
    normalized = key.upper().replace('.', '_')
    return [f"{ENV_PREFIX}{normalized}", normalized]


def get_config(key: str, default: Any = None) -> Any:
    """
    Get a configuration value by key.

    Priority:
    1. Test configuration
    2. Environment variable (APITHROTTLE_<KEY>, then <KEY>; dots become underscores)
    3. YAML config
    4. Default value
    """
    if key in _test_config:
        return _test_config[key]

    for env_key in _env_keys(key):
        if env_key in os.environ:
            return _coerce(os.environ[env_key])

    if key in _config:
        return _config[key]

    logger.debug(f"Config key '{key}' not found. Returning default: {default}")
    return default


def set_config(key: str, value: Any) -> None:
    """Sets a configuration value for the rest of the process."""
    logger.debug(f"Setting config: {key} = {value!r}")
    _config[key] = value


def find_dotenv_path() -> Optional[Path]:
    """Searches for the .env file upwards from the current directory."""
    cwd = Path.cwd()
    for path in [cwd] + list(cwd.parents):
        env_path = path / ENV_FILE_NAME
        if env_path.is_file():
            return env_path
    return None


# --- Convenience Functions ---

def get_api_base_url() -> Optional[str]:
    url = get_config('api.base_url')
    return str(url) if url is not None else None


def get_api_token() -> Optional[str]:
    token = get_config('api.token')
    return str(token) if token is not None else None


def get_limiter_options() -> LimiterOptions:
    """Collects rate limiter settings in the shape ApiRateLimiter.configure() takes.

    Only keys that are actually configured are returned.
    """
    options: LimiterOptions = {}
    max_concurrent = get_config('rate_limiter.max_concurrent_requests')
    if max_concurrent is not None:
        options['max_concurrent_requests'] = int(max_concurrent)
    rps = get_config('rate_limiter.requests_per_second')
    if rps is not None:
        options['requests_per_second'] = float(rps)
    endpoints = get_config('rate_limiter.endpoints')
    if isinstance(endpoints, dict) and endpoints:
        options['endpoint_configs'] = endpoints
    elif endpoints is not None:
        logger.warning(f"Ignoring rate_limiter.endpoints: expected a mapping, got {type(endpoints).__name__}")
    return options


def set_config_for_testing(config_dict: Dict[str, Any]) -> None:
    """Overrides configuration values for tests."""
    _test_config.update(config_dict)
    logger.debug(f"Set testing configuration: {config_dict}")


def clear_test_config() -> None:
    """Clear all testing configuration values."""
    _test_config.clear()
    logger.debug("Cleared testing configuration")
