"""Configuration management for policyguard.

Runtime settings come from POLICYGUARD_* environment variables (and an
optional .env file), optionally overlaid with a YAML configuration file.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict


# Variables commonly used by frameworks to name the deployment environment,
# consulted in order when POLICYGUARD_ENVIRONMENT is not set
ENVIRONMENT_VARIABLES = [
    "ENV",
    "ENVIRONMENT",
    "APP_ENV",
    "NODE_ENV",
    "RAILS_ENV",
    "RACK_ENV",
    "DJANGO_ENV",
    "FLASK_ENV",
    "SYMFONY_ENV",
    "SPRING_PROFILES_ACTIVE",
    "ASPNETCORE_ENVIRONMENT",
    "GO_ENV",
    "MIX_ENV",
    "RUST_ENV",
]


class Settings(BaseSettings):
    # Execution context
    environment: Optional[str] = None

    # Dispatch
    max_workers: int = 4
    artifact_concurrency: int = 4
    rule_timeout: float = 300.0
    cancel_grace_period: float = 10.0

    # Walker
    max_text_file_size: int = 5242880  # 5MB
    walker_exclude: List[str] = [r"(^|/)\.git/"]

    # Violations of rules at or above this confidence have their content masked
    redact_confidence: Optional[str] = None

    # assure-api
    api_timeout: float = 30.0
    api_max_retries: int = 2
    api_backoff_base: float = 0.5
    credential_prefix: str = "POLICYGUARD_"

    # assure-rego
    opa_binary: str = "opa"

    # Webhooks
    webhook_url: Optional[str] = None
    webhook_timeout: int = 30
    webhook_max_retries: int = 3
    webhook_backoff_base: float = 1.0
    webhook_backoff_max: float = 30.0
    webhook_auth_type: Optional[str] = None  # bearer, basic
    webhook_auth_value: Optional[str] = None

    # Observe mode
    observe_interval: float = 300.0

    # Logging
    log_level: str = "INFO"
    log_dir: str = "/var/log/policyguard"
    file_logging: bool = False

    model_config = SettingsConfigDict(
        env_prefix="POLICYGUARD_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def current_environment(self) -> Optional[str]:
        """Environment tag rules are matched against."""
        return self.environment or detect_environment()


@lru_cache
def get_settings() -> Settings:
    return Settings()


def detect_environment() -> Optional[str]:
    """Detect the deployment environment from well-known variables.

    Returns:
        First non-empty value found, or None
    """
    for name in ENVIRONMENT_VARIABLES:
        value = os.environ.get(name)
        if value:
            return value
    return None


def load_config(config_path: str) -> Dict[str, Any]:
    """Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is invalid YAML
        TypeError: If the document root is not a mapping
    """
    config_file = Path(config_path)

    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with config_file.open("r") as f:
        config = yaml.safe_load(f)

    if config is None:
        config = {}

    if not isinstance(config, dict):
        raise TypeError(
            f"Configuration root must be a mapping, got {type(config).__name__}"
        )

    return _expand_env_vars(config)


def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand environment variables in configuration.

    Args:
        obj: Configuration object (dict, list, str, etc.)

    Returns:
        Configuration with expanded environment variables
    """
    if isinstance(obj, dict):
        return {key: _expand_env_vars(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        return os.path.expandvars(obj)
    else:
        return obj


def load_settings(config_path: Optional[str] = None, **overrides: Any) -> Settings:
    """Build Settings from the environment, a YAML file and explicit overrides.

    Values from the file take precedence over environment variables, and
    explicit overrides take precedence over both. None-valued overrides are
    ignored so CLI flags that were not given fall through.

    Args:
        config_path: Optional path to a YAML configuration file
        **overrides: Individual setting values

    Returns:
        Settings instance
    """
    values: Dict[str, Any] = {}
    if config_path:
        values.update(load_config(config_path))
    values.update({key: value for key, value in overrides.items() if value is not None})
    return Settings(**values)
