"""Common utilities for policyguard."""

from .logger import setup_logger, get_logger
from .config import Settings, get_settings, load_config, load_settings

__all__ = [
    "Settings",
    "get_logger",
    "get_settings",
    "load_config",
    "load_settings",
    "setup_logger",
]
