"""
Configuration package.

This package contains environment settings, their validation, and the
optional YAML file of startup strategies.
"""

from rangepilot.config.config import Settings
from rangepilot.config.config_validator import ConfigValidator, validate_and_log
from rangepilot.config.strategy_file import load_strategy_file

__all__ = [
    "Settings",
    "ConfigValidator",
    "validate_and_log",
    "load_strategy_file",
]
