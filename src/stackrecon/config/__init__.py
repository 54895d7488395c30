"""Configuration management for stack reconciliation."""

from .models import ProjectConfig, ReconcilerSettings, StackConfig
from .parser import DEFAULT_CONFIG_FILE, Config, ConfigValidationError

__all__ = [
    "ProjectConfig",
    "ReconcilerSettings",
    "StackConfig",
    "Config",
    "ConfigValidationError",
    "DEFAULT_CONFIG_FILE",
]
