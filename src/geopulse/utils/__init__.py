"""
Shared utilities: configuration and logging setup.
"""

from .config import (
    Config,
    FetchConfig,
    PacingConfig,
    GenerationConfig,
    MetricsConfig,
    StorageConfig,
    LoggingConfig,
)
from .log_config import configure_logging

__all__ = [
    "Config",
    "FetchConfig",
    "PacingConfig",
    "GenerationConfig",
    "MetricsConfig",
    "StorageConfig",
    "LoggingConfig",
    "configure_logging",
]
