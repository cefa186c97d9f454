"""
Configuration

Typed configuration for the generation engine. Defaults reproduce the
behaviour of the hosted generator; every value can be overridden through
``GEOPULSE_*`` environment variables via ``Config.from_env()``.
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional


def _env_str(env: Mapping[str, str], name: str, default: str) -> str:
    return env.get(name, default)


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {value!r}")


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    value = env.get(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {value!r}")


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class FetchConfig:
    """HTTP settings for tile downloads."""
    user_agent: str = "GeoPulse-Generator/1.0"
    request_timeout: float = 15.0
    max_workers: int = 1


@dataclass
class PacingConfig:
    """Fixed inter-request throttle applied per tile source."""
    short_delay: float = 0.05
    long_delay: float = 0.2
    long_pause_every: int = 10


@dataclass
class GenerationConfig:
    """Limits and heuristics used by validation and estimation."""
    min_zoom: int = 1
    max_zoom: int = 22
    confirmation_threshold: int = 5000


@dataclass
class MetricsConfig:
    enabled: bool = True
    prometheus_gateway: Optional[str] = None
    job_name: str = "geopulse_generation"


@dataclass
class StorageConfig:
    """Where the HTTP service keeps artifacts, if anywhere."""
    artifact_destination: Optional[str] = None
    aws_region: str = "us-west-2"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json_output: bool = True


@dataclass
class Config:
    """Top-level configuration object passed to every component."""
    environment: str = "development"
    fetch: FetchConfig = field(default_factory=FetchConfig)
    pacing: PacingConfig = field(default_factory=PacingConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Config":
        """
        Build a configuration from environment variables.

        Args:
            env: Mapping to read from, defaults to ``os.environ``

        Returns:
            Config with every unset variable left at its default
        """
        if env is None:
            env = os.environ

        defaults = cls()
        return cls(
            environment=_env_str(env, "GEOPULSE_ENV", defaults.environment),
            fetch=FetchConfig(
                user_agent=_env_str(env, "GEOPULSE_USER_AGENT", defaults.fetch.user_agent),
                request_timeout=_env_float(env, "GEOPULSE_REQUEST_TIMEOUT", defaults.fetch.request_timeout),
                max_workers=_env_int(env, "GEOPULSE_MAX_WORKERS", defaults.fetch.max_workers),
            ),
            pacing=PacingConfig(
                short_delay=_env_float(env, "GEOPULSE_PACING_SHORT_DELAY", defaults.pacing.short_delay),
                long_delay=_env_float(env, "GEOPULSE_PACING_LONG_DELAY", defaults.pacing.long_delay),
                long_pause_every=_env_int(env, "GEOPULSE_PACING_LONG_EVERY", defaults.pacing.long_pause_every),
            ),
            generation=GenerationConfig(
                min_zoom=defaults.generation.min_zoom,
                max_zoom=defaults.generation.max_zoom,
                confirmation_threshold=_env_int(
                    env, "GEOPULSE_CONFIRMATION_THRESHOLD", defaults.generation.confirmation_threshold
                ),
            ),
            metrics=MetricsConfig(
                enabled=_env_bool(env, "GEOPULSE_METRICS_ENABLED", defaults.metrics.enabled),
                prometheus_gateway=env.get("GEOPULSE_PROMETHEUS_GATEWAY") or None,
                job_name=_env_str(env, "GEOPULSE_METRICS_JOB", defaults.metrics.job_name),
            ),
            storage=StorageConfig(
                artifact_destination=env.get("GEOPULSE_ARTIFACT_DESTINATION") or None,
                aws_region=_env_str(env, "AWS_REGION", defaults.storage.aws_region),
            ),
            logging=LoggingConfig(
                level=_env_str(env, "GEOPULSE_LOG_LEVEL", defaults.logging.level).upper(),
                json_output=_env_bool(env, "GEOPULSE_LOG_JSON", defaults.logging.json_output),
            ),
        )
