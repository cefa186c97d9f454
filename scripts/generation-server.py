#!/usr/bin/env python3
"""
GeoPulse Generation Server

Runs the generation HTTP service under uvicorn. Settings come from the
``GEOPULSE_*`` environment variables; ``HOST`` and ``PORT`` pick the bind
address and ``GEOPULSE_DEFAULT_QUOTA`` seeds every user's download balance.
"""

import os

import structlog
import uvicorn

from geopulse.api import create_app
from geopulse.monitoring import MetricsCollector
from geopulse.services import InMemoryQuotaService, StructlogGenerationLog
from geopulse.tile_generation import TileFetcher, TileSetGenerator
from geopulse.utils import Config, configure_logging

PORT = int(os.getenv("PORT", "8000"))
HOST = os.getenv("HOST", "0.0.0.0")
DEFAULT_QUOTA = int(os.getenv("GEOPULSE_DEFAULT_QUOTA", "3"))


def build_app():
    config = Config.from_env()
    configure_logging(config.logging.level, json_output=config.logging.json_output)

    metrics = MetricsCollector(
        enable_prometheus=config.metrics.enabled,
        prometheus_gateway=config.metrics.prometheus_gateway
    )
    quota = InMemoryQuotaService(default_balance=DEFAULT_QUOTA)
    generator = TileSetGenerator(
        quota=quota,
        log_sink=StructlogGenerationLog(),
        config=config,
        fetcher=TileFetcher(config, metrics=metrics),
        metrics=metrics
    )

    structlog.get_logger().info(
        "Starting GeoPulse Generation Server",
        host=HOST,
        port=PORT,
        environment=config.environment,
        default_quota=DEFAULT_QUOTA
    )
    return create_app(generator, quota)


app = build_app()

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=HOST,
        port=PORT,
        reload=False,
        log_level="info",
        access_log=True
    )
