"""
Generation HTTP Service

A FastAPI application in front of a ``TileSetGenerator``. Generation runs
synchronously inside the request; the response body is the artifact itself.
"""

from typing import Any, Dict, Optional

import structlog
from fastapi import FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field

from .. import __version__
from ..errors import InputValidationError
from ..services.collaborators import QuotaService
from ..services.delivery import save_artifact
from ..tile_generation.models import BoundingBox, GenerationRequest
from ..tile_generation.orchestrator import TileSetGenerator
from ..tile_generation.sources import list_sources

logger = structlog.get_logger(component="GenerationService")

ERROR_STATUS_CODES = {
    "invalid_input": 400,
    "quota_exhausted": 402,
    "confirmation_required": 409,
    "no_tiles": 502,
}


class EstimateBody(BaseModel):
    bbox: Dict[str, Any]
    zoom_min: int
    zoom_max: int


class GenerateBody(BaseModel):
    user_id: str
    bbox: Dict[str, Any]
    zoom_min: int
    zoom_max: int
    tile_source: str = "osm"
    export_format: str = "mbtiles"
    confirmed: bool = Field(False, description="Approve runs above the confirmation threshold")


def _parse_bbox(data: Dict[str, Any]) -> BoundingBox:
    try:
        return BoundingBox.from_dict(data)
    except InputValidationError as e:
        raise HTTPException(status_code=400, detail=e.to_dict())


def create_app(generator: TileSetGenerator, quota: Optional[QuotaService] = None) -> FastAPI:
    """
    Build the HTTP application.

    Args:
        generator: Generator that serves every request
        quota: Quota service, defaults to the generator's own

    Returns:
        Configured FastAPI application
    """
    quota = quota or generator.quota
    storage = generator.config.storage

    app = FastAPI(
        title="GeoPulse Generation Service",
        description="Offline raster tile-set generation",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "geopulse-generation",
            "version": __version__,
            "environment": generator.config.environment,
        }

    @app.get("/sources")
    def get_sources():
        """List the selectable tile sources."""
        return {"sources": [source.to_dict() for source in list_sources()]}

    @app.post("/estimate")
    def post_estimate(body: EstimateBody):
        """Estimate tile count, size and duration for a selection."""
        bbox = _parse_bbox(body.bbox)
        try:
            generation_estimate = generator.estimate(bbox, body.zoom_min, body.zoom_max)
        except InputValidationError as e:
            raise HTTPException(status_code=400, detail=e.to_dict())
        return generation_estimate.to_dict()

    @app.post("/generate")
    def post_generate(body: GenerateBody):
        """
        Generate a tile set and return it as an attachment.

        Runs above the confirmation threshold need ``confirmed: true``.
        """
        request = GenerationRequest(
            user_id=body.user_id,
            bbox=_parse_bbox(body.bbox),
            zoom_min=body.zoom_min,
            zoom_max=body.zoom_max,
            tile_source=body.tile_source,
            export_format=body.export_format,
        )

        result = generator.generate(request, confirm=lambda _estimate: body.confirmed)

        if not result.success:
            detail = result.error.to_dict()
            if result.estimate is not None:
                detail["estimate"] = result.estimate.to_dict()
            detail["refunded"] = result.refunded
            raise HTTPException(
                status_code=ERROR_STATUS_CODES.get(result.status, 500),
                detail=detail
            )

        artifact = result.artifact
        headers = {
            "Content-Disposition": f'attachment; filename="{artifact.filename}"',
            "X-Tile-Count": str(artifact.tile_count),
            "X-Failed-Tiles": str(result.failed_tiles),
        }
        if storage.artifact_destination:
            headers["X-Artifact-Location"] = save_artifact(
                artifact, storage.artifact_destination, aws_region=storage.aws_region
            )

        logger.info(
            "Serving artifact",
            user_id=body.user_id,
            filename=artifact.filename,
            size_mb=round(artifact.size_mb, 2),
            remaining=_remaining(quota, body.user_id)
        )
        return Response(content=artifact.blob, media_type=artifact.media_type, headers=headers)

    @app.get("/metrics")
    def get_metrics():
        """Prometheus exposition of the generator's metrics."""
        return Response(content=generator.metrics.export_metrics(), media_type=CONTENT_TYPE_LATEST)

    return app


def _remaining(quota: QuotaService, user_id: str) -> Optional[int]:
    balance = getattr(quota, "balance", None)
    return balance(user_id) if callable(balance) else None
