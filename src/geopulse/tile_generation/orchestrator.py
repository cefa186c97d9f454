"""
Generation Orchestrator

Runs one tile-set generation from a selection to a packaged artifact:

    IDLE -> VALIDATING -> ESTIMATING -> [AWAITING_CONFIRMATION] -> QUOTA_CHECK
         -> FETCHING -> PACKAGING -> FINALIZING -> COMPLETED | FAILED

The quota unit is taken before the first request and given back when the
run fails after that point. Per-tile fetch failures are only counted; a run
fails on them only when not a single tile arrives.
"""

import concurrent.futures
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from ..errors import (
    ConfirmationRequiredError,
    GenerationCancelledError,
    GenerationError,
    InputValidationError,
    PersistenceLogError,
    QuotaError,
    QuotaExhaustedError,
    TotalFetchFailure,
)
from ..monitoring.metrics import MetricsCollector
from ..packaging import PackParams, get_packager
from ..services.collaborators import GenerationLogSink, GenerationRecord, QuotaService
from ..services.delivery import artifact_filename
from ..utils.config import Config
from .coordinates import tile_range_for_bounds
from .estimator import estimate as estimate_tiles
from .fetcher import FetchOutcome, TileFetcher
from .models import (
    BoundingBox,
    ExportArtifact,
    ExportFormat,
    GenerationEstimate,
    GenerationProgress,
    GenerationRequest,
    GenerationResult,
    GenerationState,
    Tile,
    TileKey,
    ZoomRange,
)
from .sources import TileSource, get_source

ProgressCallback = Callable[[GenerationProgress], None]
ConfirmCallback = Callable[[GenerationEstimate], bool]


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class TileSetGenerator:
    """
    Orchestrates estimation, quota, fetching and packaging for one run at a time.

    The generator holds no per-run state; every call to ``generate`` owns its
    own tile accumulator.
    """

    def __init__(
        self,
        quota: QuotaService,
        log_sink: Optional[GenerationLogSink] = None,
        config: Optional[Config] = None,
        fetcher: Optional[TileFetcher] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = None
    ):
        """
        Initialize the generator.

        Args:
            quota: Quota service charged one unit per run
            log_sink: Receives one record per run that reached the quota check
            config: Configuration object
            fetcher: Tile fetcher, shared so pacing is shared
            metrics: Metrics collector
            clock: Returns the current time, used for filenames and records
        """
        self.config = config or Config()
        self.quota = quota
        self.log_sink = log_sink
        self.metrics = metrics or MetricsCollector(
            enable_prometheus=self.config.metrics.enabled,
            prometheus_gateway=self.config.metrics.prometheus_gateway
        )
        self.fetcher = fetcher or TileFetcher(self.config, metrics=self.metrics)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.logger = structlog.get_logger(component="TileSetGenerator")

    def estimate(self, bbox: BoundingBox, zoom_min: int, zoom_max: int) -> GenerationEstimate:
        """Estimate a run after validating the zoom range."""
        self._validate_zoom_range(zoom_min, zoom_max)
        return estimate_tiles(
            bbox, zoom_min, zoom_max,
            confirmation_threshold=self.config.generation.confirmation_threshold
        )

    def validate(self, request: GenerationRequest) -> Tuple[ZoomRange, TileSource, ExportFormat]:
        """
        Check a request before anything is charged or fetched.

        Raises:
            InputValidationError: On a missing bbox, bad zoom range, unknown source or format
        """
        if request.bbox is None:
            raise InputValidationError("Please select a target area on the map first.")
        if not isinstance(request.bbox, BoundingBox):
            raise InputValidationError("Bounding box must be a BoundingBox")

        zoom_range = self._validate_zoom_range(request.zoom_min, request.zoom_max)
        source = get_source(request.tile_source)
        export_format = ExportFormat.parse(request.export_format)

        if zoom_range.max > source.max_zoom:
            raise InputValidationError(
                f"Source {source.identifier} supports zoom levels up to {source.max_zoom}"
            )
        if zoom_range.max > source.max_native_zoom:
            self.logger.warning(
                "Zoom range exceeds native zoom of source",
                tile_source=source.identifier,
                zoom_max=zoom_range.max,
                max_native_zoom=source.max_native_zoom
            )

        return zoom_range, source, export_format

    def _validate_zoom_range(self, zoom_min, zoom_max) -> ZoomRange:
        lower = self.config.generation.min_zoom
        upper = self.config.generation.max_zoom
        if not (_is_int(zoom_min) and _is_int(zoom_max)):
            raise InputValidationError("Zoom levels must be integers")
        if zoom_min > zoom_max or zoom_min < lower or zoom_max > upper:
            raise InputValidationError(f"Invalid zoom levels ({lower}-{upper}, min <= max).")
        return ZoomRange(zoom_min, zoom_max)

    def generate(
        self,
        request: GenerationRequest,
        confirm: Optional[ConfirmCallback] = None,
        progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> GenerationResult:
        """
        Run one generation.

        Args:
            request: Selection, zoom range, source and format
            confirm: Asked to approve runs above the confirmation threshold
            progress: Called after every attempted tile, and once before packaging
            cancel_event: Checked between tile fetches; setting it fails the run

        Returns:
            GenerationResult, completed with one artifact or failed with an error
        """
        start_time = time.time()
        result = GenerationResult(state=GenerationState.IDLE, started_at=self.clock())
        result.history.append(GenerationState.IDLE)
        log = self.logger.bind(
            user_id=request.user_id,
            tile_source=request.tile_source,
            export_format=str(getattr(request.export_format, "value", request.export_format))
        )

        # Nothing charged yet: failures here have no side effects.
        try:
            self._transition(result, GenerationState.VALIDATING, log)
            zoom_range, source, export_format = self.validate(request)

            self._transition(result, GenerationState.ESTIMATING, log)
            generation_estimate = estimate_tiles(
                request.bbox, zoom_range.min, zoom_range.max,
                confirmation_threshold=self.config.generation.confirmation_threshold
            )
            result.estimate = generation_estimate
            log.info(
                "Generation estimated",
                total_tiles=generation_estimate.total_tiles,
                estimated_size_mb=generation_estimate.estimated_size_mb,
                estimated_time_seconds=generation_estimate.estimated_time_seconds
            )

            if generation_estimate.requires_confirmation:
                self._transition(result, GenerationState.AWAITING_CONFIRMATION, log)
                if confirm is None or not confirm(generation_estimate):
                    raise ConfirmationRequiredError(
                        f"This will process {generation_estimate.total_tiles:,} tiles and needs confirmation."
                    )

            self._transition(result, GenerationState.QUOTA_CHECK, log)
            self._reserve_quota(request.user_id)
        except Exception as e:
            error = e if isinstance(e, GenerationError) else GenerationError(str(e))
            return self._finish_failed(result, error, log, start_time, request)

        try:
            self._transition(result, GenerationState.FETCHING, log)
            tiles = self._fetch_tiles(
                request.bbox, zoom_range, source, generation_estimate.total_tiles,
                result, progress, cancel_event, log
            )
            if not tiles:
                raise TotalFetchFailure("No tiles downloaded. Check connection.")

            self._transition(result, GenerationState.PACKAGING, log)
            created_at = self.clock()
            packed = get_packager(export_format).pack(
                tiles,
                PackParams(bbox=request.bbox, zoom_range=zoom_range, source=source, created_at=created_at)
            )

            self._transition(result, GenerationState.FINALIZING, log)
            result.artifact = ExportArtifact(
                format=export_format,
                blob=packed.blob,
                filename=artifact_filename(source.identifier, export_format, created_at),
                size_mb=len(packed.blob) / (1024 * 1024),
                tile_count=packed.tile_count,
                discarded_tiles=packed.discarded_tiles
            )
        except Exception as e:
            error = e if isinstance(e, GenerationError) else GenerationError(str(e))
            log.error("Generation failed", status=error.status, error=error.message)
            self._refund(request.user_id, result, log)
            self._write_log(result, request, "failed", log, error_message=error.message)
            return self._finish_failed(result, error, log, start_time, request, already_logged=True)

        self._write_log(result, request, "completed", log)
        self._transition(result, GenerationState.COMPLETED, log)
        result.finished_at = self.clock()

        duration = time.time() - start_time
        self.metrics.increment_counter(
            'generation_runs_total',
            labels={'export_format': export_format.value, 'status': 'completed'}
        )
        self.metrics.record_histogram(
            'generation_duration_seconds', duration,
            labels={'export_format': export_format.value}
        )
        log.info(
            "Generation completed",
            filename=result.artifact.filename,
            size_mb=round(result.artifact.size_mb, 2),
            tile_count=result.artifact.tile_count,
            failed_tiles=result.failed_tiles,
            processing_time=duration
        )
        self._push_metrics()
        return result

    def _transition(self, result: GenerationResult, state: GenerationState, log) -> None:
        result.state = state
        result.history.append(state)
        log.debug("Generation state changed", state=state.value)

    def _reserve_quota(self, user_id: str) -> None:
        try:
            remaining = self.quota.has_remaining_quota(user_id)
        except Exception as e:
            raise QuotaError(f"Failed to check downloads: {e}") from e
        if not remaining:
            raise QuotaExhaustedError("No downloads remaining. Purchase more to continue.")
        try:
            deducted = self.quota.decrement_quota(user_id)
        except Exception as e:
            raise QuotaError(f"Failed to process download: {e}") from e
        if not deducted:
            raise QuotaError("Failed to process download.")

    def _fetch_tiles(
        self,
        bbox: BoundingBox,
        zoom_range: ZoomRange,
        source: TileSource,
        total: int,
        result: GenerationResult,
        progress: Optional[ProgressCallback],
        cancel_event: Optional[threading.Event],
        log
    ) -> List[Tile]:
        """Fetch every tile of the run. Returns successful tiles in request order."""
        keys: List[TileKey] = []
        for zoom in zoom_range.levels():
            keys.extend(tile_range_for_bounds(bbox, zoom).iter_keys(zoom))

        log.info("Fetching tiles", total_tiles=len(keys), max_workers=self.config.fetch.max_workers)

        outcomes: Dict[TileKey, FetchOutcome] = {}
        attempted = 0

        def record(outcome: FetchOutcome) -> None:
            nonlocal attempted
            attempted += 1
            outcomes[outcome.key] = outcome
            if outcome.ok:
                result.succeeded_tiles += 1
            else:
                result.failed_tiles += 1
                result.fetch_failures.append(outcome.failure)
            self._report(progress, GenerationProgress(
                attempted=attempted,
                total=total,
                succeeded=result.succeeded_tiles,
                failed=result.failed_tiles,
                zoom=outcome.key.zoom,
                stage="fetching"
            ))

        if self.config.fetch.max_workers <= 1:
            for key in keys:
                self._check_cancelled(cancel_event)
                record(self.fetcher.fetch(source, key))
        else:
            with concurrent.futures.ThreadPoolExecutor(max_workers=self.config.fetch.max_workers) as executor:
                futures = [executor.submit(self._fetch_unless_cancelled, source, key, cancel_event) for key in keys]
                try:
                    for future in concurrent.futures.as_completed(futures):
                        outcome = future.result()
                        self._check_cancelled(cancel_event)
                        record(outcome)
                except BaseException:
                    for future in futures:
                        future.cancel()
                    raise

        self._report(progress, GenerationProgress(
            attempted=attempted,
            total=total,
            succeeded=result.succeeded_tiles,
            failed=result.failed_tiles,
            stage="packaging"
        ))

        log.info(
            "Tile fetching finished",
            succeeded=result.succeeded_tiles,
            failed=result.failed_tiles
        )
        return [outcomes[key].tile for key in keys if key in outcomes and outcomes[key].ok]

    def _fetch_unless_cancelled(
        self,
        source: TileSource,
        key: TileKey,
        cancel_event: Optional[threading.Event]
    ) -> FetchOutcome:
        self._check_cancelled(cancel_event)
        return self.fetcher.fetch(source, key)

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise GenerationCancelledError("Generation cancelled.")

    def _report(self, progress: Optional[ProgressCallback], snapshot: GenerationProgress) -> None:
        self.metrics.set_gauge('generation_progress_ratio', snapshot.fraction)
        if progress is not None:
            progress(snapshot)

    def _refund(self, user_id: str, result: GenerationResult, log) -> None:
        try:
            self.quota.refund_quota(user_id, 1)
        except Exception as e:
            log.error("Quota refund failed", error=str(e))
            return
        result.refunded = 1
        self.metrics.increment_counter('quota_refunds_total')
        log.info("Quota refunded", refunded=1)

    def _write_log(
        self,
        result: GenerationResult,
        request: GenerationRequest,
        status: str,
        log,
        error_message: Optional[str] = None
    ) -> None:
        if self.log_sink is None:
            return

        artifact = result.artifact if status == "completed" else None
        record = GenerationRecord(
            user_id=request.user_id,
            bbox=request.bbox.to_dict(),
            zoom_min=request.zoom_min,
            zoom_max=request.zoom_max,
            tile_source=request.tile_source,
            export_format=ExportFormat.parse(request.export_format).value,
            size_mb=round(artifact.size_mb, 2) if artifact else None,
            tile_count=artifact.tile_count if artifact else 0,
            status=status,
            error_message=error_message,
            created_at=self.clock()
        )
        try:
            self.log_sink.record(record)
        except Exception as e:
            error = e if isinstance(e, PersistenceLogError) else PersistenceLogError(f"DB log failed: {e}")
            result.log_error = error
            log.error("Generation log write failed", error=str(error))

    def _finish_failed(
        self,
        result: GenerationResult,
        error: GenerationError,
        log,
        start_time: float,
        request: GenerationRequest,
        already_logged: bool = False
    ) -> GenerationResult:
        result.error = error
        self._transition(result, GenerationState.FAILED, log)
        result.finished_at = self.clock()

        export_format = getattr(request.export_format, "value", str(request.export_format))
        self.metrics.increment_counter(
            'generation_runs_total',
            labels={'export_format': export_format, 'status': error.status}
        )
        if not already_logged:
            log.warning(
                "Generation rejected",
                status=error.status,
                error=error.message,
                processing_time=time.time() - start_time
            )
        self._push_metrics()
        return result

    def _push_metrics(self) -> None:
        if self.metrics.prometheus_gateway:
            self.metrics.push_to_prometheus_gateway(self.config.metrics.job_name)
