"""
Unit Tests for the Generation Orchestrator

End-to-end runs against a mocked HTTP session: estimation, confirmation,
quota handling, fetching, packaging, refunds and the generation log.
"""

import io
import os
import shutil
import sqlite3
import tempfile
import threading
import unittest
import zipfile
from datetime import datetime, timezone
from unittest.mock import Mock, patch

from PIL import Image

from geopulse.errors import (
    ConfirmationRequiredError,
    GenerationCancelledError,
    GenerationError,
    InputValidationError,
    PackagingError,
    PersistenceLogError,
    QuotaError,
    QuotaExhaustedError,
    TotalFetchFailure,
)
from geopulse.monitoring.metrics import MetricsCollector
from geopulse.services.collaborators import InMemoryGenerationLog, InMemoryQuotaService
from geopulse.tile_generation.estimator import estimate
from geopulse.tile_generation.fetcher import TileFetcher
from geopulse.tile_generation.models import (
    BoundingBox,
    ExportFormat,
    GenerationRequest,
    GenerationState,
)
from geopulse.tile_generation.orchestrator import TileSetGenerator
from geopulse.utils.config import Config

FIXED_TIME = datetime(2024, 1, 31, 9, 45, tzinfo=timezone.utc)
USER = "user-1"


def png_bytes(color=(0, 128, 255)):
    buffer = io.BytesIO()
    Image.new("RGB", (256, 256), color).save(buffer, format="PNG")
    return buffer.getvalue()


def _response(status_code=200, content=None):
    response = Mock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 400
    response.content = png_bytes() if content is None else content
    return response


class TestTileSetGenerator(unittest.TestCase):
    """Test suite for generation runs."""

    def setUp(self):
        """Set up test fixtures before each test method."""
        self.temp_dir = tempfile.mkdtemp()
        self.config = Config()
        self.session = Mock()
        self.session.get.return_value = _response()
        self.quota = InMemoryQuotaService({USER: 3})
        self.log = InMemoryGenerationLog()
        self.metrics = MetricsCollector()
        self.bbox = BoundingBox(28.60, 77.20, 28.62, 77.22)

    def tearDown(self):
        """Clean up after each test method."""
        shutil.rmtree(self.temp_dir)

    def make_generator(self, quota=None, log_sink=None):
        fetcher = TileFetcher(
            self.config, session=self.session, metrics=self.metrics, sleep=lambda seconds: None
        )
        return TileSetGenerator(
            quota=quota or self.quota,
            log_sink=log_sink if log_sink is not None else self.log,
            config=self.config,
            fetcher=fetcher,
            metrics=self.metrics,
            clock=lambda: FIXED_TIME
        )

    def make_request(self, **overrides):
        fields = dict(
            user_id=USER,
            bbox=self.bbox,
            zoom_min=12,
            zoom_max=12,
            tile_source="osm",
            export_format=ExportFormat.MBTILES,
        )
        fields.update(overrides)
        return GenerationRequest(**fields)

    def open_sqlite(self, blob):
        path = os.path.join(self.temp_dir, "artifact.db")
        with open(path, "wb") as f:
            f.write(blob)
        conn = sqlite3.connect(path)
        self.addCleanup(conn.close)
        return conn

    # End-to-end scenarios

    def test_mbtiles_run_contains_every_estimated_tile(self):
        """A fully successful MBTiles run stores one row per estimated tile."""
        expected_total = estimate(self.bbox, 12, 12).total_tiles

        result = self.make_generator().generate(self.make_request())

        self.assertTrue(result.success)
        self.assertEqual(result.state, GenerationState.COMPLETED)
        self.assertEqual(result.estimate.total_tiles, expected_total)
        self.assertEqual(result.artifact.tile_count, expected_total)
        self.assertEqual(result.artifact.filename, "geopulse_osm_20240131T0945.mbtiles")
        self.assertAlmostEqual(result.artifact.size_mb, len(result.artifact.blob) / (1024 * 1024))

        conn = self.open_sqlite(result.artifact.blob)
        self.assertEqual(conn.execute("SELECT COUNT(*) FROM tiles").fetchone()[0], expected_total)

        self.assertEqual(self.quota.balance(USER), 2)
        self.assertEqual(self.quota.refunds, [])
        self.assertEqual(self.session.get.call_count, expected_total)

    def test_tiles_zip_run(self):
        """The ZIP holds the manifest, the README and one file per fetched tile."""
        result = self.make_generator().generate(self.make_request(export_format="tiles-zip"))

        self.assertTrue(result.success)
        self.assertTrue(result.artifact.filename.endswith(".zip"))
        with zipfile.ZipFile(io.BytesIO(result.artifact.blob)) as archive:
            names = archive.namelist()
        tile_files = [n for n in names if n.startswith("tiles/")]
        self.assertIn("manifest.json", names)
        self.assertIn("README.txt", names)
        self.assertEqual(len(tile_files), result.succeeded_tiles)
        for name in tile_files:
            self.assertRegex(name, r"^tiles/12/\d+/\d+\.png$")

    def test_total_fetch_failure_refunds_once(self):
        """No tile downloaded: the run fails and exactly one unit is refunded."""
        self.session.get.return_value = _response(status_code=503)

        result = self.make_generator().generate(self.make_request())

        self.assertEqual(result.state, GenerationState.FAILED)
        self.assertIsInstance(result.error, TotalFetchFailure)
        self.assertEqual(result.status, "no_tiles")
        self.assertEqual(self.quota.refunds, [{"user_id": USER, "n": 1}])
        self.assertEqual(result.refunded, 1)
        self.assertEqual(self.quota.balance(USER), 3)
        self.assertIsNone(result.artifact)
        self.assertEqual(result.failed_tiles, result.estimate.total_tiles)

    def test_inverted_zoom_range_rejected_before_side_effects(self):
        quota = Mock()

        result = self.make_generator(quota=quota).generate(self.make_request(zoom_min=5, zoom_max=3))

        self.assertIsInstance(result.error, InputValidationError)
        self.assertEqual(result.status, "invalid_input")
        quota.has_remaining_quota.assert_not_called()
        quota.decrement_quota.assert_not_called()
        self.session.get.assert_not_called()
        self.assertEqual(self.log.records, [])

    # Validation

    def test_invalid_inputs(self):
        generator = self.make_generator()
        invalid = [
            dict(bbox=None),
            dict(zoom_min=0),
            dict(zoom_max=23),
            dict(zoom_min=1.5),
            dict(tile_source="unknown"),
            dict(export_format="shapefile"),
        ]
        for overrides in invalid:
            with self.subTest(overrides=overrides):
                result = generator.generate(self.make_request(**overrides))
                self.assertIsInstance(result.error, InputValidationError)
        self.session.get.assert_not_called()
        self.assertEqual(self.quota.balance(USER), 3)

    def test_state_history(self):
        result = self.make_generator().generate(self.make_request())
        self.assertEqual(result.history, [
            GenerationState.IDLE,
            GenerationState.VALIDATING,
            GenerationState.ESTIMATING,
            GenerationState.QUOTA_CHECK,
            GenerationState.FETCHING,
            GenerationState.PACKAGING,
            GenerationState.FINALIZING,
            GenerationState.COMPLETED,
        ])

    # Confirmation

    def test_large_run_without_confirmation(self):
        self.config.generation.confirmation_threshold = 0

        result = self.make_generator().generate(self.make_request())

        self.assertIsInstance(result.error, ConfirmationRequiredError)
        self.assertIn(GenerationState.AWAITING_CONFIRMATION, result.history)
        self.assertEqual(self.quota.balance(USER), 3)
        self.session.get.assert_not_called()

    def test_large_run_declined(self):
        self.config.generation.confirmation_threshold = 0
        confirm = Mock(return_value=False)

        result = self.make_generator().generate(self.make_request(), confirm=confirm)

        confirm.assert_called_once_with(result.estimate)
        self.assertEqual(result.status, "confirmation_required")

    def test_confirm_callback_raises(self):
        self.config.generation.confirmation_threshold = 0

        def broken_confirm(generation_estimate):
            raise RuntimeError("dialog closed")

        result = self.make_generator().generate(self.make_request(), confirm=broken_confirm)

        self.assertEqual(result.state, GenerationState.FAILED)
        self.assertIs(type(result.error), GenerationError)
        self.assertEqual(result.message, "dialog closed")
        self.assertEqual(self.quota.balance(USER), 3)
        self.assertEqual(result.refunded, 0)
        self.session.get.assert_not_called()

    def test_large_run_confirmed(self):
        self.config.generation.confirmation_threshold = 0
        result = self.make_generator().generate(self.make_request(), confirm=lambda e: True)
        self.assertTrue(result.success)

    # Quota

    def test_quota_exhausted(self):
        self.quota.set_balance(USER, 0)

        result = self.make_generator().generate(self.make_request())

        self.assertIsInstance(result.error, QuotaExhaustedError)
        self.session.get.assert_not_called()
        self.assertEqual(self.quota.refunds, [])
        self.assertEqual(self.log.records, [])

    def test_decrement_refused(self):
        quota = Mock()
        quota.has_remaining_quota.return_value = True
        quota.decrement_quota.return_value = False

        result = self.make_generator(quota=quota).generate(self.make_request())

        self.assertIsInstance(result.error, QuotaError)
        quota.refund_quota.assert_not_called()
        self.session.get.assert_not_called()

    def test_decrement_raises(self):
        quota = Mock()
        quota.has_remaining_quota.return_value = True
        quota.decrement_quota.side_effect = RuntimeError("database unavailable")

        result = self.make_generator(quota=quota).generate(self.make_request())

        self.assertEqual(result.status, "quota_error")
        quota.refund_quota.assert_not_called()

    def test_quota_check_raises(self):
        """A quota service that cannot answer fails the run without charging."""
        quota = Mock()
        quota.has_remaining_quota.side_effect = ConnectionError("quota db down")

        result = self.make_generator(quota=quota).generate(self.make_request())

        self.assertEqual(result.state, GenerationState.FAILED)
        self.assertIsInstance(result.error, QuotaError)
        self.assertIn("quota db down", result.message)
        quota.decrement_quota.assert_not_called()
        quota.refund_quota.assert_not_called()
        self.session.get.assert_not_called()
        self.assertEqual(self.log.records, [])

    # Fetching

    def test_partial_failures_are_counted(self):
        """Some failed tiles do not fail the run."""
        calls = {"n": 0}

        def flaky_get(url, timeout):
            calls["n"] += 1
            return _response(status_code=500 if calls["n"] % 2 == 0 else 200)

        self.session.get.side_effect = flaky_get

        result = self.make_generator().generate(self.make_request(zoom_min=12, zoom_max=13))

        total = result.estimate.total_tiles
        self.assertTrue(result.success)
        self.assertEqual(result.succeeded_tiles + result.failed_tiles, total)
        self.assertEqual(result.failed_tiles, total // 2)
        self.assertEqual(result.artifact.tile_count, result.succeeded_tiles)
        self.assertEqual(len(result.fetch_failures), result.failed_tiles)
        self.assertEqual(result.fetch_failures[0].reason, "HTTP 500")

    def test_progress_reports(self):
        snapshots = []

        result = self.make_generator().generate(
            self.make_request(zoom_min=12, zoom_max=13), progress=snapshots.append
        )

        total = result.estimate.total_tiles
        fetching = [s for s in snapshots if s.stage == "fetching"]
        self.assertEqual([s.attempted for s in fetching], list(range(1, total + 1)))
        self.assertTrue(all(s.total == total for s in snapshots))
        self.assertEqual(snapshots[-1].stage, "packaging")
        self.assertEqual(snapshots[-1].fraction, 1.0)

    def test_request_order(self):
        """Tiles are requested zoom by zoom, column by column."""
        self.make_generator().generate(self.make_request(zoom_min=12, zoom_max=13))

        paths = [c[0][0].split("tile.openstreetmap.org/")[1] for c in self.session.get.call_args_list]
        keys = [tuple(int(p) for p in path[:-len(".png")].split("/")) for path in paths]
        self.assertEqual(keys, sorted(keys))

    def test_worker_pool(self):
        self.config.fetch.max_workers = 4

        result = self.make_generator().generate(self.make_request(zoom_min=12, zoom_max=14))

        self.assertTrue(result.success)
        self.assertEqual(result.artifact.tile_count, result.estimate.total_tiles)
        self.assertEqual(self.session.get.call_count, result.estimate.total_tiles)

    def test_worker_pool_stops_after_callback_error(self):
        """Queued fetches are dropped once the run has failed."""
        self.config.fetch.max_workers = 2
        held = threading.Event()
        lock = threading.Lock()
        calls = {"n": 0}

        def slow_get(url, timeout):
            with lock:
                calls["n"] += 1
                n = calls["n"]
            if n > 2:
                held.wait(0.5)
            return _response()

        def failing_progress(snapshot):
            raise ValueError("progress display gone")

        self.session.get.side_effect = slow_get
        bbox = BoundingBox(28.0, 77.0, 28.62, 77.62)

        result = self.make_generator().generate(
            self.make_request(bbox=bbox), progress=failing_progress
        )

        self.assertEqual(result.state, GenerationState.FAILED)
        self.assertEqual(result.message, "progress display gone")
        self.assertEqual(result.refunded, 1)
        self.assertGreater(result.estimate.total_tiles, 10)
        self.assertLessEqual(self.session.get.call_count, 4)

    def test_cancel_between_tiles(self):
        cancel = threading.Event()

        result = self.make_generator().generate(
            self.make_request(zoom_min=12, zoom_max=13),
            progress=lambda snapshot: cancel.set(),
            cancel_event=cancel
        )

        self.assertIsInstance(result.error, GenerationCancelledError)
        self.assertEqual(self.session.get.call_count, 1)
        self.assertEqual(result.refunded, 1)
        self.assertEqual(self.quota.balance(USER), 3)

    # Packaging and finalizing

    def test_each_format_completes(self):
        for export_format in ExportFormat:
            with self.subTest(export_format=export_format):
                self.quota.set_balance(USER, 1)
                result = self.make_generator().generate(self.make_request(export_format=export_format))
                self.assertTrue(result.success, result.message)
                self.assertTrue(result.artifact.filename.endswith("." + export_format.extension))

    def test_packaging_error_refunds(self):
        self.session.get.return_value = _response(content=b"not an image")

        result = self.make_generator().generate(self.make_request(export_format="geotiff"))

        self.assertIsInstance(result.error, PackagingError)
        self.assertEqual(result.refunded, 1)

    @patch('geopulse.tile_generation.orchestrator.get_packager')
    def test_unexpected_error_wrapped(self, mock_get_packager):
        mock_get_packager.return_value.pack.side_effect = RuntimeError("disk full")

        result = self.make_generator().generate(self.make_request())

        self.assertIs(type(result.error), GenerationError)
        self.assertIn("disk full", result.message)
        self.assertEqual(result.status, "generation_error")
        self.assertEqual(self.quota.refunds, [{"user_id": USER, "n": 1}])

    def test_refund_failure_reported(self):
        quota = Mock()
        quota.has_remaining_quota.return_value = True
        quota.decrement_quota.return_value = True
        quota.refund_quota.side_effect = RuntimeError("ledger offline")
        self.session.get.return_value = _response(status_code=404)

        result = self.make_generator(quota=quota).generate(self.make_request())

        self.assertIsInstance(result.error, TotalFetchFailure)
        self.assertEqual(result.refunded, 0)

    # Generation log

    def test_completed_run_logged(self):
        result = self.make_generator().generate(self.make_request(export_format="gpkg"))

        self.assertEqual(len(self.log.records), 1)
        record = self.log.records[0]
        self.assertEqual(record.status, "completed")
        self.assertEqual(record.export_format, "gpkg")
        self.assertEqual(record.tile_count, result.artifact.tile_count)
        self.assertEqual(record.size_mb, round(result.artifact.size_mb, 2))
        self.assertEqual(record.bbox, self.bbox.to_dict())
        self.assertIsNone(record.error_message)

    def test_failed_run_logged_with_message(self):
        self.session.get.return_value = _response(status_code=404)

        self.make_generator().generate(self.make_request())

        record = self.log.records[0]
        self.assertEqual(record.status, "failed")
        self.assertEqual(record.error_message, "No tiles downloaded. Check connection.")
        self.assertIsNone(record.size_mb)

    def test_log_failure_keeps_artifact(self):
        sink = Mock()
        sink.record.side_effect = RuntimeError("insert failed")

        result = self.make_generator(log_sink=sink).generate(self.make_request())

        self.assertTrue(result.success)
        self.assertIsNotNone(result.artifact)
        self.assertIsInstance(result.log_error, PersistenceLogError)
        self.assertEqual(self.quota.refunds, [])

    # Metrics

    def test_run_metrics(self):
        self.make_generator().generate(self.make_request())
        self.session.get.return_value = _response(status_code=404)
        self.make_generator().generate(self.make_request())

        exported = self.metrics.export_metrics().decode()
        self.assertIn('generation_runs_total{export_format="mbtiles",status="completed"} 1.0', exported)
        self.assertIn('generation_runs_total{export_format="mbtiles",status="no_tiles"} 1.0', exported)
        self.assertEqual(self.metrics.get_counter_total('quota_refunds_total'), 1)

    @patch('geopulse.monitoring.metrics.push_to_gateway')
    def test_metrics_pushed_after_run(self, mock_push):
        self.metrics = MetricsCollector(prometheus_gateway="localhost:9091")
        self.config.metrics.job_name = "geopulse_nightly"

        self.make_generator().generate(self.make_request())
        self.make_generator().generate(self.make_request(zoom_min=5, zoom_max=3))

        self.assertEqual(mock_push.call_count, 2)
        mock_push.assert_called_with(
            "localhost:9091", job="geopulse_nightly", registry=self.metrics.prometheus_registry
        )

    @patch('geopulse.monitoring.metrics.push_to_gateway')
    def test_metrics_not_pushed_without_gateway(self, mock_push):
        self.make_generator().generate(self.make_request())
        mock_push.assert_not_called()

    def test_estimate_method_validates_zoom(self):
        generator = self.make_generator()
        self.assertEqual(generator.estimate(self.bbox, 12, 12).total_tiles, estimate(self.bbox, 12, 12).total_tiles)
        with self.assertRaises(InputValidationError):
            generator.estimate(self.bbox, 5, 3)
