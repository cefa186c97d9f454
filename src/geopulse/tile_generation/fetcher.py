"""
Tile Fetcher

Downloads single raster tiles over HTTP. A failed tile is never an
exception: the fetcher returns ``None`` and the run carries on. Requests to
each tile source go through one shared ``PacingGate``.
"""

import threading
from dataclasses import dataclass
from typing import Dict, Optional, Union

import requests
import structlog

from ..errors import PartialFetchFailure
from ..monitoring.metrics import MetricsCollector
from ..utils.config import Config
from .models import Tile, TileKey
from .pacing import PacingGate
from .sources import TileSource, get_source


@dataclass
class FetchOutcome:
    """Either a tile or the reason it is missing."""
    key: TileKey
    tile: Optional[Tile] = None
    failure: Optional[PartialFetchFailure] = None

    @property
    def ok(self) -> bool:
        return self.tile is not None


class TileFetcher:
    """
    HTTP tile downloader with per-source pacing.

    One fetcher is meant to be shared by every run in the process so that
    the pacing gates, and therefore the request rate ceiling, are shared too.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        session: Optional[requests.Session] = None,
        metrics: Optional[MetricsCollector] = None,
        sleep=None,
        clock=None
    ):
        """
        Initialize the fetcher.

        Args:
            config: Configuration object
            session: HTTP session, created on demand when omitted
            metrics: Metrics collector for fetch outcomes
            sleep: Sleep function handed to pacing gates (tests pass a stub)
            clock: Monotonic clock handed to pacing gates
        """
        self.config = config or Config()
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": self.config.fetch.user_agent})
        self.metrics = metrics
        self._sleep = sleep
        self._clock = clock
        self._gates: Dict[str, PacingGate] = {}
        self._gates_lock = threading.Lock()

        self.logger = structlog.get_logger(
            component="TileFetcher",
            user_agent=self.config.fetch.user_agent
        )

    def gate_for(self, source: TileSource) -> PacingGate:
        """Return the pacing gate shared by all requests to ``source``."""
        with self._gates_lock:
            gate = self._gates.get(source.identifier)
            if gate is None:
                kwargs = {}
                if self._sleep is not None:
                    kwargs["sleep"] = self._sleep
                if self._clock is not None:
                    kwargs["clock"] = self._clock
                pacing = self.config.pacing
                gate = PacingGate(
                    short_delay=pacing.short_delay,
                    long_delay=pacing.long_delay,
                    long_pause_every=pacing.long_pause_every,
                    name=source.identifier,
                    **kwargs
                )
                self._gates[source.identifier] = gate
            return gate

    def fetch(self, source: Union[str, TileSource], key: TileKey) -> FetchOutcome:
        """
        Fetch one tile and report the outcome.

        Args:
            source: Tile source or its identifier
            key: Tile to download

        Returns:
            FetchOutcome holding the tile, or the failure reason
        """
        if isinstance(source, str):
            source = get_source(source)

        url = source.tile_url(key.zoom, key.x, key.y)
        self.gate_for(source).wait()

        reason = None
        try:
            response = self.session.get(url, timeout=self.config.fetch.request_timeout)
            if not response.ok:
                reason = f"HTTP {response.status_code}"
            elif not response.content:
                reason = "empty response"
        except requests.RequestException as e:
            reason = f"{type(e).__name__}: {e}"

        if reason is not None:
            self.logger.warning("Failed to download tile", tile_id=key.path, url=url, reason=reason)
            self._record(source, "failed")
            return FetchOutcome(
                key=key,
                failure=PartialFetchFailure(zoom=key.zoom, x=key.x, y=key.y, reason=reason, url=url)
            )

        self._record(source, "success")
        return FetchOutcome(key=key, tile=Tile(key=key, data=response.content))

    def fetch_tile(self, source: Union[str, TileSource], z: int, x: int, y: int) -> Optional[Tile]:
        """Fetch one tile, returning ``None`` on any failure."""
        return self.fetch(source, TileKey(z, x, y)).tile

    def _record(self, source: TileSource, status: str) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter(
                'tile_fetch_total',
                labels={'source': source.identifier, 'status': status}
            )

    def close(self) -> None:
        self.session.close()
