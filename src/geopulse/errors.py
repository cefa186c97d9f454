"""
Error Taxonomy

Exceptions raised by the tile-set generation engine. Every fatal run error
derives from ``GenerationError`` and carries a human-readable message plus a
machine-usable ``status`` flag that callers (the HTTP service, the log sink)
can switch on without parsing messages.
"""

from dataclasses import dataclass
from typing import Optional


class GeoPulseError(Exception):
    """Base class for all GeoPulse errors."""


class GenerationError(GeoPulseError):
    """A fatal error that ends a generation run in the failed state."""

    status = "generation_error"

    def __init__(self, message: str, status: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status

    def to_dict(self):
        return {"status": self.status, "message": self.message}


class InputValidationError(GenerationError, ValueError):
    """Bad bounding box, zoom range, tile source or export format."""

    status = "invalid_input"


class ConfirmationRequiredError(GenerationError):
    """Large request that the caller did not confirm."""

    status = "confirmation_required"


class QuotaExhaustedError(GenerationError):
    """The user has no downloads left; the caller should start a purchase flow."""

    status = "quota_exhausted"


class QuotaError(GenerationError):
    """The quota service refused or failed to decrement the balance."""

    status = "quota_error"


class TotalFetchFailure(GenerationError):
    """Not a single tile could be downloaded."""

    status = "no_tiles"


class PackagingError(GenerationError):
    """A packager could not encode the fetched tiles."""

    status = "packaging_error"


class GenerationCancelledError(GenerationError):
    """The caller cancelled the run between two tile fetches."""

    status = "cancelled"


class PersistenceLogError(GeoPulseError):
    """
    Writing the generation record failed.

    Not a ``GenerationError``: a completed artifact stays
    completed even when its log record could not be stored.
    """

    status = "log_error"


@dataclass(frozen=True)
class PartialFetchFailure:
    """A single tile that could not be fetched. Counted, never raised."""

    zoom: int
    x: int
    y: int
    reason: str
    url: str = ""

    @property
    def tile_id(self) -> str:
        return f"{self.zoom}/{self.x}/{self.y}"
