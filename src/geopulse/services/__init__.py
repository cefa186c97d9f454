"""
Services

Collaborator contracts (quota, generation log) and artifact delivery.
"""

from .collaborators import (
    GenerationLogSink,
    GenerationRecord,
    InMemoryGenerationLog,
    InMemoryQuotaService,
    QuotaService,
    StructlogGenerationLog,
)
from .delivery import artifact_filename, filename_timestamp, save_artifact

__all__ = [
    "GenerationLogSink",
    "GenerationRecord",
    "InMemoryGenerationLog",
    "InMemoryQuotaService",
    "QuotaService",
    "StructlogGenerationLog",
    "artifact_filename",
    "filename_timestamp",
    "save_artifact",
]
