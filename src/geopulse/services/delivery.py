"""
Artifact Delivery

Naming and storing finished artifacts. Destinations starting with ``s3://``
are uploaded with boto3; anything else is treated as a local directory.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

import boto3
import structlog

from ..tile_generation.models import ExportArtifact, ExportFormat

logger = structlog.get_logger(component="ArtifactDelivery")


def filename_timestamp(when: Optional[datetime] = None) -> str:
    """ISO 8601 timestamp truncated to the minute, without separators: ``20240131T0945``."""
    when = when or datetime.now(timezone.utc)
    if when.tzinfo is not None:
        when = when.astimezone(timezone.utc)
    return when.strftime("%Y%m%dT%H%M")


def artifact_filename(source: str, export_format, when: Optional[datetime] = None) -> str:
    """Return ``geopulse_{source}_{timestamp}.{ext}``."""
    export_format = ExportFormat.parse(export_format)
    return f"geopulse_{source}_{filename_timestamp(when)}.{export_format.extension}"


def save_artifact(
    artifact: ExportArtifact,
    destination: Union[str, Path],
    s3_client=None,
    aws_region: Optional[str] = None
) -> str:
    """
    Store an artifact.

    Args:
        artifact: Artifact to store
        destination: ``s3://bucket/prefix`` or a local directory
        s3_client: Optional preconfigured boto3 S3 client
        aws_region: Region for a client created here

    Returns:
        Location the artifact was written to
    """
    if str(destination).startswith("s3://"):
        return _save_to_s3(artifact, str(destination), s3_client, aws_region)
    return _save_to_file(artifact, Path(destination))


def _save_to_s3(artifact: ExportArtifact, s3_path: str, s3_client, aws_region: Optional[str]) -> str:
    bucket, _, prefix = s3_path[len("s3://"):].partition("/")
    if not bucket:
        raise ValueError(f"Invalid S3 destination: {s3_path}")

    key = f"{prefix.rstrip('/')}/{artifact.filename}" if prefix else artifact.filename
    client = s3_client or boto3.client("s3", region_name=aws_region)
    client.put_object(
        Bucket=bucket,
        Key=key,
        Body=artifact.blob,
        ContentType=artifact.media_type,
    )

    location = f"s3://{bucket}/{key}"
    logger.info("Artifact uploaded to S3", location=location, size_mb=artifact.size_mb)
    return location


def _save_to_file(artifact: ExportArtifact, directory: Path) -> str:
    directory.mkdir(parents=True, exist_ok=True)
    file_path = directory / artifact.filename
    file_path.write_bytes(artifact.blob)

    logger.info("Artifact saved", file_path=str(file_path), size_mb=artifact.size_mb)
    return str(file_path)
