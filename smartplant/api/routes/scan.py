"""
Photo submission endpoint.

Accepts a multipart upload, stores the photo under the upload directory,
and runs it through the ingestion pipeline.
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile

from smartplant.core.dependencies import get_archive, get_ingestion_service
from smartplant.core.exceptions import FileSystemError, PipelineError, ValidationError
from smartplant.models.schemas import ErrorResponse, ScanResponse, SubmissionMetadata
from smartplant.services.file_archive import FileArchive
from smartplant.services.ingestion_service import IngestionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scan", tags=["Ingestion"])


@router.post(
    "",
    response_model=ScanResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing or invalid image"},
        500: {"model": ErrorResponse, "description": "Storage failure"},
        503: {"model": ErrorResponse, "description": "Classifier worker unavailable"},
    },
    summary="Submit a plant photo",
)
async def scan(
    image: Optional[UploadFile] = File(default=None),
    user_id: Optional[str] = Form(default=None),
    location_latitude: Optional[str] = Form(default=None),
    location_longitude: Optional[str] = Form(default=None),
    location_name: Optional[str] = Form(default=None),
    source: Optional[str] = Form(default=None),
    notes: Optional[str] = Form(default=None),
    archive: FileArchive = Depends(get_archive),
    service: IngestionService = Depends(get_ingestion_service),
) -> ScanResponse:
    """
    Classify a submitted photo and record a pending observation.

    Missing or malformed coordinates are stored as 0; the observation is
    auto-flagged when the classifier's confidence is below the configured
    threshold.
    """
    if image is None or not image.filename:
        raise ValidationError("No image uploaded (multipart field 'image')")

    metadata = SubmissionMetadata(
        user_id=user_id,
        location_latitude=location_latitude,
        location_longitude=location_longitude,
        location_name=location_name,
        source=source,
        notes=notes,
    )

    loop = asyncio.get_event_loop()
    local_path, public_ref = await loop.run_in_executor(
        None, archive.save_upload, image.file, image.filename
    )
    logger.info(f"Stored upload {image.filename!r} as {public_ref}")

    try:
        return await service.ingest(str(local_path), public_ref, metadata)
    except PipelineError:
        # Nothing references the photo when ingestion fails
        discard_upload(archive, public_ref)
        raise


def discard_upload(archive: FileArchive, public_ref: str) -> None:
    """Remove an upload whose ingestion failed, without masking the ingestion error."""
    try:
        archive.remove(public_ref)
    except FileSystemError as e:
        logger.error(f"Could not remove orphaned upload {public_ref}: {e}")
