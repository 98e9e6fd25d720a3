"""
Pydantic schemas for the observation pipeline.

These schemas define the contract between the services, the API and its
clients: what ingestion accepts, what the moderation queue lists, and what
moderation actions return.
"""

import math
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from smartplant.models.enums import ConfidenceLevel, ObservationStatus

DEFAULT_SOURCE = "camera"


def _finite_or_zero(v: Any) -> float:
    """Geolocation is never null: absent or non-finite input becomes 0.0."""
    if v is None or isinstance(v, bool):
        return 0.0
    try:
        value = float(v)
    except (TypeError, ValueError):
        return 0.0
    return value if math.isfinite(value) else 0.0


# === Ingestion Schemas ===

class SubmissionMetadata(BaseModel):
    """
    Optional metadata sent alongside a photo.

    All fields tolerate missing or malformed input; the defaults are what
    the observation table requires (no NULL coordinates or location name).
    """
    user_id: Optional[int] = Field(default=None, description="Submitting user, if known")
    location_latitude: float = Field(default=0.0, description="Latitude; 0.0 when unknown")
    location_longitude: float = Field(default=0.0, description="Longitude; 0.0 when unknown")
    location_name: str = Field(default="", description="Free-text place name")
    source: str = Field(default=DEFAULT_SOURCE, description="Submission channel, e.g. camera or gallery")
    notes: Optional[str] = Field(default=None, description="Submitter notes")

    @field_validator("user_id", mode="before")
    @classmethod
    def coerce_user_id(cls, v: Any) -> Optional[int]:
        if v is None or v == "":
            return None
        try:
            return int(v)
        except (TypeError, ValueError):
            return None

    @field_validator("location_latitude", "location_longitude", mode="before")
    @classmethod
    def coerce_coordinate(cls, v: Any) -> float:
        return _finite_or_zero(v)

    @field_validator("location_name", mode="before")
    @classmethod
    def coerce_location_name(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("source", mode="before")
    @classmethod
    def coerce_source(cls, v: Any) -> str:
        value = "" if v is None else str(v).strip()
        return value or DEFAULT_SOURCE


class ObservationCreate(SubmissionMetadata):
    """Everything needed to insert one observation row."""
    photo_url: str = Field(..., min_length=1, description="Public reference of the stored photo")
    species_id: Optional[int] = Field(default=None, description="Confirmed species, normally unset")
    status: ObservationStatus = Field(default=ObservationStatus.PENDING)
    auto_flagged: bool = Field(default=False, description="Classifier confidence was below threshold")

    @field_validator("status", mode="before")
    @classmethod
    def default_status(cls, v: Any) -> Any:
        return v or ObservationStatus.PENDING


# === Read Schemas ===

class SpeciesRead(BaseModel):
    """A species row."""
    model_config = ConfigDict(from_attributes=True)

    species_id: int
    scientific_name: str
    common_name: Optional[str] = None
    is_endangered: Optional[bool] = None
    description: Optional[str] = None
    image_url: Optional[str] = None


class ObservationRead(BaseModel):
    """An observation row."""
    model_config = ConfigDict(from_attributes=True)

    observation_id: int
    user_id: Optional[int] = None
    species_id: Optional[int] = None
    photo_url: str
    location_latitude: float
    location_longitude: float
    location_name: str
    source: str
    status: ObservationStatus
    notes: Optional[str] = None
    auto_flagged: bool
    created_at: datetime
    updated_at: Optional[datetime] = None


class AIResultRead(BaseModel):
    """One ranked classifier candidate, joined with its species names."""
    ai_result_id: int
    observation_id: int
    species_id: int
    scientific_name: Optional[str] = None
    common_name: Optional[str] = None
    confidence_score: float = Field(..., ge=0.0, le=1.0)
    rank: int = Field(..., ge=1)


class ObservationDetail(BaseModel):
    """Observation plus its ranked results (rank ascending)."""
    observation: ObservationRead
    results: list[AIResultRead] = Field(default_factory=list)


class ObservationSummary(ObservationRead):
    """Moderation queue row: the observation and its best (rank 1) guess."""
    top_species_id: Optional[int] = None
    top_scientific_name: Optional[str] = None
    top_common_name: Optional[str] = None
    top_confidence: Optional[float] = None
    confidence_level: Optional[ConfidenceLevel] = None


class ObservationPage(BaseModel):
    """
    One page of the moderation queue.

    No total is computed: ``has_more`` is true when the page came back full,
    which tells the caller to request the next offset.
    """
    items: list[ObservationSummary]
    page_size: int
    offset: int
    has_more: bool


# === Ingestion Response Schemas ===

class PrimaryPrediction(BaseModel):
    """Top classifier guess returned to the submitter."""
    species_name: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    unsure: bool = Field(..., description="Auto-flagged for review (confidence below threshold)")
    image_path: str


class ScanResponse(BaseModel):
    """Result of ingesting one photo."""
    observation_id: int
    primary: PrimaryPrediction
    results: list[AIResultRead] = Field(default_factory=list)
    created_at: Optional[datetime] = None


# === Moderation Schemas ===

class ConfirmExistingRequest(BaseModel):
    """Bind an observation to an existing species, by id or by scientific name."""
    species_id: Optional[int] = Field(default=None, gt=0)
    scientific_name: Optional[str] = Field(default=None)
    notes: Optional[str] = None


class ConfirmNewRequest(BaseModel):
    """Create a species from an observation's photo and bind the observation to it."""
    scientific_name: str = Field(..., min_length=1)
    common_name: Optional[str] = None
    is_endangered: Optional[bool] = None
    description: Optional[str] = None
    notes: Optional[str] = None


class RejectRequest(BaseModel):
    notes: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    """Generic moderation status change."""
    status: ObservationStatus
    notes: Optional[str] = None


class ModerationResponse(BaseModel):
    """Outcome of a moderation action."""
    observation: ObservationRead
    species: Optional[SpeciesRead] = None
    changed: bool = Field(..., description="False when the observation was already terminal")
    archived_image: Optional[str] = Field(
        default=None, description="Public reference of the photo copy filed under the species"
    )


# === Error Schemas ===

class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[dict] = Field(default=None, description="Additional error details")
