"""
SQLModel Database Models

Tables for the observation pipeline:
- species: canonical taxonomy entries, deduplicated by scientific name
- plant_observations: one submitted photo plus its moderation state
- ai_results: ranked classifier candidates for an observation
"""

from datetime import datetime, timezone
from typing import List, Optional

import sqlalchemy as sa
from sqlmodel import Field, Relationship, SQLModel

from smartplant.models.enums import ObservationStatus


def utc_now() -> datetime:
    """Timezone-aware UTC timestamp for row defaults."""
    return datetime.now(timezone.utc)


# ============================================================================
# Species
# ============================================================================

class Species(SQLModel, table=True):
    """Species database model"""
    __tablename__ = "species"

    species_id: Optional[int] = Field(default=None, primary_key=True)
    scientific_name: str = Field(max_length=255, unique=True, index=True)
    common_name: Optional[str] = Field(default=None, max_length=255)
    is_endangered: Optional[bool] = Field(default=None)
    description: Optional[str] = Field(default=None)
    image_url: Optional[str] = Field(default=None, max_length=512)
    created_at: datetime = Field(
        default_factory=utc_now,
        nullable=False,
        sa_column_kwargs={"server_default": sa.text("CURRENT_TIMESTAMP")}
    )

    # Relationships
    observations: List["PlantObservation"] = Relationship(back_populates="species")


# ============================================================================
# Observations
# ============================================================================

class PlantObservation(SQLModel, table=True):
    """Plant observation database model"""
    __tablename__ = "plant_observations"

    observation_id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[int] = Field(default=None, index=True)
    species_id: Optional[int] = Field(default=None, foreign_key="species.species_id")
    photo_url: str = Field(max_length=512)
    location_latitude: float = Field(default=0.0, nullable=False)
    location_longitude: float = Field(default=0.0, nullable=False)
    location_name: str = Field(default="", max_length=255, nullable=False)
    source: str = Field(default="camera", max_length=50, nullable=False)
    status: ObservationStatus = Field(
        default=ObservationStatus.PENDING,
        sa_column=sa.Column(
            sa.Enum(
                ObservationStatus,
                native_enum=False,
                length=16,
                values_callable=lambda enum: [member.value for member in enum],
            ),
            nullable=False,
            index=True,
        ),
    )
    notes: Optional[str] = Field(default=None)
    auto_flagged: bool = Field(default=False, nullable=False)
    created_at: datetime = Field(
        default_factory=utc_now,
        nullable=False,
        sa_column_kwargs={"server_default": sa.text("CURRENT_TIMESTAMP")}
    )
    updated_at: datetime = Field(default_factory=utc_now, nullable=False)

    # Relationships
    species: Optional["Species"] = Relationship(back_populates="observations")
    results: List["AIResult"] = Relationship(back_populates="observation", cascade_delete=True)


# ============================================================================
# Classifier Results
# ============================================================================

class AIResult(SQLModel, table=True):
    """Ranked classifier candidate for one observation"""
    __tablename__ = "ai_results"
    __table_args__ = (
        sa.UniqueConstraint("observation_id", "rank", name="uq_ai_results_observation_rank"),
    )

    ai_result_id: Optional[int] = Field(default=None, primary_key=True)
    observation_id: int = Field(foreign_key="plant_observations.observation_id", ondelete="CASCADE")
    species_id: int = Field(foreign_key="species.species_id")
    confidence_score: float = Field(ge=0.0, le=1.0)
    rank: int = Field(ge=1)

    # Relationships
    observation: "PlantObservation" = Relationship(back_populates="results")
