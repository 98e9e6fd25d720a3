"""
Observation Store

Persistence for observations and their ranked classifier results.

Every operation runs inside the caller's session and flushes without
committing; the ingestion and moderation services own the transaction
boundary. SQLAlchemy failures surface as StorageError.
"""

import logging
import math
from typing import Iterable, Optional, Sequence

from sqlalchemy import and_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from smartplant.core.exceptions import StorageError, ValidationError
from smartplant.db.models import AIResult, PlantObservation, Species, utc_now
from smartplant.models.enums import ConfidenceLevel, ObservationStatus
from smartplant.models.schemas import (
    AIResultRead,
    ObservationCreate,
    ObservationDetail,
    ObservationRead,
    ObservationSummary,
)
from smartplant.services.inference_gateway import Candidate, normalize_confidence
from smartplant.services.species_resolver import SpeciesResolver

logger = logging.getLogger(__name__)

# Stored confidence precision (decimal places)
CONFIDENCE_PRECISION = 4
MAX_PAGE_SIZE = 100


def _parse_statuses(statuses: Optional[Iterable]) -> list[ObservationStatus]:
    parsed = []
    for status in statuses or ():
        try:
            parsed.append(ObservationStatus(status))
        except ValueError as e:
            raise ValidationError(
                f"Unknown observation status {status!r}",
                details={"allowed": [s.value for s in ObservationStatus]},
            ) from e
    return parsed or [ObservationStatus.PENDING]


class ObservationStore:
    """
    Observation and AI result persistence.

    Usage:
        store = ObservationStore()
        observation_id = store.create(session, ObservationCreate(photo_url="/uploads/a.jpg"))
        store.attach_results(session, observation_id, outcome.candidates)
        session.commit()
    """

    def __init__(self, resolver: Optional[SpeciesResolver] = None):
        self.resolver = resolver or SpeciesResolver()

    def create(self, session: Session, fields: ObservationCreate) -> int:
        """Insert one observation row and return its id."""
        observation = PlantObservation(**fields.model_dump())
        try:
            session.add(observation)
            session.flush()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to insert observation: {e}") from e
        logger.info(f"Created observation {observation.observation_id} ({fields.photo_url})")
        return observation.observation_id

    def attach_results(
        self,
        session: Session,
        observation_id: int,
        ranked_candidates: Sequence[Candidate],
    ) -> list[AIResult]:
        """
        Persist ranked candidates as AI results for an observation.

        Candidates are resolved to species in rank order (creating species
        on first sight), then all rows are written in one flush. Either
        every row is persisted or none is. Candidates without a name are
        skipped, so ranks stay contiguous from 1.
        """
        if not ranked_candidates:
            return []

        rows: list[AIResult] = []
        try:
            with session.begin_nested():
                for candidate in ranked_candidates:
                    name = (candidate.name or "").strip()
                    if not name:
                        continue
                    species_id = self.resolver.resolve(session, name)
                    confidence = round(normalize_confidence(candidate.confidence), CONFIDENCE_PRECISION)
                    rows.append(AIResult(
                        observation_id=observation_id,
                        species_id=species_id,
                        confidence_score=confidence,
                        rank=len(rows) + 1,
                    ))
                session.add_all(rows)
                session.flush()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to store classifier results for observation {observation_id}: {e}"
            ) from e

        logger.debug(f"Stored {len(rows)} AI results for observation {observation_id}")
        return rows

    def get(self, session: Session, observation_id: int) -> Optional[PlantObservation]:
        try:
            return session.get(PlantObservation, observation_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load observation {observation_id}: {e}") from e

    def get_with_results(self, session: Session, observation_id: int) -> Optional[ObservationDetail]:
        """Observation plus its results (with species names), rank ascending; None if unknown."""
        observation = self.get(session, observation_id)
        if observation is None:
            return None

        statement = (
            select(AIResult, Species)
            .join(Species, Species.species_id == AIResult.species_id, isouter=True)
            .where(AIResult.observation_id == observation_id)
            .order_by(AIResult.rank.asc())
        )
        try:
            rows = session.exec(statement).all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load results for observation {observation_id}: {e}") from e

        results = [
            AIResultRead(
                ai_result_id=result.ai_result_id,
                observation_id=result.observation_id,
                species_id=result.species_id,
                scientific_name=species.scientific_name if species else None,
                common_name=species.common_name if species else None,
                confidence_score=result.confidence_score,
                rank=result.rank,
            )
            for result, species in rows
        ]
        return ObservationDetail(observation=ObservationRead.model_validate(observation), results=results)

    def list_by_status(
        self,
        session: Session,
        statuses: Optional[Iterable] = None,
        page_size: int = 20,
        offset: int = 0,
        auto_flagged: Optional[bool] = None,
        min_confidence: Optional[float] = None,
    ) -> list[ObservationSummary]:
        """
        One page of observations for the moderation queue, newest first.

        Args:
            statuses: status membership filter (defaults to pending)
            page_size: maximum rows returned (clamped to 1..100)
            offset: rows to skip
            auto_flagged: only flagged (True) or unflagged (False) observations
            min_confidence: only observations whose rank-1 confidence is at least this

        A page exactly ``page_size`` long means the next offset may hold more.
        """
        wanted = _parse_statuses(statuses)
        page_size = max(1, min(MAX_PAGE_SIZE, int(page_size)))
        offset = max(0, int(offset))

        statement = (
            select(PlantObservation, AIResult, Species)
            .join(
                AIResult,
                and_(AIResult.observation_id == PlantObservation.observation_id, AIResult.rank == 1),
                isouter=True,
            )
            .join(Species, Species.species_id == AIResult.species_id, isouter=True)
            .where(PlantObservation.status.in_(wanted))
        )
        if auto_flagged is not None:
            statement = statement.where(PlantObservation.auto_flagged == auto_flagged)
        if min_confidence is not None:
            if not math.isfinite(min_confidence):
                raise ValidationError("min_confidence must be a finite number")
            statement = statement.where(AIResult.confidence_score >= min_confidence)

        statement = (
            statement
            .order_by(PlantObservation.created_at.desc(), PlantObservation.observation_id.desc())
            .offset(offset)
            .limit(page_size)
        )
        try:
            rows = session.exec(statement).all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list observations: {e}") from e

        summaries = []
        for observation, result, species in rows:
            summary = ObservationSummary.model_validate(observation)
            if result is not None:
                summary.top_species_id = result.species_id
                summary.top_confidence = result.confidence_score
                summary.confidence_level = ConfidenceLevel.from_score(result.confidence_score)
            if species is not None:
                summary.top_scientific_name = species.scientific_name
                summary.top_common_name = species.common_name
            summaries.append(summary)
        return summaries

    def update_status(
        self,
        session: Session,
        observation: PlantObservation,
        status: ObservationStatus,
        species_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> bool:
        """
        Move a pending observation to ``status`` (caller commits).

        The update only matches rows that are still pending, so of two
        moderators acting on one observation only the first one applies.
        ``observation`` is refreshed from the database either way.

        Returns:
            True if this call performed the transition
        """
        if status is ObservationStatus.VERIFIED and (species_id or observation.species_id) is None:
            raise ValidationError("A verified observation must reference a species")

        values = {"status": status, "updated_at": utc_now()}
        if species_id is not None:
            values["species_id"] = species_id
        if notes is not None:
            values["notes"] = notes
        statement = (
            update(PlantObservation)
            .where(
                PlantObservation.observation_id == observation.observation_id,
                PlantObservation.status == ObservationStatus.PENDING,
            )
            .values(**values)
        )
        try:
            session.flush()
            applied = session.connection().execute(statement).rowcount == 1
            session.refresh(observation)
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to update observation {observation.observation_id}: {e}"
            ) from e
        if not applied:
            logger.info(
                f"Observation {observation.observation_id} left pending concurrently "
                f"(now {observation.status.value})"
            )
        return applied
