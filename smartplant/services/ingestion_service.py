"""
Observation Ingestion Service

Coordinates the submission pipeline for one photo:
1. Classification through the inference gateway (worker subprocess)
2. Observation insert with the auto-flag verdict
3. Species resolution and ranked result persistence
4. Re-read of the combined observation + results view

Classification runs before anything is written, so a worker failure
leaves no orphaned pending observation. Steps 2 and 3 share one
transaction.
"""

import asyncio
import logging
import time
from typing import Callable, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from smartplant.core.exceptions import StorageError
from smartplant.models.schemas import (
    ObservationCreate,
    ObservationDetail,
    PrimaryPrediction,
    ScanResponse,
    SubmissionMetadata,
)
from smartplant.services.inference_gateway import Candidate, InferenceGateway
from smartplant.services.observation_store import ObservationStore

logger = logging.getLogger(__name__)


class IngestionService:
    """
    Entry point for new observations.

    Usage:
        service = IngestionService(gateway, store, session_factory, top_k=5)
        response = await service.ingest("/srv/uploads/x.jpg", "/uploads/x.jpg", SubmissionMetadata())
    """

    def __init__(
        self,
        gateway: InferenceGateway,
        store: ObservationStore,
        session_factory: Callable[[], Session],
        top_k: int = 5,
    ):
        self.gateway = gateway
        self.store = store
        self.session_factory = session_factory
        self.top_k = top_k

    async def ingest(
        self,
        image_path: str,
        photo_url: str,
        metadata: Optional[SubmissionMetadata] = None,
    ) -> ScanResponse:
        """
        Classify and persist one submitted photo.

        Args:
            image_path: Absolute path handed to the classifier worker
            photo_url: Public reference stored on the observation
            metadata: Optional submitter metadata

        Raises:
            ValidationError, WorkerUnavailable: nothing was written
            StorageError: the transaction was rolled back
        """
        metadata = metadata or SubmissionMetadata()
        started = time.perf_counter()

        outcome = await self.gateway.classify(image_path, self.top_k)
        classify_ms = (time.perf_counter() - started) * 1000

        fields = ObservationCreate(
            **metadata.model_dump(),
            photo_url=photo_url,
            auto_flagged=outcome.auto_flagged,
        )

        # Run storage in thread pool to not block the event loop
        loop = asyncio.get_event_loop()
        observation_id, detail = await loop.run_in_executor(
            None,
            lambda: self._persist(fields, outcome.candidates),
        )

        logger.info(
            f"Observation {observation_id}: {outcome.primary_name} "
            f"({outcome.primary_confidence:.2%}), flagged={outcome.auto_flagged}, "
            f"{len(outcome.candidates)} candidates, classify {classify_ms:.0f}ms"
        )

        return ScanResponse(
            observation_id=observation_id,
            primary=PrimaryPrediction(
                species_name=outcome.primary_name,
                confidence=outcome.primary_confidence,
                unsure=outcome.auto_flagged,
                image_path=photo_url,
            ),
            results=detail.results if detail else [],
            created_at=detail.observation.created_at if detail else None,
        )

    def _persist(
        self,
        fields: ObservationCreate,
        candidates: Sequence[Candidate],
    ) -> tuple[int, Optional[ObservationDetail]]:
        """Insert the observation and its results in one transaction, then re-read them."""
        with self.session_factory() as session:
            try:
                observation_id = self.store.create(session, fields)
                self.store.attach_results(session, observation_id, candidates)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise StorageError(f"Failed to commit observation: {e}") from e
            except Exception:
                session.rollback()
                raise

            return observation_id, self.store.get_with_results(session, observation_id)
