"""
Moderation queue and moderation action endpoints.

Endpoints:
- GET    /observations                          queue listing, newest first
- GET    /observations/{id}                     observation with ranked results
- POST   /observations/{id}/confirm-existing    verify against a known species
- POST   /observations/{id}/confirm-new         verify as a new species
- POST   /observations/{id}/reject              reject
- PATCH  /observations/{id}/status              generic status change

Handlers are plain ``def`` so FastAPI runs the blocking database and file
work in its threadpool.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from smartplant.core.dependencies import get_moderation_service, get_session, get_store
from smartplant.core.exceptions import NotFoundError
from smartplant.models.schemas import (
    ConfirmExistingRequest,
    ConfirmNewRequest,
    ErrorResponse,
    ModerationResponse,
    ObservationDetail,
    ObservationPage,
    RejectRequest,
    StatusUpdateRequest,
)
from smartplant.services.moderation import ModerationService
from smartplant.services.observation_store import MAX_PAGE_SIZE, ObservationStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/observations", tags=["Moderation"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid request"},
    404: {"model": ErrorResponse, "description": "Unknown observation or species"},
    500: {"model": ErrorResponse, "description": "Storage or filesystem failure"},
}


@router.get("", response_model=ObservationPage, responses={400: ERROR_RESPONSES[400]})
def list_observations(
    status: Optional[list[str]] = Query(default=None, description="Repeatable; defaults to pending"),
    page_size: int = Query(default=20, description=f"Rows per page (1-{MAX_PAGE_SIZE})"),
    offset: int = Query(default=0, ge=0),
    auto_flagged: Optional[bool] = Query(default=None),
    min_confidence: Optional[float] = Query(default=None, description="Minimum rank-1 confidence"),
    session: Session = Depends(get_session),
    store: ObservationStore = Depends(get_store),
) -> ObservationPage:
    """List observations for moderation, newest first."""
    page_size = max(1, min(MAX_PAGE_SIZE, page_size))
    items = store.list_by_status(
        session,
        statuses=status,
        page_size=page_size,
        offset=offset,
        auto_flagged=auto_flagged,
        min_confidence=min_confidence,
    )
    return ObservationPage(
        items=items,
        page_size=page_size,
        offset=offset,
        has_more=len(items) == page_size,
    )


@router.get("/{observation_id}", response_model=ObservationDetail, responses=ERROR_RESPONSES)
def get_observation(
    observation_id: int,
    session: Session = Depends(get_session),
    store: ObservationStore = Depends(get_store),
) -> ObservationDetail:
    """Get one observation with its classifier results in rank order."""
    detail = store.get_with_results(session, observation_id)
    if detail is None:
        raise NotFoundError(f"Observation {observation_id} not found")
    return detail


@router.post(
    "/{observation_id}/confirm-existing",
    response_model=ModerationResponse,
    responses=ERROR_RESPONSES,
)
def confirm_existing(
    observation_id: int,
    request: ConfirmExistingRequest,
    moderation: ModerationService = Depends(get_moderation_service),
) -> ModerationResponse:
    """
    Verify an observation as an existing species.

    Give either ``species_id`` or ``scientific_name``. The photo becomes the
    species image only if the species does not have one yet.
    """
    return moderation.confirm_existing(
        observation_id,
        species_id=request.species_id,
        scientific_name=request.scientific_name,
        notes=request.notes,
    )


@router.post(
    "/{observation_id}/confirm-new",
    response_model=ModerationResponse,
    responses=ERROR_RESPONSES,
)
def confirm_new(
    observation_id: int,
    request: ConfirmNewRequest,
    moderation: ModerationService = Depends(get_moderation_service),
) -> ModerationResponse:
    """Create a species from this observation and verify the observation as it."""
    return moderation.confirm_new(
        observation_id,
        request.scientific_name,
        common_name=request.common_name,
        is_endangered=request.is_endangered,
        description=request.description,
        notes=request.notes,
    )


@router.post(
    "/{observation_id}/reject",
    response_model=ModerationResponse,
    responses=ERROR_RESPONSES,
)
def reject(
    observation_id: int,
    request: Optional[RejectRequest] = None,
    moderation: ModerationService = Depends(get_moderation_service),
) -> ModerationResponse:
    """Reject an observation."""
    return moderation.reject(observation_id, notes=request.notes if request else None)


@router.patch(
    "/{observation_id}/status",
    response_model=ModerationResponse,
    responses=ERROR_RESPONSES,
)
def update_status(
    observation_id: int,
    request: StatusUpdateRequest,
    moderation: ModerationService = Depends(get_moderation_service),
) -> ModerationResponse:
    """Generic status change; verifying requires the observation to already reference a species."""
    return moderation.update_status(observation_id, request.status, notes=request.notes)
