"""
Species lookup endpoint.
"""

from fastapi import APIRouter, Depends
from sqlmodel import Session

from smartplant.core.dependencies import get_resolver, get_session
from smartplant.core.exceptions import NotFoundError
from smartplant.models.schemas import ErrorResponse, SpeciesRead
from smartplant.services.species_resolver import SpeciesResolver

router = APIRouter(prefix="/species", tags=["Species"])


@router.get(
    "/{species_id}",
    response_model=SpeciesRead,
    responses={404: {"model": ErrorResponse, "description": "Unknown species"}},
)
def get_species(
    species_id: int,
    session: Session = Depends(get_session),
    resolver: SpeciesResolver = Depends(get_resolver),
) -> SpeciesRead:
    """Get one species, including its canonical image if one was archived."""
    species = resolver.get(session, species_id)
    if species is None:
        raise NotFoundError(f"Species {species_id} not found")
    return SpeciesRead.model_validate(species)
