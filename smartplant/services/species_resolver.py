"""
Species Resolver

Maps a scientific name to a stable species identifier, creating the
species row on first sight.

The scientific name carries a unique constraint in the database. Two
requests that both miss the lookup for a never-before-seen name will race
on the insert; the loser gets an IntegrityError, which here means
"someone else just created it" and is answered by repeating the lookup.
"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from smartplant.core.exceptions import StorageError, ValidationError
from smartplant.db.models import Species

logger = logging.getLogger(__name__)


def _clean_name(scientific_name: Optional[str]) -> str:
    name = (scientific_name or "").strip()
    if not name:
        raise ValidationError("Scientific name must be a non-empty string")
    return name


class SpeciesResolver:
    """
    Get-or-create access to the species table.

    All methods flush inside the caller's transaction and never commit.
    """

    def lookup(self, session: Session, scientific_name: str) -> Optional[int]:
        """Exact, case-sensitive match on scientific name."""
        statement = select(Species.species_id).where(Species.scientific_name == scientific_name).limit(1)
        return session.exec(statement).first()

    def resolve(self, session: Session, scientific_name: str) -> int:
        """
        Return the id for ``scientific_name``, inserting a placeholder row if absent.

        Raises:
            ValidationError: name is empty after trimming
            StorageError: the lookup or insert failed for any other reason
        """
        name = _clean_name(scientific_name)
        try:
            species_id = self.lookup(session, name)
            if species_id is not None:
                return species_id

            try:
                with session.begin_nested():
                    species = Species(scientific_name=name)
                    session.add(species)
                    session.flush()
                logger.info(f"Created species {species.species_id}: {name}")
                return species.species_id
            except IntegrityError:
                logger.info(f"Species {name!r} was created concurrently, re-reading")

            species_id = self.lookup(session, name)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to resolve species {name!r}: {e}") from e

        if species_id is None:
            raise StorageError(f"Species {name!r} could not be created or found")
        return species_id

    def create(
        self,
        session: Session,
        scientific_name: str,
        common_name: Optional[str] = None,
        is_endangered: Optional[bool] = None,
        description: Optional[str] = None,
    ) -> Species:
        """
        Insert a brand-new species with descriptive metadata.

        Raises:
            ValidationError: name is empty, or a species with this name already exists
            StorageError: the insert failed for any other reason
        """
        name = _clean_name(scientific_name)
        species = Species(
            scientific_name=name,
            common_name=common_name,
            is_endangered=is_endangered,
            description=description,
        )
        try:
            if self.lookup(session, name) is not None:
                raise ValidationError(
                    f"Species {name!r} already exists; confirm against the existing species instead",
                    details={"scientific_name": name},
                )
            with session.begin_nested():
                session.add(species)
                session.flush()
        except IntegrityError as e:
            raise ValidationError(
                f"Species {name!r} already exists; confirm against the existing species instead",
                details={"scientific_name": name},
            ) from e
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to create species {name!r}: {e}") from e

        logger.info(f"Created species {species.species_id}: {name}")
        return species

    def get(self, session: Session, species_id: int) -> Optional[Species]:
        try:
            return session.get(Species, species_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load species {species_id}: {e}") from e
