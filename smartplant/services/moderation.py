"""
Moderation Workflow

Drives an observation from ``pending`` to ``verified`` or ``rejected``:

```
            ┌──► verified   (confirm_existing / confirm_new / status update)
pending ────┤
            └──► rejected   (reject / status update)
```

Verified and rejected are terminal. Calling any action on a terminal
observation is a no-op that reports ``changed=False``.

Photo archival happens before the status change is committed. If the copy
or any database step fails, the transaction is rolled back (including a
species created during the same call), any file copied by this call is
removed, and the observation stays pending.
"""

import logging
from typing import Any, Callable, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from smartplant.core.exceptions import (
    FileSystemError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from smartplant.db.models import PlantObservation, Species
from smartplant.models.enums import ObservationStatus
from smartplant.models.schemas import ModerationResponse, ObservationRead, SpeciesRead
from smartplant.services.file_archive import FileArchive
from smartplant.services.observation_store import ObservationStore
from smartplant.services.species_resolver import SpeciesResolver

logger = logging.getLogger(__name__)


def _require_id(value: Any, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"{label} must be a positive integer, got {value!r}")
    return value


def _clean_optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


class ModerationService:
    """
    Admin actions on submitted observations.

    Usage:
        moderation = ModerationService(store, resolver, archive, session_factory)
        moderation.confirm_existing(42, species_id=7)
        moderation.confirm_new(43, "Nepenthes rajah", common_name="Giant pitcher plant")
        moderation.reject(44, notes="Not a plant")
    """

    def __init__(
        self,
        store: ObservationStore,
        resolver: SpeciesResolver,
        archive: FileArchive,
        session_factory: Callable[[], Session],
    ):
        self.store = store
        self.resolver = resolver
        self.archive = archive
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Confirmation flows
    # ------------------------------------------------------------------

    def confirm_existing(
        self,
        observation_id: int,
        species_id: Optional[int] = None,
        scientific_name: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ModerationResponse:
        """
        Verify an observation against a species given by id or by name.

        A name is resolved (and created if unseen) through the species
        resolver. If the species has no canonical image yet and the
        observation's photo is on disk, the photo is archived under the
        species and becomes its image; an image that is already set is
        never replaced.
        """
        _require_id(observation_id, "observation_id")
        name = _clean_optional(scientific_name)
        if (species_id is None) == (name is None):
            raise ValidationError("Provide exactly one of species_id or scientific_name")
        if species_id is not None:
            _require_id(species_id, "species_id")

        with self.session_factory() as session:
            observation = self._load_observation(session, observation_id)
            if observation.status.is_terminal:
                return self._unchanged(session, observation)

            copied: Optional[str] = None
            archived: Optional[str] = None
            try:
                if species_id is not None:
                    species = self._load_species(session, species_id)
                else:
                    species = self._load_species(session, self.resolver.resolve(session, name))

                if species.image_url is None and self.archive.exists(observation.photo_url):
                    destination = self.archive.species_destination(species.scientific_name, observation.photo_url)
                    copied = self.archive.copy_into(observation.photo_url, destination)
                    if self._claim_species_image(session, species, copied):
                        archived = copied
                    else:
                        logger.info(f"Species {species.species_id} already has an image, discarding {copied}")
                        self.archive.remove(copied)
                    copied = None if archived is None else copied

                lost = self._transition(
                    session, observation, ObservationStatus.VERIFIED, copied,
                    species_id=species.species_id, notes=notes,
                )
                if lost is not None:
                    return lost
                self._commit(session)
            except Exception:
                session.rollback()
                self._discard_copy(copied)
                raise

            logger.info(
                f"Observation {observation_id} verified as species {species.species_id} "
                f"({species.scientific_name})"
            )
            return self._response(observation, species, changed=True, archived=archived)

    def confirm_new(
        self,
        observation_id: int,
        scientific_name: str,
        common_name: Optional[str] = None,
        is_endangered: Optional[bool] = None,
        description: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ModerationResponse:
        """
        Create a new species from an observation and verify the observation.

        The photo is always archived for the new species; a missing photo
        fails the confirmation with FileSystemError.
        """
        _require_id(observation_id, "observation_id")
        name = _clean_optional(scientific_name)
        if name is None:
            raise ValidationError("scientific_name is required")

        with self.session_factory() as session:
            observation = self._load_observation(session, observation_id)
            if observation.status.is_terminal:
                return self._unchanged(session, observation)

            copied: Optional[str] = None
            try:
                species = self.resolver.create(
                    session, name,
                    common_name=_clean_optional(common_name),
                    is_endangered=is_endangered,
                    description=_clean_optional(description),
                )
                if not self.archive.exists(observation.photo_url):
                    raise FileSystemError(
                        f"Photo for observation {observation_id} is missing: {observation.photo_url}",
                        details={"photo_url": observation.photo_url},
                    )
                destination = self.archive.species_destination(species.scientific_name, observation.photo_url)
                copied = self.archive.copy_into(observation.photo_url, destination)

                species.image_url = copied
                session.add(species)
                lost = self._transition(
                    session, observation, ObservationStatus.VERIFIED, copied,
                    species_id=species.species_id, notes=notes,
                )
                if lost is not None:
                    return lost
                self._commit(session)
            except Exception:
                session.rollback()
                self._discard_copy(copied)
                raise

            logger.info(
                f"Observation {observation_id} verified as new species {species.species_id} "
                f"({species.scientific_name})"
            )
            return self._response(observation, species, changed=True, archived=copied)

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def reject(self, observation_id: int, notes: Optional[str] = None) -> ModerationResponse:
        """Mark a pending observation as rejected. No file or species side effects."""
        _require_id(observation_id, "observation_id")

        with self.session_factory() as session:
            observation = self._load_observation(session, observation_id)
            if observation.status.is_terminal:
                return self._unchanged(session, observation)

            try:
                lost = self._transition(session, observation, ObservationStatus.REJECTED, notes=notes)
                if lost is not None:
                    return lost
                self._commit(session)
            except Exception:
                session.rollback()
                raise

            logger.info(f"Observation {observation_id} rejected")
            return self._response(observation, None, changed=True)

    def update_status(
        self,
        observation_id: int,
        status: Any,
        notes: Optional[str] = None,
    ) -> ModerationResponse:
        """
        Generic status change requested by an admin.

        ``rejected`` behaves like reject(); ``verified`` is only allowed when
        the observation already references a species; moving back to
        ``pending`` is not a valid transition.
        """
        _require_id(observation_id, "observation_id")
        try:
            target = ObservationStatus(status)
        except ValueError as e:
            raise ValidationError(f"Unknown observation status {status!r}") from e

        if target is ObservationStatus.PENDING:
            raise ValidationError("Observations cannot be moved back to pending")
        if target is ObservationStatus.REJECTED:
            return self.reject(observation_id, notes=notes)

        with self.session_factory() as session:
            observation = self._load_observation(session, observation_id)
            if observation.status.is_terminal:
                return self._unchanged(session, observation)
            if observation.species_id is None:
                raise ValidationError(
                    "Observation has no species; use confirm-existing or confirm-new to verify it"
                )

            try:
                lost = self._transition(session, observation, ObservationStatus.VERIFIED, notes=notes)
                if lost is not None:
                    return lost
                self._commit(session)
            except Exception:
                session.rollback()
                raise

            species = self.resolver.get(session, observation.species_id)
            logger.info(f"Observation {observation_id} verified as species {observation.species_id}")
            return self._response(observation, species, changed=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_observation(self, session: Session, observation_id: int) -> PlantObservation:
        observation = self.store.get(session, observation_id)
        if observation is None:
            raise NotFoundError(f"Observation {observation_id} not found")
        return observation

    def _load_species(self, session: Session, species_id: int) -> Species:
        species = self.resolver.get(session, species_id)
        if species is None:
            raise NotFoundError(f"Species {species_id} not found")
        return species

    def _transition(
        self,
        session: Session,
        observation: PlantObservation,
        status: ObservationStatus,
        copied: Optional[str] = None,
        species_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> Optional[ModerationResponse]:
        """
        Apply the status change if the observation is still pending.

        Returns None when the change was applied. When another moderator
        finished the observation first, the transaction is rolled back, the
        copy made by this call is removed, and the no-op response is returned.
        """
        if self.store.update_status(session, observation, status, species_id=species_id, notes=notes):
            return None
        response = self._unchanged(session, observation)
        session.rollback()
        self._discard_copy(copied)
        return response

    def _claim_species_image(self, session: Session, species: Species, image_ref: str) -> bool:
        """
        Set the species image only if it is still unset (first write wins).

        Returns:
            True if this call set the image
        """
        statement = (
            update(Species)
            .where(Species.species_id == species.species_id, Species.image_url.is_(None))
            .values(image_url=image_ref)
        )
        try:
            session.flush()
            claimed = session.connection().execute(statement).rowcount == 1
            session.refresh(species)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to set image for species {species.species_id}: {e}") from e
        return claimed

    def _commit(self, session: Session) -> None:
        try:
            session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to commit moderation change: {e}") from e

    def _discard_copy(self, copied: Optional[str]) -> None:
        """Remove an archived copy whose transaction did not commit."""
        if copied is None:
            return
        try:
            self.archive.remove(copied)
        except FileSystemError as e:
            logger.error(f"Could not remove orphaned archive copy {copied}: {e}")

    def _unchanged(self, session: Session, observation: PlantObservation) -> ModerationResponse:
        logger.info(
            f"Observation {observation.observation_id} is already {observation.status.value}; nothing to do"
        )
        species = None
        if observation.species_id is not None:
            species = self.resolver.get(session, observation.species_id)
        return self._response(observation, species, changed=False)

    def _response(
        self,
        observation: PlantObservation,
        species: Optional[Species],
        changed: bool,
        archived: Optional[str] = None,
    ) -> ModerationResponse:
        return ModerationResponse(
            observation=ObservationRead.model_validate(observation),
            species=SpeciesRead.model_validate(species) if species is not None else None,
            changed=changed,
            archived_image=archived,
        )
