"""
FastAPI dependency injection.

Provides the services and components used by the routes as cached
singletons, so tests can swap any of them with app.dependency_overrides.
"""

from functools import lru_cache
from typing import Generator

from fastapi import Depends
from sqlalchemy.orm import sessionmaker
from sqlmodel import Session

from smartplant.core.config import Settings, get_settings
from smartplant.db.session import get_session_factory
from smartplant.services.file_archive import FileArchive
from smartplant.services.inference_gateway import InferenceGateway
from smartplant.services.ingestion_service import IngestionService
from smartplant.services.moderation import ModerationService
from smartplant.services.observation_store import ObservationStore
from smartplant.services.species_resolver import SpeciesResolver
from smartplant.services.worker_supervisor import WorkerSupervisor


@lru_cache()
def get_supervisor() -> WorkerSupervisor:
    """Get the process-wide classifier worker supervisor."""
    settings = get_settings()
    return WorkerSupervisor(
        settings.worker_command(),
        timeout=settings.worker_timeout_seconds,
        env={"SMARTPLANT_CLASSIFIER_MODEL_ID": settings.classifier_model_id},
    )


@lru_cache()
def get_archive() -> FileArchive:
    """Get cached upload archive."""
    settings = get_settings()
    return FileArchive(settings.upload_dir, settings.public_upload_prefix)


@lru_cache()
def get_resolver() -> SpeciesResolver:
    """Get cached species resolver."""
    return SpeciesResolver()


@lru_cache()
def get_store() -> ObservationStore:
    """Get cached observation store."""
    return ObservationStore(get_resolver())


@lru_cache()
def get_gateway() -> InferenceGateway:
    """Get cached inference gateway bound to the worker supervisor."""
    return InferenceGateway(get_supervisor(), threshold=get_settings().unsure_threshold)


def get_sessions() -> sessionmaker:
    """Session factory used by the services."""
    return get_session_factory()


def get_session(
    session_factory: sessionmaker = Depends(get_sessions),
) -> Generator[Session, None, None]:
    """Request-scoped session for read endpoints."""
    with session_factory() as session:
        yield session


def get_ingestion_service(
    settings: Settings = Depends(get_settings),
    gateway: InferenceGateway = Depends(get_gateway),
    store: ObservationStore = Depends(get_store),
    session_factory: sessionmaker = Depends(get_sessions),
) -> IngestionService:
    return IngestionService(gateway, store, session_factory, top_k=settings.default_top_k)


def get_moderation_service(
    store: ObservationStore = Depends(get_store),
    resolver: SpeciesResolver = Depends(get_resolver),
    archive: FileArchive = Depends(get_archive),
    session_factory: sessionmaker = Depends(get_sessions),
) -> ModerationService:
    return ModerationService(store, resolver, archive, session_factory)


__all__ = [
    "get_archive",
    "get_gateway",
    "get_ingestion_service",
    "get_moderation_service",
    "get_resolver",
    "get_session",
    "get_sessions",
    "get_store",
    "get_supervisor",
]
