"""
Shared fixtures: an in-memory database per test, a temporary upload
archive, and a scripted classifier channel.
"""

import io
import os
import tempfile

# Settings are read once; point them somewhere harmless before the app is imported
os.environ.setdefault("SMARTPLANT_DATABASE_URL", "sqlite://")
os.environ.setdefault("SMARTPLANT_UPLOAD_DIR", tempfile.mkdtemp(prefix="smartplant-uploads-"))

import pytest

from smartplant.db.models import AIResult, PlantObservation, Species
from smartplant.db.session import build_engine, build_session_factory, init_db
from smartplant.models.schemas import ObservationCreate
from smartplant.services.file_archive import FileArchive
from smartplant.services.observation_store import ObservationStore
from smartplant.services.species_resolver import SpeciesResolver


RAFFLESIA_RESPONSE = {
    "species_name": "Rafflesia arnoldii",
    "confidence": 0.42,
    "topk": [
        {"name": "Rafflesia arnoldii", "confidence": 0.42},
        {"name": "Amorphophallus titanum", "confidence": 0.31},
    ],
}


class StubChannel:
    """Classifier channel that returns canned responses and records requests."""

    def __init__(self, response=None, error=None):
        self.response = response if response is not None else dict(RAFFLESIA_RESPONSE)
        self.error = error
        self.requests = []

    async def call(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def archive(tmp_path):
    archive = FileArchive(tmp_path / "uploads")
    archive.ensure_root()
    return archive


@pytest.fixture
def resolver():
    return SpeciesResolver()


@pytest.fixture
def store(resolver):
    return ObservationStore(resolver)


@pytest.fixture
def stub_channel():
    return StubChannel()


@pytest.fixture
def photo(archive):
    """Store a small fake photo and return its public reference."""
    def _photo(filename="leaf.jpg", content=b"\xff\xd8\xff fake jpeg bytes"):
        _, public_ref = archive.save_upload(io.BytesIO(content), filename)
        return public_ref
    return _photo


@pytest.fixture
def seed(session_factory):
    """Insert rows in their own committed transaction and return their ids."""
    class Seeder:
        def species(self, scientific_name, **fields):
            with session_factory() as session:
                row = Species(scientific_name=scientific_name, **fields)
                session.add(row)
                session.commit()
                return row.species_id

        def observation(self, photo_url="/uploads/missing.jpg", **fields):
            with session_factory() as session:
                row = PlantObservation(**ObservationCreate(photo_url=photo_url, **fields).model_dump())
                session.add(row)
                session.commit()
                return row.observation_id

        def result(self, observation_id, species_id, confidence, rank):
            with session_factory() as session:
                session.add(AIResult(
                    observation_id=observation_id,
                    species_id=species_id,
                    confidence_score=confidence,
                    rank=rank,
                ))
                session.commit()

    return Seeder()
