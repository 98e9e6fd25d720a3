"""
API Tests for the SmartPlant Observation Service

Exercises the HTTP layer end to end against an in-memory database, a
temporary upload archive and a stub classifier channel.
"""

import io

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import func
from sqlmodel import select

from smartplant.core.dependencies import get_archive, get_gateway, get_sessions, get_supervisor
from smartplant.core.exceptions import FileSystemError, WorkerUnavailable
from smartplant.db.models import PlantObservation, Species
from smartplant.main import app
from smartplant.models.enums import WorkerState
from smartplant.services.inference_gateway import InferenceGateway


class StubSupervisor:
    state = WorkerState.RUNNING
    pid = 4321
    spawn_count = 1


@pytest.fixture
def client(session_factory, archive, stub_channel):
    """Create test client wired to the test database, archive and classifier."""
    app.dependency_overrides[get_sessions] = lambda: session_factory
    app.dependency_overrides[get_archive] = lambda: archive
    app.dependency_overrides[get_gateway] = lambda: InferenceGateway(stub_channel, threshold=0.6)
    app.dependency_overrides[get_supervisor] = lambda: StubSupervisor()
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def sample_image():
    """Generate a sample JPEG (a green square standing in for a leaf)."""
    img = Image.new("RGB", (224, 224), color=(34, 139, 34))
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG")
    return buffer.getvalue()


def submit(client, image_bytes, filename="rafflesia.JPG", **form):
    return client.post(
        "/api/v1/scan",
        files={"image": (filename, image_bytes, "image/jpeg")},
        data=form,
    )


def count(session_factory, model):
    with session_factory() as session:
        return session.exec(select(func.count()).select_from(model)).one()


class TestHealthEndpoints:
    """Test health check endpoints."""

    def test_health_check(self, client):
        response = client.get("/api/v1/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert "version" in data

    def test_liveness_check(self, client):
        response = client.get("/api/v1/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_readiness_check(self, client):
        response = client.get("/api/v1/health/ready")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "ready"
        assert data["components"]["classifier_worker"]["status"] == "ready"
        assert data["components"]["database"]["status"] == "ready"

    def test_readiness_fails_when_worker_stopped(self, client):
        class StoppedSupervisor(StubSupervisor):
            state = WorkerState.STOPPED
            pid = None

        app.dependency_overrides[get_supervisor] = lambda: StoppedSupervisor()
        response = client.get("/api/v1/health/ready")
        assert response.status_code == 503


class TestScanEndpoint:
    """Test photo submission."""

    def test_low_confidence_scan_is_flagged(self, client, sample_image, stub_channel, archive, session_factory):
        response = submit(client, sample_image, location_latitude="NaN", location_longitude="", user_id="12")
        assert response.status_code == 200

        data = response.json()
        assert data["primary"]["species_name"] == "Rafflesia arnoldii"
        assert data["primary"]["confidence"] == 0.42
        assert data["primary"]["unsure"] is True
        assert data["primary"]["image_path"].startswith("/uploads/")
        assert data["primary"]["image_path"].endswith(".jpg")
        assert [(r["rank"], r["scientific_name"]) for r in data["results"]] == [
            (1, "Rafflesia arnoldii"),
            (2, "Amorphophallus titanum"),
        ]

        request = stub_channel.requests[0]
        assert request["topk"] == 5
        assert request["image"] == str(archive.local_path(data["primary"]["image_path"]))

        with session_factory() as session:
            observation = session.get(PlantObservation, data["observation_id"])
            assert observation.status.value == "pending"
            assert observation.auto_flagged is True
            assert observation.location_latitude == 0.0
            assert observation.user_id == 12
            assert observation.source == "camera"
            names = session.exec(select(Species.scientific_name)).all()
            assert sorted(names) == ["Amorphophallus titanum", "Rafflesia arnoldii"]

    def test_confident_scan_is_not_flagged(self, client, sample_image, stub_channel):
        stub_channel.response = {
            "species_name": "Ficus elastica",
            "confidence": 0.93,
            "topk": [{"name": "Ficus elastica", "confidence": 0.93}],
        }
        response = submit(client, sample_image, source="gallery")
        assert response.status_code == 200
        assert response.json()["primary"]["unsure"] is False

    def test_missing_image(self, client):
        response = client.post("/api/v1/scan", data={"location_name": "Kew"})
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_worker_unavailable_writes_nothing(self, client, sample_image, stub_channel, archive, session_factory):
        stub_channel.error = WorkerUnavailable("Classifier worker exited before responding")

        response = submit(client, sample_image)

        assert response.status_code == 503
        assert response.json()["error"] == "worker_unavailable"
        assert count(session_factory, PlantObservation) == 0
        assert [p for p in archive.root.iterdir() if p.is_file()] == []

    def test_cleanup_failure_keeps_worker_error(self, client, sample_image, stub_channel, archive, monkeypatch):
        stub_channel.error = WorkerUnavailable("Classifier worker exited before responding")

        def failing_remove(public_ref):
            raise FileSystemError(f"Could not remove {public_ref}")

        monkeypatch.setattr(archive, "remove", failing_remove)

        response = submit(client, sample_image)

        assert response.status_code == 503
        assert response.json()["error"] == "worker_unavailable"


class TestObservationEndpoints:
    """Test the moderation queue and moderation actions."""

    def test_queue_lists_pending(self, client, sample_image):
        first = submit(client, sample_image).json()["observation_id"]
        second = submit(client, sample_image).json()["observation_id"]

        response = client.get("/api/v1/observations", params={"page_size": 1})
        assert response.status_code == 200
        data = response.json()
        assert [i["observation_id"] for i in data["items"]] == [second]
        assert data["has_more"] is True
        assert data["items"][0]["top_scientific_name"] == "Rafflesia arnoldii"

        data = client.get("/api/v1/observations", params={"page_size": 1, "offset": 1}).json()
        assert [i["observation_id"] for i in data["items"]] == [first]

    def test_queue_filters(self, client, sample_image, stub_channel):
        flagged = submit(client, sample_image).json()["observation_id"]
        stub_channel.response = {"species_name": "Ficus elastica", "confidence": 0.93}
        confident = submit(client, sample_image).json()["observation_id"]

        data = client.get("/api/v1/observations", params={"auto_flagged": "true"}).json()
        assert [i["observation_id"] for i in data["items"]] == [flagged]

        data = client.get("/api/v1/observations", params={"min_confidence": 0.9}).json()
        assert [i["observation_id"] for i in data["items"]] == [confident]

    def test_unknown_status_filter(self, client):
        response = client.get("/api/v1/observations", params={"status": "archived"})
        assert response.status_code == 400

    def test_observation_detail(self, client, sample_image):
        observation_id = submit(client, sample_image).json()["observation_id"]

        response = client.get(f"/api/v1/observations/{observation_id}")
        assert response.status_code == 200
        data = response.json()
        assert data["observation"]["observation_id"] == observation_id
        assert [r["rank"] for r in data["results"]] == [1, 2]

    def test_unknown_observation(self, client):
        response = client.get("/api/v1/observations/999")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_confirm_existing_archives_image(self, client, sample_image, seed, archive):
        seed.species("Nepenthes rajah", species_id=7)
        observation_id = submit(client, sample_image).json()["observation_id"]

        response = client.post(
            f"/api/v1/observations/{observation_id}/confirm-existing",
            json={"species_id": 7, "notes": "Checked by botanist"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["changed"] is True
        assert data["observation"]["status"] == "verified"
        assert data["observation"]["species_id"] == 7
        assert data["archived_image"].startswith("/uploads/species/nepenthes-rajah/")
        assert archive.local_path(data["archived_image"]).is_file()

        species = client.get("/api/v1/species/7").json()
        assert species["image_url"] == data["archived_image"]

    def test_confirm_new(self, client, sample_image):
        observation_id = submit(client, sample_image).json()["observation_id"]

        response = client.post(
            f"/api/v1/observations/{observation_id}/confirm-new",
            json={"scientific_name": "Nepenthes rajah", "common_name": "Giant pitcher plant"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["species"]["scientific_name"] == "Nepenthes rajah"
        assert data["species"]["image_url"] == data["archived_image"]

    def test_confirm_new_existing_species(self, client, sample_image):
        observation_id = submit(client, sample_image).json()["observation_id"]

        response = client.post(
            f"/api/v1/observations/{observation_id}/confirm-new",
            json={"scientific_name": "Rafflesia arnoldii"},
        )
        assert response.status_code == 400

    def test_invalid_species_id(self, client, sample_image):
        observation_id = submit(client, sample_image).json()["observation_id"]
        response = client.post(
            f"/api/v1/observations/{observation_id}/confirm-existing",
            json={"species_id": 0},
        )
        assert response.status_code == 400

    def test_reject_twice(self, client, sample_image):
        observation_id = submit(client, sample_image).json()["observation_id"]

        first = client.post(f"/api/v1/observations/{observation_id}/reject", json={"notes": "blurry"})
        second = client.post(f"/api/v1/observations/{observation_id}/reject", json={})

        assert first.json()["changed"] is True
        assert first.json()["observation"]["status"] == "rejected"
        assert second.status_code == 200
        assert second.json()["changed"] is False

    def test_status_patch(self, client, sample_image):
        observation_id = submit(client, sample_image).json()["observation_id"]

        response = client.patch(f"/api/v1/observations/{observation_id}/status", json={"status": "pending"})
        assert response.status_code == 400

        response = client.patch(f"/api/v1/observations/{observation_id}/status", json={"status": "rejected"})
        assert response.status_code == 200
        assert response.json()["observation"]["status"] == "rejected"

    def test_unknown_species(self, client):
        response = client.get("/api/v1/species/12345")
        assert response.status_code == 404
