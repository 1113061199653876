"""API server tests over FastAPI's TestClient with an in-memory store."""
import json

import pytest
import requests
from fastapi.testclient import TestClient

import api_server
from agents import StoryStore
from pipeline import AdaptationPipeline
from utils import image_source
from utils.image_source import compute_source_hash
from conftest import FakeCapability, brief_payload, data_url, make_dossier, make_frame, png_bytes


@pytest.fixture
def store():
    return StoryStore([make_frame("F0"), make_frame("F1")])


@pytest.fixture
def client_for(store, settings):
    def factory(capability=None):
        pipeline = AdaptationPipeline(capability or FakeCapability(), registry=store.registry, settings=settings)
        api_server.app.dependency_overrides[api_server.get_store] = lambda: store
        api_server.app.dependency_overrides[api_server.get_pipeline] = lambda: pipeline
        return TestClient(api_server.app)

    yield factory
    api_server.app.dependency_overrides.clear()
    api_server.progress_history.clear()


class TestAdapt:

    def test_adapt_new_image(self, client_for, store):
        image = png_bytes((0, 90, 0))
        client = client_for()

        response = client.post("/api/adapt", json={"image_url": data_url(image), "frame_id": "new-1", "insert_at": 1})

        assert response.status_code == 200
        body = response.json()
        assert body["frame_id"] == "new-1"
        assert body["applied"] is True
        assert body["display_prompt"] == brief_payload()["video_prompt"]
        assert body["new_dossier"]["source_hash"] == compute_source_hash(image)
        assert body["frame"]["generation_status"] == "idle"
        assert store.index_of("new-1") == 1

    def test_regenerate_existing_frame(self, client_for, store):
        response = client_for().post("/api/adapt", json={"frame_id": "F1", "instruction": "night"})
        assert response.status_code == 200
        assert len(store.get("F1").image_versions) == 2

    def test_progress_is_recorded(self, client_for):
        client = client_for()
        client.post("/api/adapt", json={"frame_id": "F0"})
        events = client.get("/api/frames/F0/progress").json()["events"]
        assert [e["stage"] for e in events] == ["assembling_context", "analyzing", "synthesizing", "succeeded"]
        assert client.get("/api/frames/unknown/progress").status_code == 404

    def test_progress_history_is_bounded(self, client_for, monkeypatch):
        monkeypatch.setattr(api_server, "MAX_PROGRESS_HISTORY", 2)
        client = client_for()
        client.post("/api/adapt", json={"frame_id": "F0"})
        client.post("/api/adapt", json={"frame_id": "F1"})
        client.post("/api/adapt", json={"image_url": data_url(png_bytes()), "frame_id": "new-1"})

        assert list(api_server.progress_history) == ["F1", "new-1"]
        assert client.get("/api/frames/F0/progress").status_code == 404

    def test_known_dossier_by_hash(self, client_for, store):
        store.registry.upsert(make_dossier("h-cat", role_label="Рыжий кот"))
        capability = FakeCapability(structured=json.dumps(brief_payload(role_label="Другой")))
        response = client_for(capability).post("/api/adapt", json={"frame_id": "F0", "dossier_hash": "h-cat"})
        assert response.json()["brief"]["role_label"] == "Рыжий кот"

    def test_unknown_dossier_hash(self, client_for):
        response = client_for().post("/api/adapt", json={"frame_id": "F0", "dossier_hash": "nope"})
        assert response.status_code == 404

    def test_missing_image(self, client_for):
        assert client_for().post("/api/adapt", json={"instruction": "x"}).status_code == 400
        assert client_for().post("/api/adapt", json={"frame_id": "ghost"}).status_code == 404


class TestErrorMapping:

    @pytest.mark.parametrize("capability, status, kind", [
        (FakeCapability(structured=RuntimeError("429 RESOURCE_EXHAUSTED")), 429, "quota_exceeded"),
        (FakeCapability(structured=RuntimeError("503 UNAVAILABLE")), 503, "service_unavailable"),
        (FakeCapability(images=[]), 502, "generic"),
        (FakeCapability(structured="{}"), 502, "generic"),
    ])
    def test_stage_failures(self, client_for, capability, status, kind):
        response = client_for(capability).post("/api/adapt", json={"frame_id": "F0"})
        assert response.status_code == status
        detail = response.json()["detail"]
        assert detail["kind"] == kind
        assert detail["user_message"]

    @pytest.mark.parametrize("location", ["secret.env", "file://secret.env"])
    def test_server_paths_are_rejected(self, client_for, store, tmp_path, location):
        secret = tmp_path / "secret.env"
        secret.write_bytes(b"GOOGLE_API_KEY=super-secret")
        capability = FakeCapability()
        url = location.replace("secret.env", str(secret))

        response = client_for(capability).post("/api/adapt", json={"image_url": url, "frame_id": "bad"})

        assert response.status_code == 422
        assert response.json()["detail"]["stage"] == "context"
        assert capability.structured_calls == []
        assert store.get("bad") is None

    def test_unreachable_image_is_422(self, client_for, store, monkeypatch):
        def refuse(url, timeout):
            raise requests.ConnectionError("refused")

        monkeypatch.setattr(image_source, "CORS_PROXY_URL", "")
        monkeypatch.setattr(image_source.requests, "get", refuse)
        response = client_for().post("/api/adapt", json={"image_url": "https://example.invalid/x.png", "frame_id": "bad"})
        assert response.status_code == 422
        assert store.get("bad").generation_status.value == "error"

    def test_errors_endpoint(self, client_for):
        client = client_for(FakeCapability(images=[]))
        client.post("/api/adapt", json={"frame_id": "F0"})
        errors = client.get("/api/errors").json()["errors"]
        assert errors[0]["service"] == "synthesis_stage"


class TestDossiers:

    def test_list_frames_and_delete(self, client_for, store):
        store.registry.upsert(make_dossier("h1"))
        store.insert_frame(make_frame("S", source_hash="h1"))
        client = client_for()

        assert [d["source_hash"] for d in client.get("/api/dossiers").json()["dossiers"]] == ["h1"]
        assert [f["id"] for f in client.get("/api/dossiers/h1/frames").json()["frames"]] == ["S"]
        assert client.delete("/api/dossiers/h1").status_code == 200
        assert client.delete("/api/dossiers/h1").status_code == 404
        assert client.get("/api/dossiers/h1/frames").status_code == 404

    def test_frames_and_project(self, client_for):
        client = client_for()
        body = client.get("/api/frames").json()
        assert [f["id"] for f in body["frames"]] == ["F0", "F1"]
        assert body["total_duration"] == 6.0
        project = client.get("/api/project", params={"name": "Story"}).json()
        assert project["name"] == "Story"
        assert len(project["frames"]) == 2

    def test_health(self, client_for):
        assert client_for().get("/health").json()["status"] == "ok"
