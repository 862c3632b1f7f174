import pytest
from fastapi.testclient import TestClient

from poliscope_backend.backend import create_app

pytestmark = pytest.mark.integration


@pytest.fixture
def client(pipeline):
    app = create_app(pipeline=pipeline, run_background_loops=False)
    with TestClient(app) as test_client:
        yield test_client


def test_read_settings_returns_running_config(client, pipeline):
    response = client.get("/api/settings/pipeline")

    assert response.status_code == 200
    assert response.json() == pipeline.config.to_dict()


def test_update_settings_reconfigures_pipeline(client, pipeline):
    response = client.put(
        "/api/settings/pipeline",
        json={"similarity_threshold": 0.7, "subscriber_queue_size": 32, "bogus": 1},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["similarity_threshold"] == 0.7
    assert body["subscriber_queue_size"] == 32
    assert "bogus" not in body

    assert pipeline.clustering.config.similarity_threshold == 0.7
    assert pipeline.fanout.queue_size == 32
    assert client.get("/api/settings/pipeline").json()["similarity_threshold"] == 0.7


def test_update_settings_ignores_invalid_values(client):
    body = client.put("/api/settings/pipeline", json={"merge_threshold": "high"}).json()
    assert body["merge_threshold"] == 0.85


def test_update_settings_requires_object(client):
    assert client.put("/api/settings/pipeline", json=[1, 2]).status_code == 422
