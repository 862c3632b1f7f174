"""
Tests for request instrumentation: label cardinality and the timing header.
"""

from fastapi import FastAPI
from fastapi.testclient import TestClient

from poliscope_backend.instrumentation.middleware import (
    UNMATCHED_ROUTE,
    InstrumentationMiddleware,
    active_requests,
    api_request_count,
)


def _make_app():
    app = FastAPI()

    @app.get("/api/debates/{debate_id}")
    async def read_debate(debate_id: str):
        return {"id": debate_id}

    app.add_middleware(InstrumentationMiddleware, enable_logging=False)
    return app


def _label_values(metric, label):
    return {
        sample.labels[label]
        for family in metric.collect()
        for sample in family.samples
        if label in sample.labels
    }


def test_path_parameters_share_one_label_set():
    client = TestClient(_make_app())

    for i in range(5):
        response = client.get(f"/api/debates/debate-{i}")
        assert response.status_code == 200
        assert "X-Request-Duration-Ms" in response.headers

    endpoints = _label_values(api_request_count, "endpoint")
    assert "/api/debates/{debate_id}" in endpoints
    assert not any(endpoint.startswith("/api/debates/debate-") for endpoint in endpoints)
    assert _label_values(active_requests, "method") <= {"GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"}


def test_unknown_paths_are_grouped():
    client = TestClient(_make_app())

    for i in range(3):
        assert client.get(f"/nowhere/{i}").status_code == 404

    endpoints = _label_values(api_request_count, "endpoint")
    assert UNMATCHED_ROUTE in endpoints
    assert not any(endpoint.startswith("/nowhere") for endpoint in endpoints)
