"""
HTTP contract tests for the debates router, run against the real app factory
with an in-memory pipeline and a scripted oracle.
"""

import pytest
from fastapi.testclient import TestClient

from poliscope_backend.backend import create_app
from poliscope_backend.services.oracle_transport import OracleRejectedError, OracleTransientError

pytestmark = pytest.mark.integration

S1 = "AI regulation must balance innovation and safety"
S2 = "AI regulation should protect safety without killing innovation"


@pytest.fixture
def client(pipeline):
    app = create_app(pipeline=pipeline, run_background_loops=False)
    with TestClient(app) as test_client:
        yield test_client


def test_ingest_accepts_and_builds_debate(client, make_raw, minutes):
    first = client.post("/api/statements", json=make_raw(S1, region="EU"))
    second = client.post("/api/statements", json=make_raw(S2, occurred_at=minutes(5)))

    assert first.status_code == 202
    body = first.json()
    assert body["status"] == "accepted"
    assert body["is_new_debate"] is True
    assert second.json()["debate_id"] == body["debate_id"]

    debate = client.get(f"/api/debates/{body['debate_id']}")
    assert debate.status_code == 200
    snapshot = debate.json()
    assert snapshot["version"] == 2
    assert snapshot["aggregate"]["statement_count"] == 2
    assert snapshot["aggregate"]["ideology_breakdown"]["center"] == 100
    assert snapshot["aggregate"]["regions"] == ["EU"]


def test_invalid_statement_is_422_with_field(client, make_raw):
    raw = make_raw()
    raw["sourceType"] = "podcast"

    response = client.post("/api/statements", json=raw)

    assert response.status_code == 422
    assert response.json()["reason"] == "validation"
    assert response.json()["field"] == "sourceType"


def test_non_object_payload_is_rejected(client):
    response = client.post("/api/statements", json=["not", "a", "statement"])
    assert response.status_code == 422
    assert response.json()["field"] == "payload"


def test_duplicate_ingest_is_flagged(client, make_raw):
    first = client.post("/api/statements", json=make_raw(S1)).json()
    again = client.post("/api/statements", json=make_raw(S1)).json()

    assert again["duplicate"] is True
    assert again["debate_id"] == first["debate_id"]


def test_oracle_rejection_lands_in_review_queue(client, fake_oracle, make_raw):
    fake_oracle.script = [OracleRejectedError("HTTP 400: refused", status_code=400)]

    response = client.post("/api/statements", json=make_raw(S1))

    assert response.status_code == 422
    assert response.json()["reason"] == "scoring_rejected"
    queue = client.get("/api/review-queue").json()
    assert queue["total"] == 1
    assert queue["items"][0]["reason"] == "scoring_rejected"


def test_oracle_outage_is_pending(client, fake_oracle, make_raw):
    fake_oracle.script = [OracleTransientError("HTTP 503", status_code=503)] * 3

    response = client.post("/api/statements", json=make_raw(S1))

    assert response.status_code == 202
    assert response.json()["status"] == "pending"
    queue = client.get("/api/retry-queue").json()
    assert queue["total"] == 1
    assert queue["items"][0]["attempts"] == 1


def test_statement_status_lookup(client, make_raw):
    accepted = client.post("/api/statements", json=make_raw(S1)).json()

    status = client.get(f"/api/statements/{accepted['statement_id']}")

    assert status.status_code == 200
    assert status.json()["status"] == "accepted"
    assert status.json()["debate_id"] == accepted["debate_id"]
    assert status.json()["score"]["emotions"]["hope"] == 60
    assert client.get(f"/api/statements/{'0' * 64}").status_code == 404


def test_list_debates_filters_and_limits(client, make_raw, minutes):
    client.post("/api/statements", json=make_raw("Fisheries quotas need reform", region="EU"))
    client.post("/api/statements", json=make_raw("Farm subsidies should end", occurred_at=minutes(3)))

    everything = client.get("/api/debates").json()
    assert everything["total"] == 2
    assert everything["debates"][0]["aggregate"]["statement_count"] == 1

    eu_only = client.get("/api/debates", params={"region": "EU"}).json()
    assert eu_only["total"] == 1

    limited = client.get("/api/debates", params={"limit": 1}).json()
    assert limited["total"] == 2
    assert len(limited["debates"]) == 1


def test_unknown_debate_is_404(client):
    assert client.get("/api/debates/nope").status_code == 404


def test_merge_pass_endpoint(client, make_raw):
    client.post("/api/statements", json=make_raw(S1))

    response = client.post("/api/debates/merge-pass")

    assert response.status_code == 200
    assert response.json() == {"merged": []}


def test_score_invalidation_endpoint(client, make_raw):
    accepted = client.post("/api/statements", json=make_raw(S1)).json()

    assert client.post("/api/scores/invalidate", json={}).status_code == 400
    assert client.post("/api/scores/invalidate", json={"fingerprint": "short"}).status_code == 422

    bumped = client.post("/api/scores/invalidate", json={"model_version": "v2"}).json()
    assert bumped == {"invalidated": 0, "stale": 1, "model_version": "v2"}

    dropped = client.post("/api/scores/invalidate", json={"fingerprint": accepted["statement_id"]}).json()
    assert dropped["invalidated"] == 1


def test_health_endpoints(client, make_raw):
    client.post("/api/statements", json=make_raw(S1))

    assert client.get("/health").json() == {"status": "ok"}
    health = client.get("/api/debates/health").json()
    assert health["debates"] == 1
    assert health["active_debates"] == 1
    assert health["subscribers"] == 0


def test_metrics_endpoint_exposes_pipeline_counters(client, make_raw):
    client.post("/api/statements", json=make_raw(S1))

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "poliscope_statements_ingested_total" in response.text
    assert "X-Request-Duration-Ms" in client.get("/api/debates").headers


def test_routes_503_without_pipeline():
    app = create_app(pipeline=None, run_background_loops=False)
    client = TestClient(app)

    assert client.get("/api/debates").status_code == 503
