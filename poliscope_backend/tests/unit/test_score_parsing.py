"""
Tests for oracle output validation.
"""

import pytest

from poliscope_backend.errors import ScoringRejected
from poliscope_backend.services.score_parsing import ScoreResult, parse_score_payload

FINGERPRINT = "a" * 64


def test_valid_payload_becomes_score(payload_factory):
    payload = payload_factory(economic=-40, social=10, fallacies=[("Strawman", "HIGH")])

    result = parse_score_payload(payload, FINGERPRINT, model_version="v2")

    assert result.ok
    score = result.unwrap()
    assert score.statement_id == FINGERPRINT
    assert score.ideology.economic == -40
    assert score.emotions.hope == 60
    assert score.fallacies[0].type == "strawman"
    assert score.fallacies[0].severity == "high"
    assert score.model_version == "v2"
    assert score.stale is False


def test_payload_model_version_wins(payload_factory):
    payload = dict(payload_factory(), modelVersion="oracle-7")
    assert parse_score_payload(payload, FINGERPRINT, "v1").unwrap().model_version == "oracle-7"


def test_nested_analysis_shape_is_accepted():
    payload = {
        "ideologicalMapping": {"spectrumPosition": {"economic": 30, "social": -5}, "confidence": 72},
        "emotionalProfile": {"anger": 5, "fear": 15, "hope": 70},
        "rhetoricalAnalysis": {"fallacies": [{"type": "slippery slope", "severity": "medium"}]},
    }

    score = parse_score_payload(payload, FINGERPRINT).unwrap()

    assert score.ideology.social == -5
    assert score.confidence == 72
    assert score.fallacies[0].type == "slippery slope"


def test_score_wrapper_is_unwrapped(payload_factory):
    assert parse_score_payload({"score": payload_factory()}, FINGERPRINT).ok


def test_out_of_range_axis_is_rejected(payload_factory):
    result = parse_score_payload(payload_factory(economic=150), FINGERPRINT)

    assert not result.ok
    assert isinstance(result.error, ScoringRejected)
    assert "ideology.economic" in str(result.error)


def test_missing_emotions_is_rejected(payload_factory):
    payload = payload_factory()
    del payload["emotions"]
    assert not parse_score_payload(payload, FINGERPRINT).ok


def test_unknown_severity_is_rejected(payload_factory):
    assert not parse_score_payload(payload_factory(fallacies=[("ad hominem", "extreme")]), FINGERPRINT).ok


def test_explicit_refusal_is_a_policy_rejection():
    result = parse_score_payload({"rejected": True, "reason": "incitement"}, FINGERPRINT)
    assert "policy rejection" in str(result.error)
    assert "incitement" in str(result.error)


def test_non_object_payload_is_rejected():
    result = parse_score_payload(["not", "a", "score"], FINGERPRINT)
    assert not result.ok
    assert result.error.fingerprint == FINGERPRINT


def test_unwrap_raises_the_carried_error(payload_factory):
    result = parse_score_payload(payload_factory(hope=-1), FINGERPRINT)
    with pytest.raises(ScoringRejected):
        result.unwrap()


def test_empty_result_unwrap_raises():
    with pytest.raises(ScoringRejected):
        ScoreResult().unwrap()
