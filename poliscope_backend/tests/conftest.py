"""
Pytest configuration and shared fixtures for the debate pipeline tests.

This module provides:
- Scripted fakes for the scoring oracle and the similarity capability
- Factories for raw payloads, statements and scores
- A fully wired in-memory pipeline
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from poliscope_backend.domain import EmotionalProfile, Fallacy, IdeologyVector, Score, Statement
from poliscope_backend.errors import SimilarityUnavailable
from poliscope_backend.services.embedding_service import LexicalEmbeddingService
from poliscope_backend.services.ingest_pipeline import build_pipeline
from poliscope_backend.services.pipeline_config import PipelineConfig
from poliscope_backend.services.statement_normalizer import normalize_statement

BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# Oracle and similarity fakes
# ============================================================================

def score_payload(
    economic: float = 0,
    social: float = 0,
    anger: float = 10,
    fear: float = 20,
    hope: float = 60,
    fallacies=(),
    confidence: float = 80,
) -> Dict[str, Any]:
    return {
        "ideology": {"economic": economic, "social": social},
        "emotions": {"anger": anger, "fear": fear, "hope": hope},
        "fallacies": [{"type": t, "severity": s} for t, s in fallacies],
        "confidence": confidence,
    }


class FakeOracleTransport:
    """
    Plays back a script of outcomes, then answers from `by_text` or a default.

    Script entries that are exceptions are raised; anything else is returned
    as the oracle payload. Setting `gate` holds every call until it is set.
    """

    def __init__(self, script=None, by_text: Optional[Dict[str, Any]] = None, default=None):
        self.script: List[Any] = list(script or [])
        self.by_text = dict(by_text or {})
        self.default = default if default is not None else score_payload()
        self.calls: List[tuple] = []
        self.gate: Optional[asyncio.Event] = None

    async def analyze(self, text: str, context: Dict[str, Any]) -> Any:
        self.calls.append((text, context))
        if self.gate is not None:
            await self.gate.wait()
        if self.script:
            outcome = self.script.pop(0)
        else:
            outcome = self.by_text.get(text, self.default)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FailingStrategy:
    """Similarity capability that is always down."""

    def __init__(self):
        self.calls = 0

    async def embed(self, text: str):
        self.calls += 1
        raise SimilarityUnavailable("embedding backend offline")


@pytest.fixture
def fake_oracle():
    return FakeOracleTransport()


@pytest.fixture
def oracle_factory() -> Callable[..., FakeOracleTransport]:
    return FakeOracleTransport


@pytest.fixture
def payload_factory():
    return score_payload


@pytest.fixture
def failing_strategy():
    return FailingStrategy()


# ============================================================================
# Data factories
# ============================================================================

def create_raw_statement(
    text: str = "AI regulation must balance innovation and safety",
    source_type: str = "speech",
    occurred_at: Any = None,
    author: Any = None,
    **extra,
) -> Dict[str, Any]:
    if occurred_at is None:
        occurred_at = BASE_TIME
    if isinstance(occurred_at, datetime):
        occurred_at = occurred_at.isoformat()
    raw = {
        "text": text,
        "sourceType": source_type,
        "occurredAt": occurred_at,
    }
    if author is not None:
        raw["author"] = author
    raw.update(extra)
    return raw


def create_statement(text: str = "AI regulation must balance innovation and safety", **kwargs) -> Statement:
    return normalize_statement(create_raw_statement(text, **kwargs), now=BASE_TIME)


def create_score(
    statement_id: str,
    economic: float = 0,
    social: float = 0,
    anger: float = 10,
    fear: float = 20,
    hope: float = 60,
    fallacies=(),
    model_version: str = "v1",
) -> Score:
    return Score(
        statement_id=statement_id,
        ideology=IdeologyVector(economic=economic, social=social),
        emotions=EmotionalProfile(anger=anger, fear=fear, hope=hope),
        fallacies=tuple(Fallacy(type=t, severity=s) for t, s in fallacies),
        confidence=80.0,
        model_version=model_version,
    )


@pytest.fixture
def base_time():
    return BASE_TIME


@pytest.fixture
def make_raw():
    return create_raw_statement


@pytest.fixture
def make_statement():
    return create_statement


@pytest.fixture
def make_score():
    return create_score


@pytest.fixture
def minutes():
    return lambda n: BASE_TIME + timedelta(minutes=n)


# ============================================================================
# Wired pipeline
# ============================================================================

@pytest.fixture
def fast_config():
    """Defaults with retry backoff collapsed to zero."""
    return PipelineConfig(oracle_base_delay_seconds=0.0, oracle_max_delay_seconds=0.0)


@pytest.fixture
def pipeline(fake_oracle, fast_config):
    return build_pipeline(
        config=fast_config,
        transport=fake_oracle,
        strategy=LexicalEmbeddingService(),
        clock=lambda: BASE_TIME,
    )


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
