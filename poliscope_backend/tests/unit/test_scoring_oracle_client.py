"""
Tests for the scoring oracle client: caching, retries, collapsing, deadlines.
"""

import asyncio
import random

import pytest

from poliscope_backend.errors import ScoringRejected, ScoringUnavailable
from poliscope_backend.services.oracle_transport import OracleRejectedError, OracleTransientError
from poliscope_backend.services.pipeline_config import PipelineConfig
from poliscope_backend.services.score_cache import ScoreCache
from poliscope_backend.services.scoring_oracle import ScoringOracleClient


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _client(transport, **config_overrides):
    config = PipelineConfig(**config_overrides)
    return ScoringOracleClient(
        transport,
        cache=ScoreCache(),
        config=config,
        model_version="v1",
        sleep=SleepRecorder(),
        rng=random.Random(42),
    )


@pytest.mark.asyncio
async def test_transient_failures_are_retried_then_cached(oracle_factory, make_statement):
    transport = oracle_factory(script=[
        OracleTransientError("HTTP 503", status_code=503),
        OracleTransientError("HTTP 503", status_code=503),
    ])
    client = _client(transport)
    statement = make_statement()

    score = await client.score(statement)

    assert score.statement_id == statement.id
    assert len(transport.calls) == 3
    assert len(client._sleep.delays) == 2
    assert len(client.cache) == 1

    # Served from the cache from now on.
    again = await client.score(statement)
    assert again == score
    assert len(transport.calls) == 3


@pytest.mark.asyncio
async def test_exhausted_retries_raise_unavailable(oracle_factory, make_statement):
    transport = oracle_factory(script=[OracleTransientError("down")] * 3)
    client = _client(transport)

    with pytest.raises(ScoringUnavailable) as exc_info:
        await client.score(make_statement())

    assert exc_info.value.attempts == 3
    assert len(transport.calls) == 3
    assert len(client.cache) == 0
    assert client.inflight_count == 0


@pytest.mark.asyncio
async def test_rejection_is_not_retried(oracle_factory, make_statement):
    transport = oracle_factory(script=[OracleRejectedError("HTTP 400", status_code=400)])
    client = _client(transport)

    with pytest.raises(ScoringRejected):
        await client.score(make_statement())

    assert len(transport.calls) == 1
    assert client._sleep.delays == []


@pytest.mark.asyncio
async def test_malformed_output_is_rejected_and_not_cached(oracle_factory, payload_factory, make_statement):
    transport = oracle_factory(script=[payload_factory(fear=300)])
    client = _client(transport)

    with pytest.raises(ScoringRejected):
        await client.score(make_statement())

    assert len(transport.calls) == 1
    assert len(client.cache) == 0


@pytest.mark.asyncio
async def test_unexpected_transport_error_is_retried(oracle_factory, make_statement):
    transport = oracle_factory(script=[RuntimeError("socket closed")])
    client = _client(transport)

    await client.score(make_statement())

    assert len(transport.calls) == 2


@pytest.mark.asyncio
async def test_attempt_timeout_counts_as_transient(oracle_factory, make_statement):
    transport = oracle_factory()
    transport.gate = asyncio.Event()
    client = _client(transport, oracle_timeout_seconds=0.01, oracle_max_attempts=2)

    with pytest.raises(ScoringUnavailable) as exc_info:
        await client.score(make_statement())

    assert "timed out" in str(exc_info.value)
    assert len(transport.calls) == 2


@pytest.mark.asyncio
async def test_concurrent_requests_collapse_into_one_call(oracle_factory, make_statement):
    transport = oracle_factory()
    transport.gate = asyncio.Event()
    client = _client(transport)
    statement = make_statement()

    callers = [asyncio.create_task(client.score(statement)) for _ in range(5)]
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert client.inflight_count == 1
    assert client.is_inflight(statement.id)

    transport.gate.set()
    scores = await asyncio.gather(*callers)

    assert len(transport.calls) == 1
    assert all(score == scores[0] for score in scores)
    assert client.inflight_count == 0


@pytest.mark.asyncio
async def test_different_fingerprints_are_not_collapsed(oracle_factory, make_statement):
    transport = oracle_factory()
    client = _client(transport)

    await asyncio.gather(
        client.score(make_statement("Tax cuts now")),
        client.score(make_statement("Raise the minimum wage")),
    )

    assert len(transport.calls) == 2


@pytest.mark.asyncio
async def test_deadline_abandons_wait_but_not_the_call(oracle_factory, make_statement):
    transport = oracle_factory()
    transport.gate = asyncio.Event()
    client = _client(transport)
    statement = make_statement()

    with pytest.raises(ScoringUnavailable):
        await client.score(statement, timeout=0.01)

    # The shared call is still running for other callers.
    assert client.is_inflight(statement.id)

    transport.gate.set()
    score = await client.score(statement)

    assert score.statement_id == statement.id
    assert len(transport.calls) == 1
    assert statement.id in client.cache


@pytest.mark.asyncio
async def test_force_refresh_calls_oracle_again(oracle_factory, payload_factory, make_statement):
    transport = oracle_factory(script=[payload_factory(hope=10), payload_factory(hope=90)])
    client = _client(transport)
    statement = make_statement()

    first = await client.score(statement)
    second = await client.score(statement, force_refresh=True)

    assert first.emotions.hope == 10
    assert second.emotions.hope == 90
    assert len(transport.calls) == 2


@pytest.mark.asyncio
async def test_model_version_bump_marks_cache_stale(oracle_factory, make_statement):
    client = _client(oracle_factory())
    statement = make_statement()
    await client.score(statement)

    assert client.set_model_version("v2") == 1

    cached = await client.score(statement)
    assert cached.stale is True
    assert client.model_version == "v2"


def test_backoff_delay_is_bounded_full_jitter(oracle_factory):
    client = _client(oracle_factory(), oracle_base_delay_seconds=0.5, oracle_max_delay_seconds=4.0)
    for attempt in range(10):
        delay = client.backoff_delay(attempt)
        assert 0 <= delay <= min(4.0, 0.5 * 2 ** attempt)
