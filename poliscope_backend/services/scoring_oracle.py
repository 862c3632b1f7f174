"""
Scoring Oracle Client.

Wraps the external analysis capability with:
- a fingerprint-keyed cache (identical text is never scored twice)
- request collapsing (one in-flight oracle call per fingerprint)
- a per-attempt timeout plus exponential backoff with full jitter
- boundary validation into a tagged ScoreResult
"""

import asyncio
import logging
import random
import time
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional

from poliscope_backend.config import ORACLE_MODEL_VERSION
from poliscope_backend.domain import Score, Statement
from poliscope_backend.errors import ScoringRejected, ScoringUnavailable
from poliscope_backend.instrumentation import metrics
from poliscope_backend.services.oracle_transport import (
    OracleRejectedError,
    OracleTransientError,
    ScoringOracleTransport,
)
from poliscope_backend.services.pipeline_config import PipelineConfig
from poliscope_backend.services.score_cache import ScoreCache
from poliscope_backend.services.score_parsing import ScoreResult, parse_score_payload

logger = logging.getLogger("poliscope_backend")


def statement_context(statement: Statement) -> Dict[str, Any]:
    return {
        "author": statement.author.name or None,
        "affiliation": statement.author.affiliation,
        "ideology_hint": statement.author.ideology_hint,
        "source_type": statement.source_type,
        "region": statement.region,
        "occurred_at": statement.occurred_at.isoformat(),
    }


class ScoringOracleClient:
    def __init__(
        self,
        transport: ScoringOracleTransport,
        cache: Optional[ScoreCache] = None,
        config: Optional[PipelineConfig] = None,
        model_version: str = ORACLE_MODEL_VERSION,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.transport = transport
        self.cache = cache if cache is not None else ScoreCache()
        self.config = config or PipelineConfig()
        self.model_version = model_version
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._inflight: Dict[str, "asyncio.Task[ScoreResult]"] = {}

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    def is_inflight(self, fingerprint: str) -> bool:
        return fingerprint in self._inflight

    async def score(
        self,
        statement: Statement,
        timeout: Optional[float] = None,
        force_refresh: bool = False,
    ) -> Score:
        """
        Return the Score for a statement, calling the oracle on a cache miss.

        Args:
            statement: Normalized statement; its id is the cache key
            timeout: Caller deadline in seconds. Expiry abandons the wait only;
                the shared in-flight call keeps running and still fills the cache.
            force_refresh: Drop any cached entry first (explicit invalidation)

        Raises:
            ScoringRejected: oracle refused or returned malformed output
            ScoringUnavailable: retries exhausted or deadline expired
        """
        result = await self.score_result(statement, timeout=timeout, force_refresh=force_refresh)
        return result.unwrap()

    async def score_result(
        self,
        statement: Statement,
        timeout: Optional[float] = None,
        force_refresh: bool = False,
    ) -> ScoreResult:
        if force_refresh:
            self.cache.invalidate(statement.id)

        cached = self.cache.get(statement.id)
        if cached is not None:
            return ScoreResult.success(cached)

        # Lookup and registration happen with no await in between, so every
        # concurrent caller for this fingerprint sees the same task.
        task = self._inflight.get(statement.id)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._score_with_retries(statement))
            self._inflight[statement.id] = task
            task.add_done_callback(partial(self._on_task_done, statement.id))
        else:
            metrics.oracle_collapsed.inc()

        try:
            if timeout is None:
                return await asyncio.shield(task)
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "[ORACLE] Caller deadline of %.2fs expired for %s; oracle call left running",
                timeout,
                statement.id[:12],
            )
            return ScoreResult.failure(
                ScoringUnavailable(f"deadline of {timeout}s expired while scoring", statement.id)
            )

    def _on_task_done(self, fingerprint: str, task: "asyncio.Task[ScoreResult]") -> None:
        if self._inflight.get(fingerprint) is task:
            del self._inflight[fingerprint]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[ORACLE] Scoring task for %s crashed: %r", fingerprint[:12], exc)

    def backoff_delay(self, attempt: int) -> float:
        """Full-jitter delay before retry number `attempt + 1` (attempt is zero-based)."""
        ceiling = min(
            self.config.oracle_max_delay_seconds,
            self.config.oracle_base_delay_seconds * (2 ** attempt),
        )
        return self._rng.uniform(0, ceiling)

    async def _score_with_retries(self, statement: Statement) -> ScoreResult:
        context = statement_context(statement)
        max_attempts = max(1, int(self.config.oracle_max_attempts))
        last_error = "no attempt made"

        for attempt in range(max_attempts):
            started = time.perf_counter()
            try:
                payload = await asyncio.wait_for(
                    self.transport.analyze(statement.text, context),
                    timeout=self.config.oracle_timeout_seconds,
                )
            except asyncio.TimeoutError:
                last_error = f"timed out after {self.config.oracle_timeout_seconds}s"
                metrics.oracle_attempts.labels(outcome="timeout").inc()
            except OracleTransientError as exc:
                last_error = str(exc)
                metrics.oracle_attempts.labels(outcome="transient").inc()
            except OracleRejectedError as exc:
                metrics.oracle_attempts.labels(outcome="rejected").inc()
                logger.warning("[ORACLE] Rejected %s: %s", statement.id[:12], exc)
                return ScoreResult.failure(ScoringRejected(str(exc), statement.id))
            except Exception as exc:  # noqa: BLE001
                last_error = f"{type(exc).__name__}: {exc}"
                metrics.oracle_attempts.labels(outcome="error").inc()
                logger.exception("[ORACLE] Unexpected transport failure for %s", statement.id[:12])
            else:
                metrics.oracle_latency.observe(time.perf_counter() - started)
                result = parse_score_payload(payload, statement.id, self.model_version)
                if not result.ok:
                    metrics.oracle_attempts.labels(outcome="malformed").inc()
                    logger.warning("[ORACLE] Discarding oracle output for %s: %s", statement.id[:12], result.error)
                    return result
                metrics.oracle_attempts.labels(outcome="success").inc()
                return ScoreResult.success(self.cache.put(result.score))

            if attempt + 1 < max_attempts:
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "[ORACLE] Attempt %d/%d for %s failed (%s); retrying in %.2fs",
                    attempt + 1,
                    max_attempts,
                    statement.id[:12],
                    last_error,
                    delay,
                )
                await self._sleep(delay)

        logger.error("[ORACLE] Giving up on %s after %d attempts: %s", statement.id[:12], max_attempts, last_error)
        return ScoreResult.failure(
            ScoringUnavailable(
                f"oracle unavailable after {max_attempts} attempts: {last_error}",
                statement.id,
                attempts=max_attempts,
            )
        )

    def invalidate(self, fingerprint: str) -> bool:
        return self.cache.invalidate(fingerprint)

    def set_model_version(self, model_version: str) -> int:
        """Switch to a new oracle model version; returns how many cached scores went stale."""
        self.model_version = model_version
        return self.cache.mark_model_version(model_version)
