"""
Ingest pipeline: normalize -> score -> cluster -> aggregate -> fan out.

Every raw statement ends with a definitive accepted / rejected / pending
outcome. Failures stay confined to the statement that caused them: oracle
refusals go to the operator review queue, oracle outages to the retry
queue, and neither stops the next statement.
"""

import asyncio
import dataclasses
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional

from poliscope_backend.domain import Delta, IngestResult, IngestStatus, Statement
from poliscope_backend.errors import ConcurrencyConflict, ScoringRejected, ScoringUnavailable, ValidationError
from poliscope_backend.instrumentation import metrics
from poliscope_backend.services.debate_clustering import DebateClusteringEngine
from poliscope_backend.services.debate_locks import DebateLockRegistry
from poliscope_backend.services.embedding_service import SimilarityStrategy, get_embedding_service
from poliscope_backend.services.fanout import FanoutService
from poliscope_backend.services.oracle_transport import ScoringOracleTransport, get_oracle_transport
from poliscope_backend.services.pipeline_config import PipelineConfig
from poliscope_backend.services.pipeline_persistence import PipelinePersistence
from poliscope_backend.services.score_cache import ScoreCache
from poliscope_backend.services.scoring_oracle import ScoringOracleClient
from poliscope_backend.services.snapshot_store import SnapshotStore
from poliscope_backend.services.statement_normalizer import normalize_statement

logger = logging.getLogger("poliscope_backend")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class QueuedStatement:
    """A statement waiting in the retry or review queue."""

    statement: Statement
    reason: str
    detail: str
    queued_at: datetime
    attempts: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "statement": self.statement.to_dict(),
            "reason": self.reason,
            "detail": self.detail,
            "queued_at": self.queued_at.isoformat(),
            "attempts": self.attempts,
        }


@dataclass
class _FingerprintLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class IngestPipeline:
    def __init__(
        self,
        oracle: ScoringOracleClient,
        clustering: DebateClusteringEngine,
        fanout: FanoutService,
        config: Optional[PipelineConfig] = None,
        persistence: Optional[PipelinePersistence] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.oracle = oracle
        self.clustering = clustering
        self.store = clustering.store
        self.fanout = fanout
        self.config = config or self.store.config
        self.persistence = persistence
        self._clock = clock

        self._statements: Dict[str, Statement] = {}
        self._outcomes: Dict[str, IngestResult] = {}
        self._ingest_locks: Dict[str, _FingerprintLock] = {}
        self.retry_queue: "OrderedDict[str, QueuedStatement]" = OrderedDict()
        self.review_queue: "OrderedDict[str, QueuedStatement]" = OrderedDict()

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    async def ingest(self, raw: Any) -> IngestResult:
        """
        Run one raw statement through the whole pipeline.

        Re-ingesting identical content returns the recorded outcome with
        duplicate=True; it never produces a second Score or debate member.
        """
        try:
            statement = normalize_statement(raw, now=self._clock())
        except ValidationError as exc:
            metrics.statements_ingested.labels(status="rejected", reason="validation").inc()
            logger.info("[PIPELINE] Rejected payload: %s", exc)
            return IngestResult(
                status=IngestStatus.REJECTED,
                reason="validation",
                field=exc.field,
                detail=exc.message,
            )

        async with self._exclusive(statement.id):
            recorded = self._outcomes.get(statement.id)
            if recorded is not None:
                logger.info("[PIPELINE] Duplicate statement %s (%s)", statement.id[:12], recorded.status.value)
                debate_id = recorded.debate_id
                if recorded.status == IngestStatus.ACCEPTED:
                    debate_id = self.store.debate_of(statement.id) or debate_id
                return dataclasses.replace(recorded, duplicate=True, debate_id=debate_id)

            self._statements[statement.id] = statement
            await self._persist("save_statement", statement, IngestStatus.PENDING.value, None)
            return await self._process(statement)

    async def _process(self, statement: Statement) -> IngestResult:
        try:
            score = await self.oracle.score(statement, timeout=self._scoring_deadline())
        except ScoringRejected as exc:
            self.retry_queue.pop(statement.id, None)
            self.review_queue[statement.id] = QueuedStatement(
                statement=statement,
                reason="scoring_rejected",
                detail=str(exc),
                queued_at=self._clock(),
            )
            return await self._record(
                statement,
                IngestResult(
                    status=IngestStatus.REJECTED,
                    statement_id=statement.id,
                    reason="scoring_rejected",
                    detail=str(exc),
                ),
            )
        except ScoringUnavailable as exc:
            return await self._park(statement, "scoring_unavailable", str(exc))

        await self._persist("save_score", score)

        try:
            assignment = await self.clustering.assign(statement, score, apply=self._commit_delta)
        except ConcurrencyConflict as exc:
            return await self._park(statement, "concurrency_conflict", str(exc))

        self.retry_queue.pop(statement.id, None)
        metrics.pending_statements.set(len(self.retry_queue))
        return await self._record(
            statement,
            IngestResult(
                status=IngestStatus.ACCEPTED,
                statement_id=statement.id,
                debate_id=assignment.debate_id,
                is_new_debate=assignment.is_new_debate,
            ),
        )

    @asynccontextmanager
    async def _exclusive(self, fingerprint: str) -> AsyncIterator[None]:
        """Serialize work on one fingerprint; the lock is dropped once nobody holds or awaits it."""
        entry = self._ingest_locks.get(fingerprint)
        if entry is None:
            entry = self._ingest_locks[fingerprint] = _FingerprintLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._ingest_locks[fingerprint]

    def _scoring_deadline(self) -> float:
        # Worst case for a full retry cycle; beyond that the caller stops waiting.
        config = self.config
        return config.oracle_max_attempts * (config.oracle_timeout_seconds + config.oracle_max_delay_seconds)

    async def _park(self, statement: Statement, reason: str, detail: str) -> IngestResult:
        previous = self.retry_queue.get(statement.id)
        self.retry_queue[statement.id] = QueuedStatement(
            statement=statement,
            reason=reason,
            detail=detail,
            queued_at=previous.queued_at if previous else self._clock(),
            attempts=previous.attempts + 1 if previous else 1,
        )
        metrics.pending_statements.set(len(self.retry_queue))
        logger.warning("[PIPELINE] Parked %s for retry: %s", statement.id[:12], detail)
        return await self._record(
            statement,
            IngestResult(
                status=IngestStatus.PENDING,
                statement_id=statement.id,
                reason=reason,
                detail=detail,
            ),
        )

    async def _record(self, statement: Statement, result: IngestResult) -> IngestResult:
        self._outcomes[statement.id] = result
        metrics.statements_ingested.labels(status=result.status.value, reason=result.reason or "ok").inc()
        await self._persist("save_outcome", statement.id, result.status.value, result.reason)
        return result

    async def _commit_delta(self, delta: Delta) -> None:
        """Runs inside the debate's critical section right after the store commits."""
        self.fanout.publish(delta)
        if self.persistence is not None:
            await self._persist("save_snapshot", self.store.snapshot(delta.debate_id))

    async def _persist(self, method: str, *args) -> None:
        if self.persistence is None:
            return
        try:
            await getattr(self.persistence, method)(*args)
        except Exception:  # noqa: BLE001
            logger.exception("[PIPELINE] Persistence call %s failed", method)

    # ------------------------------------------------------------------
    # Queues and background work
    # ------------------------------------------------------------------

    async def retry_pending(self) -> List[IngestResult]:
        """Re-attempt every statement parked in the retry queue."""
        results = []
        for fingerprint in list(self.retry_queue):
            async with self._exclusive(fingerprint):
                queued = self.retry_queue.get(fingerprint)
                if queued is None:
                    continue
                results.append(await self._process(queued.statement))
        if results:
            accepted = sum(1 for r in results if r.status == IngestStatus.ACCEPTED)
            logger.info("[PIPELINE] Retried %d parked statements, %d accepted", len(results), accepted)
        return results

    async def run_merge_pass(self):
        return await self.clustering.merge_pass(apply=self._commit_delta)

    async def archive_inactive(self, now: Optional[datetime] = None) -> List[str]:
        return await self.clustering.archive_inactive(now=now or self._clock(), apply=self._commit_delta)

    def outcome(self, fingerprint: str) -> Optional[IngestResult]:
        return self._outcomes.get(fingerprint)

    def statement_status(self, fingerprint: str) -> Optional[Dict[str, Any]]:
        statement = self._statements.get(fingerprint)
        if statement is None:
            return None
        outcome = self._outcomes.get(fingerprint)
        score = self.oracle.cache.get(fingerprint)
        return {
            "statement": statement.to_dict(),
            "status": outcome.status.value if outcome else IngestStatus.PENDING.value,
            "reason": outcome.reason if outcome else None,
            "score": score.to_dict() if score else None,
            "debate_id": self.store.debate_of(fingerprint),
        }

    def invalidate_score(self, fingerprint: str) -> bool:
        return self.oracle.invalidate(fingerprint)

    def bump_model_version(self, model_version: str) -> int:
        return self.oracle.set_model_version(model_version)

    async def reconfigure(self, config: PipelineConfig) -> List[Delta]:
        """Push new tunables to every component; returns the deltas of re-bucketed debates."""
        self.config = config
        self.oracle.config = config
        self.clustering.config = config
        self.fanout.queue_size = config.subscriber_queue_size
        async with self.clustering.locks.hold(*self.store.debate_ids()):
            deltas = self.store.reconfigure(config)
            for delta in deltas:
                await self._commit_delta(delta)
        logger.info("[PIPELINE] Applied new configuration (%d debates recomputed)", len(deltas))
        return deltas

    async def restore(self) -> None:
        """Reload persisted statements, scores and debates into memory."""
        if self.persistence is None:
            return

        warmed = self.oracle.cache.warm(await self.persistence.load_scores())
        stored = await self.persistence.load_statements()
        for fingerprint, item in stored.items():
            self._statements[fingerprint] = item.statement
            status = IngestStatus(item.status)
            self._outcomes[fingerprint] = IngestResult(
                status=status,
                statement_id=fingerprint,
                reason=item.reason,
            )
            if status == IngestStatus.PENDING:
                self.retry_queue[fingerprint] = QueuedStatement(
                    statement=item.statement,
                    reason=item.reason or "restored",
                    detail="restored from storage",
                    queued_at=self._clock(),
                )
            elif item.reason == "scoring_rejected":
                self.review_queue[fingerprint] = QueuedStatement(
                    statement=item.statement,
                    reason=item.reason,
                    detail="restored from storage",
                    queued_at=self._clock(),
                )

        restored = 0
        for debate, member_ids in await self.persistence.load_debates():
            members = []
            for statement_id in member_ids:
                statement = self._statements.get(statement_id)
                score = self.oracle.cache.get(statement_id)
                if statement is not None and score is not None:
                    members.append((statement, score))
            self.store.restore(debate, members)
            restored += 1

        for fingerprint, outcome in self._outcomes.items():
            if outcome.status == IngestStatus.ACCEPTED:
                outcome.debate_id = self.store.debate_of(fingerprint)

        indexed = await self.clustering.rebuild_index()
        metrics.pending_statements.set(len(self.retry_queue))
        logger.info(
            "[PIPELINE] Restored %d statements, %d scores, %d debates (%d vectors indexed)",
            len(stored),
            warmed,
            restored,
            indexed,
        )


def build_pipeline(
    config: Optional[PipelineConfig] = None,
    transport: Optional[ScoringOracleTransport] = None,
    strategy: Optional[SimilarityStrategy] = None,
    persistence: Optional[PipelinePersistence] = None,
    cache: Optional[ScoreCache] = None,
    clock: Callable[[], datetime] = _utcnow,
) -> IngestPipeline:
    """Wire the pipeline components together with explicit, injected state."""
    config = config or PipelineConfig()
    store = SnapshotStore(config=config, clock=clock)
    oracle = ScoringOracleClient(
        transport or get_oracle_transport(timeout_seconds=config.oracle_timeout_seconds),
        cache=cache if cache is not None else ScoreCache(),
        config=config,
    )
    clustering = DebateClusteringEngine(
        store,
        strategy or get_embedding_service(),
        locks=DebateLockRegistry(),
        config=config,
    )
    fanout = FanoutService(store, queue_size=config.subscriber_queue_size)
    return IngestPipeline(oracle, clustering, fanout, config=config, persistence=persistence, clock=clock)


class PipelineRuntime:
    """Owns the retry, merge and archive background loops."""

    def __init__(self, pipeline: IngestPipeline) -> None:
        self.pipeline = pipeline
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        loops: Mapping[str, Any] = {
            "retry": (lambda: self.pipeline.config.retry_interval_seconds, self.pipeline.retry_pending),
            "merge": (lambda: self.pipeline.config.merge_interval_seconds, self.pipeline.run_merge_pass),
            "archive": (lambda: self.pipeline.config.archive_interval_seconds, self.pipeline.archive_inactive),
        }
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._run_forever(name, interval, action), name=f"pipeline-{name}")
            for name, (interval, action) in loops.items()
        ]
        logger.info("[PIPELINE] Background loops started: %s", ", ".join(loops))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("[PIPELINE] Background loops stopped")

    async def _run_forever(
        self,
        name: str,
        interval: Callable[[], float],
        action: Callable[[], Awaitable[Any]],
    ) -> None:
        while True:
            await asyncio.sleep(max(0.1, interval()))
            try:
                await action()
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                logger.exception("[PIPELINE] %s loop iteration failed", name)
