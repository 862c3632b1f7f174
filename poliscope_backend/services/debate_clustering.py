"""
Debate Clustering Engine.

Assigns scored statements to debates by centroid similarity, opens new
debates when nothing is close enough, and periodically merges debates whose
centroids have converged. Every structural change runs inside the affected
debates' critical sections from DebateLockRegistry.
"""

import asyncio
import logging
import random
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import numpy as np

from poliscope_backend.domain import Assignment, Delta, Score, Statement
from poliscope_backend.errors import ClusteringDegraded, ConcurrencyConflict, SimilarityUnavailable
from poliscope_backend.instrumentation import metrics
from poliscope_backend.services.debate_locks import DebateLockRegistry
from poliscope_backend.services.embedding_service import SimilarityStrategy, similarity
from poliscope_backend.services.pipeline_config import PipelineConfig
from poliscope_backend.services.snapshot_store import SnapshotStore

logger = logging.getLogger("poliscope_backend")

ApplyHook = Callable[[Delta], Awaitable[None]]

MERGE_RETRY_BASE_DELAY = 0.25
SIMILARITY_PRECISION = 9


def _new_debate_id() -> str:
    return str(uuid.uuid4())


class DebateClusteringEngine:
    def __init__(
        self,
        store: SnapshotStore,
        strategy: SimilarityStrategy,
        locks: Optional[DebateLockRegistry] = None,
        config: Optional[PipelineConfig] = None,
        id_factory: Callable[[], str] = _new_debate_id,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.strategy = strategy
        self.locks = locks or DebateLockRegistry()
        self.config = config or store.config
        self._id_factory = id_factory
        self._sleep = sleep
        self._rng = rng or random.Random()
        # Sum of member unit vectors per debate, and each member's vector so
        # corrections can be subtracted back out.
        self._centroids: Dict[str, np.ndarray] = {}
        self._vectors: Dict[str, np.ndarray] = {}

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    async def assign(self, statement: Statement, score: Score, apply: Optional[ApplyHook] = None) -> Assignment:
        """
        Attach a statement to the most similar active debate or open a new one.

        `apply` runs inside the chosen debate's critical section right after
        the store commits, so per-debate deltas reach it in version order.

        Raises:
            ConcurrencyConflict: the debate lock was not acquired in time
        """
        if statement.supersedes:
            target = self.store.debate_of(statement.supersedes)
            if target is not None:
                vector = await self._embed_or_none(statement)
                return await self._attach(target, statement, score, vector, apply, replaces=statement.supersedes)
            logger.info(
                "[CLUSTER] %s supersedes unknown statement %s; clustering normally",
                statement.id[:12],
                statement.supersedes[:12],
            )

        try:
            vector = await self.strategy.embed(statement.text)
        except SimilarityUnavailable as exc:
            degraded = ClusteringDegraded(f"similarity unavailable: {exc}")
            logger.warning("[CLUSTER] %s; opening a new debate for %s", degraded, statement.id[:12])
            metrics.clustering_degraded.inc()
            return await self._create(statement, score, None, apply, reason="degraded")

        best = self.best_candidate(statement, vector)
        if best is None:
            return await self._create(statement, score, vector, apply, reason="no_match")
        return await self._attach(best, statement, score, vector, apply)

    async def _embed_or_none(self, statement: Statement) -> Optional[np.ndarray]:
        try:
            return await self.strategy.embed(statement.text)
        except SimilarityUnavailable as exc:
            logger.warning("[CLUSTER] Similarity unavailable for correction %s: %s", statement.id[:12], exc)
            metrics.clustering_degraded.inc()
            return None

    def best_candidate(self, statement: Statement, vector: np.ndarray) -> Optional[str]:
        """
        Highest-similarity active debate above the threshold.

        Only debates active within the window before the statement are
        considered. Ties go to the most recent activity, then the smallest id.
        """
        horizon = statement.occurred_at - self.config.activity_window
        ranked = []
        for snap in self.store.active_snapshots():
            debate = snap.debate
            if debate.last_activity_at < horizon:
                continue
            centroid = self._centroids.get(debate.id)
            if centroid is None:
                continue
            score = round(similarity(vector, centroid), SIMILARITY_PRECISION)
            if score > self.config.similarity_threshold:
                ranked.append((-score, -debate.last_activity_at.timestamp(), debate.id))

        if not ranked:
            return None
        ranked.sort()
        return ranked[0][2]

    async def _create(
        self,
        statement: Statement,
        score: Score,
        vector: Optional[np.ndarray],
        apply: Optional[ApplyHook],
        reason: str,
    ) -> Assignment:
        debate_id = self._id_factory()
        async with self.locks.hold(debate_id, timeout=self.config.lock_timeout_seconds):
            delta = self.store.apply_delta(debate_id, statement, score)
            self._index_member(debate_id, statement.id, vector)
            if apply is not None:
                await apply(delta)
        metrics.debates_created.labels(reason=reason).inc()
        logger.info("[CLUSTER] Opened debate %s for %s (%s)", debate_id, statement.id[:12], reason)
        return Assignment(debate_id=debate_id, is_new_debate=True)

    async def _attach(
        self,
        debate_id: str,
        statement: Statement,
        score: Score,
        vector: Optional[np.ndarray],
        apply: Optional[ApplyHook],
        replaces: Optional[str] = None,
    ) -> Assignment:
        target = debate_id
        redirected = False
        while True:
            async with self.locks.hold(target, timeout=self.config.lock_timeout_seconds):
                current = self.store.resolve(target)
                if current != target:
                    # Merged away while we waited for the lock.
                    target = current
                    redirected = True
                    continue
                delta = self.store.apply_delta(target, statement, score, replaces=replaces)
                self._index_member(target, statement.id, vector, replaces=replaces)
                if apply is not None:
                    await apply(delta)
                return Assignment(debate_id=target, is_new_debate=False, is_merge=redirected)

    def _index_member(
        self,
        debate_id: str,
        statement_id: str,
        vector: Optional[np.ndarray],
        replaces: Optional[str] = None,
    ) -> None:
        centroid = self._centroids.get(debate_id)
        if replaces:
            old = self._vectors.pop(replaces, None)
            if old is not None and centroid is not None:
                centroid = centroid - old
        if vector is not None:
            self._vectors[statement_id] = vector
            centroid = vector.copy() if centroid is None else centroid + vector
        if centroid is not None:
            self._centroids[debate_id] = centroid

    def centroid(self, debate_id: str) -> Optional[np.ndarray]:
        return self._centroids.get(debate_id)

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    def find_merge_candidates(self) -> List[Tuple[float, str, str]]:
        """(similarity, survivor_id, absorbed_id) for active pairs at or above the merge threshold."""
        debates = []
        rows = []
        for snap in self.store.active_snapshots():
            centroid = self._centroids.get(snap.debate.id)
            if centroid is None:
                continue
            norm = np.linalg.norm(centroid)
            if norm == 0:
                continue
            debates.append(snap.debate)
            rows.append(centroid / norm)

        if len(debates) < 2:
            return []

        matrix = np.vstack(rows)
        similarities = np.clip(matrix @ matrix.T, 0.0, 1.0)

        pairs = []
        for i in range(len(debates)):
            for j in range(i + 1, len(debates)):
                score = round(float(similarities[i, j]), SIMILARITY_PRECISION)
                if score < self.config.merge_threshold:
                    continue
                older, newer = sorted((debates[i], debates[j]), key=lambda d: (d.created_at, d.id))
                pairs.append((score, older.id, newer.id))

        pairs.sort(key=lambda p: (-p[0], p[1], p[2]))
        return pairs

    async def merge_pass(self, apply: Optional[ApplyHook] = None) -> List[Tuple[str, str]]:
        """Merge converged debate pairs; each debate takes part in at most one merge per pass."""
        merged = []
        touched = set()
        for score, survivor_id, absorbed_id in self.find_merge_candidates():
            if survivor_id in touched or absorbed_id in touched:
                continue
            try:
                done = await self.merge_debates(survivor_id, absorbed_id, apply=apply)
            except ConcurrencyConflict as exc:
                logger.warning("[CLUSTER] Skipping merge %s <- %s: %s", survivor_id, absorbed_id, exc)
                continue
            if done:
                logger.info("[CLUSTER] Merged %s into %s (similarity %.3f)", absorbed_id, survivor_id, score)
                merged.append((survivor_id, absorbed_id))
                touched.update((survivor_id, absorbed_id))
        return merged

    async def merge_debates(self, survivor_id: str, absorbed_id: str, apply: Optional[ApplyHook] = None) -> bool:
        """
        Atomically fold one debate into another.

        Both locks are taken in lexicographic order. On a lock timeout the
        attempt is abandoned before anything changes and retried after a
        random delay.

        Returns:
            False when either debate stopped being active before the locks were held

        Raises:
            ConcurrencyConflict: every attempt timed out
        """
        max_attempts = max(1, int(self.config.merge_max_attempts))
        last_conflict: Optional[ConcurrencyConflict] = None

        for attempt in range(max_attempts):
            try:
                async with self.locks.hold(survivor_id, absorbed_id, timeout=self.config.lock_timeout_seconds):
                    survivor = self.store.snapshot(survivor_id)
                    absorbed = self.store.snapshot(absorbed_id)
                    if not (survivor.debate.is_active and absorbed.debate.is_active):
                        return False

                    survivor_delta, absorbed_delta = self.store.merge(survivor_id, absorbed_id)
                    absorbed_centroid = self._centroids.pop(absorbed_id, None)
                    if absorbed_centroid is not None:
                        current = self._centroids.get(survivor_id)
                        self._centroids[survivor_id] = (
                            absorbed_centroid if current is None else current + absorbed_centroid
                        )
                    metrics.debates_merged.inc()

                    if apply is not None:
                        # Retire first so subscribers of the absorbed debate
                        # are redirected before the survivor's delta arrives.
                        await apply(absorbed_delta)
                        await apply(survivor_delta)
                    return True
            except ConcurrencyConflict as exc:
                last_conflict = exc
                if attempt + 1 < max_attempts:
                    delay = self._rng.uniform(0, MERGE_RETRY_BASE_DELAY * (2 ** attempt))
                    logger.warning(
                        "[CLUSTER] Merge %s <- %s attempt %d/%d conflicted; retrying in %.2fs",
                        survivor_id,
                        absorbed_id,
                        attempt + 1,
                        max_attempts,
                        delay,
                    )
                    await self._sleep(delay)

        raise last_conflict

    # ------------------------------------------------------------------
    # Archival and startup
    # ------------------------------------------------------------------

    async def archive_inactive(self, now: Optional[datetime] = None, apply: Optional[ApplyHook] = None) -> List[str]:
        now = now or datetime.now(timezone.utc)
        archived = []
        for snap in self.store.active_snapshots():
            if now - snap.debate.last_activity_at <= self.config.archive_after:
                continue
            debate_id = snap.debate.id
            try:
                async with self.locks.hold(debate_id, timeout=self.config.lock_timeout_seconds):
                    current = self.store.snapshot(debate_id)
                    if not current.debate.is_active or now - current.debate.last_activity_at <= self.config.archive_after:
                        continue
                    delta = self.store.archive(debate_id)
                    if apply is not None:
                        await apply(delta)
            except ConcurrencyConflict as exc:
                logger.warning("[CLUSTER] Could not archive %s: %s", debate_id, exc)
                continue
            archived.append(debate_id)

        if archived:
            logger.info("[CLUSTER] Archived %d inactive debates", len(archived))
        return archived

    async def rebuild_index(self) -> int:
        """Re-embed members of active debates (after restoring persisted state)."""
        indexed = 0
        for snap in self.store.active_snapshots():
            for statement, _ in self.store.members(snap.debate.id):
                if statement.id in self._vectors:
                    continue
                try:
                    vector = await self.strategy.embed(statement.text)
                except SimilarityUnavailable as exc:
                    logger.warning("[CLUSTER] Index rebuild stopped, similarity unavailable: %s", exc)
                    return indexed
                self._index_member(snap.debate.id, statement.id, vector)
                indexed += 1
        return indexed
