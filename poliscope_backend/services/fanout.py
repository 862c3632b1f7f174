"""
Subscription/Fanout Service.

Each subscriber owns a bounded asyncio.Queue and a per-debate version
watermark. publish() never awaits: a full queue is drained and replaced by
a single resync event carrying fresh snapshots, so a slow consumer costs
the producer nothing.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from poliscope_backend.domain import Delta, DeltaKind, Snapshot
from poliscope_backend.errors import DebateNotFound
from poliscope_backend.instrumentation import metrics
from poliscope_backend.services.snapshot_store import SnapshotStore

logger = logging.getLogger("poliscope_backend")

ALL_TOPICS = "all"

EVENT_DELTA = "delta"
EVENT_RESYNC = "resync"
EVENT_SNAPSHOT = "snapshot"


@dataclass(frozen=True)
class FeedEvent:
    type: str
    delta: Optional[Delta] = None
    snapshots: Tuple[Snapshot, ...] = ()
    emitted_at: Optional[datetime] = None

    def debate_ids(self) -> List[str]:
        if self.delta is not None:
            return [self.delta.debate_id]
        return [snap.debate.id for snap in self.snapshots]

    def to_dict(self) -> Dict[str, Any]:
        if self.type == EVENT_DELTA and self.delta is not None:
            return self.delta.to_dict()
        return {
            "type": self.type,
            "snapshots": [snap.to_dict() for snap in self.snapshots],
            "emitted_at": self.emitted_at.isoformat() if self.emitted_at else None,
        }


class Subscription:
    """A subscriber's bounded view of the delta stream; iterate it with `async for`."""

    def __init__(self, service: "FanoutService", topic: str, maxsize: int) -> None:
        self.id = uuid.uuid4().hex
        self.topic = topic
        self.watched: Set[str] = set() if topic == ALL_TOPICS else {topic}
        self.queue: "asyncio.Queue[Optional[FeedEvent]]" = asyncio.Queue(maxsize=max(1, maxsize))
        self.watermarks: Dict[str, int] = {}
        self.resyncs = 0
        self.delivered = 0
        self.closed = False
        self._service = service

    def watches(self, debate_id: str) -> bool:
        return self.topic == ALL_TOPICS or debate_id in self.watched

    def pending(self) -> int:
        return self.queue.qsize()

    async def get(self) -> Optional[FeedEvent]:
        """Next event, or None once the subscription is closed."""
        if self.closed and self.queue.empty():
            return None
        event = await self.queue.get()
        if event is None:
            self.closed = True
        return event

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> FeedEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def close(self) -> None:
        self._service.unsubscribe(self)

    def _drain(self) -> List[FeedEvent]:
        drained = []
        while True:
            try:
                event = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                return drained
            if event is not None:
                drained.append(event)


class FanoutService:
    def __init__(self, store: SnapshotStore, queue_size: int = 256) -> None:
        self.store = store
        self.queue_size = queue_size
        self._subscriptions: Dict[str, Subscription] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, topic: str = ALL_TOPICS, include_snapshot: bool = False) -> Subscription:
        """
        Register a subscriber for one debate id or "all".

        With include_snapshot the first event carries the current snapshot(s)
        and incremental delivery resumes after their versions.

        Raises:
            DebateNotFound: a specific topic that does not exist
        """
        if topic != ALL_TOPICS:
            if topic not in self.store:
                raise DebateNotFound(topic)
            resolved = self.store.resolve(topic)
        else:
            resolved = topic

        subscription = Subscription(self, resolved, self.queue_size)
        if resolved != topic:
            subscription.watched.add(topic)

        if include_snapshot:
            if resolved == ALL_TOPICS:
                snapshots = tuple(self.store.list_snapshots())
            else:
                snapshots = (self.store.snapshot(resolved),)
            for snap in snapshots:
                subscription.watermarks[snap.debate.id] = snap.version
            subscription.queue.put_nowait(
                FeedEvent(type=EVENT_SNAPSHOT, snapshots=snapshots, emitted_at=datetime.now(timezone.utc))
            )

        self._subscriptions[subscription.id] = subscription
        metrics.active_subscribers.inc()
        logger.info("[FANOUT] Subscriber %s joined topic %s", subscription.id[:8], resolved)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Release the subscriber's queue; safe to call more than once."""
        if self._subscriptions.pop(subscription.id, None) is None:
            return
        subscription.closed = True
        subscription._drain()
        subscription.queue.put_nowait(None)
        metrics.active_subscribers.dec()
        logger.info(
            "[FANOUT] Subscriber %s left (delivered=%d, resyncs=%d)",
            subscription.id[:8],
            subscription.delivered,
            subscription.resyncs,
        )

    def publish(self, delta: Delta) -> int:
        """Offer a committed delta to every subscriber; returns how many accepted it."""
        accepted = 0
        for subscription in list(self._subscriptions.values()):
            try:
                if self._offer(subscription, delta):
                    accepted += 1
            except Exception:  # noqa: BLE001
                logger.exception("[FANOUT] Dropping subscriber %s after delivery failure", subscription.id[:8])
                self.unsubscribe(subscription)
        return accepted

    def _offer(self, subscription: Subscription, delta: Delta) -> bool:
        if subscription.closed:
            return False

        if (
            delta.kind == DeltaKind.MERGED_AWAY
            and delta.merged_into
            and subscription.topic != ALL_TOPICS
            and delta.debate_id in subscription.watched
        ):
            subscription.watched.add(delta.merged_into)

        if not subscription.watches(delta.debate_id):
            return False
        if delta.version <= subscription.watermarks.get(delta.debate_id, 0):
            return False

        try:
            subscription.queue.put_nowait(FeedEvent(type=EVENT_DELTA, delta=delta))
        except asyncio.QueueFull:
            self._resync(subscription, delta.debate_id)
            return True

        subscription.watermarks[delta.debate_id] = delta.version
        subscription.delivered += 1
        return True

    def _resync(self, subscription: Subscription, debate_id: str) -> None:
        affected = [debate_id]
        for event in subscription._drain():
            for dropped_id in event.debate_ids():
                if dropped_id not in affected:
                    affected.append(dropped_id)

        snapshots = []
        for affected_id in affected:
            try:
                snap = self.store.snapshot(affected_id)
            except DebateNotFound:
                continue
            snapshots.append(snap)
            subscription.watermarks[affected_id] = max(
                subscription.watermarks.get(affected_id, 0),
                snap.version,
            )

        subscription.queue.put_nowait(
            FeedEvent(type=EVENT_RESYNC, snapshots=tuple(snapshots), emitted_at=datetime.now(timezone.utc))
        )
        subscription.resyncs += 1
        metrics.fanout_resyncs.inc()
        logger.warning(
            "[FANOUT] Subscriber %s overflowed its queue of %d; resynced %d debates",
            subscription.id[:8],
            subscription.queue.maxsize,
            len(snapshots),
        )
