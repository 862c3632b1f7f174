"""
Aggregation & Snapshot Store.

Owns every Debate's committed Snapshot plus the running totals behind its
Aggregate. Writers (always under the debate's lock, see debate_locks.py)
build a new immutable Snapshot and swap it in by reference, so readers never
take a lock and never see a half-applied delta.
"""

import dataclasses
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from poliscope_backend.domain import (
    Aggregate,
    Debate,
    DebateStatus,
    Delta,
    DeltaKind,
    Score,
    Snapshot,
    Statement,
)
from poliscope_backend.errors import DebateNotFound
from poliscope_backend.services.aggregation import (
    RunningTotals,
    build_aggregate,
    compute_aggregate,
    derive_title,
    totals_from_members,
)
from poliscope_backend.services.pipeline_config import PipelineConfig

logger = logging.getLogger("poliscope_backend")

Member = Tuple[Statement, Score]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _changed_fields(before: Optional[Snapshot], after: Snapshot) -> Tuple[str, ...]:
    if before is None:
        return ("created",)

    changed: List[str] = []
    if before.debate.member_statement_ids != after.debate.member_statement_ids:
        changed.append("members")
    for name in ("title", "last_activity_at", "status", "merged_into"):
        if getattr(before.debate, name) != getattr(after.debate, name):
            changed.append(name)

    old_aggregate = before.aggregate.to_dict()
    for key, value in after.aggregate.to_dict().items():
        if old_aggregate.get(key) != value:
            changed.append(key)
    return tuple(changed)


class SnapshotStore:
    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config or PipelineConfig()
        self._clock = clock
        self._snapshots: Dict[str, Snapshot] = {}
        self._totals: Dict[str, RunningTotals] = {}
        self._members: Dict[str, Dict[str, Member]] = {}
        self._statement_debate: Dict[str, str] = {}

    # ------------------------------------------------------------------
    # Reads (lock-free)
    # ------------------------------------------------------------------

    def __contains__(self, debate_id: str) -> bool:
        return debate_id in self._snapshots

    def __len__(self) -> int:
        return len(self._snapshots)

    def snapshot(self, debate_id: str) -> Snapshot:
        """Latest committed (Debate, Aggregate, version) for a debate."""
        try:
            return self._snapshots[debate_id]
        except KeyError:
            raise DebateNotFound(debate_id) from None

    def resolve(self, debate_id: str) -> str:
        """Follow merged_into redirects to the debate that currently owns the members."""
        seen = set()
        current = debate_id
        while current not in seen:
            seen.add(current)
            snap = self._snapshots.get(current)
            if snap is None or snap.debate.status != DebateStatus.MERGED or not snap.debate.merged_into:
                return current
            current = snap.debate.merged_into
        return current

    def debate_of(self, statement_id: str) -> Optional[str]:
        return self._statement_debate.get(statement_id)

    def members(self, debate_id: str) -> List[Member]:
        if debate_id not in self._snapshots:
            raise DebateNotFound(debate_id)
        return list(self._members.get(debate_id, {}).values())

    def active_snapshots(self) -> List[Snapshot]:
        return [snap for snap in self._snapshots.values() if snap.debate.is_active]

    def list_snapshots(self, region: Optional[str] = None, include_archived: bool = False) -> List[Snapshot]:
        """Snapshots ordered by most recent activity, optionally filtered by region."""
        snapshots = []
        for snap in self._snapshots.values():
            if not include_archived and not snap.debate.is_active:
                continue
            if region and region not in snap.aggregate.regions:
                continue
            snapshots.append(snap)
        snapshots.sort(key=lambda s: (-s.debate.last_activity_at.timestamp(), s.debate.id))
        return snapshots

    def recompute(self, debate_id: str) -> Aggregate:
        """Aggregate rebuilt from scratch over the current members."""
        return compute_aggregate(self.members(debate_id), self.config)

    # ------------------------------------------------------------------
    # Writes (caller holds the debate lock)
    # ------------------------------------------------------------------

    def _commit(self, debate: Debate, totals: RunningTotals) -> Snapshot:
        snapshot = Snapshot(debate=debate, aggregate=build_aggregate(totals, self.config))
        self._snapshots[debate.id] = snapshot
        return snapshot

    def apply_delta(
        self,
        debate_id: str,
        statement: Statement,
        score: Score,
        replaces: Optional[str] = None,
    ) -> Delta:
        """
        Add a scored statement to a debate, creating the debate on first use.

        When `replaces` names a current member, that member's contribution is
        subtracted and the new statement takes its position.

        Returns:
            Exactly one Delta; the debate's version goes up by exactly one.
        """
        before = self._snapshots.get(debate_id)
        members = self._members.setdefault(debate_id, {})
        if statement.id in members:
            raise ValueError(f"Statement {statement.id[:12]} is already a member of debate {debate_id}")

        totals = self._totals.get(debate_id)
        if totals is None:
            totals = RunningTotals(center_band=self.config.center_band)
            self._totals[debate_id] = totals

        member_ids = list(before.debate.member_statement_ids) if before else []
        kind = DeltaKind.CREATED if before is None else DeltaKind.STATEMENT_ADDED

        if replaces and replaces in members:
            old_statement, old_score = members.pop(replaces)
            totals.remove(old_statement, old_score)
            member_ids[member_ids.index(replaces)] = statement.id
            self._statement_debate.pop(replaces, None)
            kind = DeltaKind.STATEMENT_SUPERSEDED
        else:
            member_ids.append(statement.id)

        members[statement.id] = (statement, score)
        totals.add(statement, score)
        self._statement_debate[statement.id] = debate_id

        if before is None:
            debate = Debate(
                id=debate_id,
                title=derive_title(totals, self.config.title_terms),
                created_at=statement.occurred_at,
                last_activity_at=statement.occurred_at,
                member_statement_ids=tuple(member_ids),
                version=1,
            )
        else:
            debate = dataclasses.replace(
                before.debate,
                title=derive_title(totals, self.config.title_terms),
                last_activity_at=max(before.debate.last_activity_at, statement.occurred_at),
                member_statement_ids=tuple(member_ids),
                version=before.debate.version + 1,
                status=DebateStatus.ACTIVE,
            )

        after = self._commit(debate, totals)
        return Delta(
            debate_id=debate_id,
            version=debate.version,
            kind=kind,
            title=debate.title,
            aggregate=after.aggregate,
            emitted_at=self._clock(),
            statement_id=statement.id,
            changed=_changed_fields(before, after),
        )

    def merge(self, survivor_id: str, absorbed_id: str) -> Tuple[Delta, Delta]:
        """
        Fold `absorbed_id` into `survivor_id`; caller holds both debate locks.

        The survivor's totals become the direct sum of both debates' totals and
        its version becomes max(vA, vB) + 1. The survivor is committed before
        the absorbed debate is retired, so every statement is visible in at
        least one debate at all times.

        Returns:
            (survivor_delta, absorbed_delta)
        """
        if survivor_id == absorbed_id:
            raise ValueError("Cannot merge a debate into itself")
        survivor = self.snapshot(survivor_id)
        absorbed = self.snapshot(absorbed_id)

        totals = self._totals[survivor_id].combine(self._totals[absorbed_id])
        self._totals[survivor_id] = totals

        survivor_members = self._members[survivor_id]
        for statement_id, member in self._members[absorbed_id].items():
            survivor_members[statement_id] = member
            self._statement_debate[statement_id] = survivor_id

        merged_debate = dataclasses.replace(
            survivor.debate,
            title=derive_title(totals, self.config.title_terms),
            last_activity_at=max(survivor.debate.last_activity_at, absorbed.debate.last_activity_at),
            member_statement_ids=survivor.debate.member_statement_ids + absorbed.debate.member_statement_ids,
            version=max(survivor.version, absorbed.version) + 1,
            status=DebateStatus.ACTIVE,
        )
        survivor_after = self._commit(merged_debate, totals)

        retired = Snapshot(
            debate=dataclasses.replace(
                absorbed.debate,
                version=absorbed.version + 1,
                status=DebateStatus.MERGED,
                merged_into=survivor_id,
            ),
            aggregate=absorbed.aggregate,
        )
        self._snapshots[absorbed_id] = retired

        emitted_at = self._clock()
        survivor_delta = Delta(
            debate_id=survivor_id,
            version=merged_debate.version,
            kind=DeltaKind.MERGED,
            title=merged_debate.title,
            aggregate=survivor_after.aggregate,
            emitted_at=emitted_at,
            changed=_changed_fields(survivor, survivor_after),
            merged_from=absorbed_id,
        )
        absorbed_delta = Delta(
            debate_id=absorbed_id,
            version=retired.version,
            kind=DeltaKind.MERGED_AWAY,
            title=retired.debate.title,
            aggregate=retired.aggregate,
            emitted_at=emitted_at,
            changed=("status", "merged_into"),
            merged_into=survivor_id,
        )
        logger.info(
            "[STORE] Merged debate %s into %s (%d statements, v%d)",
            absorbed_id,
            survivor_id,
            survivor_after.aggregate.statement_count,
            merged_debate.version,
        )
        return survivor_delta, absorbed_delta

    def archive(self, debate_id: str) -> Delta:
        before = self.snapshot(debate_id)
        if before.debate.status != DebateStatus.ACTIVE:
            raise ValueError(f"Debate {debate_id} is {before.debate.status.value}, not active")

        debate = dataclasses.replace(
            before.debate,
            version=before.version + 1,
            status=DebateStatus.ARCHIVED,
        )
        after = Snapshot(debate=debate, aggregate=before.aggregate)
        self._snapshots[debate_id] = after
        return Delta(
            debate_id=debate_id,
            version=debate.version,
            kind=DeltaKind.ARCHIVED,
            title=debate.title,
            aggregate=after.aggregate,
            emitted_at=self._clock(),
            changed=("status",),
        )

    def restore(self, debate: Debate, members: Iterable[Member]) -> Snapshot:
        """Load a persisted debate; its aggregate is recomputed from the members."""
        members = list(members)
        totals = totals_from_members(members, self.config.center_band)
        self._totals[debate.id] = totals
        self._members[debate.id] = {statement.id: (statement, score) for statement, score in members}
        if debate.status != DebateStatus.MERGED:
            for statement, _ in members:
                self._statement_debate[statement.id] = debate.id
        return self._commit(debate, totals)

    def debate_ids(self) -> List[str]:
        return list(self._snapshots)

    def reconfigure(self, config: PipelineConfig) -> List[Delta]:
        """
        Adopt new tunables (caller holds every debate lock).

        Moving the center band re-buckets every member, so each debate whose
        aggregate changes is recommitted at version + 1 with a `recomputed`
        delta. Other tunables leave committed snapshots untouched.
        """
        rebuild = config.center_band != self.config.center_band
        self.config = config
        if not rebuild:
            return []

        deltas = []
        for debate_id, members in self._members.items():
            totals = totals_from_members(members.values(), config.center_band)
            self._totals[debate_id] = totals
            before = self._snapshots.get(debate_id)
            if before is None or before.debate.status == DebateStatus.MERGED:
                continue
            aggregate = build_aggregate(totals, config)
            if aggregate == before.aggregate:
                continue

            debate = dataclasses.replace(before.debate, version=before.version + 1)
            after = Snapshot(debate=debate, aggregate=aggregate)
            self._snapshots[debate_id] = after
            deltas.append(
                Delta(
                    debate_id=debate_id,
                    version=debate.version,
                    kind=DeltaKind.RECOMPUTED,
                    title=debate.title,
                    aggregate=aggregate,
                    emitted_at=self._clock(),
                    changed=_changed_fields(before, after),
                )
            )
        logger.info(
            "[STORE] Rebuilt running totals for %d debates (center_band=%s, %d recommitted)",
            len(self._members), config.center_band, len(deltas),
        )
        return deltas
