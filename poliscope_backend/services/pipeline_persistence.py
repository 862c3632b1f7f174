"""Persistence sink for statements, scores and debate snapshots."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from poliscope_backend.domain import (
    Author,
    Debate,
    DebateStatus,
    EmotionalProfile,
    Fallacy,
    IdeologyVector,
    Score,
    Snapshot,
    Statement,
)
from poliscope_backend.models import DebateMember, DebateRecord, ScoreRecord, StatementRecord

logger = logging.getLogger("poliscope_backend")


@dataclass
class StoredStatement:
    statement: Statement
    status: str
    reason: Optional[str]


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _statement_from_record(record: StatementRecord) -> Statement:
    return Statement(
        id=record.fingerprint,
        text=record.text,
        author=Author(
            name=record.author_name or "",
            affiliation=record.author_affiliation,
            ideology_hint=record.ideology_hint,
        ),
        source_type=record.source_type,
        region=record.region,
        occurred_at=_aware(record.occurred_at),
        ingested_at=_aware(record.ingested_at),
        supersedes=record.supersedes,
    )


def _score_from_record(record: ScoreRecord) -> Score:
    return Score(
        statement_id=record.fingerprint,
        ideology=IdeologyVector(economic=record.economic, social=record.social),
        emotions=EmotionalProfile(anger=record.anger, fear=record.fear, hope=record.hope),
        fallacies=tuple(Fallacy(type=f["type"], severity=f["severity"]) for f in record.fallacies or []),
        confidence=record.confidence,
        model_version=record.model_version or "",
        stale=bool(record.stale),
    )


class PipelinePersistence:
    """Writes go through session.merge so replays of the same row are idempotent."""

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def save_statement(self, statement: Statement, status: str, reason: Optional[str] = None) -> None:
        async with self._session_factory() as session:
            await session.merge(
                StatementRecord(
                    fingerprint=statement.id,
                    text=statement.text,
                    author_name=statement.author.name,
                    author_affiliation=statement.author.affiliation,
                    ideology_hint=statement.author.ideology_hint,
                    source_type=statement.source_type,
                    region=statement.region,
                    supersedes=statement.supersedes,
                    occurred_at=statement.occurred_at,
                    ingested_at=statement.ingested_at,
                    status=status,
                    status_reason=reason,
                )
            )
            await session.commit()

    async def save_outcome(self, fingerprint: str, status: str, reason: Optional[str] = None) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(StatementRecord)
                .where(StatementRecord.fingerprint == fingerprint)
                .values(status=status, status_reason=reason)
            )
            await session.commit()

    async def save_score(self, score: Score) -> None:
        async with self._session_factory() as session:
            await session.merge(
                ScoreRecord(
                    fingerprint=score.statement_id,
                    economic=score.ideology.economic,
                    social=score.ideology.social,
                    anger=score.emotions.anger,
                    fear=score.emotions.fear,
                    hope=score.emotions.hope,
                    fallacies=[{"type": f.type, "severity": f.severity} for f in score.fallacies],
                    confidence=score.confidence,
                    model_version=score.model_version,
                    stale=score.stale,
                )
            )
            await session.commit()

    async def save_snapshot(self, snapshot: Snapshot) -> None:
        """Upsert the debate row and rewrite its membership in one transaction."""
        debate = snapshot.debate
        async with self._session_factory() as session:
            await session.merge(
                DebateRecord(
                    id=debate.id,
                    title=debate.title,
                    version=debate.version,
                    status=debate.status.value,
                    merged_into=debate.merged_into,
                    created_at=debate.created_at,
                    last_activity_at=debate.last_activity_at,
                    aggregate=snapshot.aggregate.to_dict(),
                )
            )
            await session.execute(delete(DebateMember).where(DebateMember.debate_id == debate.id))
            for position, statement_id in enumerate(debate.member_statement_ids):
                session.add(DebateMember(debate_id=debate.id, statement_id=statement_id, position=position))
            await session.commit()

    async def load_scores(self) -> List[Score]:
        async with self._session_factory() as session:
            result = await session.execute(select(ScoreRecord))
            return [_score_from_record(record) for record in result.scalars().all()]

    async def load_statements(self) -> Dict[str, StoredStatement]:
        async with self._session_factory() as session:
            result = await session.execute(select(StatementRecord))
            return {
                record.fingerprint: StoredStatement(
                    statement=_statement_from_record(record),
                    status=record.status,
                    reason=record.status_reason,
                )
                for record in result.scalars().all()
            }

    async def load_debates(self) -> List[Tuple[Debate, List[str]]]:
        """Debates with their arrival-ordered member ids, oldest first."""
        async with self._session_factory() as session:
            debates = (await session.execute(select(DebateRecord).order_by(DebateRecord.created_at, DebateRecord.id))).scalars().all()
            members = (
                await session.execute(select(DebateMember).order_by(DebateMember.debate_id, DebateMember.position))
            ).scalars().all()

        by_debate: Dict[str, List[str]] = {}
        for member in members:
            by_debate.setdefault(member.debate_id, []).append(member.statement_id)

        loaded = []
        for record in debates:
            member_ids = by_debate.get(record.id, [])
            loaded.append(
                (
                    Debate(
                        id=record.id,
                        title=record.title,
                        created_at=_aware(record.created_at),
                        last_activity_at=_aware(record.last_activity_at),
                        member_statement_ids=tuple(member_ids),
                        version=record.version,
                        status=DebateStatus(record.status),
                        merged_into=record.merged_into,
                    ),
                    member_ids,
                )
            )
        logger.info("[PERSISTENCE] Loaded %d debates", len(loaded))
        return loaded
