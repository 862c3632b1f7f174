"""
SQLAlchemy models for the PoliScope debate pipeline.

Statements and scores are keyed by fingerprint; debates by id with their
committed version. All tables are append-mostly; a merge is the only
operation that rewrites membership across debates.
"""

from sqlalchemy import (
    JSON, Column, String, Integer, Float, Boolean, Text, DateTime,
    ForeignKey, Index, CheckConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

# JSONB on Postgres, plain JSON elsewhere (tests use SQLite).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class StatementRecord(Base):
    """One normalized statement"""
    __tablename__ = "statements"

    # Identity
    fingerprint = Column(String(64), primary_key=True)

    # Content
    text = Column(Text, nullable=False)
    author_name = Column(Text, nullable=False, default="")
    author_affiliation = Column(Text)
    ideology_hint = Column(Text)
    source_type = Column(Text, nullable=False)
    region = Column(Text)
    supersedes = Column(String(64))

    # Temporal
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    ingested_at = Column(DateTime(timezone=True), nullable=False)

    # Pipeline outcome: 'accepted', 'rejected', 'pending'
    status = Column(Text, nullable=False, default="pending")
    status_reason = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint(
            "source_type IN ('speech', 'interview', 'debate-transcript', 'article', 'social')",
            name='check_statement_source_type',
        ),
        CheckConstraint("status IN ('accepted', 'rejected', 'pending')", name='check_statement_status'),
        Index('idx_statements_occurred', 'occurred_at'),
        Index('idx_statements_status', 'status'),
    )


class ScoreRecord(Base):
    """Current oracle score for a statement"""
    __tablename__ = "scores"

    fingerprint = Column(String(64), ForeignKey('statements.fingerprint', ondelete='CASCADE'), primary_key=True)

    economic = Column(Float, nullable=False)
    social = Column(Float, nullable=False)
    anger = Column(Float, nullable=False)
    fear = Column(Float, nullable=False)
    hope = Column(Float, nullable=False)
    fallacies = Column(JSONType, nullable=False, default=list)
    confidence = Column(Float, nullable=False, default=0.0)

    model_version = Column(Text, nullable=False, default="")
    stale = Column(Boolean, nullable=False, default=False)

    scored_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint('economic >= -100 AND economic <= 100', name='check_score_economic'),
        CheckConstraint('social >= -100 AND social <= 100', name='check_score_social'),
        Index('idx_scores_model_version', 'model_version'),
    )


class DebateRecord(Base):
    """A cluster of related statements at its latest committed version"""
    __tablename__ = "debates"

    id = Column(String(64), primary_key=True)
    title = Column(Text, nullable=False)
    version = Column(Integer, nullable=False)

    # 'active', 'archived', 'merged'
    status = Column(Text, nullable=False, default="active")
    merged_into = Column(String(64), ForeignKey('debates.id'))

    created_at = Column(DateTime(timezone=True), nullable=False)
    last_activity_at = Column(DateTime(timezone=True), nullable=False)

    # Cached aggregate for read-only consumers; recomputed from members on load
    aggregate = Column(JSONType)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("status IN ('active', 'archived', 'merged')", name='check_debate_status'),
        CheckConstraint('version >= 1', name='check_debate_version'),
        Index('idx_debates_status_activity', 'status', 'last_activity_at'),
    )


class DebateMember(Base):
    """Arrival-ordered membership of a statement in a debate"""
    __tablename__ = "debate_members"

    debate_id = Column(String(64), ForeignKey('debates.id', ondelete='CASCADE'), primary_key=True)
    statement_id = Column(String(64), ForeignKey('statements.fingerprint', ondelete='CASCADE'), primary_key=True)
    position = Column(Integer, nullable=False)

    __table_args__ = (
        Index('idx_debate_members_statement', 'statement_id'),
        Index('idx_debate_members_order', 'debate_id', 'position'),
    )


class AppSetting(Base):
    """Key/value runtime settings (pipeline tunables)"""
    __tablename__ = "app_settings"

    key = Column(String(128), primary_key=True)
    value = Column(JSONType, nullable=False, default=dict)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
