"""
Domain records for the debate pipeline.

All records are frozen dataclasses: a Statement or Score is never mutated
after creation, and Debate/Aggregate values are replaced wholesale whenever
the snapshot store commits a new version.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

SOURCE_TYPES = ("speech", "interview", "debate-transcript", "article", "social")
FALLACY_SEVERITIES = ("low", "medium", "high")
IDEOLOGY_BUCKETS = ("left", "center", "right")
EMOTIONS = ("anger", "fear", "hope")


class DebateStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    RECOMPUTED = "recomputed"
    MERGED = "merged"


class Momentum(str, Enum):
    RISING = "rising"
    STABLE = "stable"
    DECLINING = "declining"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DeltaKind(str, Enum):
    CREATED = "created"
    STATEMENT_ADDED = "statement_added"
    STATEMENT_SUPERSEDED = "statement_superseded"
    MERGED = "merged"
    MERGED_AWAY = "merged_away"
    ARCHIVED = "archived"
    RECOMPUTED = "recomputed"


class IngestStatus(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    PENDING = "pending"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Author:
    name: str = ""
    affiliation: Optional[str] = None
    ideology_hint: Optional[str] = None


@dataclass(frozen=True)
class Statement:
    """An atomic utterance attributed to a source."""

    id: str
    text: str
    author: Author
    source_type: str
    region: Optional[str]
    occurred_at: datetime
    ingested_at: datetime
    supersedes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "author": asdict(self.author),
            "source_type": self.source_type,
            "region": self.region,
            "occurred_at": _iso(self.occurred_at),
            "ingested_at": _iso(self.ingested_at),
            "supersedes": self.supersedes,
        }


@dataclass(frozen=True)
class IdeologyVector:
    economic: float
    social: float


@dataclass(frozen=True)
class EmotionalProfile:
    anger: float
    fear: float
    hope: float


@dataclass(frozen=True)
class Fallacy:
    type: str
    severity: str


@dataclass(frozen=True)
class Score:
    """The oracle's assessment of one Statement, keyed by its fingerprint."""

    statement_id: str
    ideology: IdeologyVector
    emotions: EmotionalProfile
    fallacies: Tuple[Fallacy, ...] = ()
    confidence: float = 0.0
    model_version: str = ""
    stale: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "statement_id": self.statement_id,
            "ideology": asdict(self.ideology),
            "emotions": asdict(self.emotions),
            "fallacies": [asdict(f) for f in self.fallacies],
            "confidence": self.confidence,
            "model_version": self.model_version,
            "stale": self.stale,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Score":
        return cls(
            statement_id=data["statement_id"],
            ideology=IdeologyVector(**data["ideology"]),
            emotions=EmotionalProfile(**data["emotions"]),
            fallacies=tuple(Fallacy(**f) for f in data.get("fallacies") or []),
            confidence=float(data.get("confidence", 0.0)),
            model_version=data.get("model_version", ""),
            stale=bool(data.get("stale", False)),
        )


@dataclass(frozen=True)
class Debate:
    """A cluster of topically related, temporally bounded Statements."""

    id: str
    title: str
    created_at: datetime
    last_activity_at: datetime
    member_statement_ids: Tuple[str, ...]
    version: int
    status: DebateStatus = DebateStatus.ACTIVE
    merged_into: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == DebateStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": _iso(self.created_at),
            "last_activity_at": _iso(self.last_activity_at),
            "member_statement_ids": list(self.member_statement_ids),
            "version": self.version,
            "status": self.status.value,
            "merged_into": self.merged_into,
        }


@dataclass(frozen=True)
class Stakeholder:
    name: str
    affiliation: Optional[str]
    ideology: str


@dataclass(frozen=True)
class Aggregate:
    """Rolling statistics for one Debate, derived solely from member Scores."""

    statement_count: int
    ideology_breakdown: Dict[str, int]
    spectrum_position: Dict[str, float]
    emotional_profile: Dict[str, float]
    momentum: Momentum
    fallacy_histogram: Dict[str, int]
    participants: int = 0
    stakeholders: Tuple[Stakeholder, ...] = ()
    regions: Tuple[str, ...] = ()
    urgency: Urgency = Urgency.LOW

    def to_dict(self) -> Dict[str, Any]:
        return {
            "statement_count": self.statement_count,
            "ideology_breakdown": dict(self.ideology_breakdown),
            "spectrum_position": dict(self.spectrum_position),
            "emotional_profile": dict(self.emotional_profile),
            "momentum": self.momentum.value,
            "fallacy_histogram": dict(self.fallacy_histogram),
            "participants": self.participants,
            "stakeholders": [asdict(s) for s in self.stakeholders],
            "regions": list(self.regions),
            "urgency": self.urgency.value,
        }


@dataclass(frozen=True)
class Snapshot:
    """A point-in-time consistent view of one Debate."""

    debate: Debate
    aggregate: Aggregate

    @property
    def version(self) -> int:
        return self.debate.version

    def to_dict(self) -> Dict[str, Any]:
        return {
            "debate": self.debate.to_dict(),
            "aggregate": self.aggregate.to_dict(),
            "version": self.version,
        }


@dataclass(frozen=True)
class Delta:
    """What changed in a Debate/Aggregate at a given version."""

    debate_id: str
    version: int
    kind: DeltaKind
    title: str
    aggregate: Aggregate
    emitted_at: datetime
    statement_id: Optional[str] = None
    changed: Tuple[str, ...] = ()
    merged_from: Optional[str] = None
    merged_into: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "delta",
            "debate_id": self.debate_id,
            "version": self.version,
            "kind": self.kind.value,
            "title": self.title,
            "statement_id": self.statement_id,
            "changed": list(self.changed),
            "merged_from": self.merged_from,
            "merged_into": self.merged_into,
            "aggregate": self.aggregate.to_dict(),
            "emitted_at": _iso(self.emitted_at),
        }


@dataclass(frozen=True)
class Assignment:
    debate_id: str
    is_new_debate: bool
    is_merge: bool = False


@dataclass
class IngestResult:
    status: IngestStatus
    statement_id: Optional[str] = None
    debate_id: Optional[str] = None
    is_new_debate: bool = False
    duplicate: bool = False
    reason: Optional[str] = None
    field: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "statement_id": self.statement_id,
            "debate_id": self.debate_id,
            "is_new_debate": self.is_new_debate,
            "duplicate": self.duplicate,
            "reason": self.reason,
            "field": self.field,
            "detail": self.detail,
        }
