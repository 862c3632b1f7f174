"""Shared Pydantic request/response models used across the routers."""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class IngestResponse(BaseModel):
    status: str  # "accepted", "rejected", "pending"
    statement_id: Optional[str] = None
    debate_id: Optional[str] = None
    is_new_debate: bool = False
    duplicate: bool = False
    reason: Optional[str] = None
    field: Optional[str] = None
    detail: Optional[str] = None

class StakeholderModel(BaseModel):
    name: str
    affiliation: Optional[str] = None
    ideology: str

class AggregateModel(BaseModel):
    statement_count: int
    ideology_breakdown: Dict[str, int]
    spectrum_position: Dict[str, float]
    emotional_profile: Dict[str, float]
    momentum: str
    fallacy_histogram: Dict[str, int]
    participants: int = 0
    stakeholders: List[StakeholderModel] = []
    regions: List[str] = []
    urgency: str = "low"

class DebateModel(BaseModel):
    id: str
    title: str
    created_at: str
    last_activity_at: str
    member_statement_ids: List[str]
    version: int
    status: str
    merged_into: Optional[str] = None

class SnapshotResponse(BaseModel):
    debate: DebateModel
    aggregate: AggregateModel
    version: int

class DebateListResponse(BaseModel):
    debates: List[SnapshotResponse]
    total: int

class StatementStatusResponse(BaseModel):
    statement: Dict[str, Any]
    status: str
    reason: Optional[str] = None
    score: Optional[Dict[str, Any]] = None
    debate_id: Optional[str] = None

class QueuedStatementModel(BaseModel):
    statement: Dict[str, Any]
    reason: str
    detail: str
    queued_at: str
    attempts: int

class QueueResponse(BaseModel):
    items: List[QueuedStatementModel]
    total: int

class MergePassResponse(BaseModel):
    merged: List[Dict[str, str]]  # [{"survivor": id, "absorbed": id}]

class InvalidateScoresRequest(BaseModel):
    fingerprint: Optional[str] = Field(default=None, min_length=64, max_length=64)
    model_version: Optional[str] = None

class InvalidateScoresResponse(BaseModel):
    invalidated: int
    stale: int
    model_version: str
