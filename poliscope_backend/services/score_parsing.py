"""
Boundary validation for oracle output.

The oracle is an external, occasionally wrong-shaped collaborator. Everything
it returns passes through parse_score_payload() and comes out as a tagged
ScoreResult; untyped payloads never travel further into the pipeline.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from poliscope_backend.domain import EmotionalProfile, Fallacy, IdeologyVector, Score
from poliscope_backend.errors import ScoringError, ScoringRejected


class IdeologyPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    economic: float = Field(ge=-100, le=100)
    social: float = Field(ge=-100, le=100)


class EmotionsPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    anger: float = Field(ge=0, le=100)
    fear: float = Field(ge=0, le=100)
    hope: float = Field(ge=0, le=100)


class FallacyPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = Field(min_length=1)
    severity: Literal["low", "medium", "high"]

    @field_validator("type", "severity", mode="before")
    @classmethod
    def _normalize_label(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value


class ScorePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ideology: IdeologyPayload
    emotions: EmotionsPayload
    fallacies: List[FallacyPayload] = Field(default_factory=list)
    confidence: float = Field(ge=0, le=100)
    model_version: Optional[str] = None


@dataclass(frozen=True)
class ScoreResult:
    """Either a validated Score or the ScoringError explaining why not."""

    score: Optional[Score] = None
    error: Optional[ScoringError] = None

    @property
    def ok(self) -> bool:
        return self.score is not None

    @classmethod
    def success(cls, score: Score) -> "ScoreResult":
        return cls(score=score)

    @classmethod
    def failure(cls, error: ScoringError) -> "ScoreResult":
        return cls(error=error)

    def unwrap(self) -> Score:
        if self.score is None:
            raise self.error or ScoringRejected("empty score result")
        return self.score


def _reshape(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Map the accepted oracle shapes onto ScorePayload's field names."""
    data = dict(payload.get("score")) if isinstance(payload.get("score"), dict) else dict(payload)

    if "emotions" not in data:
        for key in ("emotionalProfile", "emotional_profile"):
            if isinstance(data.get(key), dict):
                data["emotions"] = data[key]
                break

    mapping = data.get("ideologicalMapping")
    if "ideology" not in data and isinstance(mapping, dict):
        data["ideology"] = mapping.get("spectrumPosition")
        if "confidence" not in data and "confidence" in mapping:
            data["confidence"] = mapping["confidence"]

    rhetoric = data.get("rhetoricalAnalysis")
    if "fallacies" not in data and isinstance(rhetoric, dict):
        data["fallacies"] = rhetoric.get("fallacies") or []

    if "model_version" not in data and "modelVersion" in data:
        data["model_version"] = data["modelVersion"]

    return data


def _refusal_reason(payload: Dict[str, Any]) -> Optional[str]:
    if payload.get("rejected") is True:
        return str(payload.get("reason") or "oracle rejected the statement")
    if payload.get("refusal"):
        return str(payload["refusal"])
    if payload.get("error"):
        return str(payload["error"])
    return None


def parse_score_payload(
    payload: Any,
    statement_id: str,
    model_version: str = "",
) -> ScoreResult:
    if not isinstance(payload, dict):
        return ScoreResult.failure(
            ScoringRejected(f"oracle returned {type(payload).__name__}, expected object", statement_id)
        )

    reason = _refusal_reason(payload)
    if reason:
        return ScoreResult.failure(ScoringRejected(f"policy rejection: {reason}", statement_id))

    try:
        parsed = ScorePayload.model_validate(_reshape(payload))
    except PydanticValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ())) or "payload"
        return ScoreResult.failure(
            ScoringRejected(f"malformed oracle output at {location}: {first.get('msg', exc)}", statement_id)
        )

    score = Score(
        statement_id=statement_id,
        ideology=IdeologyVector(economic=parsed.ideology.economic, social=parsed.ideology.social),
        emotions=EmotionalProfile(
            anger=parsed.emotions.anger,
            fear=parsed.emotions.fear,
            hope=parsed.emotions.hope,
        ),
        fallacies=tuple(Fallacy(type=f.type, severity=f.severity) for f in parsed.fallacies),
        confidence=parsed.confidence,
        model_version=parsed.model_version or model_version,
    )
    return ScoreResult.success(score)
