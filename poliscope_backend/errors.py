"""Error taxonomy for the debate pipeline."""

from typing import Optional


class PipelineError(Exception):
    """Base class for every error raised by the pipeline services."""


class ValidationError(PipelineError):
    """Inbound statement payload failed validation. Never retried."""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class ScoringError(PipelineError):
    """Base class for oracle failures surfaced by the scoring client."""

    def __init__(self, message: str, fingerprint: Optional[str] = None):
        super().__init__(message)
        self.fingerprint = fingerprint


class ScoringRejected(ScoringError):
    """Oracle refused the statement or returned garbage. Not retried."""


class ScoringUnavailable(ScoringError):
    """Oracle stayed unreachable after retries, or the caller's deadline passed."""

    def __init__(self, message: str, fingerprint: Optional[str] = None, attempts: int = 0):
        super().__init__(message, fingerprint)
        self.attempts = attempts


class SimilarityUnavailable(PipelineError):
    """The embedding/similarity capability could not produce a vector."""


class ClusteringDegraded(PipelineError):
    """Clustering fell back to creating a new debate because similarity was down."""


class ConcurrencyConflict(PipelineError):
    """A debate lock could not be acquired in time. Nothing was applied."""

    def __init__(self, message: str, debate_ids=()):
        super().__init__(message)
        self.debate_ids = tuple(debate_ids)


class DebateNotFound(PipelineError):
    """No debate exists with the requested id."""

    def __init__(self, debate_id: str):
        super().__init__(f"Debate not found: {debate_id}")
        self.debate_id = debate_id
