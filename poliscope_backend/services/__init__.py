"""Services for the PoliScope debate pipeline."""

from .ingest_pipeline import IngestPipeline, PipelineRuntime, build_pipeline
from .scoring_oracle import ScoringOracleClient

__all__ = [
    'IngestPipeline',
    'PipelineRuntime',
    'ScoringOracleClient',
    'build_pipeline',
]
