import logging
import os
from dataclasses import asdict, dataclass, fields
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger("poliscope_backend")

PIPELINE_CONFIG_KEY = "pipeline_config"


@dataclass(frozen=True)
class PipelineConfig:
    """Tunable thresholds and windows for the debate pipeline."""

    # Clustering
    similarity_threshold: float = 0.55
    merge_threshold: float = 0.85
    activity_window_days: float = 14.0
    archive_after_days: float = 30.0
    merge_interval_seconds: float = 60.0
    merge_max_attempts: int = 3
    lock_timeout_seconds: float = 5.0
    title_terms: int = 4

    # Aggregation
    center_band: float = 20.0
    momentum_window_minutes: float = 60.0
    momentum_change: float = 0.2

    # Oracle
    oracle_timeout_seconds: float = 10.0
    oracle_max_attempts: int = 3
    oracle_base_delay_seconds: float = 0.5
    oracle_max_delay_seconds: float = 8.0

    # Pipeline / fanout
    retry_interval_seconds: float = 30.0
    archive_interval_seconds: float = 300.0
    subscriber_queue_size: int = 256

    @property
    def activity_window(self) -> timedelta:
        return timedelta(days=self.activity_window_days)

    @property
    def archive_after(self) -> timedelta:
        return timedelta(days=self.archive_after_days)

    @property
    def momentum_window(self) -> timedelta:
        return timedelta(minutes=self.momentum_window_minutes)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_FIELD_TYPES = {f.name: f.type for f in fields(PipelineConfig)}
_DEFAULTS = PipelineConfig().to_dict()


def _coerce(key: str, value: Any) -> Any:
    expected = _FIELD_TYPES[key]
    if expected in (int, "int"):
        return int(value)
    return float(value)


def get_env_pipeline_defaults() -> Dict[str, Any]:
    """Defaults, overridable per key through PIPELINE_<KEY> environment variables."""
    config = dict(_DEFAULTS)
    for key in config:
        raw = os.getenv(f"PIPELINE_{key.upper()}")
        if raw is None or not raw.strip():
            continue
        try:
            config[key] = _coerce(key, raw.strip())
        except ValueError:
            logger.warning("[CONFIG] Ignoring invalid PIPELINE_%s=%r", key.upper(), raw)
    return config


def merge_pipeline_config(
    overrides: Optional[Mapping[str, Any]],
    base: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    config = dict(base) if base is not None else get_env_pipeline_defaults()
    if not overrides:
        return config

    for key, value in overrides.items():
        if key not in config:
            continue
        try:
            coerced = _coerce(key, value)
        except (TypeError, ValueError):
            logger.warning("[CONFIG] Ignoring invalid override %s=%r", key, value)
            continue
        if coerced < 0:
            logger.warning("[CONFIG] Ignoring negative override %s=%r", key, value)
            continue
        config[key] = coerced

    return config


def build_pipeline_config(
    overrides: Optional[Mapping[str, Any]] = None,
    base: Optional[PipelineConfig] = None,
) -> PipelineConfig:
    return PipelineConfig(**merge_pipeline_config(overrides, base.to_dict() if base is not None else None))


async def load_pipeline_config(session: Optional[AsyncSession] = None) -> PipelineConfig:
    if session is None:
        return build_pipeline_config()

    from poliscope_backend.models import AppSetting

    result = await session.execute(
        select(AppSetting).where(AppSetting.key == PIPELINE_CONFIG_KEY)
    )
    setting = result.scalar_one_or_none()
    overrides = setting.value if setting else {}
    return build_pipeline_config(overrides)
