import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select

from poliscope_backend.db_session import get_optional_session
from poliscope_backend.debates_api import get_pipeline
from poliscope_backend.models import AppSetting
from poliscope_backend.services.ingest_pipeline import IngestPipeline
from poliscope_backend.services.pipeline_config import (
    PIPELINE_CONFIG_KEY,
    build_pipeline_config,
    load_pipeline_config,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/api/settings/pipeline")
async def read_pipeline_settings(
    session=Depends(get_optional_session),
    pipeline: IngestPipeline = Depends(get_pipeline),
):
    if session is None:
        return pipeline.config.to_dict()
    config = await load_pipeline_config(session)
    return config.to_dict()


@router.put("/api/settings/pipeline")
async def update_pipeline_settings(
    payload: Dict[str, Any],
    session=Depends(get_optional_session),
    pipeline: IngestPipeline = Depends(get_pipeline),
):
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Payload must be a JSON object.")

    # Updates are partial: unspecified keys keep their running values.
    config = build_pipeline_config(payload, base=pipeline.config)
    stored = config.to_dict()

    if session is not None:
        stmt = select(AppSetting).where(AppSetting.key == PIPELINE_CONFIG_KEY)
        existing = (await session.execute(stmt)).scalar_one_or_none()
        if existing:
            existing.value = stored
            existing.updated_at = datetime.now(timezone.utc)
        else:
            session.add(
                AppSetting(
                    key=PIPELINE_CONFIG_KEY,
                    value=stored,
                )
            )
        await session.commit()

    await pipeline.reconfigure(config)
    logger.info("[CONFIG] Pipeline settings updated: %s", sorted(payload))
    return config.to_dict()
