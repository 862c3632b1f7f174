import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from poliscope_backend.config import CORS_ORIGINS, LOG_LEVEL
from poliscope_backend.db_session import (
    dispose_engine,
    get_session_factory,
    init_database,
    is_database_configured,
)
from poliscope_backend.debates_api import router as debates_router
from poliscope_backend.instrumentation import InstrumentationMiddleware
from poliscope_backend.middleware import configure_http_guards
from poliscope_backend.services.ingest_pipeline import IngestPipeline, PipelineRuntime, build_pipeline
from poliscope_backend.services.pipeline_config import load_pipeline_config
from poliscope_backend.services.pipeline_persistence import PipelinePersistence
from poliscope_backend.settings_api import router as settings_router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("poliscope_backend")


async def _startup_pipeline() -> IngestPipeline:
    if not is_database_configured():
        logger.info("[STARTUP] DATABASE_URL not set; running the pipeline in memory")
        return build_pipeline()

    await init_database()
    session_factory = get_session_factory()
    async with session_factory() as session:
        config = await load_pipeline_config(session)
    pipeline = build_pipeline(config=config, persistence=PipelinePersistence(session_factory))
    await pipeline.restore()
    return pipeline


async def _close_quietly(component) -> None:
    aclose = getattr(component, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:  # noqa: BLE001
        logger.exception("[SHUTDOWN] Failed to close %s", type(component).__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    pipeline: Optional[IngestPipeline] = getattr(app.state, "pipeline", None)
    if pipeline is None:
        pipeline = await _startup_pipeline()
        app.state.pipeline = pipeline

    runtime = PipelineRuntime(pipeline)
    if getattr(app.state, "run_background_loops", True):
        runtime.start()
    logger.info("[STARTUP] Pipeline ready (%d debates loaded)", len(pipeline.store))
    try:
        yield
    finally:
        await runtime.stop()
        await _close_quietly(pipeline.oracle.transport)
        await _close_quietly(pipeline.clustering.strategy)
        if is_database_configured():
            await dispose_engine()
        logger.info("[SHUTDOWN] Pipeline stopped")


def create_app(pipeline: Optional[IngestPipeline] = None, run_background_loops: bool = True) -> FastAPI:
    app = FastAPI(title="PoliScope Debate Pipeline", lifespan=lifespan)
    app.state.pipeline = pipeline
    app.state.run_background_loops = run_background_loops

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],  # Allow all HTTP methods (GET, POST, etc.)
        allow_headers=["*"],  # Allow all headers
    )
    configure_http_guards(app)
    app.add_middleware(InstrumentationMiddleware)

    # Include routers
    app.include_router(debates_router)
    app.include_router(settings_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics_endpoint():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


poliscope_app = create_app()
