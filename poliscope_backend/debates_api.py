import asyncio
import json
import logging
from typing import Any, Optional

from fastapi import (
    APIRouter,
    Body,
    Depends,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.websockets import WebSocketState

from poliscope_backend.domain import IngestStatus
from poliscope_backend.errors import DebateNotFound
from poliscope_backend.schemas import (
    DebateListResponse,
    IngestResponse,
    InvalidateScoresRequest,
    InvalidateScoresResponse,
    MergePassResponse,
    QueueResponse,
    SnapshotResponse,
    StatementStatusResponse,
)
from poliscope_backend.services.fanout import Subscription
from poliscope_backend.services.ingest_pipeline import IngestPipeline

logger = logging.getLogger(__name__)

router = APIRouter()

SSE_KEEPALIVE_SECONDS = 15.0


def get_pipeline(request: Request) -> IngestPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline is not running")
    return pipeline


@router.post("/api/statements", response_model=IngestResponse, status_code=202)
async def ingest_statement(payload: Any = Body(...), pipeline: IngestPipeline = Depends(get_pipeline)):
    result = await pipeline.ingest(payload)
    status_code = 422 if result.status == IngestStatus.REJECTED else 202
    return JSONResponse(status_code=status_code, content=result.to_dict())


@router.get("/api/statements/{fingerprint}", response_model=StatementStatusResponse)
async def read_statement(fingerprint: str, pipeline: IngestPipeline = Depends(get_pipeline)):
    status = pipeline.statement_status(fingerprint)
    if status is None:
        raise HTTPException(status_code=404, detail="Statement not found")
    return status


@router.get("/api/debates/health")
async def debates_health(pipeline: IngestPipeline = Depends(get_pipeline)):
    return {
        "status": "ok",
        "debates": len(pipeline.store),
        "active_debates": len(pipeline.store.active_snapshots()),
        "subscribers": pipeline.fanout.subscriber_count,
        "retry_queue": len(pipeline.retry_queue),
        "review_queue": len(pipeline.review_queue),
        "inflight_scoring": pipeline.oracle.inflight_count,
    }


@router.get("/api/debates", response_model=DebateListResponse)
async def list_debates(
    region: Optional[str] = Query(None),
    include_archived: bool = Query(False),
    limit: int = Query(50, ge=1, le=500),
    pipeline: IngestPipeline = Depends(get_pipeline),
):
    snapshots = pipeline.store.list_snapshots(region=region, include_archived=include_archived)
    return {
        "debates": [snap.to_dict() for snap in snapshots[:limit]],
        "total": len(snapshots),
    }


@router.get("/api/debates/{debate_id}", response_model=SnapshotResponse)
async def read_debate(debate_id: str, pipeline: IngestPipeline = Depends(get_pipeline)):
    try:
        return pipeline.store.snapshot(debate_id).to_dict()
    except DebateNotFound:
        raise HTTPException(status_code=404, detail="Debate not found")


@router.post("/api/debates/merge-pass", response_model=MergePassResponse)
async def run_merge_pass(pipeline: IngestPipeline = Depends(get_pipeline)):
    merged = await pipeline.run_merge_pass()
    return {"merged": [{"survivor": survivor, "absorbed": absorbed} for survivor, absorbed in merged]}


@router.get("/api/review-queue", response_model=QueueResponse)
async def read_review_queue(pipeline: IngestPipeline = Depends(get_pipeline)):
    items = [item.to_dict() for item in pipeline.review_queue.values()]
    return {"items": items, "total": len(items)}


@router.get("/api/retry-queue", response_model=QueueResponse)
async def read_retry_queue(pipeline: IngestPipeline = Depends(get_pipeline)):
    items = [item.to_dict() for item in pipeline.retry_queue.values()]
    return {"items": items, "total": len(items)}


@router.post("/api/scores/invalidate", response_model=InvalidateScoresResponse)
async def invalidate_scores(payload: InvalidateScoresRequest, pipeline: IngestPipeline = Depends(get_pipeline)):
    if not payload.fingerprint and not payload.model_version:
        raise HTTPException(status_code=400, detail="Provide a fingerprint or a model_version.")

    invalidated = 0
    stale = 0
    if payload.fingerprint:
        invalidated = int(pipeline.invalidate_score(payload.fingerprint))
    if payload.model_version:
        stale = pipeline.bump_model_version(payload.model_version)
    logger.info("[SCORES] Invalidated %d entries, marked %d stale", invalidated, stale)
    return {
        "invalidated": invalidated,
        "stale": stale,
        "model_version": pipeline.oracle.model_version,
    }


# ---------------------------------------------------------------------------
# Delta streams
# ---------------------------------------------------------------------------

def _subscribe_or_404(pipeline: IngestPipeline, topic: str, include_snapshot: bool) -> Subscription:
    try:
        return pipeline.fanout.subscribe(topic, include_snapshot=include_snapshot)
    except DebateNotFound:
        raise HTTPException(status_code=404, detail="Debate not found")


def _sse_frame(event_type: str, data: Any) -> str:
    return f"event: {event_type}\ndata: {json.dumps(data)}\n\n"


@router.get("/api/debates/{topic}/events")
async def stream_debate_events(
    topic: str,
    request: Request,
    include_snapshot: bool = Query(True),
    max_events: Optional[int] = Query(None, ge=1),
    pipeline: IngestPipeline = Depends(get_pipeline),
):
    """Server-Sent Events feed of deltas for one debate id or "all"."""
    subscription = _subscribe_or_404(pipeline, topic, include_snapshot)

    async def event_stream():
        sent = 0
        try:
            while max_events is None or sent < max_events:
                try:
                    event = await asyncio.wait_for(subscription.get(), SSE_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        break
                    yield ": keepalive\n\n"
                    continue
                if event is None:
                    break
                yield _sse_frame(event.type, event.to_dict())
                sent += 1
        finally:
            subscription.close()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.websocket("/ws/debates/{topic}")
async def debates_websocket(websocket: WebSocket, topic: str):
    pipeline: Optional[IngestPipeline] = getattr(websocket.app.state, "pipeline", None)
    if pipeline is None:
        await websocket.close(code=1013, reason="Pipeline is not running")
        return

    include_snapshot = websocket.query_params.get("include_snapshot", "true").lower() in {"1", "true", "yes"}
    try:
        subscription = pipeline.fanout.subscribe(topic, include_snapshot=include_snapshot)
    except DebateNotFound:
        await websocket.close(code=4404, reason="Debate not found")
        return

    await websocket.accept()

    async def read_client():
        # Client messages are only pings; a disconnect ends the subscription.
        try:
            while True:
                message = await websocket.receive_text()
                if message.strip().lower() == "ping":
                    await websocket.send_json({"type": "pong"})
        except WebSocketDisconnect:
            logger.info("[WS] Debate stream client disconnected (%s)", topic)
        finally:
            subscription.close()

    reader = asyncio.create_task(read_client())
    close_code = 1000
    try:
        async for event in subscription:
            await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        logger.info("[WS] Debate stream send failed, client gone (%s)", topic)
    except Exception as exc:
        logger.exception("[WS] Error streaming debate events: %s", exc)
        close_code = 1011
    finally:
        subscription.close()
        reader.cancel()
        if (
            websocket.application_state == WebSocketState.CONNECTED
            and websocket.client_state == WebSocketState.CONNECTED
        ):
            await websocket.close(code=close_code)
