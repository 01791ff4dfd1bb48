from functools import lru_cache
from queue import Empty, Queue
from typing import Any, Dict, Iterator

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import StreamingResponse

from app.models import (
    AbortRunResponse,
    CachePurgeResponse,
    CreateRunRequest,
    CreateRunResponse,
    RunSnapshotResponse,
)
from app.run_manager import TERMINAL_EVENT_TYPES, RunManager
from app.sse import KEEP_ALIVE, format_sse

KEEP_ALIVE_INTERVAL_SEC = 15

app = FastAPI(title="Deep Research Core")


@lru_cache(maxsize=1)
def get_run_manager() -> RunManager:
    return RunManager()


@app.post("/api/runs", response_model=CreateRunResponse)
def create_run(
    req: CreateRunRequest, manager: RunManager = Depends(get_run_manager)
) -> CreateRunResponse:
    run_id = manager.create_run(
        query=req.query,
        history=[m.model_dump() for m in req.history],
        file_ids=req.file_ids,
        optimization_mode=req.optimization_mode,
    )
    return CreateRunResponse(run_id=run_id, status="queued")


@app.get("/api/runs/{run_id}", response_model=RunSnapshotResponse)
def get_run(run_id: str, manager: RunManager = Depends(get_run_manager)) -> RunSnapshotResponse:
    state = manager.get_snapshot(run_id)
    if not state:
        raise HTTPException(status_code=404, detail="Run not found")
    return RunSnapshotResponse(
        **state.model_dump(exclude={"events", "history", "file_ids", "last_access_at"}),
        event_count=len(state.events),
    )


def _event_stream(manager: RunManager, run_id: str, q: Queue) -> Iterator[str]:
    seq = 0
    try:
        while True:
            try:
                event = q.get(timeout=KEEP_ALIVE_INTERVAL_SEC)
            except Empty:
                yield KEEP_ALIVE
                continue
            seq += 1
            yield format_sse(event, event_id=seq)
            if event.get("event_type") in TERMINAL_EVENT_TYPES:
                break
    finally:
        manager.unsubscribe(run_id, q)


@app.get("/api/runs/{run_id}/events")
def stream_events(run_id: str, manager: RunManager = Depends(get_run_manager)) -> StreamingResponse:
    q = manager.subscribe(run_id)
    if q is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return StreamingResponse(
        _event_stream(manager, run_id, q),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.post("/api/runs/{run_id}/abort", response_model=AbortRunResponse)
def abort_run(run_id: str, manager: RunManager = Depends(get_run_manager)) -> AbortRunResponse:
    status = manager.abort_run(run_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Run not found")
    if status == "conflict_finished":
        raise HTTPException(status_code=409, detail="Run already finished")
    return AbortRunResponse(run_id=run_id, status=status)


@app.get("/api/runs/{run_id}/manifest")
def get_manifest(run_id: str, manager: RunManager = Depends(get_run_manager)) -> Dict[str, Any]:
    manifest = manager.get_manifest(run_id)
    if manifest is None:
        raise HTTPException(status_code=404, detail="Manifest not found")
    return manifest


@app.post("/api/embedding-cache/purge", response_model=CachePurgeResponse)
def purge_embedding_cache(manager: RunManager = Depends(get_run_manager)) -> CachePurgeResponse:
    return CachePurgeResponse(**manager.purge_embedding_cache())
