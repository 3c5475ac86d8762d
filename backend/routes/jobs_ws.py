from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from services.job_events import FINISHED_EVENT
from services.pipeline import PipelineService

router = APIRouter(tags=["jobs"])
logger = logging.getLogger(__name__)


@router.websocket("/ws/jobs/{job_id}")
async def ws_job_events(websocket: WebSocket, job_id: str) -> None:
    """
    Stream snapshots of one job until its run finishes.

    Payload schema:
      {"type": "job_snapshot", "job": {...}}
      {"type": "job_finished", "job_id": str, "status": str, "dry_run": bool,
       "message": str, "job": {...}}

    The current snapshot is sent first. Jobs that are already finished get that
    snapshot and the socket is closed.
    """
    pipeline: PipelineService = websocket.app.state.pipeline
    await websocket.accept()
    if not pipeline.store.contains(job_id):
        await websocket.send_json({"type": "error", "message": "Job not found."})
        await websocket.close()
        return

    q = await pipeline.events.subscribe(job_id)
    logger.info("[jobs_ws] Subscribed job_id=%r", job_id)
    try:
        snapshot = pipeline.get_job(job_id)
        await websocket.send_json({"type": "job_snapshot", "job": snapshot.to_dict()})
        if snapshot.is_terminal:
            await websocket.close()
            return
        while True:
            payload: dict[str, Any] = await q.get()
            await websocket.send_json(payload)
            if payload.get("type") == FINISHED_EVENT:
                await websocket.close()
                return
    except WebSocketDisconnect:
        return
    finally:
        await pipeline.events.unsubscribe(job_id, q)
