"""Self-healing endpoints.

POST /self-healing/start                    – queue a session, returns immediately
GET  /self-healing/sessions                 – list sessions (optional user_id)
GET  /self-healing/sessions/{id}            – persisted record plus is_stale
POST /self-healing/sessions/{id}/fail       – administratively fail an orphan
GET  /self-healing/stream/{id}              – SSE stream of live progress
GET  /self-healing/attestations/{id}        – audit-ledger records of a session
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from selfheal.app.config import settings
from selfheal.app.orchestrator import Orchestrator
from selfheal.app.progress import ProgressBus
from selfheal.app.services.repo_manager import parse_repo_url
from selfheal.app.store import SessionStore, is_stale, is_terminal
from selfheal.shared.errors import InvalidUrlError
from selfheal.shared.schemas import HealingStatus, utcnow_iso

router = APIRouter(prefix="/self-healing")
logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "Session interrupted: server was restarted while healing was in progress."

# Keep strong references so background tasks aren't garbage-collected.
_background_tasks: dict[str, asyncio.Task] = {}


async def _mark_failed(store: SessionStore, session_id: str, reason: str) -> None:
    record = await store.get(session_id)
    if record is None or is_terminal(record):
        return
    await store.update(
        session_id,
        status=HealingStatus.FAILED.value,
        error=reason,
        completed_at=utcnow_iso(),
    )


def _handle_task_done(task: asyncio.Task, session_id: str, store: SessionStore) -> None:
    """Callback invoked when a healing task finishes (success or crash)."""
    _background_tasks.pop(session_id, None)
    if task.cancelled():
        reason = "Healing task was cancelled"
    elif exc := task.exception():
        logger.error("Healing session %s crashed: %s", session_id, exc)
        reason = f"Unhandled error: {exc}"
    else:
        return

    key = f"{session_id}:fail"
    follow_up = asyncio.ensure_future(_mark_failed(store, session_id, reason))
    _background_tasks[key] = follow_up
    follow_up.add_done_callback(lambda _: _background_tasks.pop(key, None))


def _with_staleness(record: dict) -> dict:
    record["is_stale"] = is_stale(record, settings.STALE_SESSION_SECONDS)
    return record


# ── Request / Response schemas ───────────────────────────────────────

class StartHealingRequest(BaseModel):
    repo_url: str
    user_id: str = "anonymous"
    custom_rules: str = ""


class StartHealingResponse(BaseModel):
    session_id: str
    branch_name: str
    status: str
    message: str


# ── POST /self-healing/start ─────────────────────────────────────────

@router.post("/start", response_model=StartHealingResponse)
async def start_healing(body: StartHealingRequest, request: Request):
    """Create a queued session, launch the orchestrator in the background,
    and return the session id immediately."""
    orchestrator: Orchestrator = request.app.state.orchestrator
    store: SessionStore = request.app.state.store
    bus: ProgressBus = request.app.state.bus

    try:
        parse_repo_url(body.repo_url)
    except InvalidUrlError as exc:
        raise HTTPException(
            status_code=400,
            detail=f"{exc}. Expected format: https://github.com/owner/repo",
        ) from exc

    if not orchestrator.repo.token:
        raise HTTPException(status_code=503, detail="Server configuration error: GITHUB_TOKEN is not set.")

    session = orchestrator.new_session(
        session_id=str(uuid.uuid4()),
        repo_url=body.repo_url.strip(),
        user_id=body.user_id,
        custom_rules=body.custom_rules,
    )
    await store.create(session)
    bus.open(session.id)

    task = asyncio.create_task(orchestrator.run(session), name=f"healing-{session.id}")
    _background_tasks[session.id] = task
    task.add_done_callback(lambda t: _handle_task_done(t, session.id, store))

    logger.info("Queued healing session %s for %s", session.id, session.repo_url)
    return StartHealingResponse(
        session_id=session.id,
        branch_name=session.branch_name,
        status=session.status.value,
        message=f"Self-healing started for {session.repo_url}",
    )


# ── Sessions ─────────────────────────────────────────────────────────

@router.get("/sessions")
async def list_sessions(request: Request, user_id: str | None = Query(None)):
    store: SessionStore = request.app.state.store
    records = await store.list_sessions(user_id)
    return {"sessions": [_with_staleness(r) for r in records]}


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, request: Request):
    store: SessionStore = request.app.state.store
    record = await store.get(session_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return _with_staleness(record)


@router.post("/sessions/{session_id}/fail")
async def fail_session(session_id: str, request: Request):
    """Mark an orphaned session as failed (the loop died with the process)."""
    store: SessionStore = request.app.state.store
    record = await store.get(session_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    if is_terminal(record):
        raise HTTPException(status_code=409, detail=f"Session {session_id} already {record['status']}")

    await store.update(
        session_id,
        status=HealingStatus.FAILED.value,
        error=INTERRUPTED_ERROR,
        completed_at=utcnow_iso(),
    )
    logger.warning("Session %s marked failed by request", session_id)
    return {"success": True}


# ── GET /self-healing/stream/{id}  (Server-Sent Events) ──────────────

@router.get("/stream/{session_id}")
async def stream_session(session_id: str, request: Request):
    """Stream live progress events as Server-Sent Events (SSE).

    The stream ends with a ``done`` event right after a terminal status.
    """
    bus: ProgressBus = request.app.state.bus
    return StreamingResponse(
        _event_generator(bus, session_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


def _sse(event_type: str, data: dict) -> str:
    payload = {"type": event_type, "data": data, "timestamp": utcnow_iso()}
    return f"data: {json.dumps(payload)}\n\n"


async def _event_generator(bus: ProgressBus, session_id: str):
    yield _sse("connected", {"session_id": session_id})

    if not bus.is_active(session_id):
        yield _sse("status", {
            "status": "check_db",
            "message": "Session may have already completed. Check session details.",
        })
        return

    async for event in bus.stream(session_id):
        yield event.to_sse()
        if event.is_terminal_status:
            yield f"event: done\ndata: {json.dumps({'session_id': session_id})}\n\n"
            return


# ── GET /self-healing/attestations/{id} ──────────────────────────────

@router.get("/attestations/{session_id}")
async def get_attestations(session_id: str, request: Request):
    orchestrator: Orchestrator = request.app.state.orchestrator
    store: SessionStore = request.app.state.store

    if not orchestrator.ledger.enabled:
        return {
            "enabled": False,
            "attestations": [],
            "message": "Audit ledger is not configured",
        }

    record = await store.get(session_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    attestations = record.get("attestations") or []
    return {"enabled": True, "attestations": attestations, "count": len(attestations)}
