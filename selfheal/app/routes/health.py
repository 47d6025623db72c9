"""Health check and log viewer endpoints."""

from pathlib import Path

from fastapi import APIRouter, Query, Request
from fastapi.responses import PlainTextResponse

from selfheal import __version__
from selfheal.app.config import settings

router = APIRouter()

NO_LOG_FILE = "No log file found yet. Start a healing session first."


def _log_lines(tail: int) -> list[str] | None:
    log_path = Path(settings.LOG_FILE)
    if not log_path.exists():
        return None
    return log_path.read_text(encoding="utf-8", errors="replace").splitlines()[-tail:]


@router.get("/health")
async def health_check(request: Request):
    orchestrator = request.app.state.orchestrator
    return {
        "status": "healthy",
        "service": "selfheal",
        "version": __version__,
        "active_sessions": len(request.app.state.bus.active_sessions()),
        "github_configured": bool(orchestrator.repo.token),
        "ledger_enabled": orchestrator.ledger.enabled,
        "test_backend": settings.TEST_BACKEND,
    }


@router.get("/logs", response_class=PlainTextResponse)
async def get_logs(
    tail: int = Query(200, ge=1, le=5000, description="Number of lines from the end"),
    session_id: str | None = Query(None, description="Only lines tagged with this session"),
):
    """Return the last *tail* log lines, optionally for one session only.

    Session lines carry the first 8 characters of the id as ``[abcd1234]``.
    """
    lines = _log_lines(tail)
    if lines is None:
        return NO_LOG_FILE
    if session_id:
        tag = f"[{session_id[:8]}]"
        lines = [ln for ln in lines if tag in ln]
    return "\n".join(lines)


@router.get("/logs/search", response_class=PlainTextResponse)
async def search_logs(
    q: str = Query(..., min_length=1, description="Search term"),
    tail: int = Query(500, ge=1, le=10000),
):
    """Case-insensitive search over the last *tail* log lines."""
    lines = _log_lines(tail)
    if lines is None:
        return NO_LOG_FILE

    needle = q.lower()
    matched = [ln for ln in lines if needle in ln.lower()]
    if not matched:
        return f"No matches for '{q}' in last {tail} lines."
    return "\n".join(matched)
