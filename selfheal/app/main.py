"""FastAPI application entry point."""

import logging
import sys
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from selfheal import __version__
from selfheal.app.config import settings
from selfheal.app.orchestrator import Orchestrator, build_orchestrator
from selfheal.app.progress import ProgressBus
from selfheal.app.routes import healing, health
from selfheal.app.store import SessionStore

# ── Logging configuration ────────────────────────────────────────────

def _configure_logging() -> None:
    """Set up root logger with console + file handlers."""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    log_path = Path(settings.LOG_FILE)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(log_level)
    console.setFormatter(fmt)

    # File handler (append mode so logs persist across restarts)
    file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    # Avoid duplicate handlers on reload
    root.handlers.clear()
    root.addHandler(console)
    root.addHandler(file_handler)

    for noisy in ("httpcore", "httpx", "urllib3", "asyncio", "github", "docker", "watchfiles"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


_configure_logging()
_logger = logging.getLogger(__name__)


# ── FastAPI application ──────────────────────────────────────────────

def create_app(orchestrator: Orchestrator | None = None) -> FastAPI:
    """Build the app; *orchestrator* overrides the settings-wired one."""
    application = FastAPI(
        title="Self-Healing Repository Agent",
        description="Clones a repository, finds and fixes bugs with an LLM until tests pass, then opens a PR.",
        version=__version__,
        debug=settings.APP_DEBUG,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if orchestrator is None:
        store = SessionStore()
        bus = ProgressBus()
        orchestrator = build_orchestrator(store, bus)
    application.state.orchestrator = orchestrator
    application.state.store = orchestrator.store
    application.state.bus = orchestrator.bus

    # ── Routes ───────────────────────────────────────────────────────
    application.include_router(health.router, tags=["health"])
    application.include_router(healing.router, tags=["self-healing"])

    @application.on_event("startup")
    async def startup_event():
        _logger.info(
            "Starting selfheal | env=%s | backend=%s | log_level=%s | log_file=%s",
            settings.APP_ENV, settings.TEST_BACKEND, settings.LOG_LEVEL, settings.LOG_FILE,
        )

    @application.on_event("shutdown")
    async def shutdown_event():
        await application.state.bus.shutdown()

    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run(app, host=settings.BACKEND_HOST, port=settings.BACKEND_PORT, log_config=None)
