"""FastAPI server for IntakeFlow.

Run with:
    uvicorn intakeflow.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from intakeflow.api.routes import router
from intakeflow.config import Settings
from intakeflow.conversation import build_service

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: compile every flow, open the repository, wire collaborators.

    The service lives on ``app.state`` for the lifetime of the process and
    is closed (metrics flushed, repository released) on shutdown.
    """
    settings: Settings = application.state.settings
    logger.info("Loading flows from %s…", settings.flows_dir)
    service = build_service(settings)
    application.state.service = service
    logger.info("Service ready with flows: %s", ", ".join(service.registry.versions()) or "none")
    yield
    application.state.service = None
    service.close()


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    application = FastAPI(
        title="IntakeFlow",
        description=(
            "Declarative conversation flows for customer intake, "
            "appointment scheduling and human handoff."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    application.state.settings = settings

    # ── CORS (needed for the dashboard frontend) ─────────────────────
    application.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Request-ID middleware ────────────────────────────────────────
    @application.middleware("http")
    async def add_request_id(request: Request, call_next) -> Response:
        """Attach a unique request ID to every request for log correlation.

        The ID is echoed in the ``X-Request-ID`` response header so a
        channel adapter can reference it when reporting a problem.
        """
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        logger.info("[%s] %s %s", request_id, request.method, request.url.path)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    application.include_router(router, prefix="/api")

    @application.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "service": "IntakeFlow",
            "version": "1.0.0",
            "docs": "/docs",
            "health": "/api/health",
        }

    return application


app = create_app()


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    _settings: Settings = app.state.settings
    logger.info("Starting IntakeFlow API server on %s:%d", _settings.server_host, _settings.server_port)
    uvicorn.run(
        "intakeflow.server:app",
        host=_settings.server_host,
        port=_settings.server_port,
        reload=True,
    )
