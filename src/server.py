"""FastAPI server for the booking auto-responder.

Run with:
    uv run uvicorn src.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from src.api.routes import router
from src.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from src.orchestrator import ResponseOrchestrator, create_orchestrator
from src.services.metrics import metrics

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

SERVICE_NAME = "Booking Auto-Responder"
API_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(application: FastAPI):
    """Wire the orchestrator once per process; ship pending metrics on exit.

    An orchestrator already present on ``app.state`` (tests, embedding
    callers) is kept as is.
    """
    if getattr(application.state, "orchestrator", None) is None:
        logger.info("Building response orchestrator…")
        application.state.orchestrator = create_orchestrator()
    logger.info("%s ready", SERVICE_NAME)
    try:
        yield
    finally:
        metrics.close()


async def _request_id_middleware(request: Request, call_next) -> Response:
    """Tag every request with an ``X-Request-ID`` (client-supplied or new).

    Routes prefix their log lines with it; it is echoed on the response.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


def create_app(orchestrator: ResponseOrchestrator | None = None) -> FastAPI:
    """Build the API app; pass *orchestrator* to skip production wiring."""
    application = FastAPI(
        title=SERVICE_NAME,
        description=(
            "Answers web-widget and WhatsApp messages from tenant documents "
            "while tracking booking details."
        ),
        version=API_VERSION,
        lifespan=lifespan,
    )
    application.state.orchestrator = orchestrator

    # The web widget is served from a different origin
    application.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.middleware("http")(_request_id_middleware)
    application.include_router(router, prefix="/api")

    @application.get("/")
    async def root():
        return {
            "service": SERVICE_NAME,
            "version": API_VERSION,
            "docs": "/docs",
            "health": "/api/health",
        }

    return application


app = create_app()


if __name__ == "__main__":
    logger.info("Starting %s on %s:%d", SERVICE_NAME, SERVER_HOST, SERVER_PORT)
    uvicorn.run("src.server:app", host=SERVER_HOST, port=SERVER_PORT, reload=True)
