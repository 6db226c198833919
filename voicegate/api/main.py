"""
voicegate.api.main — FastAPI application entry point
=====================================================

Run with::

    uvicorn voicegate.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from voicegate.api.auth import router as auth_router  # noqa: E402
from voicegate.api.deps import get_engine  # noqa: E402
from voicegate.api.envelope import install_exception_handlers, ok  # noqa: E402
from voicegate.api.routes.admin import router as admin_router  # noqa: E402
from voicegate.api.routes.events import router as events_router  # noqa: E402
from voicegate.api.routes.public import router as public_router  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle: warm the DB engine."""
    engine = get_engine()
    logger.info("Voicegate API started, engine ready (%s)", engine.url.database)
    yield
    logger.info("Voicegate API shutting down")


app = FastAPI(
    title="Voicegate API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_exception_handlers(app)

app.include_router(auth_router, prefix="/api")
app.include_router(public_router, prefix="/api")
app.include_router(events_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.get("/api/health")
def health():
    return ok("ok")
