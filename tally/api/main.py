"""
tally.api.main — FastAPI application entry point
=================================================

Run with::

    uvicorn tally.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from tally.api.deps import get_engine, get_store, get_sync_service  # noqa: E402
from tally.api.routes.admin import router as admin_router  # noqa: E402
from tally.api.routes.public import router as public_router  # noqa: E402
from tally.errors import NotFoundError  # noqa: E402
from tally.store.change_feed import ChangeFeed  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from ``CORS_ALLOW_ORIGINS`` (comma-separated)."""
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]
    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — open mirrors and the cross-process feed."""
    engine = get_engine()
    service = get_sync_service()
    feed = ChangeFeed(get_store(), engine)
    feed.start()
    await service.start()
    logger.info("Tally API started — engine ready (%s)", engine.url.database)
    yield
    await service.close()
    feed.stop()
    logger.info("Tally API shutting down")


app = FastAPI(
    title="Tally API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


app.include_router(public_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
