"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from app.api import router as api_router
from app.core.background import drain, pending_tasks
from app.core.config import get_settings
from app.core.logging import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info(
        f"Starting knowledge chat engine (env={settings.CHAT_ENGINE_ENV}, "
        f"chat model={settings.CHAT_MODEL}, embeddings={settings.EMBEDDING_MODEL})"
    )
    yield
    # Let detached assistant-message writes finish before the loop closes
    await drain(settings.SHUTDOWN_DRAIN_SECONDS)


app = FastAPI(
    title="Knowledge Chat Engine",
    description="Knowledge-grounded chat, similar-content search and topic clustering",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(content={"status": "ok", "pendingWrites": pending_tasks()}, status_code=200)


# Include v1 API router
app.include_router(api_router, prefix="/v1", tags=["v1"])
