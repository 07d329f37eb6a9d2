"""Bilibili Audio Parse Service - Main FastAPI Application."""

from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from biliaudio.config import settings
from biliaudio.routes import parse, status, health
from biliaudio.services import logger
from biliaudio.services.cache import EvictionLoop, get_cache_store
from biliaudio.services.fetcher import ffmpeg_available
from biliaudio.services.pipeline import get_pipeline


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup and shutdown."""
    # Startup
    logger.info(f"Bili audio service starting on port {settings.PORT}", "system")

    if not ffmpeg_available():
        logger.warn(f"ffmpeg not found at '{settings.FFMPEG_PATH}', transcoding will fail", "system")

    Path(settings.CACHE_DIR).mkdir(parents=True, exist_ok=True)
    logger.info(f"Cache directory: {settings.CACHE_DIR}", "system")

    eviction = EvictionLoop(
        get_cache_store(),
        settings.CLEANUP_INTERVAL_SECONDS,
        fetcher=get_pipeline().fetcher,
    )
    eviction.start()
    app.state.eviction = eviction

    logger.success("Bili audio service started", "system")

    yield

    # Shutdown
    logger.info("Bili audio service shutting down", "system")
    await eviction.stop()


# Create FastAPI app
app = FastAPI(
    title="Bili Audio Parse Service",
    description="Resolves Bilibili BV ids into locally cached audio files",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
    redoc_url=None,
    lifespan=lifespan,
)

# Include routers
app.include_router(parse.router)
app.include_router(status.router)
app.include_router(health.router)

# Cached audio files are served as /static/<file name>
app.mount("/static", StaticFiles(directory=settings.CACHE_DIR, check_dir=False), name="static")


@app.get("/", include_in_schema=False)
async def root():
    return {"service": "bili-audio-parse", "status": "running"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "biliaudio.main:app",
        host="0.0.0.0",
        port=settings.PORT,
        reload=settings.ENVIRONMENT == "development",
    )
