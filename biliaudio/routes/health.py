"""Health check endpoint."""

import os
from datetime import datetime, timezone

from fastapi import APIRouter

from biliaudio.models.schemas import HealthCheck
from biliaudio.services.fetcher import ffmpeg_available
from biliaudio.services.pipeline import get_pipeline


router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthCheck)
async def health_check() -> HealthCheck:
    """
    Health check endpoint.

    Returns system health status including:
    - ffmpeg availability
    - Cache directory writability
    - Cache index readability
    """
    ffmpeg_ok = ffmpeg_available()

    cache = get_pipeline().cache
    cache_dir_ok = cache.cache_dir.is_dir() and os.access(cache.cache_dir, os.W_OK)

    try:
        cache.count()
        index_ok = True
    except Exception:
        index_ok = False

    return HealthCheck(
        status="ok" if all([ffmpeg_ok, cache_dir_ok, index_ok]) else "degraded",
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        checks={
            "ffmpeg": "available" if ffmpeg_ok else "unavailable",
            "cache_dir": "writable" if cache_dir_ok else "unwritable",
            "index": "readable" if index_ok else "unreadable",
        }
    )
