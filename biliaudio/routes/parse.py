"""Parse endpoint: BV id -> cached audio file."""

import time
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Query, Request
from fastapi.responses import JSONResponse

from biliaudio.models.schemas import AudioInfo, ParseResponse
from biliaudio.models.media import CachedArtifact
from biliaudio.services import logger
from biliaudio.services.pipeline import get_pipeline
from biliaudio.services.request_log import RequestLogEntry, get_request_log
from biliaudio.utils.exceptions import (
    BiliAudioError,
    InvalidVideoIdError,
    UPSTREAM_ERRORS,
    get_error_response,
)


router = APIRouter(tags=["parse"])


def _to_audio_info(artifact: CachedArtifact, cached: bool) -> AudioInfo:
    return AudioInfo(
        url=artifact.url,
        original_url=artifact.source_url,
        format=artifact.format,
        bitrate=artifact.bitrate_kbps,
        duration=artifact.duration_seconds,
        quality=artifact.quality,
        size=artifact.size_bytes,
        file_name=artifact.local_file_name,
        expires_at=artifact.expires_at,
        cached=cached,
    )


def _status_for(error: Exception) -> int:
    if isinstance(error, InvalidVideoIdError):
        return 400
    if isinstance(error, UPSTREAM_ERRORS):
        return 502
    return 500


@router.get(
    "/api/parse",
    response_model=ParseResponse,
    responses={
        400: {"description": "Invalid BV id"},
        502: {"description": "Upstream signing, resolution or fetch failed"},
        500: {"description": "Internal server error"},
    },
)
async def parse_audio_endpoint(
    request: Request,
    background_tasks: BackgroundTasks,
    bv: str = Query(..., description="Bilibili BV id", examples=["BV1xx411c7mD"]),
    quality: int = Query(0, ge=0, description="Optional quality hint (qn)"),
) -> ParseResponse:
    """
    Resolve a BV id into a locally cached audio file.

    This endpoint:
    1. Returns the cached artifact when one is live
    2. Otherwise signs and calls the view + playurl APIs
    3. Downloads the best audio stream and transcodes it with ffmpeg
    4. Caches the result and returns its /static URL
    """
    start_time = time.time()
    status_code = 200
    error_msg: Optional[str] = None
    cached = False

    try:
        outcome = await get_pipeline().resolve(bv, quality)
        cached = outcome.cached
        return ParseResponse(data=_to_audio_info(outcome.artifact, outcome.cached))

    except BiliAudioError as e:
        status_code = _status_for(e)
        error_msg = e.message
        logger.error(
            f"Parse failed for {bv}: {e.message}",
            "pipeline",
            {"bvid": bv, "quality": quality, **e.to_dict()},
        )
        return JSONResponse(status_code=status_code, content={"detail": e.to_dict()}, background=background_tasks)

    except Exception as e:
        status_code = 500
        error_msg = str(e)
        logger.error(f"Unexpected parse failure for {bv}: {e}", "pipeline", {"bvid": bv})
        return JSONResponse(status_code=500, content={"detail": get_error_response(e)}, background=background_tasks)

    finally:
        # Runs after the response is sent
        background_tasks.add_task(
            get_request_log().record,
            RequestLogEntry(
                client_ip=request.client.host if request.client else None,
                user_agent=request.headers.get("user-agent"),
                bvid=bv,
                quality=quality,
                status_code=status_code,
                error_msg=error_msg,
                process_time_ms=int((time.time() - start_time) * 1000),
                cached=cached,
            ),
        )
