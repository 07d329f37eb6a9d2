"""Service status endpoint."""

from fastapi import APIRouter

from biliaudio.models.schemas import StatusResponse
from biliaudio.services import logger
from biliaudio.services.pipeline import get_pipeline
from biliaudio.services.request_log import get_request_log


router = APIRouter(tags=["status"])


@router.get("/api/status", response_model=StatusResponse)
async def get_service_status() -> StatusResponse:
    """
    Report liveness plus cache, signing and request counters.

    Only anonymous access to the upstream is supported, so the login status
    is always "anonymous".
    """
    pipeline = get_pipeline()
    request_log = get_request_log()

    stats = {
        "cache": pipeline.cache.stats(),
        "signing": pipeline.resolver.signer.status(),
        "in_flight": pipeline.in_flight(),
        "request_log": request_log.status(),
        "logs": logger.get_log_stats(),
        "log_sequence": logger.get_latest_sequence(),
    }
    total_requests = request_log.total_requests()
    if total_requests is not None:
        stats["total_requests"] = total_requests

    return StatusResponse(
        alive=True,
        login_status={"anonymous": "valid"},
        stats=stats,
    )
