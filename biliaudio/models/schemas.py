from pydantic import BaseModel
from typing import Optional, Any


class AudioInfo(BaseModel):
    """Audio artifact returned to API clients."""

    url: str
    original_url: str
    format: str
    bitrate: int
    duration: int
    quality: int
    size: int
    file_name: str
    expires_at: Optional[float] = None
    cached: bool = False


class ParseResponse(BaseModel):
    """Envelope for a successful parse."""

    success: bool = True
    code: int = 0
    message: str = "success"
    data: Optional[AudioInfo] = None


class StatusResponse(BaseModel):
    """Service status with cache and request counters."""

    alive: bool
    login_status: dict
    stats: dict[str, Any]


class HealthCheck(BaseModel):
    """Response model for health check."""

    status: str
    timestamp: str
    checks: dict
