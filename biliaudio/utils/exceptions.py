"""Error kinds raised by the resolution pipeline, with API-friendly metadata."""

from typing import Optional


class BiliAudioError(Exception):
    """Base exception for resolution errors with orchestration metadata."""

    def __init__(
        self,
        message: str,
        error_code: str = "UNKNOWN_ERROR",
        retryable: bool = False,
        user_message: Optional[str] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.retryable = retryable
        # Message that is safe to show to end users
        self.user_message = user_message or message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
            "user_message": self.user_message,
        }


# =============================================================================
# REQUEST ERRORS - caller supplied something unusable
# =============================================================================

class InvalidVideoIdError(BiliAudioError):
    """Raised when the external identifier is not a BV id."""

    def __init__(self, external_id: str):
        self.external_id = external_id
        super().__init__(
            message=f"Invalid BV id: {external_id!r}",
            error_code="INVALID_BVID",
            retryable=False,
            user_message="The BV id must be 'BV' followed by 10 letters or digits.",
        )


# =============================================================================
# UPSTREAM ERRORS - surfaced verbatim with the failing stage
# =============================================================================

class SigningError(BiliAudioError):
    """Raised when the WBI signing keys cannot be refreshed."""

    def __init__(self, message: str = "WBI key refresh failed", cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(
            message=message,
            error_code="SIGNING_FAILED",
            retryable=True,
            user_message="Could not sign the upstream request. Please try again.",
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["stage"] = "signing"
        return data


class ResolutionError(BiliAudioError):
    """Raised when the metadata or playback endpoint rejects a request."""

    STAGES = ("metadata", "playback")

    def __init__(self, stage: str, message: str, cause: Optional[BaseException] = None):
        if stage not in self.STAGES:
            raise ValueError(f"unknown resolution stage: {stage}")
        self.stage = stage
        self.cause = cause
        super().__init__(
            message=message,
            error_code=f"{stage.upper()}_FAILED",
            retryable=False,
            user_message="The video could not be resolved upstream.",
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["stage"] = self.stage
        return data


class NoStreamError(BiliAudioError):
    """Raised when an empty representation list reaches the selector."""

    def __init__(self, message: str = "No audio representation to choose from"):
        super().__init__(
            message=message,
            error_code="NO_AUDIO_STREAM",
            retryable=False,
            user_message="This video has no audio stream.",
        )


class FetchError(BiliAudioError):
    """Raised when downloading or transcoding the chosen stream fails."""

    PHASES = ("download", "transcode")

    def __init__(self, phase: str, message: str, cause: Optional[BaseException] = None):
        if phase not in self.PHASES:
            raise ValueError(f"unknown fetch phase: {phase}")
        self.phase = phase
        self.cause = cause
        super().__init__(
            message=message,
            error_code=f"{phase.upper()}_FAILED",
            retryable=True,
            user_message="Fetching the audio failed. Please try again.",
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["stage"] = self.phase
        return data


# =============================================================================
# LOCAL ERRORS - cache storage problems
# =============================================================================

class CacheIOError(BiliAudioError):
    """Raised when the cache index or blob storage cannot be read or written."""

    def __init__(self, message: str = "Cache storage failure", cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(
            message=message,
            error_code="CACHE_IO_ERROR",
            retryable=True,
            user_message="Internal storage error.",
        )


# Errors that come from the upstream platform or the network
UPSTREAM_ERRORS = (
    SigningError,
    ResolutionError,
    FetchError,
)


def get_error_response(error: Exception) -> dict:
    """Get a standardized error response dict from any exception."""
    if isinstance(error, BiliAudioError):
        return error.to_dict()

    return {
        "error_code": "INTERNAL_ERROR",
        "message": str(error),
        "retryable": True,
        "user_message": "An unexpected error occurred. Please try again.",
    }
