from pydantic_settings import BaseSettings
from functools import lru_cache


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Server
    PORT: int = 8080
    ENVIRONMENT: str = "production"

    # Cache storage
    CACHE_DIR: str = "./parse_cache"
    INDEX_DB_PATH: str = "./data.db"
    CACHE_TTL_SECONDS: int = 3600
    CLEANUP_INTERVAL_SECONDS: int = 1800

    # Leftover .m4s files older than this are swept by the eviction loop
    RAW_FILE_MAX_AGE_SECONDS: int = 3600

    # Upstream (Bilibili) anti-hotlink headers
    USER_AGENT: str = DEFAULT_USER_AGENT
    REFERER: str = "https://www.bilibili.com"

    # Timeouts
    API_TIMEOUT_SECONDS: int = 30
    DOWNLOAD_TIMEOUT_SECONDS: int = 300
    TRANSCODE_TIMEOUT_SECONDS: int = 300

    # Transcoder
    FFMPEG_PATH: str = "ffmpeg"
    AUDIO_FORMAT: str = "mp3"

    # Logging
    LOG_DIR: str = "./logs"
    LOG_TO_FILE: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
