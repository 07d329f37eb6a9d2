"""Domain records passed between the signing, resolving, fetching and caching stages."""

import hashlib
import time
from dataclasses import dataclass, field, asdict
from typing import List, Optional


# Signing keys are refreshed once they are older than this
KEY_FRESHNESS_SECONDS = 60 * 60

# Bilibili audio quality ids as they appear in dash.audio[].id
AUDIO_QUALITY_LABELS = {
    30216: "64K",
    30232: "132K",
    30280: "192K",
    30250: "Dolby",
    30251: "Hi-Res",
}


def make_cache_key(external_id: str, quality_hint: int) -> str:
    """Deterministic 32-char hex key for an (id, quality) pair."""
    data = f"{external_id}_{quality_hint}"
    return hashlib.md5(data.encode("utf-8")).hexdigest()


@dataclass
class SigningKeySet:
    """WBI key material fetched from the nav endpoint."""
    img_key: str
    sub_key: str
    mixin_key: str
    last_refreshed: float

    def is_fresh(self, now: Optional[float] = None) -> bool:
        """Check if the keys are still inside the freshness window."""
        now = time.time() if now is None else now
        return now - self.last_refreshed < KEY_FRESHNESS_SECONDS


@dataclass(frozen=True)
class ResolutionRequest:
    external_id: str
    quality_hint: int = 0

    @property
    def cache_key(self) -> str:
        return make_cache_key(self.external_id, self.quality_hint)


@dataclass
class VideoMetadata:
    external_id: str
    content_id: int
    title: str
    aid: int = 0
    page_count: int = 0


@dataclass
class AudioRepresentation:
    """One entry of dash.audio in the playback manifest."""
    id: int
    primary_url: str
    backup_urls: List[str] = field(default_factory=list)
    bandwidth_bps: int = 0
    mime_type: str = ""
    codec: str = ""

    @property
    def bitrate_kbps(self) -> int:
        return self.bandwidth_bps // 1000

    @property
    def quality_label(self) -> str:
        return AUDIO_QUALITY_LABELS.get(self.id, "standard")

    @classmethod
    def from_dash(cls, entry: dict) -> "AudioRepresentation":
        return cls(
            id=int(entry.get("id") or 0),
            primary_url=entry.get("baseUrl") or entry.get("base_url") or "",
            backup_urls=list(entry.get("backupUrl") or entry.get("backup_url") or []),
            bandwidth_bps=int(entry.get("bandwidth") or 0),
            mime_type=entry.get("mimeType") or entry.get("mime_type") or "",
            codec=entry.get("codecs") or "",
        )


@dataclass
class PlaybackManifest:
    duration_seconds: int
    audio_representations: List[AudioRepresentation]
    quality: int = 0
    format: str = ""


@dataclass
class CachedArtifact:
    """A transcoded audio file that can be served from the cache directory."""
    cache_key: str
    source_url: str
    local_file_name: str
    format: str
    bitrate_kbps: int
    duration_seconds: int
    size_bytes: int
    created_at: float
    expires_at: Optional[float] = None
    quality: int = 0

    @property
    def url(self) -> str:
        """Public path of the media file under the static mount."""
        return f"/static/{self.local_file_name}"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "CachedArtifact":
        return cls(
            cache_key=data["cache_key"],
            source_url=data["source_url"],
            local_file_name=data["local_file_name"],
            format=data["format"],
            bitrate_kbps=int(data["bitrate_kbps"]),
            duration_seconds=int(data["duration_seconds"]),
            size_bytes=int(data["size_bytes"]),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]) if data.get("expires_at") is not None else None,
            quality=int(data.get("quality", 0)),
        )


@dataclass
class CacheIndexRecord:
    """Row of the cache index; the index is the source of truth for lookups."""
    cache_key: str
    external_id: str
    quality_hint: int
    blob_path: str
    media_path: str
    expires_at: float
    created_at: float = 0.0
