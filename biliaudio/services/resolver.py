"""Metadata and playback resolution against the Bilibili web API.

Resolving a BV id takes two signed round-trips:
1. /x/web-interface/view  -> canonical metadata (cid, title)
2. /x/player/wbi/playurl  -> DASH manifest with the audio representations

Both calls send the browser User-Agent/Referer pair that the upstream
anti-hotlink check expects.
"""

import asyncio
from typing import Callable, List, Optional, Tuple

import aiohttp
from pydantic import BaseModel, ValidationError
from yarl import URL

from biliaudio.config import settings
from biliaudio.models.media import AudioRepresentation, PlaybackManifest, VideoMetadata
from biliaudio.services import logger
from biliaudio.services.signature import SignatureManager
from biliaudio.utils.exceptions import ResolutionError


VIEW_URL = "https://api.bilibili.com/x/web-interface/view"
PLAYURL_URL = "https://api.bilibili.com/x/player/wbi/playurl"

# fnval bitmask asking for every DASH variant (hdr, 4k, dolby, 8k, av1)
FNVAL_ALL_DASH = 4048


class _Page(BaseModel):
    cid: int = 0
    page: int = 0
    part: str = ""


class _ViewData(BaseModel):
    bvid: str = ""
    aid: int = 0
    title: str = ""
    cid: int = 0
    pages: List[_Page] = []


class ViewResponse(BaseModel):
    code: int
    message: str = ""
    data: Optional[_ViewData] = None


class _Dash(BaseModel):
    duration: int = 0
    audio: Optional[List[dict]] = None


class _PlayData(BaseModel):
    quality: int = 0
    format: str = ""
    timelength: int = 0
    dash: Optional[_Dash] = None


class PlayUrlResponse(BaseModel):
    code: int
    message: str = ""
    data: Optional[_PlayData] = None


class MetadataResolver:
    """
    Turns a BV id into video metadata and a playback manifest.

    The resolver owns its SignatureManager; every upstream call is signed.
    """

    def __init__(
        self,
        signer: Optional[SignatureManager] = None,
        user_agent: Optional[str] = None,
        referer: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        session_factory: Callable = aiohttp.ClientSession,
    ):
        self._user_agent = user_agent or settings.USER_AGENT
        self._referer = referer or settings.REFERER
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds or settings.API_TIMEOUT_SECONDS)
        self._session_factory = session_factory
        self.signer = signer or SignatureManager(
            user_agent=self._user_agent,
            referer=self._referer,
            timeout_seconds=timeout_seconds,
            session_factory=session_factory,
        )

    async def resolve(self, external_id: str, quality_hint: int = 0) -> Tuple[VideoMetadata, PlaybackManifest]:
        """
        Resolve a BV id into its metadata and playback manifest.

        Raises:
            SigningError: If the WBI keys cannot be refreshed
            ResolutionError: If either upstream stage fails
        """
        metadata = await self.fetch_metadata(external_id)
        manifest = await self.fetch_playback(metadata, quality_hint)
        return metadata, manifest

    async def fetch_metadata(self, external_id: str) -> VideoMetadata:
        query = await self.signer.sign({"bvid": external_id})
        payload = await self._get_json(VIEW_URL, query, stage="metadata")

        try:
            view = ViewResponse.model_validate(payload)
        except ValidationError as e:
            raise ResolutionError("metadata", "malformed video info response", cause=e) from e

        if view.code != 0:
            logger.warn(
                f"video info API returned error: code={view.code}",
                "resolver",
                {"bvid": external_id, "code": view.code, "message": view.message},
            )
            raise ResolutionError(
                "metadata",
                f"video info API returned error: code={view.code}, message={view.message}",
            )
        if view.data is None or not view.data.cid:
            raise ResolutionError("metadata", "video info response carried no cid")

        metadata = VideoMetadata(
            external_id=view.data.bvid or external_id,
            content_id=view.data.cid,
            title=view.data.title,
            aid=view.data.aid,
            page_count=len(view.data.pages),
        )
        logger.debug(
            f"Resolved metadata for {external_id}: {metadata.title[:50]}",
            "resolver",
            {"bvid": external_id, "cid": metadata.content_id},
        )
        return metadata

    async def fetch_playback(self, metadata: VideoMetadata, quality_hint: int = 0) -> PlaybackManifest:
        params = {
            "bvid": metadata.external_id,
            "cid": str(metadata.content_id),
            "fnval": str(FNVAL_ALL_DASH),
            "fnver": "0",
            "fourk": "1",
        }
        if quality_hint and quality_hint > 0:
            params["qn"] = str(quality_hint)

        query = await self.signer.sign(params)
        payload = await self._get_json(PLAYURL_URL, query, stage="playback")

        try:
            play = PlayUrlResponse.model_validate(payload)
        except ValidationError as e:
            raise ResolutionError("playback", "malformed playurl response", cause=e) from e

        if play.code != 0:
            logger.warn(
                f"playurl API returned error: code={play.code}",
                "resolver",
                {"bvid": metadata.external_id, "code": play.code, "message": play.message},
            )
            raise ResolutionError(
                "playback",
                f"playurl API returned error: code={play.code}, message={play.message}",
            )

        dash = play.data.dash if play.data else None
        if dash is None or not dash.audio:
            raise ResolutionError("playback", "no audio streams found")

        representations = [
            AudioRepresentation.from_dash(entry) for entry in dash.audio if isinstance(entry, dict)
        ]
        representations = [rep for rep in representations if rep.primary_url]
        if not representations:
            raise ResolutionError("playback", "no audio stream carried a URL")

        duration = dash.duration or (play.data.timelength // 1000)
        return PlaybackManifest(
            duration_seconds=duration,
            audio_representations=representations,
            quality=play.data.quality,
            format=play.data.format,
        )

    async def _get_json(self, base_url: str, query: str, stage: str) -> dict:
        headers = {"User-Agent": self._user_agent, "Referer": self._referer}
        # The query is already percent-encoded by the signer
        url = URL(f"{base_url}?{query}", encoded=True)
        try:
            async with self._session_factory(headers=headers, timeout=self._timeout) as session:
                async with session.get(url) as response:
                    return await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise ResolutionError(stage, f"{stage} request timed out", cause=e) from e
        except (aiohttp.ClientError, ValueError) as e:
            raise ResolutionError(stage, f"{stage} request failed: {e}", cause=e) from e
