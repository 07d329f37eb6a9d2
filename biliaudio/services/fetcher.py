"""Download and transcode of a chosen audio representation.

The DASH audio track is fetched as a raw .m4s file, converted with ffmpeg
into the configured durable format, and the raw file is removed again
whether or not the conversion succeeded.
"""

import asyncio
import os
import shutil
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional

import aiofiles
import aiohttp

from biliaudio.config import settings
from biliaudio.models.media import AudioRepresentation, CachedArtifact, make_cache_key
from biliaudio.services import logger
from biliaudio.utils.exceptions import FetchError


RAW_SUFFIX = ".m4s"
DOWNLOAD_CHUNK_SIZE = 64 * 1024

# Target format -> ffmpeg audio encoder
ENCODERS = {
    "mp3": "libmp3lame",
    "m4a": "aac",
    "opus": "libopus",
}

# Used when the manifest reports no bandwidth for the chosen stream
FALLBACK_BITRATE_KBPS = 128

# Thread pool for blocking ffmpeg runs
_transcode_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="ffmpeg")


def ffmpeg_available(ffmpeg_path: Optional[str] = None) -> bool:
    """Check if the ffmpeg launcher can be found."""
    return shutil.which(ffmpeg_path or settings.FFMPEG_PATH) is not None


class MediaFetcher:
    """Fetches a representation's bytes and produces the cached audio file."""

    def __init__(
        self,
        cache_dir: Optional[str] = None,
        audio_format: Optional[str] = None,
        user_agent: Optional[str] = None,
        referer: Optional[str] = None,
        download_timeout_seconds: Optional[float] = None,
        transcode_timeout_seconds: Optional[float] = None,
        ffmpeg_path: Optional[str] = None,
        session_factory: Callable = aiohttp.ClientSession,
        clock: Callable[[], float] = time.time,
    ):
        self.cache_dir = Path(cache_dir or settings.CACHE_DIR)
        self.audio_format = (audio_format or settings.AUDIO_FORMAT).lstrip(".").lower()
        if self.audio_format not in ENCODERS:
            raise ValueError(f"unsupported audio format: {self.audio_format}")
        self._user_agent = user_agent or settings.USER_AGENT
        self._referer = referer or settings.REFERER
        self._download_timeout = download_timeout_seconds or settings.DOWNLOAD_TIMEOUT_SECONDS
        self._transcode_timeout = transcode_timeout_seconds or settings.TRANSCODE_TIMEOUT_SECONDS
        self._ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH
        self._session_factory = session_factory
        self._clock = clock
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    def output_name(self, external_id: str, quality_hint: int) -> str:
        return f"{external_id}_{quality_hint}_{int(self._clock())}.{self.audio_format}"

    async def fetch(
        self,
        external_id: str,
        quality_hint: int,
        representation: AudioRepresentation,
        duration_seconds: int,
    ) -> CachedArtifact:
        """
        Download ``representation`` and transcode it into the cache directory.

        No retry happens here; callers may retry the whole call.

        Raises:
            FetchError: phase "download" or "transcode"
        """
        file_name = self.output_name(external_id, quality_hint)
        output_path = self.cache_dir / file_name
        bitrate = representation.bitrate_kbps or FALLBACK_BITRATE_KBPS

        if output_path.exists():
            logger.debug(f"Output already present, reusing {file_name}", "fetcher")
            return self._artifact(external_id, quality_hint, representation, output_path, bitrate, duration_seconds)

        raw_path = output_path.with_suffix(RAW_SUFFIX)
        start_time = self._clock()
        logger.info(
            f"Downloading audio stream for {external_id}",
            "fetcher",
            {"bvid": external_id, "quality": quality_hint, "representation": representation.id, "kbps": bitrate},
        )

        try:
            await self._download(representation.primary_url, raw_path)
            download_time = self._clock() - start_time

            await self._transcode(raw_path, output_path, bitrate)
        finally:
            _remove_quietly(raw_path)

        try:
            artifact = self._artifact(external_id, quality_hint, representation, output_path, bitrate, duration_seconds)
        except OSError as e:
            raise FetchError("transcode", f"transcoded file is unreadable: {e}", cause=e) from e

        logger.success(
            f"Audio ready: {file_name} ({artifact.size_bytes / (1024 * 1024):.2f} MB)",
            "fetcher",
            {
                "bvid": external_id,
                "file_name": file_name,
                "download_time_seconds": round(download_time, 2),
                "total_time_seconds": round(self._clock() - start_time, 2),
            },
        )
        return artifact

    async def _download(self, url: str, raw_path: Path) -> None:
        headers = {
            "User-Agent": self._user_agent,
            "Referer": self._referer,
            "Accept": "*/*",
            "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
            "Accept-Encoding": "gzip, deflate, br",
            "Connection": "keep-alive",
        }
        timeout = aiohttp.ClientTimeout(total=self._download_timeout)

        try:
            async with self._session_factory(headers=headers, timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        raise FetchError("download", f"download failed with status: {response.status}")
                    async with aiofiles.open(raw_path, "wb") as f:
                        async for chunk in response.content.iter_chunked(DOWNLOAD_CHUNK_SIZE):
                            await f.write(chunk)
        except FetchError:
            logger.warn(f"Download rejected upstream: {url[:80]}", "fetcher")
            raise
        except asyncio.TimeoutError as e:
            logger.error(f"Download timed out after {self._download_timeout}s", "fetcher")
            raise FetchError("download", f"download timed out after {self._download_timeout}s", cause=e) from e
        except (aiohttp.ClientError, OSError) as e:
            logger.error(f"Download failed: {str(e)[:100]}", "fetcher")
            raise FetchError("download", f"failed to download stream: {e}", cause=e) from e

    async def _transcode(self, raw_path: Path, output_path: Path, bitrate_kbps: int) -> None:
        launcher = shutil.which(self._ffmpeg_path)
        if launcher is None:
            logger.error(f"ffmpeg not found ({self._ffmpeg_path})", "fetcher")
            raise FetchError("transcode", f"ffmpeg not found: {self._ffmpeg_path}")

        cmd = [
            launcher,
            "-i", str(raw_path),
            "-acodec", ENCODERS[self.audio_format],
            "-ab", f"{bitrate_kbps}k",
            "-y",
            str(output_path),
        ]

        def _run_ffmpeg():
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self._transcode_timeout,
            )

        try:
            loop = asyncio.get_running_loop()
            process = await loop.run_in_executor(_transcode_executor, _run_ffmpeg)
        except subprocess.TimeoutExpired as e:
            _remove_quietly(output_path)
            raise FetchError("transcode", f"ffmpeg timed out after {self._transcode_timeout}s", cause=e) from e
        except OSError as e:
            _remove_quietly(output_path)
            raise FetchError("transcode", f"could not launch ffmpeg: {e}", cause=e) from e

        if process.returncode != 0:
            output = (process.stderr or "") + (process.stdout or "")
            logger.warn(
                f"ffmpeg failed (code {process.returncode}): {output[-300:]}",
                "fetcher",
                {"returncode": process.returncode},
            )
            _remove_quietly(output_path)
            raise FetchError("transcode", f"ffmpeg conversion failed with code {process.returncode}: {output[-200:]}")

    def _artifact(
        self,
        external_id: str,
        quality_hint: int,
        representation: AudioRepresentation,
        output_path: Path,
        bitrate_kbps: int,
        duration_seconds: int,
    ) -> CachedArtifact:
        stat = output_path.stat()
        return CachedArtifact(
            cache_key=make_cache_key(external_id, quality_hint),
            source_url=representation.primary_url,
            local_file_name=output_path.name,
            format=self.audio_format,
            bitrate_kbps=bitrate_kbps,
            duration_seconds=duration_seconds,
            size_bytes=stat.st_size,
            created_at=self._clock(),
            quality=quality_hint,
        )

    def cleanup_stale_raw_files(self, max_age_seconds: Optional[int] = None) -> int:
        """Remove raw downloads left behind by interrupted runs."""
        if not self.cache_dir.exists():
            return 0

        max_age = max_age_seconds if max_age_seconds is not None else settings.RAW_FILE_MAX_AGE_SECONDS
        now = self._clock()
        cleaned = 0
        for item in self.cache_dir.glob(f"*{RAW_SUFFIX}"):
            try:
                if now - item.stat().st_mtime > max_age:
                    item.unlink()
                    cleaned += 1
            except FileNotFoundError:
                continue

        if cleaned > 0:
            logger.info(f"Cleaned up {cleaned} stale raw downloads", "fetcher")
        return cleaned


def _remove_quietly(path: Path) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warn(f"Could not remove {path.name}: {e}", "fetcher")
