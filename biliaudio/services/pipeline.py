"""Resolution pipeline: cache -> metadata -> playback -> select -> fetch -> cache.

Only one upstream resolution runs per cache key at a time. Concurrent
requests for the same (BV id, quality) wait on a per-key lock and then find
the freshly cached artifact instead of repeating the work.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from typing import Dict, Optional

from biliaudio.models.media import CachedArtifact, ResolutionRequest
from biliaudio.services import logger
from biliaudio.services.cache import CacheStore, get_cache_store
from biliaudio.services.fetcher import MediaFetcher
from biliaudio.services.resolver import MetadataResolver
from biliaudio.services.selector import select_best_audio
from biliaudio.utils.exceptions import CacheIOError, InvalidVideoIdError


BVID_PATTERN = re.compile(r"^BV[a-zA-Z0-9]{10}$")


def is_valid_bvid(external_id: str) -> bool:
    return bool(external_id) and BVID_PATTERN.match(external_id) is not None


@dataclass
class ResolutionOutcome:
    """Result of one resolve() call."""
    artifact: CachedArtifact
    cached: bool
    title: Optional[str] = None
    elapsed_seconds: float = 0.0


class ResolutionPipeline:
    """
    Composes the cache and the upstream stages into a single resolve() call.

    Usage:
        pipeline = get_pipeline()
        outcome = await pipeline.resolve("BV1xx411c7mD")
        print(outcome.artifact.url, outcome.cached)
    """

    def __init__(
        self,
        cache: CacheStore,
        resolver: MetadataResolver,
        fetcher: MediaFetcher,
        ttl_seconds: Optional[int] = None,
    ):
        self.cache = cache
        self.resolver = resolver
        self.fetcher = fetcher
        self.ttl_seconds = ttl_seconds
        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._key_waiters: Dict[str, int] = {}

    async def resolve(self, external_id: str, quality_hint: int = 0) -> ResolutionOutcome:
        """
        Resolve a BV id into a cached audio artifact.

        Raises:
            InvalidVideoIdError: If ``external_id`` is not a BV id
            SigningError, ResolutionError, FetchError: Upstream failures, verbatim
        """
        request = ResolutionRequest(external_id=(external_id or "").strip(), quality_hint=quality_hint or 0)
        if not is_valid_bvid(request.external_id):
            raise InvalidVideoIdError(external_id)

        start_time = time.time()

        cached = await self._cache_get(request)
        if cached is not None:
            return ResolutionOutcome(artifact=cached, cached=True, elapsed_seconds=time.time() - start_time)

        async with self._key_lock(request.cache_key):
            # Another request may have filled the cache while we waited
            cached = await self._cache_get(request)
            if cached is not None:
                return ResolutionOutcome(artifact=cached, cached=True, elapsed_seconds=time.time() - start_time)

            artifact, title = await self._resolve_uncached(request)

        elapsed = time.time() - start_time
        logger.success(
            f"Resolved {request.external_id} in {elapsed:.2f}s",
            "pipeline",
            {"bvid": request.external_id, "quality": request.quality_hint, "file_name": artifact.local_file_name},
        )
        return ResolutionOutcome(artifact=artifact, cached=False, title=title, elapsed_seconds=elapsed)

    async def _resolve_uncached(self, request: ResolutionRequest):
        logger.info(
            f"Cache miss, resolving {request.external_id} upstream",
            "pipeline",
            {"bvid": request.external_id, "quality": request.quality_hint},
        )

        metadata, manifest = await self.resolver.resolve(request.external_id, request.quality_hint)
        representation = select_best_audio(manifest.audio_representations)
        logger.debug(
            f"Selected audio {representation.id} ({representation.quality_label}, {representation.bitrate_kbps} kbps)",
            "pipeline",
            {"bvid": request.external_id, "candidates": len(manifest.audio_representations)},
        )

        artifact = await self.fetcher.fetch(
            request.external_id,
            request.quality_hint,
            representation,
            manifest.duration_seconds,
        )

        try:
            artifact = await self._cache_put(request, artifact)
        except CacheIOError as e:
            # A failed cache write never fails the resolution
            logger.warn(f"Caching {request.external_id} failed: {e.message}", "pipeline")

        return artifact, metadata.title

    # The cache does blocking sqlite and file I/O; keep it off the event loop

    async def _cache_get(self, request: ResolutionRequest) -> Optional[CachedArtifact]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.cache.get, request.external_id, request.quality_hint)

    async def _cache_put(self, request: ResolutionRequest, artifact: CachedArtifact) -> CachedArtifact:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, self.cache.put, request.external_id, request.quality_hint, artifact, self.ttl_seconds
        )

    def _key_lock(self, cache_key: str) -> "_KeyLock":
        return _KeyLock(self, cache_key)

    def in_flight(self) -> int:
        """Number of cache keys currently being resolved or waited on."""
        return len(self._key_locks)


class _KeyLock:
    """Async context manager around a per-key lock that is dropped when unused."""

    def __init__(self, pipeline: ResolutionPipeline, cache_key: str):
        self._pipeline = pipeline
        self._key = cache_key

    async def __aenter__(self):
        locks = self._pipeline._key_locks
        waiters = self._pipeline._key_waiters
        lock = locks.setdefault(self._key, asyncio.Lock())
        waiters[self._key] = waiters.get(self._key, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._release_waiter()
            raise
        return lock

    async def __aexit__(self, exc_type, exc, tb):
        self._pipeline._key_locks[self._key].release()
        self._release_waiter()
        return False

    def _release_waiter(self) -> None:
        waiters = self._pipeline._key_waiters
        waiters[self._key] -= 1
        if waiters[self._key] == 0:
            del waiters[self._key]
            del self._pipeline._key_locks[self._key]


# Global pipeline instance
_pipeline: Optional[ResolutionPipeline] = None


def get_pipeline() -> ResolutionPipeline:
    """Get the global pipeline instance, wired from settings."""
    global _pipeline
    if _pipeline is None:
        _pipeline = ResolutionPipeline(
            cache=get_cache_store(),
            resolver=MetadataResolver(),
            fetcher=MediaFetcher(),
        )
    return _pipeline
