import asyncio
import subprocess
import threading

import pytest

from biliaudio.models.media import AudioRepresentation, CachedArtifact, PlaybackManifest, VideoMetadata, make_cache_key
from biliaudio.services import fetcher as fetcher_module
from biliaudio.services.cache import CacheStore
from biliaudio.services.fetcher import MediaFetcher
from biliaudio.services.pipeline import ResolutionPipeline, is_valid_bvid
from biliaudio.services.resolver import PLAYURL_URL, VIEW_URL, MetadataResolver
from biliaudio.services.signature import NAV_URL
from biliaudio.utils.exceptions import CacheIOError, FetchError, InvalidVideoIdError
from conftest import FakeResponse, FakeSessionFactory


BVID = "BV1xx411c7mD"
URL_64 = "https://upos.example.com/a-64.m4s"
URL_132 = "https://upos.example.com/a-132.m4s"


@pytest.fixture
def fake_ffmpeg(monkeypatch):
    def fake_run(cmd, **kwargs):
        with open(cmd[-1], "wb") as f:
            f.write(b"ID3transcoded")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    monkeypatch.setattr(fetcher_module.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(fetcher_module.subprocess, "run", fake_run)


@pytest.fixture
def upstream(nav_payload):
    return FakeSessionFactory({
        NAV_URL: nav_payload,
        VIEW_URL: {"code": 0, "data": {"bvid": BVID, "aid": 1, "title": "Test video", "cid": 279786}},
        PLAYURL_URL: {
            "code": 0,
            "data": {
                "timelength": 215000,
                "dash": {
                    "duration": 215,
                    "audio": [
                        {"id": 30232, "baseUrl": URL_132, "bandwidth": 132000},
                        {"id": 30216, "baseUrl": URL_64, "bandwidth": 64000},
                    ],
                },
            },
        },
        URL_132: FakeResponse(chunks=[b"high"]),
        URL_64: FakeResponse(chunks=[b"low"]),
    })


@pytest.fixture
def pipeline(tmp_path, clock, upstream):
    cache_dir = str(tmp_path / "cache")
    return ResolutionPipeline(
        cache=CacheStore(cache_dir=cache_dir, db_path=str(tmp_path / "index.db"), ttl_seconds=3600, clock=clock),
        resolver=MetadataResolver(session_factory=upstream),
        fetcher=MediaFetcher(cache_dir=cache_dir, session_factory=upstream, clock=clock),
    )


@pytest.mark.asyncio
async def test_end_to_end_then_served_from_cache(pipeline, upstream, fake_ffmpeg):
    first = await pipeline.resolve(BVID)

    assert first.cached is False
    assert first.title == "Test video"
    assert first.artifact.bitrate_kbps == 132
    assert first.artifact.source_url == URL_132
    assert first.artifact.duration_seconds == 215
    assert first.artifact.cache_key == make_cache_key(BVID, 0)
    assert first.artifact.expires_at is not None
    assert upstream.calls_to(URL_64) == []

    requests_before = len(upstream.calls)
    second = await pipeline.resolve(BVID)

    assert second.cached is True
    assert second.artifact == first.artifact
    assert len(upstream.calls) == requests_before


@pytest.mark.asyncio
async def test_invalid_id_is_rejected_without_network(pipeline, upstream):
    for bad in ("", "av170001", "BV123", "BV1xx411c7mD!"):
        with pytest.raises(InvalidVideoIdError):
            await pipeline.resolve(bad)
    assert upstream.calls == []


@pytest.mark.asyncio
async def test_fetch_failure_propagates_and_caches_nothing(pipeline, upstream, monkeypatch):
    monkeypatch.setattr(fetcher_module.shutil, "which", lambda name: None)

    with pytest.raises(FetchError) as excinfo:
        await pipeline.resolve(BVID)

    assert excinfo.value.phase == "transcode"
    assert pipeline.cache.count() == 0


@pytest.mark.asyncio
async def test_cache_write_failure_still_returns_artifact(pipeline, monkeypatch, fake_ffmpeg):
    def broken_put(*args, **kwargs):
        raise CacheIOError("disk full")

    monkeypatch.setattr(pipeline.cache, "put", broken_put)

    outcome = await pipeline.resolve(BVID)

    assert outcome.cached is False
    assert outcome.artifact.bitrate_kbps == 132


class SlowResolver:
    def __init__(self):
        self.calls = 0

    async def resolve(self, external_id, quality_hint=0):
        self.calls += 1
        await asyncio.sleep(0.05)
        metadata = VideoMetadata(external_id=external_id, content_id=1, title="slow")
        rep = AudioRepresentation(id=30232, primary_url=URL_132, bandwidth_bps=132000)
        return metadata, PlaybackManifest(duration_seconds=10, audio_representations=[rep])


class WritingFetcher:
    def __init__(self, cache_dir):
        self.cache_dir = cache_dir

    async def fetch(self, external_id, quality_hint, representation, duration_seconds):
        name = f"{external_id}_{quality_hint}.mp3"
        (self.cache_dir / name).write_bytes(b"ID3")
        return CachedArtifact(
            cache_key="",
            source_url=representation.primary_url,
            local_file_name=name,
            format="mp3",
            bitrate_kbps=representation.bitrate_kbps,
            duration_seconds=duration_seconds,
            size_bytes=3,
            created_at=0.0,
        )


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_resolution(tmp_path, clock):
    cache = CacheStore(cache_dir=str(tmp_path / "cache"), db_path=str(tmp_path / "index.db"), clock=clock)
    resolver = SlowResolver()
    pipeline = ResolutionPipeline(cache=cache, resolver=resolver, fetcher=WritingFetcher(cache.cache_dir))

    outcomes = await asyncio.gather(*(pipeline.resolve(BVID) for _ in range(4)))

    assert resolver.calls == 1
    assert sorted(outcome.cached for outcome in outcomes) == [False, True, True, True]
    assert len({outcome.artifact.local_file_name for outcome in outcomes}) == 1
    assert pipeline.in_flight() == 0


@pytest.mark.asyncio
async def test_different_keys_resolve_independently(tmp_path, clock):
    cache = CacheStore(cache_dir=str(tmp_path / "cache"), db_path=str(tmp_path / "index.db"), clock=clock)
    resolver = SlowResolver()
    pipeline = ResolutionPipeline(cache=cache, resolver=resolver, fetcher=WritingFetcher(cache.cache_dir))

    await asyncio.gather(pipeline.resolve(BVID, 0), pipeline.resolve(BVID, 80))

    assert resolver.calls == 2


def test_is_valid_bvid():
    assert is_valid_bvid("BV1xx411c7mD")
    assert not is_valid_bvid("BV1xx411c7m")
    assert not is_valid_bvid("bv1xx411c7mD")


@pytest.mark.asyncio
async def test_cache_io_runs_off_the_event_loop(tmp_path, clock):
    cache = CacheStore(cache_dir=str(tmp_path / "cache"), db_path=str(tmp_path / "index.db"), clock=clock)
    pipeline = ResolutionPipeline(cache=cache, resolver=SlowResolver(), fetcher=WritingFetcher(cache.cache_dir))
    loop_thread = threading.get_ident()
    cache_threads = []

    real_get, real_put = cache.get, cache.put

    def recording_get(*args):
        cache_threads.append(threading.get_ident())
        return real_get(*args)

    def recording_put(*args):
        cache_threads.append(threading.get_ident())
        return real_put(*args)

    cache.get = recording_get
    cache.put = recording_put

    await pipeline.resolve(BVID)
    outcome = await pipeline.resolve(BVID)

    assert outcome.cached is True
    assert len(cache_threads) == 4
    assert loop_thread not in cache_threads
