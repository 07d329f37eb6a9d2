from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from biliaudio import main
from biliaudio.config import settings
from biliaudio.models.media import CachedArtifact
from biliaudio.routes import health, parse, status
from biliaudio.services.cache import CacheStore
from biliaudio.services.fetcher import MediaFetcher
from biliaudio.services.pipeline import ResolutionOutcome, ResolutionPipeline
from biliaudio.services.request_log import RequestLog
from biliaudio.services.resolver import MetadataResolver
from biliaudio.utils.exceptions import FetchError, InvalidVideoIdError, ResolutionError


ARTIFACT = CachedArtifact(
    cache_key="1f8ad0f1c2d34b5e6f708192a3b4c5d6",
    source_url="https://upos.example.com/a-132.m4s",
    local_file_name="BV1xx411c7mD_0_1700000000.mp3",
    format="mp3",
    bitrate_kbps=132,
    duration_seconds=215,
    size_bytes=3_456_789,
    created_at=1700000000.0,
    expires_at=1700003600.0,
)


class StubPipeline:
    def __init__(self, result):
        self.result = result
        self.calls = []

    async def resolve(self, external_id, quality_hint=0):
        self.calls.append((external_id, quality_hint))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


@pytest.fixture
def request_log(tmp_path, monkeypatch):
    log = RequestLog(db_path=str(tmp_path / "requests.db"))
    monkeypatch.setattr(parse, "get_request_log", lambda: log)
    return log


def client_with(monkeypatch, result):
    stub = StubPipeline(result)
    monkeypatch.setattr(parse, "get_pipeline", lambda: stub)
    return TestClient(main.app), stub


def test_parse_success(monkeypatch, request_log):
    client, stub = client_with(monkeypatch, ResolutionOutcome(artifact=ARTIFACT, cached=False))

    response = client.get("/api/parse", params={"bv": "BV1xx411c7mD", "quality": 80})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["code"] == 0
    assert body["data"]["url"] == "/static/BV1xx411c7mD_0_1700000000.mp3"
    assert body["data"]["bitrate"] == 132
    assert body["data"]["cached"] is False
    assert stub.calls == [("BV1xx411c7mD", 80)]
    assert request_log.total_requests() == 1


def test_parse_requires_bv(monkeypatch, request_log):
    client, _ = client_with(monkeypatch, ResolutionOutcome(artifact=ARTIFACT, cached=True))
    assert client.get("/api/parse").status_code == 422


def test_parse_invalid_id_is_400(monkeypatch, request_log):
    client, _ = client_with(monkeypatch, InvalidVideoIdError("nope"))

    response = client.get("/api/parse", params={"bv": "nope"})

    assert response.status_code == 400
    assert response.json()["detail"]["error_code"] == "INVALID_BVID"
    assert request_log.total_requests() == 1


@pytest.mark.parametrize(
    "error, stage",
    [
        (ResolutionError("playback", "playurl API returned error: code=-10403"), "playback"),
        (FetchError("download", "download failed with status: 403"), "download"),
    ],
)
def test_parse_upstream_failure_is_502(monkeypatch, request_log, error, stage):
    client, _ = client_with(monkeypatch, error)

    response = client.get("/api/parse", params={"bv": "BV1xx411c7mD"})

    assert response.status_code == 502
    detail = response.json()["detail"]
    assert detail["stage"] == stage
    assert detail["message"] == error.message


def test_parse_unexpected_error_is_500(monkeypatch, request_log):
    client, _ = client_with(monkeypatch, RuntimeError("boom"))

    response = client.get("/api/parse", params={"bv": "BV1xx411c7mD"})

    assert response.status_code == 500
    assert response.json()["detail"]["error_code"] == "INTERNAL_ERROR"


@pytest.fixture
def real_pipeline(tmp_path, clock):
    cache_dir = str(tmp_path / "cache")
    return ResolutionPipeline(
        cache=CacheStore(cache_dir=cache_dir, db_path=str(tmp_path / "index.db"), clock=clock),
        resolver=MetadataResolver(),
        fetcher=MediaFetcher(cache_dir=cache_dir, clock=clock),
    )


def test_status(monkeypatch, tmp_path, real_pipeline):
    monkeypatch.setattr(status, "get_pipeline", lambda: real_pipeline)
    monkeypatch.setattr(status, "get_request_log", lambda: RequestLog(db_path=str(tmp_path / "requests.db")))

    response = TestClient(main.app).get("/api/status")

    assert response.status_code == 200
    body = response.json()
    assert body["alive"] is True
    assert body["login_status"] == {"anonymous": "valid"}
    assert body["stats"]["cache"]["entries"] == 0
    assert body["stats"]["signing"]["has_keys"] is False
    assert body["stats"]["total_requests"] == 0
    assert body["stats"]["in_flight"] == 0
    assert body["stats"]["log_sequence"] >= 0
    assert "write_failures" in body["stats"]["logs"]


def test_health_reports_missing_ffmpeg(monkeypatch, real_pipeline):
    monkeypatch.setattr(health, "get_pipeline", lambda: real_pipeline)
    monkeypatch.setattr(health, "ffmpeg_available", lambda: False)

    response = TestClient(main.app).get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "degraded"
    assert body["checks"]["ffmpeg"] == "unavailable"
    assert body["checks"]["index"] == "readable"


def test_health_ok(monkeypatch, real_pipeline):
    monkeypatch.setattr(health, "get_pipeline", lambda: real_pipeline)
    monkeypatch.setattr(health, "ffmpeg_available", lambda: True)

    body = TestClient(main.app).get("/health").json()

    assert body["status"] == "ok"
    assert body["timestamp"].endswith("Z")
    assert body["checks"]["cache_dir"] == "writable"


def test_static_serves_cached_audio():
    cache_dir = Path(settings.CACHE_DIR)
    cache_dir.mkdir(parents=True, exist_ok=True)
    (cache_dir / "static-check.mp3").write_bytes(b"ID3static")

    response = TestClient(main.app).get("/static/static-check.mp3")

    assert response.status_code == 200
    assert response.content == b"ID3static"
