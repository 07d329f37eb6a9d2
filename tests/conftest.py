import os
import sys
import tempfile
from pathlib import Path

import pytest


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

# Settings are read once at import time, so point them at a scratch area first.
_SCRATCH = Path(tempfile.mkdtemp(prefix="biliaudio-tests-"))
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("LOG_DIR", str(_SCRATCH / "logs"))
os.environ.setdefault("CACHE_DIR", str(_SCRATCH / "parse_cache"))
os.environ.setdefault("INDEX_DB_PATH", str(_SCRATCH / "data.db"))


NAV_PAYLOAD = {
    "code": -101,
    "message": "账号未登录",
    "data": {
        "wbi_img": {
            "img_url": "https://i0.hdslb.com/bfs/wbi/7cd084941338484aae1ad9425b84077c.png",
            "sub_url": "https://i0.hdslb.com/bfs/wbi/4932caff0ff746eab6f01bf08b70ac45.png",
        }
    },
}


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeContent:
    def __init__(self, chunks):
        self._chunks = list(chunks)

    async def iter_chunked(self, size):
        for chunk in self._chunks:
            yield chunk


class FakeResponse:
    """Stands in for aiohttp.ClientResponse inside ``async with session.get(...)``."""

    def __init__(self, payload=None, status=200, chunks=()):
        self.payload = payload
        self.status = status
        self.content = FakeContent(chunks)

    async def json(self, content_type="application/json"):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    def __init__(self, factory, headers):
        self._factory = factory
        self.headers = headers or {}

    def get(self, url):
        return self._factory.respond(str(url), self.headers)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSessionFactory:
    """
    Callable used in place of aiohttp.ClientSession.

    ``routes`` maps a URL without its query string to a FakeResponse, a JSON
    payload, an exception to raise, or a list consumed one item per call.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def __call__(self, headers=None, timeout=None):
        return FakeSession(self, headers)

    def calls_to(self, base_url: str) -> list:
        return [url for url, _ in self.calls if url.split("?", 1)[0] == base_url]

    def respond(self, url: str, headers: dict):
        self.calls.append((url, headers))
        base = url.split("?", 1)[0]
        if base not in self.routes:
            raise AssertionError(f"unexpected request: {url}")

        answer = self.routes[base]
        if isinstance(answer, list):
            answer = answer.pop(0) if len(answer) > 1 else answer[0]
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, FakeResponse):
            return answer
        return FakeResponse(payload=answer)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def nav_payload():
    return NAV_PAYLOAD
