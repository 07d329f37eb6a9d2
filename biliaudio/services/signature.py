"""WBI request signing for the Bilibili web API.

Most Bilibili web endpoints reject unsigned queries. The signature is an
MD5 digest over the canonical query string plus a "mixin key" that is
derived from two rotating keys published by the nav endpoint.

Key Lifecycle:
- Keys are fetched lazily on the first signing call
- Keys are reused for one hour, then refreshed before the next signature
- A failed refresh raises SigningError and keeps the previous keys stored
- Concurrent signers share a single in-flight refresh
"""

import asyncio
import hashlib
import time
from typing import Callable, Mapping, Optional
from urllib.parse import quote_plus

import aiohttp
from pydantic import BaseModel, ValidationError

from biliaudio.config import settings
from biliaudio.models.media import SigningKeySet
from biliaudio.services import logger
from biliaudio.utils.exceptions import SigningError


NAV_URL = "https://api.bilibili.com/x/web-interface/nav"

# nav answers -101 ("not logged in") for anonymous callers but still ships wbi_img
ACCEPTED_NAV_CODES = (0, -101)

MIXIN_KEY_ENC_TAB = [
    46, 47, 18, 2, 53, 8, 23, 32, 15, 50, 10, 31, 58, 3, 45, 35, 27, 43, 5, 49,
    33, 9, 42, 19, 29, 28, 14, 39, 12, 38, 41, 13, 37, 48, 7, 16, 24, 55, 40,
    61, 26, 17, 0, 1, 60, 51, 30, 4, 22, 25, 54, 21, 56, 59, 6, 63, 57, 62, 11,
    36, 20, 34, 44, 52,
]

MIXIN_KEY_LENGTH = 32

# Characters the upstream strips from values before hashing
_FILTERED_CHARS = str.maketrans("", "", "!'()*")


class _WbiImg(BaseModel):
    img_url: str
    sub_url: str


class _NavData(BaseModel):
    wbi_img: _WbiImg


class NavResponse(BaseModel):
    code: int
    message: str = ""
    data: Optional[_NavData] = None


def extract_key(url: str) -> str:
    """Return the file name of the last path segment without its extension."""
    filename = url.rstrip("/").rsplit("/", 1)[-1]
    return filename.rsplit(".", 1)[0] if "." in filename else filename


def derive_mixin_key(img_key: str, sub_key: str) -> str:
    """Shuffle img_key + sub_key through the fixed table, keep 32 chars."""
    raw = img_key + sub_key
    picked = [raw[index] for index in MIXIN_KEY_ENC_TAB if index < len(raw)]
    return "".join(picked)[:MIXIN_KEY_LENGTH]


def sanitize_value(value) -> str:
    return str(value).translate(_FILTERED_CHARS)


def canonical_query(params: Mapping[str, object]) -> str:
    """Sorted, url-encoded k=v pairs with filtered values."""
    parts = []
    for key in sorted(params):
        value = sanitize_value(params[key])
        parts.append(f"{quote_plus(str(key), safe='')}={quote_plus(value, safe='')}")
    return "&".join(parts)


def build_signed_query(params: Mapping[str, object], mixin_key: str, wts: int) -> str:
    """
    Build the signed query string for a parameter mapping.

    Pure function: the same params, key and timestamp always give the same
    ``w_rid``. The caller's mapping is not modified.
    """
    signed = dict(params)
    signed["wts"] = str(wts)
    query = canonical_query(signed)
    w_rid = hashlib.md5((query + mixin_key).encode("utf-8")).hexdigest()
    return f"{query}&w_rid={w_rid}"


class SignatureManager:
    """
    Owns the WBI key set and signs outgoing query parameters.

    Usage:
        manager = SignatureManager()
        query = await manager.sign({"bvid": "BV1xx411c7mD"})
        url = f"https://api.bilibili.com/x/web-interface/view?{query}"
    """

    def __init__(
        self,
        user_agent: Optional[str] = None,
        referer: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        session_factory: Callable = aiohttp.ClientSession,
        clock: Callable[[], float] = time.time,
    ):
        self._user_agent = user_agent or settings.USER_AGENT
        self._referer = referer or settings.REFERER
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds or settings.API_TIMEOUT_SECONDS)
        self._session_factory = session_factory
        self._clock = clock
        self._keys: Optional[SigningKeySet] = None
        self._lock = asyncio.Lock()
        self._refresh_count = 0

    @property
    def keys(self) -> Optional[SigningKeySet]:
        return self._keys

    async def sign(self, params: Mapping[str, object], wts: Optional[int] = None) -> str:
        """
        Sign ``params`` and return the full query string including ``w_rid``.

        Raises:
            SigningError: If the keys are stale and cannot be refreshed
        """
        keys = await self.ensure_keys()
        if wts is None:
            wts = int(self._clock())
        return build_signed_query(params, keys.mixin_key, wts)

    async def ensure_keys(self) -> SigningKeySet:
        """Return a fresh key set, refreshing it first when needed."""
        async with self._lock:
            if self._keys is not None and self._keys.is_fresh(self._clock()):
                return self._keys
            return await self._refresh_locked()

    async def refresh(self, force: bool = False) -> SigningKeySet:
        """Refresh the key set; without ``force`` a fresh set is kept."""
        async with self._lock:
            if not force and self._keys is not None and self._keys.is_fresh(self._clock()):
                return self._keys
            return await self._refresh_locked()

    async def _refresh_locked(self) -> SigningKeySet:
        logger.info("Refreshing WBI signing keys", "signing")
        start_time = self._clock()

        nav = await self._fetch_nav()
        img_key = extract_key(nav.data.wbi_img.img_url)
        sub_key = extract_key(nav.data.wbi_img.sub_url)
        if not img_key or not sub_key:
            raise SigningError("nav response carried empty WBI key URLs")

        keys = SigningKeySet(
            img_key=img_key,
            sub_key=sub_key,
            mixin_key=derive_mixin_key(img_key, sub_key),
            last_refreshed=self._clock(),
        )
        # Only swap in a complete key set
        self._keys = keys
        self._refresh_count += 1

        logger.success(
            f"WBI keys refreshed in {self._clock() - start_time:.2f}s",
            "signing",
            {"nav_code": nav.code, "mixin_preview": keys.mixin_key[:6] + "..."},
        )
        return keys

    async def _fetch_nav(self) -> NavResponse:
        headers = {"User-Agent": self._user_agent, "Referer": self._referer}
        try:
            async with self._session_factory(headers=headers, timeout=self._timeout) as session:
                async with session.get(NAV_URL) as response:
                    payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"WBI key fetch failed: {str(e)[:100]}", "signing")
            raise SigningError(f"failed to fetch nav response: {e}", cause=e) from e

        try:
            nav = NavResponse.model_validate(payload)
        except ValidationError as e:
            logger.error("WBI nav response was malformed", "signing")
            raise SigningError("malformed nav response", cause=e) from e

        if nav.code not in ACCEPTED_NAV_CODES:
            logger.error(
                f"nav API returned error: code={nav.code}",
                "signing",
                {"code": nav.code, "message": nav.message},
            )
            raise SigningError(f"nav API returned error: code={nav.code}, message={nav.message}")

        if nav.data is None:
            raise SigningError("nav response carried no wbi_img data")

        return nav

    def status(self) -> dict:
        """Get the current key manager status."""
        if self._keys is None:
            return {"has_keys": False, "refresh_count": self._refresh_count}
        return {
            "has_keys": True,
            "is_fresh": self._keys.is_fresh(self._clock()),
            "age_seconds": max(0.0, self._clock() - self._keys.last_refreshed),
            "refresh_count": self._refresh_count,
        }
