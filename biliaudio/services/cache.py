"""Two-tier cache for transcoded audio artifacts.

Tier 1 is a SQLite index (one row per cache key) and is the source of truth
for lookups. Tier 2 lives in the cache directory: a JSON envelope named
``<cache_key>.json`` next to the audio file it describes.

Consistency contract:
- A live index row must point at a readable envelope and an existing audio
  file. Anything else found on read is evicted and reported as a miss.
- put() writes the envelope first, then upserts the row. A failed row write
  is logged and not rolled back, so the artifact stays hidden until the next
  successful put for the same key.
- Expired rows are removed together with their envelope and audio file by
  evict_expired(), which the EvictionLoop runs on a fixed interval.
- Eviction deletes only the exact row it read. A put() that lands in
  between keeps its row, envelope and audio file.
- Audio files no row points at are removed by sweep_orphans() once they are
  older than RAW_FILE_MAX_AGE_SECONDS.
"""

import asyncio
import json
import os
import sqlite3
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Callable, List, Optional

from biliaudio.config import settings
from biliaudio.models.media import CacheIndexRecord, CachedArtifact, make_cache_key
from biliaudio.services import logger
from biliaudio.services.fetcher import ENCODERS
from biliaudio.utils.exceptions import CacheIOError


AUDIO_SUFFIXES = tuple(f".{fmt}" for fmt in ENCODERS)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cache_key TEXT NOT NULL UNIQUE,
    bvid TEXT NOT NULL,
    quality INTEGER NOT NULL DEFAULT 0,
    blob_path TEXT NOT NULL,
    media_path TEXT NOT NULL DEFAULT '',
    created_at REAL NOT NULL,
    expires_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_cache_records_bvid ON cache_records (bvid);
CREATE INDEX IF NOT EXISTS idx_cache_records_expires_at ON cache_records (expires_at);
"""


class CacheStore:
    """
    Maps (BV id, quality) to a previously produced audio artifact.

    Usage:
        store = get_cache_store()
        artifact = store.get("BV1xx411c7mD", 0)
        if artifact is None:
            artifact = store.put("BV1xx411c7mD", 0, fresh_artifact)
    """

    def __init__(
        self,
        cache_dir: Optional[str] = None,
        db_path: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cache_dir = Path(cache_dir or settings.CACHE_DIR)
        self.db_path = str(db_path or settings.INDEX_DB_PATH)
        self.ttl_seconds = settings.CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._stats = {
            "hits": 0,
            "misses": 0,
            "healed": 0,
            "evicted": 0,
            "index_write_failures": 0,
        }

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(_SCHEMA)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def blob_path_for(self, cache_key: str) -> Path:
        return self.cache_dir / f"{cache_key}.json"

    def media_path_for(self, artifact: CachedArtifact) -> Path:
        return self.cache_dir / artifact.local_file_name

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, external_id: str, quality_hint: int = 0) -> Optional[CachedArtifact]:
        """
        Look up a live artifact.

        Inconsistent entries (missing or corrupt envelope, missing audio file)
        are evicted and reported as a miss, never as an error.
        """
        cache_key = make_cache_key(external_id, quality_hint)
        now = self._clock()

        try:
            record = self._find_record(cache_key, live_at=now)
        except sqlite3.Error as e:
            logger.warn(f"Cache index read failed: {e}", "cache", {"cache_key": cache_key})
            self._count("misses")
            return None

        if record is None:
            self._count("misses")
            return None

        try:
            envelope = json.loads(Path(record.blob_path).read_text(encoding="utf-8"))
            artifact = CachedArtifact.from_dict(envelope["data"])
            expires_at = float(envelope["expires_at"])
        except FileNotFoundError:
            return self._heal(record, "envelope missing")
        except (OSError, ValueError, KeyError, TypeError) as e:
            return self._heal(record, f"envelope unreadable ({type(e).__name__})")

        if expires_at <= now:
            return self._heal(record, "envelope expired")

        if not self.media_path_for(artifact).is_file():
            return self._heal(record, "audio file missing")

        self._count("hits")
        logger.debug(
            f"Cache hit for {external_id} (quality {quality_hint})",
            "cache",
            {"cache_key": cache_key, "file_name": artifact.local_file_name},
        )
        return artifact

    def _find_record(self, cache_key: str, live_at: Optional[float] = None) -> Optional[CacheIndexRecord]:
        sql = "SELECT * FROM cache_records WHERE cache_key = ?"
        args: tuple = (cache_key,)
        if live_at is not None:
            sql += " AND expires_at > ?"
            args = (cache_key, live_at)

        conn = self._connect()
        try:
            row = conn.execute(sql, args).fetchone()
        finally:
            conn.close()
        return _row_to_record(row) if row else None

    def _heal(self, record: CacheIndexRecord, reason: str) -> None:
        logger.warn(
            f"Inconsistent cache entry, evicting: {reason}",
            "cache",
            {"cache_key": record.cache_key, "bvid": record.external_id},
        )
        try:
            if self._evict_record(record):
                self._count("healed")
        except sqlite3.Error as e:
            logger.warn(f"Could not drop stale index record: {e}", "cache", {"cache_key": record.cache_key})
        self._count("misses")
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put(
        self,
        external_id: str,
        quality_hint: int,
        artifact: CachedArtifact,
        ttl_seconds: Optional[int] = None,
    ) -> CachedArtifact:
        """
        Store ``artifact`` under (external_id, quality_hint).

        Returns the stored artifact with ``cache_key`` and ``expires_at`` set.

        Raises:
            CacheIOError: If the envelope cannot be written
        """
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        cache_key = make_cache_key(external_id, quality_hint)
        now = self._clock()
        expires_at = now + ttl

        stored = replace(artifact, cache_key=cache_key, expires_at=expires_at)
        envelope = {
            "key": cache_key,
            "data": stored.to_dict(),
            "created_at": now,
            "expires_at": expires_at,
        }
        blob_path = self.blob_path_for(cache_key)
        media_path = self.media_path_for(stored)

        with self._lock:
            try:
                _write_atomic(blob_path, json.dumps(envelope))
            except OSError as e:
                logger.error(f"Cache envelope write failed: {e}", "cache", {"cache_key": cache_key})
                raise CacheIOError(f"failed to write cache file: {e}", cause=e) from e

            record = CacheIndexRecord(
                cache_key=cache_key,
                external_id=external_id,
                quality_hint=quality_hint,
                blob_path=str(blob_path),
                media_path=str(media_path),
                expires_at=expires_at,
                created_at=now,
            )
            try:
                previous = self._find_record(cache_key)
                self._upsert(record)
            except sqlite3.Error as e:
                self._stats["index_write_failures"] += 1
                logger.warn(
                    f"Failed to save cache record to index: {e}",
                    "cache",
                    {"cache_key": cache_key, "blob_path": str(blob_path)},
                )
                return stored

        # Last writer wins; the superseded audio file is no longer reachable
        if previous is not None and previous.media_path and previous.media_path != record.media_path:
            _remove_quietly(Path(previous.media_path))

        logger.info(
            f"Cached {external_id} (quality {quality_hint}) for {ttl}s",
            "cache",
            {"cache_key": cache_key, "file_name": stored.local_file_name},
        )
        return stored

    def _upsert(self, record: CacheIndexRecord) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO cache_records (cache_key, bvid, quality, blob_path, media_path, created_at, expires_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(cache_key) DO UPDATE SET
                        bvid=excluded.bvid,
                        quality=excluded.quality,
                        blob_path=excluded.blob_path,
                        media_path=excluded.media_path,
                        created_at=excluded.created_at,
                        expires_at=excluded.expires_at
                    """,
                    (
                        record.cache_key,
                        record.external_id,
                        record.quality_hint,
                        record.blob_path,
                        record.media_path,
                        record.created_at,
                        record.expires_at,
                    ),
                )
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def evict(self, external_id: str, quality_hint: int = 0) -> bool:
        """Drop one entry regardless of its expiry. Returns True if it existed."""
        cache_key = make_cache_key(external_id, quality_hint)
        try:
            record = self._find_record(cache_key)
            if record is None:
                return False
            return self._evict_record(record)
        except sqlite3.Error as e:
            raise CacheIOError(f"failed to evict {cache_key}: {e}", cause=e) from e

    def evict_expired(self) -> int:
        """
        Remove every entry whose ``expires_at`` has passed.

        Returns:
            Number of index records removed

        Raises:
            CacheIOError: If the index cannot be scanned
        """
        now = self._clock()
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM cache_records WHERE expires_at <= ?", (now,)
            ).fetchall()
        except sqlite3.Error as e:
            raise CacheIOError(f"failed to find expired records: {e}", cause=e) from e
        finally:
            conn.close()

        removed = 0
        for row in rows:
            record = _row_to_record(row)
            try:
                if self._evict_record(record, expired_at=now):
                    removed += 1
            except sqlite3.Error as e:
                logger.warn(
                    f"Failed to delete cache record: {e}",
                    "cache",
                    {"cache_key": record.cache_key},
                )

        if removed:
            logger.info(f"Evicted {removed} expired cache entries", "cache")
        return removed

    def _evict_record(self, record: CacheIndexRecord, expired_at: Optional[float] = None) -> bool:
        """
        Drop ``record`` if the index still holds exactly that row.

        A put() that replaced the row after it was read wins: nothing is
        deleted and False is returned. Files are only unlinked once the row
        is gone.
        """
        sql = "DELETE FROM cache_records WHERE cache_key = ? AND created_at = ? AND media_path = ?"
        args: tuple = (record.cache_key, record.created_at, record.media_path)
        if expired_at is not None:
            sql += " AND expires_at <= ?"
            args += (expired_at,)

        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    deleted = conn.execute(sql, args).rowcount
            finally:
                conn.close()
            if not deleted:
                return False

            _remove_quietly(Path(record.blob_path))
            if record.media_path:
                _remove_quietly(Path(record.media_path))
            self._stats["evicted"] += 1
        return True

    def sweep_orphans(self, max_age_seconds: Optional[float] = None) -> int:
        """
        Remove audio files that no index row points at.

        These are left by transcodes that finished after their request was
        cancelled, or by puts whose index write failed. Files younger than
        ``max_age_seconds`` are kept so an artifact between fetch and put is
        never touched.

        Raises:
            CacheIOError: If the index cannot be scanned
        """
        max_age = settings.RAW_FILE_MAX_AGE_SECONDS if max_age_seconds is None else max_age_seconds
        try:
            referenced = {Path(record.media_path).name for record in self.records() if record.media_path}
        except sqlite3.Error as e:
            raise CacheIOError(f"failed to list cache records: {e}", cause=e) from e

        now = self._clock()
        swept = 0
        for item in self.cache_dir.iterdir():
            if item.suffix not in AUDIO_SUFFIXES or item.name in referenced:
                continue
            try:
                if now - item.stat().st_mtime <= max_age:
                    continue
            except FileNotFoundError:
                continue
            with self._lock:
                # Re-check under the lock; a put may have claimed the file
                if self._is_referenced(item):
                    continue
                _remove_quietly(item)
            swept += 1

        if swept:
            logger.info(f"Removed {swept} unreferenced audio files", "cache")
        return swept

    def _is_referenced(self, path: Path) -> bool:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT 1 FROM cache_records WHERE media_path = ? LIMIT 1", (str(path),)
            ).fetchone()
        finally:
            conn.close()
        return row is not None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def records(self) -> List[CacheIndexRecord]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT * FROM cache_records ORDER BY id").fetchall()
        finally:
            conn.close()
        return [_row_to_record(row) for row in rows]

    def count(self, live_only: bool = False) -> int:
        conn = self._connect()
        try:
            if live_only:
                row = conn.execute(
                    "SELECT COUNT(*) FROM cache_records WHERE expires_at > ?", (self._clock(),)
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM cache_records").fetchone()
        finally:
            conn.close()
        return int(row[0])

    def stats(self) -> dict:
        """Get cache statistics."""
        disk_bytes = _dir_size(self.cache_dir)
        with self._lock:
            counters = dict(self._stats)
        try:
            counters["entries"] = self.count()
            counters["live_entries"] = self.count(live_only=True)
        except sqlite3.Error as e:
            logger.warn(f"Cache index count failed: {e}", "cache")
        counters["disk_bytes"] = disk_bytes
        return counters

    def _count(self, name: str) -> None:
        with self._lock:
            self._stats[name] += 1


class EvictionLoop:
    """
    Runs CacheStore.evict_expired on a fixed interval in an asyncio task.

    The first pass runs immediately on start(). stop() cancels the task and
    waits for it, so tests and application shutdown are deterministic.
    """

    def __init__(self, store: CacheStore, interval_seconds: Optional[float] = None, fetcher=None):
        self._store = store
        self._interval = interval_seconds if interval_seconds is not None else settings.CLEANUP_INTERVAL_SECONDS
        self._fetcher = fetcher
        self._task: Optional[asyncio.Task] = None
        self.passes = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._task = asyncio.create_task(self._run(), name="cache-eviction")
        logger.info(f"Cache eviction loop started (every {self._interval}s)", "cache")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Cache eviction loop stopped", "cache")

    async def run_once(self) -> int:
        """Run a single eviction pass off the event loop."""
        loop = asyncio.get_running_loop()
        removed = await loop.run_in_executor(None, self._store.evict_expired)
        await loop.run_in_executor(None, self._store.sweep_orphans)
        if self._fetcher is not None:
            await loop.run_in_executor(None, self._fetcher.cleanup_stale_raw_files)
        self.passes += 1
        return removed

    async def _run(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Keep the loop alive; the next tick retries
                logger.error(f"Cache cleanup error: {e}", "cache")
            await asyncio.sleep(self._interval)


def _row_to_record(row: sqlite3.Row) -> CacheIndexRecord:
    return CacheIndexRecord(
        cache_key=row["cache_key"],
        external_id=row["bvid"],
        quality_hint=int(row["quality"]),
        blob_path=row["blob_path"],
        media_path=row["media_path"] or "",
        expires_at=float(row["expires_at"]),
        created_at=float(row["created_at"]),
    )


def _dir_size(directory: Path) -> int:
    total = 0
    for item in directory.iterdir():
        try:
            if item.is_file():
                total += item.stat().st_size
        except FileNotFoundError:
            continue
    return total


def _write_atomic(path: Path, content: str) -> None:
    tmp_path = path.with_name(f"{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_path, path)
    except OSError:
        _remove_quietly(tmp_path)
        raise


def _remove_quietly(path: Path) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warn(f"Could not remove {path.name}: {e}", "cache")


# Global cache instance
_cache_store: Optional[CacheStore] = None


def get_cache_store() -> CacheStore:
    """Get the global cache store instance."""
    global _cache_store
    if _cache_store is None:
        _cache_store = CacheStore()
    return _cache_store
