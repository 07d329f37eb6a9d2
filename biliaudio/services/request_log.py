"""
Request log - persists one row per parse request for the status endpoint.

Recording is best-effort: it is scheduled after the response is sent and a
failed write is logged as a warning and counted, never raised to the caller.
"""

import sqlite3
import threading
import time
from dataclasses import dataclass, astuple
from typing import Optional

from biliaudio.config import settings
from biliaudio.services import logger


_SCHEMA = """
CREATE TABLE IF NOT EXISTS request_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    client_ip TEXT,
    user_agent TEXT,
    bvid TEXT,
    quality INTEGER,
    status_code INTEGER,
    error_msg TEXT,
    process_time_ms INTEGER,
    cached INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_request_logs_bvid ON request_logs (bvid);
CREATE INDEX IF NOT EXISTS idx_request_logs_created_at ON request_logs (created_at);
"""


@dataclass
class RequestLogEntry:
    """One handled parse request."""

    client_ip: Optional[str]
    user_agent: Optional[str]
    bvid: str
    quality: int
    status_code: int
    error_msg: Optional[str] = None
    process_time_ms: int = 0
    cached: bool = False
    created_at: float = 0.0


class RequestLog:
    """SQLite-backed request log with a surfaced failure counter."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = str(db_path or settings.INDEX_DB_PATH)
        self._lock = threading.Lock()
        self._ready = False
        self.failed_writes = 0
        self.last_error: Optional[str] = None

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        if not self._ready:
            try:
                conn.executescript(_SCHEMA)
            except sqlite3.Error:
                conn.close()
                raise
            self._ready = True
        return conn

    def record(self, entry: RequestLogEntry) -> bool:
        """
        Persist ``entry``.

        Returns:
            bool: True if the row was written
        """
        if not entry.created_at:
            entry.created_at = time.time()
        if entry.error_msg:
            entry.error_msg = entry.error_msg[:1000]
        if entry.user_agent:
            entry.user_agent = entry.user_agent[:500]

        try:
            with self._lock:
                conn = self._connect()
                try:
                    with conn:
                        conn.execute(
                            """
                            INSERT INTO request_logs
                                (client_ip, user_agent, bvid, quality, status_code,
                                 error_msg, process_time_ms, cached, created_at)
                            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                            """,
                            astuple(entry),
                        )
                finally:
                    conn.close()
            return True
        except sqlite3.Error as e:
            self.failed_writes += 1
            self.last_error = str(e)
            logger.warn(
                f"Request log write failed: {e}",
                "request_log",
                {"bvid": entry.bvid, "failed_writes": self.failed_writes},
            )
            return False

    def total_requests(self) -> Optional[int]:
        try:
            with self._lock:
                conn = self._connect()
                try:
                    row = conn.execute("SELECT COUNT(*) FROM request_logs").fetchone()
                finally:
                    conn.close()
        except sqlite3.Error as e:
            logger.warn(f"Request log count failed: {e}", "request_log")
            return None
        return int(row[0])

    def status(self) -> dict:
        return {
            "failed_writes": self.failed_writes,
            "last_error": self.last_error,
        }


# Global request log instance
_request_log: Optional[RequestLog] = None


def get_request_log() -> RequestLog:
    """Get the global request log instance."""
    global _request_log
    if _request_log is None:
        _request_log = RequestLog()
    return _request_log
