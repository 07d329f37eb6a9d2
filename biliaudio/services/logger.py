"""Server-side logging service with persistence and an in-memory ring buffer."""

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from collections import deque
from typing import Optional
import threading

from biliaudio.config import settings


# Thread-safe log storage
_log_lock = threading.Lock()
_log_buffer: deque = deque(maxlen=2000)  # Keep last 2000 entries in memory
_log_file: Optional[Path] = None
_log_sequence: int = 0  # Global sequence number for ordering

# Number of entries that could not be persisted to the JSONL file
_write_failures: int = 0


def _get_log_file() -> Path:
    """Get the log file path, creating directory if needed."""
    global _log_file
    if _log_file is None:
        log_dir = Path(settings.LOG_DIR)
        log_dir.mkdir(parents=True, exist_ok=True)
        _log_file = log_dir / "service.jsonl"
    return _log_file


def _report_write_failure(exc: Exception) -> None:
    """Surface a failed persistence attempt on stderr instead of dropping it."""
    global _write_failures
    _write_failures += 1
    print(
        f"[logger] failed to persist log entry ({type(exc).__name__}: {exc}); "
        f"{_write_failures} failure(s) so far",
        file=sys.stderr,
        flush=True,
    )


def log(level: str, message: str, category: str = "general", details: Optional[dict] = None):
    """
    Log a message with optional details.

    Args:
        level: Log level (INFO, WARN, ERROR, DEBUG, SUCCESS)
        message: Log message
        category: Category (general, system, signing, resolver, fetcher, cache, pipeline, request_log)
        details: Optional additional details dict
    """
    global _log_sequence

    with _log_lock:
        _log_sequence += 1
        seq = _log_sequence

    entry = {
        "seq": seq,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "level": level,
        "category": category,
        "message": message,
    }
    if details:
        entry["details"] = details

    with _log_lock:
        _log_buffer.append(entry)

        if settings.LOG_TO_FILE:
            try:
                log_file = _get_log_file()
                with open(log_file, "a") as f:
                    f.write(json.dumps(entry, default=str) + "\n")
                    f.flush()
            except (OSError, TypeError, ValueError) as e:
                _report_write_failure(e)

    print(f"[{entry['timestamp']}] [{level}] [{category}] {message}", flush=True)


def get_logs(limit: int = 100, category: Optional[str] = None, level: Optional[str] = None, since_seq: int = 0) -> list:
    """
    Get recent logs from memory buffer.

    Args:
        limit: Maximum number of logs to return
        category: Filter by category
        level: Filter by level
        since_seq: Only return logs with sequence > since_seq
    """
    with _log_lock:
        logs = list(_log_buffer)

    if since_seq > 0:
        logs = [entry for entry in logs if entry.get("seq", 0) > since_seq]
    if category:
        logs = [entry for entry in logs if entry.get("category") == category]
    if level:
        logs = [entry for entry in logs if entry.get("level") == level]

    return logs[-limit:]


def get_latest_sequence() -> int:
    """Get the current log sequence number."""
    return _log_sequence


def get_write_failures() -> int:
    """Number of log entries that could not be written to disk."""
    return _write_failures


def get_log_stats() -> dict:
    """Get log statistics."""
    with _log_lock:
        logs = list(_log_buffer)

    stats = {
        "total": len(logs),
        "write_failures": _write_failures,
        "by_level": {},
        "by_category": {},
    }

    for entry in logs:
        level = entry.get("level", "UNKNOWN")
        category = entry.get("category", "general")
        stats["by_level"][level] = stats["by_level"].get(level, 0) + 1
        stats["by_category"][category] = stats["by_category"].get(category, 0) + 1

    return stats


# Convenience functions
def info(message: str, category: str = "general", details: Optional[dict] = None):
    log("INFO", message, category, details)

def warn(message: str, category: str = "general", details: Optional[dict] = None):
    log("WARN", message, category, details)

def error(message: str, category: str = "general", details: Optional[dict] = None):
    log("ERROR", message, category, details)

def debug(message: str, category: str = "general", details: Optional[dict] = None):
    log("DEBUG", message, category, details)

def success(message: str, category: str = "general", details: Optional[dict] = None):
    log("SUCCESS", message, category, details)
