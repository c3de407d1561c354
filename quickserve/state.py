import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

DEFAULT_REALM = "Quick Web Server"
DEFAULT_LOG_FILE = "server.log"


def safe_int_env(key: str, default: int, min_value: int = 0) -> int:
    """Safely parse integer environment variable with error handling."""
    raw = os.environ.get(key)
    if raw is None or raw == "":
        return default
    try:
        return max(min_value, int(raw))
    except (TypeError, ValueError):
        logger = logging.getLogger("quickserve.config")
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, raw, default
        )
        return default


@dataclass(frozen=True)
class ServerConfig:
    root: Path
    password: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 8080
    tls: bool = False
    certfile: Optional[str] = None
    keyfile: Optional[str] = None
    realm: str = DEFAULT_REALM
    log_file: Path = field(default_factory=lambda: Path(DEFAULT_LOG_FILE))
    max_upload_mb: Optional[int] = None
    max_concurrent_uploads: int = 0

    @property
    def auth_enabled(self) -> bool:
        return bool(self.password)

    @property
    def scheme(self) -> str:
        return "https" if self.tls else "http"


class RequestCounters:
    """Process-wide request and error counters.

    Both values only ever grow. All access goes through one lock, so callers
    never need to coordinate among themselves.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._total_requests = 0
        self._error_count = 0

    def increment_requests(self) -> int:
        with self._lock:
            self._total_requests += 1
            return self._total_requests

    def increment_errors(self) -> int:
        with self._lock:
            self._error_count += 1
            return self._error_count

    def snapshot(self) -> Tuple[int, int]:
        """Return ``(total_requests, error_count)`` read under a single lock."""

        with self._lock:
            return self._total_requests, self._error_count

    @property
    def total_requests(self) -> int:
        return self.snapshot()[0]

    @property
    def error_count(self) -> int:
        return self.snapshot()[1]


class ConcurrencyLimiter:
    """Track active uploads and enforce a configurable concurrency cap.

    A limit of zero or less disables the cap entirely.
    """

    def __init__(self, limit: int) -> None:
        self._limit = max(0, int(limit))
        self._active = 0
        self._lock = threading.RLock()
        self._condition = threading.Condition(self._lock)

    def acquire(self) -> bool:
        with self._condition:
            if self._limit and self._active >= self._limit:
                return False
            self._active += 1
            return True

    def release(self, acquired: bool) -> None:
        if not acquired:
            return
        with self._condition:
            if self._active > 0:
                self._active -= 1
                self._condition.notify_all()

    def available_slots(self) -> Optional[int]:
        with self._condition:
            if not self._limit:
                return None
            return max(self._limit - self._active, 0)

    @property
    def current_limit(self) -> int:
        with self._condition:
            return self._limit
