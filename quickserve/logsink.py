import logging
import re
import sys
import threading
from pathlib import Path
from typing import Any, Optional, Union

from flask import g, has_request_context

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


class _QuietFileHandler(logging.FileHandler):
    """File handler that drops records it cannot write."""

    def emit(self, record: logging.LogRecord) -> None:
        # FileHandler opens a delayed stream outside its own error handling.
        try:
            super().emit(record)
        except Exception:
            self.handleError(record)

    def handleError(self, record: logging.LogRecord) -> None:  # noqa: N802
        pass


class LogSink:
    """Append-only log of timestamped lines to the console and a log file.

    One call writes to the console first, then to the file, while holding the
    sink lock, so lines from concurrent requests never interleave. Failing to
    open or append to the file never suppresses the console line and never
    raises into the caller.
    """

    def __init__(
        self,
        log_path: Union[str, Path],
        level: int = logging.INFO,
        name: str = "quickserve.requests",
        stream=None,
    ) -> None:
        self.log_path = Path(log_path)
        self._lock = threading.Lock()
        # Each sink owns an unregistered logger so separate sinks never share handlers.
        self._logger = logging.Logger(name)
        self._logger.setLevel(level)
        self._logger.propagate = False

        formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

        console = logging.StreamHandler(stream if stream is not None else sys.stdout)
        console.setFormatter(formatter)
        self._logger.addHandler(console)

        file_handler = _QuietFileHandler(self.log_path, encoding="utf-8", delay=True)
        file_handler.setFormatter(formatter)
        self._logger.addHandler(file_handler)

    @staticmethod
    def _request_id() -> Optional[str]:
        if has_request_context():
            return getattr(g, "request_id", None) or None
        return None

    def log(self, level: int, msg: str, *args, **kwargs) -> None:
        request_id = self._request_id()
        if request_id:
            # The id is client-supplied, so it travels as an argument, never as format text.
            msg = "request_id=%s " + msg
            args = (sanitize_log_value(request_id),) + args
        with self._lock:
            self._logger.log(level, msg, *args, **kwargs)

    def debug(self, msg: str, *args, **kwargs) -> None:
        self.log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self.log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self.log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self.log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        kwargs.setdefault("exc_info", True)
        self.log(logging.ERROR, msg, *args, **kwargs)

    def close(self) -> None:
        with self._lock:
            for handler in list(self._logger.handlers):
                self._logger.removeHandler(handler)
                handler.close()

    @property
    def handlers(self):
        return list(self._logger.handlers)


def configure_logging(level_name: Optional[str] = None) -> int:
    """Configure root logging for startup messages and return the numeric level."""

    numeric_level = getattr(logging, (level_name or "INFO").upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    return numeric_level
