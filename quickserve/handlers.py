import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional
from urllib.parse import quote

from flask import Request, Response, jsonify, redirect, render_template, send_file

from .logsink import LogSink, sanitize_log_value
from .multipart import MultipartInvalid, extract
from .state import ConcurrencyLimiter, RequestCounters, ServerConfig

UPLOAD_TEMP_PREFIX = ".upload-"
UPLOAD_TEMP_SUFFIX = ".tmp"


class HandlerError(RuntimeError):
    """Raised by a handler that failed after accepting the request.

    Carries the status and short message the client should see.
    """

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


def plain_response(status: int, message: str) -> Response:
    return Response(message, status=status, mimetype="text/plain")


def safe_basename(name: Optional[str]) -> str:
    """Reduce a client-supplied file name to a bare name inside the root.

    Directory parts of either separator style are dropped. Names that would
    still address something other than a plain entry come back empty.
    """

    if not name:
        return ""
    candidate = name.replace("\\", "/").rsplit("/", 1)[-1].strip()
    if candidate in ("", ".", "..") or "\x00" in candidate:
        return ""
    return candidate


def _is_upload_temp(name: str) -> bool:
    return name.startswith(UPLOAD_TEMP_PREFIX) and name.endswith(UPLOAD_TEMP_SUFFIX)


def list_root_files(root: Path) -> List[str]:
    names = []
    with os.scandir(root) as entries:
        for entry in entries:
            if entry.is_file() and not _is_upload_temp(entry.name):
                names.append(entry.name)
    return sorted(names)


def serve_index(config: ServerConfig) -> Response:
    files: List[Dict[str, str]] = [
        {"name": name, "href": f"/download?file={quote(name, safe='')}"}
        for name in list_root_files(config.root)
    ]
    body = render_template("index.html", files=files, realm=config.realm)
    return Response(body, status=200, mimetype="text/html")


def serve_download(config: ServerConfig, log: LogSink, requested: Optional[str]) -> Response:
    if not requested:
        log.warning("download_rejected reason=missing_file_param")
        return plain_response(400, "File name not specified.")

    filename = safe_basename(requested)
    file_path = config.root / filename if filename else None
    if file_path is None or not file_path.is_file():
        log.warning(
            "file_download_missing requested=%s", sanitize_log_value(requested)
        )
        return plain_response(404, "File not found.")

    try:
        response = send_file(
            file_path,
            mimetype="application/octet-stream",
            as_attachment=True,
            download_name=filename,
        )
    except FileNotFoundError:
        log.warning("file_download_missing_race filename=%s", sanitize_log_value(filename))
        return plain_response(404, "File not found.")
    except OSError as error:
        raise HandlerError(500, "Error reading file.") from error

    log.info(
        "file_downloaded filename=%s size=%s",
        sanitize_log_value(filename),
        response.content_length,
    )
    return response


@contextmanager
def upload_slot(limiter: ConcurrencyLimiter) -> Iterator[bool]:
    acquired = limiter.acquire()
    try:
        yield acquired
    finally:
        limiter.release(acquired)


def _has_entity_body(request: Request) -> bool:
    if request.content_length:
        return True
    return "chunked" in request.headers.get("Transfer-Encoding", "").lower()


def _write_payload(root: Path, filename: str, body: bytes, start: int, end: int) -> int:
    """Write ``body[start:end]`` to ``root/filename`` via an atomic replace."""

    target = root / filename
    temp_path: Optional[Path] = None
    try:
        fd, temp_name = tempfile.mkstemp(
            prefix=UPLOAD_TEMP_PREFIX, suffix=UPLOAD_TEMP_SUFFIX, dir=root
        )
        temp_path = Path(temp_name)
        with os.fdopen(fd, "wb") as destination:
            destination.write(memoryview(body)[start:end])
        os.replace(temp_path, target)
    except OSError:
        if temp_path is not None:
            try:
                temp_path.unlink(missing_ok=True)
            except OSError:
                pass
        raise
    return end - start


def handle_upload(
    request: Request,
    config: ServerConfig,
    log: LogSink,
    limiter: ConcurrencyLimiter,
) -> Response:
    with upload_slot(limiter) as acquired:
        if not acquired:
            log.warning(
                "upload_rejected reason=too_many_concurrent_uploads limit=%d available=%s",
                limiter.current_limit,
                limiter.available_slots(),
            )
            return plain_response(503, "Too many concurrent uploads.")

        if not _has_entity_body(request):
            log.warning("upload_rejected reason=no_body")
            return plain_response(400, "No data received.")

        content_type = request.headers.get("Content-Type", "")
        if not content_type.startswith("multipart/form-data"):
            log.warning(
                "upload_rejected reason=content_type content_type=%s",
                sanitize_log_value(content_type),
            )
            return plain_response(400, "Invalid content type.")

        body = request.get_data(cache=False)
        if not body:
            log.warning("upload_rejected reason=no_body")
            return plain_response(400, "No data received.")

        result = extract(body, content_type)
        if isinstance(result, MultipartInvalid):
            log.warning("upload_rejected reason=%s", result.reason)
            return plain_response(400, result.message)

        filename = safe_basename(result.filename)
        if not filename:
            log.warning(
                "upload_rejected reason=unsafe_filename filename=%s",
                sanitize_log_value(result.filename),
            )
            return plain_response(400, "No file name provided.")

        try:
            written = _write_payload(
                config.root, filename, body, result.data_start, result.data_end
            )
        except OSError as error:
            raise HandlerError(500, "Error saving file.") from error

        log.info(
            "file_uploaded filename=%s size=%d", sanitize_log_value(filename), written
        )
        return redirect("/", code=303)


def serve_monitor(counters: RequestCounters) -> Response:
    total_requests, error_count = counters.snapshot()
    return jsonify({"totalRequests": total_requests, "errorCount": error_count})
