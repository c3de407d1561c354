import dataclasses
import uuid
from pathlib import Path
from typing import Any, Optional

from flask import Flask, Request, Response, g, request
from werkzeug.exceptions import HTTPException, MethodNotAllowed, NotFound

from .auth import validate_basic_auth
from .handlers import (
    HandlerError,
    handle_upload,
    plain_response,
    serve_download,
    serve_index,
    serve_monitor,
)
from .logsink import LogSink, sanitize_log_value
from .state import ConcurrencyLimiter, RequestCounters, ServerConfig

BYTES_PER_MB = 1024 * 1024
ROUTED_METHODS = ["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"]


class Dispatcher:
    """Run one request through counting, logging, auth and routing.

    ``handle`` always returns a response. Expected client mistakes become 4xx
    responses; anything a handler fails on becomes a logged 5xx and bumps the
    error counter.
    """

    def __init__(
        self,
        config: ServerConfig,
        counters: RequestCounters,
        log: LogSink,
        limiter: Optional[ConcurrencyLimiter] = None,
    ) -> None:
        self.config = config
        self.counters = counters
        self.log = log
        self.limiter = limiter or ConcurrencyLimiter(config.max_concurrent_uploads)

    def handle(self, req: Request) -> Response:
        self.counters.increment_requests()
        self.log.info(
            "request_received method=%s path=%s remote=%s",
            sanitize_log_value(req.method),
            sanitize_log_value(req.full_path.rstrip("?")),
            req.remote_addr or "-",
        )
        try:
            return self._dispatch(req)
        except HTTPException as error:
            return plain_response(error.code or 500, f"{error.name}.")
        except HandlerError as error:
            self.counters.increment_errors()
            self.log.error(
                "handler_failed method=%s path=%s status=%d error=%s cause=%s",
                req.method,
                sanitize_log_value(req.path),
                error.status,
                error.message,
                sanitize_log_value(str(error.__cause__ or "")),
            )
            return plain_response(error.status, error.message)
        except Exception:
            self.counters.increment_errors()
            self.log.exception(
                "handler_failed method=%s path=%s",
                req.method,
                sanitize_log_value(req.path),
            )
            return plain_response(500, "Internal server error.")
        finally:
            self._close_stream_safely(req)

    def _dispatch(self, req: Request) -> Response:
        path = req.path

        if path.lower() == "/monitor":
            return serve_monitor(self.counters)

        if self.config.auth_enabled and not validate_basic_auth(
            req.headers.get("Authorization"), self.config.password
        ):
            self.log.warning(
                "auth_failed method=%s path=%s remote=%s",
                req.method,
                sanitize_log_value(path),
                req.remote_addr or "-",
            )
            response = plain_response(401, "Authentication required.")
            response.headers["WWW-Authenticate"] = f'Basic realm="{self.config.realm}"'
            return response

        if req.method == "GET":
            if path == "/":
                return serve_index(self.config)
            if path.startswith("/download"):
                return serve_download(self.config, self.log, req.args.get("file"))
            return plain_response(404, "Not found")

        if req.method == "POST":
            if path == "/upload":
                return handle_upload(req, self.config, self.log, self.limiter)
            return plain_response(404, "Not found")

        return plain_response(405, "Method not allowed")

    def _close_stream_safely(self, req: Request) -> None:
        """Close the request input stream while logging failures."""

        try:
            req.stream.close()
        except Exception as error:
            self.log.warning(
                "stream_close_failed path=%s error=%s",
                sanitize_log_value(req.path),
                sanitize_log_value(str(error)),
            )


def create_app(
    config: ServerConfig,
    counters: Optional[RequestCounters] = None,
    log_sink: Optional[LogSink] = None,
) -> Flask:
    """Build the Flask application serving ``config.root``."""

    root = Path(config.root).expanduser().resolve()
    if not root.is_dir():
        raise FileNotFoundError(f"Serving root does not exist: {root}")
    config = dataclasses.replace(config, root=root)

    app = Flask(__name__)
    # Every path, including ones with repeated slashes, must reach the dispatcher.
    app.url_map.merge_slashes = False
    if config.max_upload_mb:
        app.config["MAX_CONTENT_LENGTH"] = int(config.max_upload_mb) * BYTES_PER_MB

    counters = counters if counters is not None else RequestCounters()
    log_sink = log_sink if log_sink is not None else LogSink(config.log_file)
    dispatcher = Dispatcher(config, counters, log_sink)

    app.extensions["quickserve"] = dispatcher

    @app.before_request
    def add_request_id() -> None:
        """Assign a request identifier for downstream logging."""

        g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)

    @app.after_request
    def add_response_headers(response: Response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "same-origin"
        if hasattr(g, "request_id"):
            response.headers["X-Request-ID"] = sanitize_log_value(g.request_id)
        return response

    def dispatch(path: str = "") -> Any:
        return dispatcher.handle(request)

    app.add_url_rule(
        "/",
        "dispatch_root",
        dispatch,
        methods=ROUTED_METHODS,
        provide_automatic_options=False,
    )
    app.add_url_rule(
        "/<path:path>",
        "dispatch",
        dispatch,
        methods=ROUTED_METHODS,
        provide_automatic_options=False,
    )

    @app.errorhandler(NotFound)
    @app.errorhandler(MethodNotAllowed)
    def dispatch_unrouted(error):
        # Paths the rules cannot match and methods outside ROUTED_METHODS
        # never reach a view.
        return dispatcher.handle(request)

    return app


def get_dispatcher(app: Flask) -> Dispatcher:
    return app.extensions["quickserve"]
