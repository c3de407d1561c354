import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from .app import create_app
from .logsink import LogSink, configure_logging
from .state import DEFAULT_LOG_FILE, DEFAULT_REALM, ServerConfig, safe_int_env

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="quickserve",
        description="Quick Web Server: list, download and upload files in one directory.",
        epilog=(
            "Defaults: host 0.0.0.0 (all addresses), port 8080, the current "
            "working directory, no authentication, plain HTTP."
        ),
    )
    parser.add_argument("host", nargs="?", default=DEFAULT_HOST, help="address to listen on")
    parser.add_argument("port", nargs="?", type=int, default=DEFAULT_PORT, help="port to listen on")
    parser.add_argument("directory", nargs="?", default=os.getcwd(), help="directory to serve")
    parser.add_argument(
        "--password",
        default=os.environ.get("QUICKSERVE_PASSWORD") or None,
        help="require HTTP Basic Authentication with this password",
    )
    parser.add_argument("--https", action="store_true", help="serve over HTTPS")
    parser.add_argument("--certfile", help="TLS certificate (PEM), required with --https")
    parser.add_argument("--keyfile", help="TLS private key (PEM), required with --https")
    parser.add_argument("--realm", default=DEFAULT_REALM, help="Basic Authentication realm")
    parser.add_argument("--log-file", default=DEFAULT_LOG_FILE, help="file that mirrors the console log")
    parser.add_argument(
        "--max-upload-mb",
        type=int,
        default=safe_int_env("QUICKSERVE_MAX_UPLOAD_MB", 0),
        help="reject request bodies larger than this (0 = unlimited)",
    )
    parser.add_argument(
        "--max-concurrent-uploads",
        type=int,
        default=safe_int_env("QUICKSERVE_MAX_CONCURRENT_UPLOADS", 0),
        help="answer 503 beyond this many simultaneous uploads (0 = unlimited)",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        help="logging level (default: INFO)",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> ServerConfig:
    """Turn parsed arguments into a ServerConfig.

    Raises ValueError for TLS options that cannot be served and
    FileNotFoundError when the directory is missing.
    """

    if args.https and not (args.certfile and args.keyfile):
        raise ValueError("--https requires both --certfile and --keyfile")

    root = Path(args.directory).expanduser().resolve()
    if not root.is_dir():
        raise FileNotFoundError(f"The working directory does not exist: {root}")

    return ServerConfig(
        root=root,
        password=args.password or None,
        host=args.host,
        port=args.port,
        tls=bool(args.https),
        certfile=args.certfile,
        keyfile=args.keyfile,
        realm=args.realm,
        log_file=Path(args.log_file).expanduser(),
        max_upload_mb=args.max_upload_mb or None,
        max_concurrent_uploads=max(0, args.max_concurrent_uploads),
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    parser.print_help()
    print()

    numeric_level = configure_logging(args.log_level)
    logger = logging.getLogger("quickserve.startup")

    try:
        config = config_from_args(args)
    except (ValueError, FileNotFoundError) as error:
        logger.error("startup_failed error=%s", error)
        return 1

    log_sink = LogSink(config.log_file, level=numeric_level)
    if config.auth_enabled:
        log_sink.info("Authentication enabled.")
    else:
        log_sink.info("No authentication enabled.")

    app = create_app(config, log_sink=log_sink)
    ssl_context = (config.certfile, config.keyfile) if config.tls else None

    log_sink.info(
        "server_started url=%s://%s:%d/", config.scheme, config.host, config.port
    )
    log_sink.info("serving_root path=%s", config.root)
    try:
        app.run(
            host=config.host,
            port=config.port,
            threaded=True,
            ssl_context=ssl_context,
            debug=False,
        )
    except OSError as error:
        log_sink.error("server_failed error=%s", error)
        return 1
    finally:
        log_sink.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
