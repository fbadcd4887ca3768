"""Command line entry point for the ObjectServer exporter."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from wsgiref.simple_server import WSGIRequestHandler, make_server

from prometheus_client.exposition import ThreadingWSGIServer

from . import __version__
from .config import CONFIG_FILE, ConfigStore
from .errors import ConfigError
from .service import ExporterService
from .web import create_app

LOG = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class _LoggingHandler(WSGIRequestHandler):
    """Send per-request access lines to the logger instead of stderr."""

    def log_message(self, format: str, *args: object) -> None:
        LOG.debug(format, *args)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="objserv-exporter", description="Prometheus exporter for ObjectServer.")
    parser.add_argument("--version", action="store_true", help="Print version information.")
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=":9399",
        help="Address to listen on for web interface and telemetry.",
    )
    parser.add_argument(
        "--web.metrics-path",
        dest="metrics_path",
        default="/metrics",
        help="Path under which to expose metrics.",
    )
    parser.add_argument(
        "--config.file",
        dest="config_file",
        default=os.environ.get("CONFIG") or str(CONFIG_FILE),
        help="ObjectServer exporter configuration file name (default from $CONFIG).",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=("debug", "info", "warning", "error"),
        help="Only log messages with the given severity or above.",
    )
    return parser


def parse_listen_address(address: str) -> tuple[str, int]:
    """Split ``host:port`` (host optional, ``[v6]`` allowed) into its parts."""

    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"Invalid listen address '{address}'.")
    return host.strip("[]"), int(port)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.version:
        print(f"objserv_exporter, version {__version__}")
        return 0

    logging.basicConfig(level=getattr(logging, args.log_level.upper()), format=LOG_FORMAT, force=True)
    try:
        host, port = parse_listen_address(args.listen_address)
        store = ConfigStore(args.config_file)
    except (ValueError, ConfigError) as exc:
        LOG.error("Error creating exporter: %s", exc)
        return 1

    LOG.info("Starting ObjectServer exporter %s", __version__)
    service = ExporterService(store)
    server = make_server(
        host,
        port,
        create_app(service, metrics_path=args.metrics_path),
        server_class=ThreadingWSGIServer,
        handler_class=_LoggingHandler,
    )
    if hasattr(signal, "SIGHUP"):
        signal.signal(
            signal.SIGHUP,
            lambda *_: threading.Thread(target=service.reload, name="config-reload", daemon=True).start(),
        )
    LOG.info("Listening on %s", args.listen_address)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        LOG.info("Interrupted, shutting down")
    finally:
        server.server_close()
        service.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
