"""WSGI application exposing scrape, health, config and self-metrics routes."""

from __future__ import annotations

import html
import logging
from typing import Callable, Iterable
from urllib.parse import parse_qs

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest

from .errors import UnknownTargetError
from .service import ExporterService

LOG = logging.getLogger(__name__)

StartResponse = Callable[..., object]
WSGIApp = Callable[[dict, StartResponse], Iterable[bytes]]

SELF_METRICS_PATH = "/objserv_exporter_metrics"
HEALTH_PATH = "/healthz"
CONFIG_PATH = "/config"
RELOAD_PATH = "/-/reload"
TIMEOUT_HEADER = "HTTP_X_PROMETHEUS_SCRAPE_TIMEOUT_SECONDS"

_HOME = """<html>
<head><title>ObjectServer Exporter</title></head>
<body>
<h1>ObjectServer Exporter</h1>
<ul>
<li><a href="{metrics}">Metrics</a> (add <code>?target=NAME</code> to pick a target)</li>
<li><a href="{config}">Configuration</a></li>
<li><a href="{health}">Health</a></li>
<li><a href="{self_metrics}">Exporter metrics</a></li>
</ul>
</body>
</html>
"""


def create_app(service: ExporterService, *, metrics_path: str = "/metrics") -> WSGIApp:
    """Build the WSGI callable served by the CLI."""

    home = _HOME.format(
        metrics=html.escape(metrics_path),
        config=CONFIG_PATH,
        health=HEALTH_PATH,
        self_metrics=SELF_METRICS_PATH,
    ).encode("utf-8")

    def app(environ: dict, start_response: StartResponse) -> Iterable[bytes]:
        path = environ.get("PATH_INFO") or "/"
        method = environ.get("REQUEST_METHOD", "GET").upper()
        if path == metrics_path:
            return _scrape(service, environ, start_response)
        if path == HEALTH_PATH:
            return _respond(start_response, "200 OK", b"OK")
        if path == CONFIG_PATH:
            body = service.store.current.render().encode("utf-8")
            return _respond(start_response, "200 OK", body, "application/json")
        if path == SELF_METRICS_PATH:
            return _respond(start_response, "200 OK", generate_latest(service.registry), CONTENT_TYPE_LATEST)
        if path == RELOAD_PATH:
            if method != "POST":
                return _respond(start_response, "405 Method Not Allowed", b"Use POST to reload.\n")
            if service.reload():
                return _respond(start_response, "200 OK", b"Configuration reloaded.\n")
            return _respond(start_response, "500 Internal Server Error", b"Reload failed, see the exporter log.\n")
        if path == "/":
            return _respond(start_response, "200 OK", home, "text/html; charset=utf-8")
        return _respond(start_response, "404 Not Found", b"Not found.\n")

    return app


def _scrape(service: ExporterService, environ: dict, start_response: StartResponse) -> Iterable[bytes]:
    params = parse_qs(environ.get("QUERY_STRING", ""))
    name = (params.get("target") or [None])[0] or None
    config = service.store.current
    try:
        target = config.target(name)
    except UnknownTargetError as exc:
        LOG.info("Rejected scrape", extra={"target": name, "error": str(exc)})
        return _respond(start_response, "400 Bad Request", f"{exc}\n".encode("utf-8"))
    scrape_timeout: float | None = None
    header = environ.get(TIMEOUT_HEADER)
    if header:
        try:
            scrape_timeout = float(header)
        except ValueError:
            LOG.warning("Ignoring malformed scrape timeout header", extra={"value": header})
    registry = CollectorRegistry(auto_describe=False)
    registry.register(service.collector_for(target.name, scrape_timeout, config=config))
    try:
        body = generate_latest(registry)
    except Exception:
        LOG.exception("Scrape failed unexpectedly", extra={"target": target.name})
        return _respond(start_response, "500 Internal Server Error", b"Scrape failed, see the exporter log.\n")
    return _respond(start_response, "200 OK", body, CONTENT_TYPE_LATEST)


def _respond(
    start_response: StartResponse,
    status: str,
    body: bytes,
    content_type: str = "text/plain; charset=utf-8",
) -> list[bytes]:
    start_response(status, [("Content-Type", content_type), ("Content-Length", str(len(body)))])
    return [body]


__all__ = ["create_app"]
