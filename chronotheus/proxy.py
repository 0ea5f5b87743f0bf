"""The proxy front: path routing, runtime metrics and the HTTP server."""

from __future__ import annotations

import dataclasses
import logging
import re
import socket
import threading
import time
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional
from urllib.parse import unquote, urlsplit

from chronotheus.exchange import Request, Response, error_response
from chronotheus.handlers import (
    LabelValuesCache,
    handle_label_values,
    handle_labels,
    handle_query,
    handle_query_range,
)
from chronotheus.upstream import Config, UpstreamClient, default_windows, forward

INVALID_PREFIX = '{"status":"error","error":"Invalid target prefix"}'
LATENCY_SMOOTHING = 0.1

_PATH_RE = re.compile(r"/([^_/]+)_(\d+)(/.*)?")
_VALUES_RE = re.compile(r"/api/v1/label/[^/]+/values")

_log = logging.getLogger(__name__)


@dataclass
class ProxyMetrics:
    """Counters describing the requests the proxy has served."""

    request_count: int = 0
    error_count: int = 0
    last_request_time: Optional[float] = None
    average_latency: float = 0.0
    requests_in_flight: int = 0


class ChronoProxy:
    """Routes /<host>_<port>/<path> requests to the upstream named in the path."""

    def __init__(self, config: Optional[Config] = None) -> None:
        self.config = config or Config()
        self.client = UpstreamClient(self.config)
        self.windows = default_windows()
        self.label_values_cache = LabelValuesCache()
        self._metrics = ProxyMetrics()
        self._lock = threading.Lock()

    def handle(self, request: Request) -> Response:
        """Answer one request, recording it in the metrics."""
        start = time.perf_counter()
        with self._lock:
            self._metrics.requests_in_flight += 1
        failed = True
        try:
            response, failed = self._route(request)
        finally:
            self._record(start, failed)
        return response

    def snapshot_metrics(self) -> ProxyMetrics:
        """A copy of the current metrics."""
        with self._lock:
            return dataclasses.replace(self._metrics)

    def _route(self, request: Request) -> tuple[Response, bool]:
        match = _PATH_RE.fullmatch(request.path)
        if match is None:
            return error_response(INVALID_PREFIX, 400), True

        host, port, suffix = match.groups()
        suffix = suffix or "/"
        upstream = f"http://{host}:{port}"

        if request.method not in ("GET", "POST"):
            _log.debug("Unsupported method %s, forwarding to upstream", request.method)
            return forward(self.client, request, upstream + suffix), False

        if suffix == "/api/v1/query":
            return handle_query(self.client, self.windows, request, upstream, suffix), False
        if suffix == "/api/v1/query_range":
            return (
                handle_query_range(self.client, self.windows, request, upstream, suffix),
                False,
            )
        if suffix == "/api/v1/labels":
            return handle_labels(self.client, request, upstream, suffix), False
        if _VALUES_RE.fullmatch(suffix):
            label = suffix.split("/")[4]
            return (
                handle_label_values(
                    self.client, self.label_values_cache, request, upstream, suffix, label
                ),
                False,
            )

        _log.debug("Forwarding unknown request: %s %s", request.method, request.path)
        return forward(self.client, request, upstream + suffix), False

    def _record(self, start: float, failed: bool) -> None:
        latency = time.perf_counter() - start
        with self._lock:
            metrics = self._metrics
            metrics.requests_in_flight -= 1
            metrics.request_count += 1
            metrics.last_request_time = time.time()
            if failed:
                metrics.error_count += 1
            if metrics.request_count == 1:
                metrics.average_latency = latency
            else:
                metrics.average_latency = (
                    LATENCY_SMOOTHING * latency
                    + (1 - LATENCY_SMOOTHING) * metrics.average_latency
                )


class _IPv6Server(ThreadingHTTPServer):
    address_family = socket.AF_INET6


def _merge_headers(message) -> dict[str, str]:
    headers: dict[str, str] = {}
    for name, value in message.items():
        headers[name] = f"{headers[name]}, {value}" if name in headers else value
    return headers


def make_server(
    proxy: ChronoProxy, host: str = "0.0.0.0", port: int = 8080
) -> ThreadingHTTPServer:
    """Bind a threaded HTTP server that hands every request to the proxy."""

    class _Handler(BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"

        def _read_body(self) -> bytes:
            try:
                length = int(self.headers.get("Content-Length") or 0)
            except ValueError:
                length = 0
            return self.rfile.read(length) if length > 0 else b""

        def _dispatch(self) -> None:
            url = urlsplit(self.path)
            request = Request(
                method=self.command,
                path=unquote(url.path),
                query=url.query,
                headers=_merge_headers(self.headers),
                body=self._read_body(),
            )
            try:
                response = proxy.handle(request)
            except Exception:
                _log.exception("request handling failed")
                response = error_response("Internal Server Error", 500)
            self.send_response(response.status)
            for name, value in response.headers.items():
                if name.lower() != "content-length":
                    self.send_header(name, value)
            self.send_header("Content-Length", str(len(response.body)))
            self.end_headers()
            if self.command != "HEAD":
                self.wfile.write(response.body)

        do_GET = do_POST = do_PUT = do_DELETE = _dispatch
        do_PATCH = do_HEAD = do_OPTIONS = _dispatch

        def log_message(self, format: str, *args) -> None:
            _log.debug("%s - %s", self.address_string(), format % args)

    server_class = _IPv6Server if ":" in host else ThreadingHTTPServer
    return server_class((host, port), _Handler)