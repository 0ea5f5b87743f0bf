"""Talking to the upstream Prometheus: HTTP client, time-window fetches and forwarding."""

from __future__ import annotations

import http.client
import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Sequence

from chronotheus.exchange import Request, Response, error_response
from chronotheus.params import Params, _format_value, build_query_string
from chronotheus.series import (
    COMMAND_LABEL,
    TIMEFRAME_LABEL,
    Series,
    copy_metric,
    parse_time,
    proxy_timeframes,
)

MAX_BODY_BYTES = 10 * 1024 * 1024
MAX_FORWARD_BYTES = 100 * 1024 * 1024
DAY_SECONDS = 24 * 3600

_REQUEST_HEADERS_SKIPPED = {"host", "content-length", "connection", "transfer-encoding"}
_RESPONSE_HEADERS_SKIPPED = {"content-length", "connection", "transfer-encoding"}

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Config:
    """Connection settings for the upstream client; durations are in seconds."""

    max_idle_conns: int = 100
    max_idle_conns_per_host: int = 100
    idle_conn_timeout: float = 90.0
    client_timeout: float = 30.0
    dial_timeout: float = 5.0
    keep_alive: float = 30.0
    disable_compression: bool = False
    force_attempt_http2: bool = True


@dataclass(frozen=True)
class Timeframe:
    """A named time window looking back the given number of seconds."""

    name: str
    offset: int


class UpstreamError(Exception):
    """The upstream server could not be reached or did not answer properly."""


def _collect_headers(message: Any) -> dict[str, str]:
    headers: dict[str, str] = {}
    if message is None:
        return headers
    for name, value in message.items():
        headers[name] = f"{headers[name]}, {value}" if name in headers else value
    return headers


class UpstreamClient:
    """A small blocking HTTP client for the upstream server."""

    def __init__(self, config: Optional[Config] = None) -> None:
        self.config = config or Config()
        # No environment proxies: requests go straight to the named upstream.
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    def get(self, url: str) -> Response:
        """Issue a GET request; any HTTP status is returned as a response."""
        return self.request("GET", url)

    def request(
        self,
        method: str,
        url: str,
        body: Optional[bytes] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Response:
        """Send a request and return the upstream's response.

        Raises UpstreamError when no response could be obtained.
        """
        try:
            outgoing = urllib.request.Request(url, data=body, method=method)
            for name, value in (headers or {}).items():
                outgoing.add_header(name, value)
            with self._opener.open(outgoing, timeout=self.config.client_timeout) as reply:
                return Response(
                    status=reply.status,
                    headers=_collect_headers(reply.headers),
                    body=reply.read(),
                )
        except urllib.error.HTTPError as err:
            with err:
                return Response(
                    status=err.code,
                    headers=_collect_headers(err.headers),
                    body=err.read(),
                )
        except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as err:
            raise UpstreamError(f"{method} {url}: {err}") from err


def default_windows() -> tuple[Timeframe, ...]:
    """The raw windows: now and 7, 14, 21 and 28 days back."""
    return tuple(
        Timeframe(name, days * DAY_SECONDS)
        for name, days in zip(proxy_timeframes(), (0, 7, 14, 21, 28))
    )


def _first(params: Params, key: str) -> str:
    values = params.get(key)
    return values[0] if values else ""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _decode_results(body: bytes) -> Optional[list[Any]]:
    """The data.result list of a Prometheus reply, or None when it is malformed."""
    try:
        decoded = json.loads(body)
    except ValueError:
        return None
    if decoded is None:
        return []
    if not isinstance(decoded, dict):
        return None
    data = decoded.get("data")
    if data is None:
        return []
    if not isinstance(data, dict):
        return None
    result = data.get("result")
    if result is None:
        return []
    if not isinstance(result, list):
        return None
    return result


def _entries(results: list[Any], key: str) -> Iterator[tuple[dict[str, Any], Any]]:
    for entry in results:
        if not isinstance(entry, dict):
            continue
        metric = entry.get("metric")
        if metric is not None and not isinstance(metric, dict):
            continue
        yield dict(metric or {}), entry.get(key)


def _label(metric: dict[str, Any], window: Timeframe, command: str) -> dict[str, Any]:
    labelled = copy_metric(metric)
    labelled[TIMEFRAME_LABEL] = window.name
    if command:
        labelled[COMMAND_LABEL] = command
    return labelled


def _shift(point: Any, offset: int) -> Optional[list[Any]]:
    if not isinstance(point, list) or not point or not _is_number(point[0]):
        return None
    raw = point[1] if len(point) > 1 else None
    return [int(point[0]) + offset, _format_value(raw)]


def _fetch(client: UpstreamClient, url: str, limit: Optional[int]) -> Optional[list[Any]]:
    try:
        reply = client.get(url)
    except UpstreamError as err:
        _log.debug("upstream fetch failed: %s", err)
        return None
    body = reply.body if limit is None else reply.body[:limit]
    return _decode_results(body)


def fetch_windows_instant(
    client: UpstreamClient,
    windows: Sequence[Timeframe],
    params: Params,
    endpoint: str,
    command: str,
) -> list[Series]:
    """Run an instant query once per window and shift results back to the present.

    The time parameter is rewritten in place for each window.
    """
    out: list[Series] = []
    for window in windows:
        base = parse_time(_first(params, "time"))
        params["time"] = [str(base - window.offset)]
        results = _fetch(client, endpoint + "?" + build_query_string(params), MAX_BODY_BYTES)
        if results is None:
            continue
        for metric, point in _entries(results, "value"):
            shifted = _shift(point, window.offset)
            if shifted is None:
                continue
            out.append({"metric": _label(metric, window, command), "value": shifted})
    return out


def fetch_windows_range(
    client: UpstreamClient,
    windows: Sequence[Timeframe],
    params: Params,
    endpoint: str,
    command: str,
) -> list[Series]:
    """Run a range query once per window and shift every point back to the present.

    The start and end parameters are rewritten in place for each window.
    """
    out: list[Series] = []
    for window in windows:
        _log.debug("fetch_windows_range: %s offset %d", window.name, window.offset)
        start = parse_time(_first(params, "start")) - window.offset
        end = parse_time(_first(params, "end")) - window.offset
        params["start"] = [str(start)]
        params["end"] = [str(end)]
        url = endpoint + "?" + build_query_string(params)
        results = _fetch(client, url, None)
        if results is None:
            continue
        _log.debug("fetch_windows_range got data: %s", url)
        for metric, points in _entries(results, "values"):
            if points is not None and not isinstance(points, list):
                continue
            shifted = [
                pair
                for pair in (_shift(point, window.offset) for point in points or [])
                if pair is not None
            ]
            out.append({"metric": _label(metric, window, command), "values": shifted})
    _log.debug("fetch_windows_range completed (total %d)", len(out))
    return out


def forward(client: UpstreamClient, request: Request, url: str) -> Response:
    """Pass a request through to the upstream unchanged apart from its URL."""
    if request.method == "GET":
        target, body = f"{url}?{request.query}", None
    else:
        target, body = url, request.body[:MAX_BODY_BYTES]
    headers = {
        name: value
        for name, value in request.headers.items()
        if name.lower() not in _REQUEST_HEADERS_SKIPPED
    }
    try:
        reply = client.request(request.method, target, body, headers)
    except UpstreamError as err:
        return error_response(str(err), 502)
    return Response(
        status=reply.status,
        headers={
            name: value
            for name, value in reply.headers.items()
            if name.lower() not in _RESPONSE_HEADERS_SKIPPED
        },
        body=reply.body[:MAX_FORWARD_BYTES],
    )