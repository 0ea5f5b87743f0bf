"""Request handlers for the query, range, labels and label-values endpoints."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional, Sequence

from chronotheus.exchange import (
    Request,
    Response,
    error_response,
    json_response,
    prometheus_response,
)
from chronotheus.params import (
    Params,
    build_query_string,
    extract_selectors,
    parse_client_params,
    remap_match,
    strip_label_from_param,
)
from chronotheus.series import (
    Series,
    append_compare,
    append_percent,
    build_last_month_average,
    contains_string,
    dedupe_series,
    filter_by_timeframe,
    index_by_signature,
    proxy_timeframes,
)
from chronotheus.upstream import (
    Timeframe,
    UpstreamClient,
    UpstreamError,
    fetch_windows_instant,
    fetch_windows_range,
)

LAST_MONTH_AVERAGE = "lastMonthAverage"
COMPARE = "compareAgainstLast28"
PERCENT_COMPARE = "percentCompareAgainstLast28"
SYNTHETIC_TIMEFRAMES = (LAST_MONTH_AVERAGE, COMPARE, PERCENT_COMPARE)
KEEP_HISTORICS = "DONT_REMOVE_UNUSED_HISTORICS"
COMMANDS = ("", KEEP_HISTORICS)
LABEL_VALUES_TTL = 5 * 60.0

UPSTREAM_FAILED = '{"status":"error","error":"Upstream request failed"}'
INVALID_UPSTREAM = '{"status":"error","error":"Invalid response from upstream"}'

_log = logging.getLogger(__name__)

Fetcher = Callable[[UpstreamClient, Sequence[Timeframe], Params, str, str], list[Series]]


class LabelValuesCache:
    """Thread-safe store of label values that expire after a time-to-live in seconds."""

    def __init__(self, ttl: float = LABEL_VALUES_TTL) -> None:
        self.ttl = ttl
        self._entries: dict[str, tuple[list[Any], float]] = {}
        self._lock = threading.Lock()

    def get(self, label: str) -> Optional[list[Any]]:
        """The cached values of a label, or None when absent or expired."""
        with self._lock:
            entry = self._entries.get(label)
        if entry is None:
            return None
        values, stored_at = entry
        if time.monotonic() - stored_at < self.ttl:
            return values
        return None

    def put(self, label: str, values: list[Any]) -> None:
        """Remember the values of a label from now on."""
        with self._lock:
            self._entries[label] = (values, time.monotonic())


def _query_params(request: Request) -> tuple[Params, str, str]:
    params = parse_client_params(request)
    remap_match(params)
    timeframe, command = extract_selectors(params)
    _log.debug("Selectors are (timeframe: %r, command: %r)", timeframe, command)
    strip_label_from_param(params, "query", "chrono_timeframe")
    strip_label_from_param(params, "query", "command")
    return params, timeframe, command


def _merge(
    client: UpstreamClient,
    windows: Sequence[Timeframe],
    params: Params,
    endpoint: str,
    timeframe: str,
    command: str,
    fetch: Fetcher,
    is_range: bool,
) -> list[Series]:
    if timeframe and timeframe not in SYNTHETIC_TIMEFRAMES:
        chosen = [window for window in windows if window.name == timeframe][:1]
        merged = fetch(client, chosen, params, endpoint, command) if chosen else []
    else:
        merged = dedupe_series(fetch(client, windows, params, endpoint, command))
        if command != KEEP_HISTORICS:
            averages = build_last_month_average(merged, is_range)
            current, average_map = index_by_signature(merged, averages)
            if not timeframe:
                merged = (
                    merged
                    + averages
                    + append_compare(None, current, average_map, "", is_range)
                    + append_percent(None, current, average_map, "", is_range)
                )
            elif timeframe == LAST_MONTH_AVERAGE:
                merged = averages
            elif timeframe == COMPARE:
                merged = append_compare(None, current, average_map, "", is_range)
            else:
                merged = append_percent(None, current, average_map, "", is_range)

    if timeframe and command != KEEP_HISTORICS:
        merged = filter_by_timeframe(merged, timeframe)
    return merged


def handle_query(
    client: UpstreamClient,
    windows: Sequence[Timeframe],
    request: Request,
    upstream: str,
    path: str,
) -> Response:
    """Answer an instant query across every time window plus synthetic series."""
    _log.debug("handle_query: %s %s", request.method, request.path)
    params, timeframe, command = _query_params(request)
    merged = _merge(
        client, windows, params, upstream + path,
        timeframe, command, fetch_windows_instant, False,
    )
    _log.debug("handle_query: %d series returned", len(merged))
    return prometheus_response("vector", merged)


def handle_query_range(
    client: UpstreamClient,
    windows: Sequence[Timeframe],
    request: Request,
    upstream: str,
    path: str,
) -> Response:
    """Answer a range query across every time window plus synthetic series."""
    _log.debug("handle_query_range: %s %s", request.method, request.path)
    params, timeframe, command = _query_params(request)
    step = params.get("step")
    if not step or step[0] == "":
        params["step"] = ["60"]
    merged = _merge(
        client, windows, params, upstream + path,
        timeframe, command, fetch_windows_range, True,
    )
    _log.debug("handle_query_range: %d series returned", len(merged))
    return prometheus_response("matrix", merged)


def _match_params(request: Request) -> Params:
    params = parse_client_params(request)
    strip_label_from_param(params, "match", "chrono_timeframe")
    strip_label_from_param(params, "match", "command")
    remap_match(params)
    return params


def handle_labels(
    client: UpstreamClient, request: Request, upstream: str, path: str
) -> Response:
    """List the upstream's labels with the proxy's own labels added."""
    _log.debug("handle_labels: %s %s", request.method, request.path)
    url = upstream + path + "?" + build_query_string(_match_params(request))
    try:
        reply = client.get(url)
    except UpstreamError:
        return error_response(UPSTREAM_FAILED, 502)

    try:
        decoded = reply.json()
    except ValueError:
        decoded = None
    out: dict[str, Any] = decoded if isinstance(decoded, dict) else {}

    data = out.get("data")
    if not isinstance(data, list):
        data = []
        out["status"] = "success"
    for label in ("chrono_timeframe", "_command"):
        if not contains_string(data, label):
            data.append(label)
    out["data"] = data
    return json_response(out)


def handle_label_values(
    client: UpstreamClient,
    cache: LabelValuesCache,
    request: Request,
    upstream: str,
    path: str,
    label: str,
) -> Response:
    """List the values of a label; the proxy's own labels are answered locally."""
    _log.debug("handle_label_values: %s %s", request.method, request.path)
    if label == "chrono_timeframe":
        return json_response(
            {"status": "success", "data": proxy_timeframes() + list(SYNTHETIC_TIMEFRAMES)}
        )
    if label == "_command":
        return json_response({"status": "success", "data": list(COMMANDS)})

    cached = cache.get(label)
    if cached is not None:
        return json_response({"status": "success", "data": cached})

    url = upstream + path + "?" + build_query_string(_match_params(request))
    try:
        reply = client.get(url)
    except UpstreamError:
        return error_response(UPSTREAM_FAILED, 502)

    try:
        result = reply.json()
    except ValueError:
        return error_response(INVALID_UPSTREAM, 502)
    if result is None:
        return json_response(None)
    if not isinstance(result, dict):
        return error_response(INVALID_UPSTREAM, 502)

    data = result.get("data")
    if isinstance(data, list):
        cache.put(label, data)
    return json_response(result)