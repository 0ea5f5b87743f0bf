"""Client parameter handling: parsing, selector detection and query strings."""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Iterable, Optional
from urllib.parse import quote_plus, unquote_plus

from chronotheus.exchange import Request
from chronotheus.series import _format_g

Params = dict[str, list[str]]

MAX_BODY_BYTES = 10 * 1024 * 1024

_log = logging.getLogger(__name__)

_TIMEFRAME_MATCH = re.compile(r'chrono_timeframe="([^"]+)"')
_COMMAND_MATCH = re.compile(r'_command="([^"]+)"')
_INLINE_TIMEFRAME = re.compile(r'chrono_timeframe="([^"]+)"')
_INLINE_COMMAND = re.compile(r'_command="([^"]+)"')
_COMMAS = re.compile(r",+")
_OPEN_COMMAS = re.compile(r"{\s*,+")
_CLOSE_COMMAS = re.compile(r",+\s*}")
_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def _header(request: Request, name: str) -> str:
    wanted = name.lower()
    return next((v for k, v in request.headers.items() if k.lower() == wanted), "")


def _format_value(value: Any) -> str:
    """Render a decoded JSON value the way the upstream expects it as text."""
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return _format_g(float(value))
    if isinstance(value, list):
        return "[" + " ".join(_format_value(item) for item in value) + "]"
    if isinstance(value, dict):
        inner = " ".join(f"{key}:{_format_value(value[key])}" for key in sorted(value))
        return "map[" + inner + "]"
    return str(value)


def _finite_number(text: str) -> float:
    number = float(text)
    if math.isinf(number):
        raise ValueError(f"number out of range: {text}")
    return number


def _reject_constant(text: str) -> Any:
    raise ValueError(f"invalid JSON literal: {text}")


def _decode_json_object(body: bytes) -> Optional[dict[str, Any]]:
    """Decode a JSON object body; None for JSON null. Raises ValueError otherwise."""
    decoded = json.loads(
        body,
        parse_int=_finite_number,
        parse_float=_finite_number,
        parse_constant=_reject_constant,
    )
    if decoded is None:
        return None
    if not isinstance(decoded, dict):
        raise ValueError("JSON body is not an object")
    return decoded


def _parse_form(body: bytes) -> Iterable[tuple[str, str]]:
    text = body.decode("utf-8", errors="replace")
    for part in text.split("&"):
        if not part or ";" in part:
            continue
        key, _, value = part.partition("=")
        if _BAD_ESCAPE.search(key) or _BAD_ESCAPE.search(value):
            continue
        yield unquote_plus(key, errors="replace"), unquote_plus(value, errors="replace")


def _add(params: Params, key: str, value: str) -> None:
    params.setdefault(key, []).append(value)


def parse_client_params(request: Request) -> Params:
    """Collect parameters from a JSON or form POST body and the URL query."""
    params: Params = {}
    if request.method == "POST":
        content_type = _header(request, "Content-Type")
        body = request.body[:MAX_BODY_BYTES]
        if "application/json" in content_type:
            try:
                decoded = _decode_json_object(body)
            except ValueError:
                return params
            for key, value in (decoded or {}).items():
                if isinstance(value, list):
                    for item in value:
                        _add(params, key, _format_value(item))
                else:
                    params[key] = [_format_value(value)]
        else:
            media_type = content_type.split(";", 1)[0].strip().lower()
            if media_type == "application/x-www-form-urlencoded":
                for key, value in _parse_form(body):
                    _add(params, key, value)
    for key, values in request.query_params().items():
        for value in values:
            _add(params, key, value)
    return params


def _first(params: Params, key: str) -> str:
    values = params.get(key)
    return values[0] if values else ""


def detect_selectors(params: Params) -> tuple[str, str]:
    """Find inline chrono_timeframe and _command labels inside the query."""
    query = _first(params, "query")
    timeframe = command = ""
    match = _INLINE_TIMEFRAME.search(query)
    if match:
        timeframe = match.group(1)
        _log.debug("Found inline timeframe: %s", timeframe)
    match = _INLINE_COMMAND.search(query)
    if match:
        command = match.group(1)
        _log.debug("Found inline command: %s", command)
    return timeframe, command


def _pop_selector(values: list[str], pattern: re.Pattern[str]) -> str:
    for index, value in enumerate(values):
        match = pattern.fullmatch(value)
        if match:
            del values[index]
            return match.group(1)
    return ""


def extract_selectors(params: Params) -> tuple[str, str]:
    """Take the timeframe and command selectors out of match[], else from the query.

    Matching match[] entries are removed from params.
    """
    timeframe = command = ""
    matches = params.get("match[]")
    if matches is not None:
        timeframe = _pop_selector(matches, _TIMEFRAME_MATCH)
        if timeframe:
            _log.debug("Found timeframe in match[]: %s", timeframe)
        command = _pop_selector(matches, _COMMAND_MATCH)
        if command:
            _log.debug("Found command in match[]: %s", command)

    if not timeframe or not command:
        inline_timeframe, inline_command = detect_selectors(params)
        timeframe = timeframe or inline_timeframe
        command = command or inline_command

    _log.debug("Final selector values - timeframe: %r, command: %r", timeframe, command)
    return timeframe, command


def strip_label_from_param(params: Params, key: str, label: str) -> None:
    """Remove label="..." matchers from every value of params[key], tidying commas."""
    values = params.get(key)
    if values is None:
        return
    label_re = re.compile(",?" + re.escape(label) + r'="[^"]*"')
    for index, value in enumerate(values):
        value = label_re.sub("", value)
        value = _COMMAS.sub(",", value)
        value = _OPEN_COMMAS.sub("{", value)
        value = _CLOSE_COMMAS.sub("}", value)
        values[index] = value


def remap_match(params: Params) -> None:
    """Move values given as match to match[] when match[] has no value."""
    matches = params.get("match")
    if matches and _first(params, "match[]") == "":
        params["match[]"] = matches
        del params["match"]


def build_query_string(params: Params) -> str:
    """Encode params; keys with several values are sent with a [] suffix."""
    parts = []
    for key, values in params.items():
        name = key + "[]" if len(values) > 1 and not key.endswith("[]") else key
        encoded_name = quote_plus(name, safe="")
        parts.extend(f"{encoded_name}={quote_plus(value, safe='')}" for value in values)
    return "&".join(parts)


def is_raw_timeframe(timeframe: str, raws: Iterable[str]) -> bool:
    """True when timeframe is one of the raw window names."""
    return timeframe in raws