"""HTTP request and response values passed between the proxy layers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qsl

JSON_CONTENT_TYPE = "application/json"
TEXT_CONTENT_TYPE = "text/plain; charset=utf-8"


def _encode(payload: Any) -> bytes:
    text = json.dumps(payload, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
    return (text + "\n").encode("utf-8")


@dataclass
class Request:
    """An incoming client request: method, path, raw query string, headers and body."""

    method: str = "GET"
    path: str = "/"
    query: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def query_params(self) -> dict[str, list[str]]:
        """Decode the raw query string into a mapping of names to value lists."""
        params: dict[str, list[str]] = {}
        for key, value in parse_qsl(self.query, keep_blank_values=True):
            params.setdefault(key, []).append(value)
        return params


@dataclass
class Response:
    """An outgoing response: status code, headers and body bytes."""

    status: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def json(self) -> Any:
        """Decode the body as JSON."""
        return json.loads(self.body)


def json_response(payload: Any, status: int = 200) -> Response:
    """Build a JSON response from any JSON-serialisable payload."""
    return Response(
        status=status,
        headers={"Content-Type": JSON_CONTENT_TYPE},
        body=_encode(payload),
    )


def prometheus_response(result_type: str, result: list[dict[str, Any]]) -> Response:
    """Wrap a result list in the Prometheus query API envelope."""
    return json_response(
        {
            "status": "success",
            "data": {"resultType": result_type, "result": result},
        }
    )


def error_response(body: str, status: int) -> Response:
    """Build a plain-text error response carrying the given body."""
    return Response(
        status=status,
        headers={
            "Content-Type": TEXT_CONTENT_TYPE,
            "X-Content-Type-Options": "nosniff",
        },
        body=(body + "\n").encode("utf-8"),
    )