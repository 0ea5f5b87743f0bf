"""Command-line entry point: parse options and run the proxy server."""

from __future__ import annotations

import argparse
import logging
from typing import Optional, Sequence

from chronotheus.proxy import ChronoProxy, make_server

VERSION = "dev"
COMMIT_SHA = "unknown"
BUILD_TIME = "unknown"
DEFAULT_LISTEN = "0.0.0.0:8080"

_BANNER = "Chronotheus - time-travelling Prometheus metrics proxy"

_log = logging.getLogger("chronotheus")


def parse_listen(address: str) -> tuple[str, int]:
    """Split an ip:port listen address; the host may be empty or a bracketed IPv6."""
    host, sep, port_text = address.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ValueError(f"too many colons in address {address!r}")
    if not port_text.isdigit():
        raise ValueError(f"invalid port in address {address!r}")
    port = int(port_text)
    if port > 65535:
        raise ValueError(f"port out of range in address {address!r}")
    return host, port


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chronotheus",
        description="Prometheus proxy that serves metrics across past time windows.",
    )
    parser.add_argument("-debug", "--debug", action="store_true", help="enable debug logging")
    parser.add_argument(
        "-listen", "--listen", default=DEFAULT_LISTEN, help="address to listen on (ip:port)"
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the proxy server until interrupted; returns the exit status."""
    args = _build_parser().parse_args(argv)

    print(_BANNER)
    print(f"Version: {VERSION}\nGit Commit: {COMMIT_SHA}\nBuild Time: {BUILD_TIME}")

    if args.debug:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(filename)s:%(lineno)d: %(message)s",
        )
        _log.debug("Debug logging enabled")
    else:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")

    try:
        host, port = parse_listen(args.listen)
    except ValueError as err:
        _log.error("Server failed: %s", err)
        return 1

    proxy = ChronoProxy()
    _log.info("Chronotheus v%s (commit %s) launching!", VERSION, COMMIT_SHA)
    _log.info("Listening on %s", args.listen)
    try:
        server = make_server(proxy, host, port)
    except OSError as err:
        _log.error("Server failed: %s", err)
        return 1

    with server:
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            _log.info("Shutting down")
    return 0