"""TCP echo server used as the target behind the proxy."""

from __future__ import annotations

import argparse
import logging
import socket
import sys
import threading
import time
from typing import Optional

from tunnelstress.cli import parse_duration
from tunnelstress.report import format_duration

_BUFFER_SIZE = 32 * 1024
_ACCEPT_POLL = 0.2

_log = logging.getLogger(__name__)


def handle_connection(conn: socket.socket, delay: float) -> None:
    """Echo everything read from conn, waiting delay seconds before each write."""
    with conn:
        while True:
            try:
                data = conn.recv(_BUFFER_SIZE)
            except OSError as exc:
                _log.warning("read: %s", exc)
                return
            if not data:
                return
            if delay > 0:
                time.sleep(delay)
            try:
                conn.sendall(data)
            except OSError as exc:
                _log.warning("write: %s", exc)
                return


def _parse_addr(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"address {addr}: missing port in address")
    return host.strip("[]"), int(port)


def serve(
    addr: str, delay: float = 0.0, stop_event: Optional[threading.Event] = None
) -> None:
    """Accept connections on addr and echo them until stop_event is set."""
    with socket.create_server(_parse_addr(addr)) as listener:
        print(
            f"echo server listening on {addr} (delay={format_duration(delay)})",
            flush=True,
        )
        listener.settimeout(_ACCEPT_POLL)
        while stop_event is None or not stop_event.is_set():
            try:
                conn, _ = listener.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                _log.warning("accept: %s", exc)
                continue
            conn.settimeout(None)
            threading.Thread(
                target=handle_connection, args=(conn, delay), daemon=True
            ).start()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="echoserver", description="TCP echo server")
    parser.add_argument("--addr", default="127.0.0.1:8080", help="listen address")
    parser.add_argument(
        "--delay",
        type=parse_duration,
        default="0s",
        help="delay before echoing back data",
    )
    args = parser.parse_args(argv)
    try:
        serve(args.addr, args.delay)
    except (OSError, ValueError) as exc:
        print(f"listen: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 0
    return 0