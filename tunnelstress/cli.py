"""Command line entry point of the CONNECT tunnel stress test."""

from __future__ import annotations

import argparse
import logging
import re
import sys
import threading
from typing import Optional

from tunnelstress import h2conn
from tunnelstress.report import format_duration, print_report
from tunnelstress.stats import AggregateStats, Stats, aggregate
from tunnelstress.tunnel import Tunnel, TunnelConfig

_log = logging.getLogger(__name__)

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(text: str) -> float:
    """Parse a duration such as '10s', '1m30s' or '250ms' into seconds."""
    error = ValueError(f'time: invalid duration "{text}"')
    body = text
    sign = 1.0
    if body[:1] in ("+", "-") and body:
        sign = -1.0 if body[0] == "-" else 1.0
        body = body[1:]
    if body == "0":
        return 0.0
    if not body:
        raise error
    total = 0.0
    pos = 0
    while pos < len(body):
        match = _PART.match(body, pos)
        if match is None:
            raise error
        total += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()
    return sign * total


def run_stress_test(
    tunnels: int,
    rate: float,
    duration: float,
    proxy: str,
    target: str,
    multiplex: bool = False,
) -> AggregateStats:
    """Run the tunnels for duration seconds and return their combined statistics."""
    if tunnels <= 0:
        raise ValueError("tunnels must be > 0")
    if rate <= 0:
        raise ValueError("rate must be > 0")

    stop = threading.Event()
    timer = threading.Timer(duration, stop.set)
    timer.daemon = True
    timer.start()

    results: list[Optional[Stats]] = [None] * tunnels
    workers: list[threading.Thread] = []
    mux: Optional[h2conn.MultiplexedConn] = None

    def launch(index: int, conn: Optional[h2conn.StreamConn]) -> None:
        tunnel = Tunnel(TunnelConfig(index, proxy, target, rate, conn=conn))

        def work() -> None:
            try:
                tunnel.run(stop)
            except Exception as exc:
                _log.warning("tunnel %d: %s", index, exc)
            results[index] = tunnel.stats

        worker = threading.Thread(target=work, daemon=True)
        worker.start()
        workers.append(worker)

    try:
        if multiplex:
            try:
                mux = h2conn.MultiplexedConn(proxy)
            except h2conn.H2ConnError as exc:
                raise h2conn.H2ConnError(f"h2 multiplexed dial: {exc}") from exc
            for index in range(tunnels):
                try:
                    conn = mux.dial(target)
                except h2conn.H2ConnError as exc:
                    raise h2conn.H2ConnError(
                        f"tunnel {index} h2 mux dial: {exc}"
                    ) from exc
                launch(index, conn)
        else:
            for index in range(tunnels):
                launch(index, None)
        for worker in workers:
            worker.join()
    finally:
        stop.set()
        for worker in workers:
            worker.join()
        timer.cancel()
        if mux is not None:
            mux.close()

    return aggregate(results)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="stresstest",
        description=(
            "Stress test HTTP CONNECT tunnels through a proxy. Creates k tunnels, "
            "each pumping m Mbps of data, and measures round-trip latency "
            "through an echo server."
        ),
    )
    parser.add_argument(
        "-k", "--tunnels", type=int, default=10, help="Number of concurrent tunnels"
    )
    parser.add_argument(
        "-m", "--rate", type=float, default=1.0, help="Data rate per tunnel in Mbps"
    )
    parser.add_argument(
        "-d", "--duration", type=parse_duration, default="10s", help="Test duration"
    )
    parser.add_argument(
        "-p", "--proxy", default="127.0.0.1:3128", help="Proxy address (host:port)"
    )
    parser.add_argument(
        "-t",
        "--target",
        default="127.0.0.1:8080",
        help="Echo target address (host:port)",
    )
    parser.add_argument(
        "--h2-multiplex",
        action="store_true",
        help="Send all H2 CONNECT tunnels over a single TCP connection",
    )
    args = parser.parse_args(argv)

    if args.tunnels <= 0:
        print("tunnels must be > 0", file=sys.stderr)
        return 1
    if args.rate <= 0:
        print("rate must be > 0", file=sys.stderr)
        return 1

    transport = "HTTP/2"
    mode = (
        "single TCP connection (h2 multiplex)"
        if args.h2_multiplex
        else "independent connections"
    )

    print("Starting stress test")
    print(f"  Tunnels:   {args.tunnels}")
    print(f"  Rate:      {args.rate:.2f} Mbps per tunnel")
    print(f"  Duration:  {format_duration(args.duration)}")
    print(f"  Proxy:     {args.proxy}")
    print(f"  Target:    {args.target}")
    print(f"  Transport: {transport}")
    print(f"  Mode:      {mode}")
    print(flush=True)

    try:
        agg = run_stress_test(
            args.tunnels,
            args.rate,
            args.duration,
            args.proxy,
            args.target,
            args.h2_multiplex,
        )
    except (h2conn.H2ConnError, OSError) as exc:
        print(str(exc), file=sys.stderr)
        return 1

    print_report(agg, transport)
    return 0