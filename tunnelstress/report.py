"""Human-readable report of aggregated tunnel statistics."""

from __future__ import annotations

from itertools import groupby

from tunnelstress.stats import AggregateStats

_RULE = "═══════════════════════════════════════════════════════════"
_LATENCY_HEADER = "  ─────────── Latency (ms) ───────────"
_COLUMN_PADDING = 2


def format_bytes(n: int) -> str:
    """Format a byte count with binary units, e.g. '1.5 KB'."""
    unit = 1024
    if n < unit:
        return f"{n} B"
    div, exp = unit, 0
    rest = n // unit
    while rest >= unit:
        div *= unit
        exp += 1
        rest //= unit
    return f"{n / div:.1f} {'KMGTPE'[exp]}B"


def _fixed(value: int, digits: int) -> str:
    whole, frac = divmod(value, 10**digits)
    frac_text = f"{frac:0{digits}d}".rstrip("0")
    return f"{whole}.{frac_text}" if frac_text else str(whole)


def format_duration(seconds: float) -> str:
    """Format a span of seconds as e.g. '1h2m3.5s', '1.5ms' or '0s'."""
    ns = round(seconds * 1_000_000_000)
    if ns == 0:
        return "0s"
    sign = "-" if ns < 0 else ""
    ns = abs(ns)
    if ns < 1000:
        text = f"{ns}ns"
    elif ns < 1_000_000:
        text = _fixed(ns, 3) + "µs"
    elif ns < 1_000_000_000:
        text = _fixed(ns, 6) + "ms"
    else:
        hours, rest = divmod(ns, 3_600_000_000_000)
        minutes, rest = divmod(rest, 60_000_000_000)
        text = ""
        if hours:
            text += f"{hours}h"
        if hours or minutes:
            text += f"{minutes}m"
        text += _fixed(rest, 9) + "s"
    return sign + text


def _align(lines: list[str]) -> list[str]:
    """Pad the cell before each tab so that consecutive tabbed lines line up."""
    aligned: list[str] = []
    for tabbed, block in groupby(lines, key=lambda line: "\t" in line):
        block = list(block)
        if not tabbed:
            aligned.extend(block)
            continue
        cells = [line.split("\t", 1) for line in block]
        width = max(len(first) for first, _ in cells) + _COLUMN_PADDING
        aligned.extend(f"{first:<{width}}{rest}" for first, rest in cells)
    return aligned


def format_report(agg: AggregateStats, transport: str) -> str:
    """Render the stress-test report as text."""
    title = transport or "HTTP/2"
    seconds = agg.duration.total_seconds()

    lines = [
        "",
        _RULE,
        f"  {title} CONNECT TUNNEL STRESS TEST REPORT",
        _RULE,
        "",
        f"  Tunnels:\t{agg.tunnel_count}",
        f"  Duration:\t{format_duration(seconds)}",
        f"  Samples:\t{agg.total_samples}",
        f"  Errors:\t{agg.total_errors}",
        "",
        f"  Bytes Sent:\t{format_bytes(agg.total_bytes_sent)}",
        f"  Bytes Recv:\t{format_bytes(agg.total_bytes_recv)}",
    ]
    if seconds > 0:
        throughput = agg.total_bytes_sent * 8 / seconds / 1e6
        lines.append(f"  Throughput:\t{throughput:.2f} Mbps")
    lines += ["", _LATENCY_HEADER, ""]

    p = agg.percentiles()
    tail5, tail2 = agg.tail_percentiles()
    stddev = agg.latency_variance()
    for label, value in (
        ("Min", p.min),
        ("Max", p.max),
        ("Avg", p.avg),
        ("P50", p.p50),
        ("P95", p.p95),
        ("P98", p.p98),
        ("P99", p.p99),
    ):
        lines.append(f"  {label}:\t{value:.3f}")
    lines += [
        "",
        f"  Tail 5% Avg:\t{tail5:.3f}",
        f"  Tail 2% Avg:\t{tail2:.3f}",
        f"  Latency Variance:\t{stddev:.3f}",
        "",
        _RULE,
    ]
    return "\n".join(_align(lines)) + "\n"


def print_report(agg: AggregateStats, transport: str) -> None:
    """Write the report to standard output."""
    print(format_report(agg, transport), end="")