"""Sample a process's memory use over time, log it to CSV and summarise it."""

from __future__ import annotations

import argparse
import csv
import math
import re
import signal
import sys
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional, Sequence

from tunnelstress.cli import parse_duration
from tunnelstress.report import format_duration

_PROC_ROOT = Path("/proc")
_INTEGER = re.compile(r"[+-]?\d+")
_SPARK_WIDTH = 60
_SPARK_LEVELS = 8
_BLOCKS = " \u2581\u2582\u2583\u2584\u2585\u2586\u2587\u2588"
_TICK_COUNT = 4
_CSV_HEADER = ("timestamp", "vm_rss_kb", "vm_size_kb")


@dataclass(frozen=True)
class Sample:
    """Memory use of the watched process at one moment, in kilobytes."""

    ts: datetime
    rss_kb: int
    vsize_kb: int


def parse_proc_status(text: str) -> tuple[int, int]:
    """Return (VmRSS, VmSize) in kB from the text of a /proc status file; 0 if absent."""
    rss = vsize = 0
    for line in text.splitlines():
        fields = line.split()
        if len(fields) < 2 or not _INTEGER.fullmatch(fields[1]):
            continue
        value = int(fields[1])
        if fields[0] == "VmRSS:":
            rss = value
        elif fields[0] == "VmSize:":
            vsize = value
    return rss, vsize


def read_proc_mem(pid: int) -> tuple[int, int]:
    """Read (VmRSS, VmSize) in kB of a running process."""
    path = _PROC_ROOT / str(pid) / "status"
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise OSError(f"reading proc status: {exc}") from exc
    rss, vsize = parse_proc_status(text)
    if rss == 0 and vsize == 0:
        raise ProcessLookupError(
            f"no memory info found for pid {pid} (process may not exist)"
        )
    return rss, vsize


def format_kb(kb: int) -> str:
    """Format a kilobyte count as KB, MB or GB."""
    if kb < 0:
        return "-" + format_kb(-kb)
    if kb >= 1024 * 1024:
        return f"{kb / (1024 * 1024):.1f} GB"
    if kb >= 10 * 1024:
        return f"{kb / 1024:.2f} MB"
    if kb >= 1024:
        return f"{kb / 1024:.1f} MB"
    return f"{kb} KB"


def format_delta(delta: int) -> str:
    """Format a change in kB with an explicit sign."""
    if delta >= 0:
        return "+" + format_kb(delta)
    return format_kb(delta)


def format_kb_rate(rate: float) -> str:
    """Format a rate in kB per second, truncated to whole kB, with an explicit sign."""
    if rate >= 0:
        return "+" + format_kb(int(rate))
    return format_kb(int(rate))


def _trunc_div(total: int, count: int) -> int:
    quotient = abs(total) // count
    return -quotient if total < 0 else quotient


def sparkline(values: Sequence[int], start: datetime, end: datetime) -> str:
    """Render values as a one-line block chart with a time axis."""
    if not values:
        raise ValueError("sparkline needs at least one value")
    low, high = min(values), max(values)

    def scale(value: int) -> int:
        if high == low:
            return _SPARK_LEVELS // 2
        norm = (value - low) / (high - low)
        return math.floor(norm * _SPARK_LEVELS + 0.5)

    count = len(values)
    chunk = count / _SPARK_WIDTH
    row = []
    for column in range(_SPARK_WIDTH):
        hi = min(int((column + 1) * chunk), count)
        lo = min(int(column * chunk), count - 1)
        if hi <= lo:
            hi = lo + 1
        row.append(_BLOCKS[scale(_trunc_div(sum(values[lo:hi]), hi - lo))])

    seconds = (end - start).total_seconds()
    labels = "  ".join(
        f"{seconds * tick / _TICK_COUNT:.1f}s" for tick in range(_TICK_COUNT + 1)
    )
    return (
        f"\n    Sparkline ({format_kb(low)} -> {format_kb(high)}):\n"
        f"    {''.join(row)}\n"
        f"    {labels}\n\n"
    )


def format_metric(
    name: str, samples: Sequence[Sample], key: Callable[[Sample], int]
) -> str:
    """Summarise one memory metric: range, change, growth rates and a sparkline."""
    if not samples:
        raise ValueError("no samples collected")
    values = [key(sample) for sample in samples]
    avg = sum(values) / len(values)
    start_value, end_value = values[0], values[-1]
    delta = end_value - start_value
    pct_change = delta / start_value * 100 if start_value > 0 else 0.0

    peak_up = peak_down = 0.0
    rates = []
    for (prev_sample, prev_value), (sample, value) in zip(
        zip(samples, values), zip(samples[1:], values[1:])
    ):
        seconds = (sample.ts - prev_sample.ts).total_seconds()
        if seconds <= 0:
            continue
        rate = (value - prev_value) / seconds
        rates.append(rate)
        peak_up = max(peak_up, rate)
        peak_down = min(peak_down, rate)
    avg_rate = sum(rates) / len(rates) if rates else 0.0

    return (
        f"\n  {name}:\n"
        f"    Min: {format_kb(min(values))}    Max: {format_kb(max(values))}"
        f"    Avg: {format_kb(int(avg))}\n"
        f"    Start -> End: {format_kb(start_value)} -> {format_kb(end_value)}"
        f"  Delta: {format_delta(delta)} ({pct_change:+.1f}%)\n"
        f"    Growth Rate:  Peak +: {format_kb(int(peak_up))}/s"
        f"    Peak -: {format_kb(int(abs(peak_down)))}/s"
        f"    Avg: {format_kb_rate(avg_rate)}/s\n"
        + sparkline(values, samples[0].ts, samples[-1].ts)
    )


def _round_to_millis(span: timedelta) -> float:
    micros = span // timedelta(microseconds=1)
    millis, rest = divmod(abs(micros), 1000)
    if rest >= 500:
        millis += 1
    return (-millis if micros < 0 else millis) / 1000


def format_report(samples: Sequence[Sample], pid: int, interval: float) -> str:
    """Render the full memory report for the collected samples."""
    if not samples:
        raise ValueError("no samples collected")
    elapsed = _round_to_millis(samples[-1].ts - samples[0].ts)
    header = (
        "\n"
        + "=" * 80
        + "\n  Memory Watch Report\n"
        + "-" * 80
        + f"\n  PID: {pid:<6}  Samples: {len(samples):<6}"
        f"  Interval: {format_duration(interval)}"
        f"  Elapsed: {format_duration(elapsed)}\n"
        + "=" * 80
        + "\n"
    )
    return (
        header
        + format_metric("VmRSS (Resident Set)", samples, lambda s: s.rss_kb)
        + format_metric("VmSize (Virtual Memory)", samples, lambda s: s.vsize_kb)
    )


def watch(
    pid: int,
    interval: float,
    output: str,
    stop_event: Optional[threading.Event] = None,
) -> list[Sample]:
    """Sample pid every interval seconds into a CSV file until stopped or the process ends."""
    if interval <= 0:
        raise ValueError("interval must be positive")
    try:
        read_proc_mem(pid)
    except OSError as exc:
        raise ProcessLookupError(f"cannot read memory for pid {pid}: {exc}") from exc
    stop = stop_event if stop_event is not None else threading.Event()

    try:
        handle = open(output, "w", newline="", encoding="utf-8")
    except OSError as exc:
        raise OSError(f"failed to create output file: {exc}") from exc

    samples: list[Sample] = []
    with handle:
        writer = csv.writer(handle, lineterminator="\n")
        writer.writerow(_CSV_HEADER)
        handle.flush()
        next_tick = time.monotonic()
        while True:
            next_tick = max(next_tick + interval, time.monotonic())
            if stop.wait(max(0.0, next_tick - time.monotonic())):
                break
            ts = datetime.now().astimezone()
            try:
                rss, vsize = read_proc_mem(pid)
            except OSError as exc:
                print(f"process {pid} gone: {exc}", file=sys.stderr)
                break
            samples.append(Sample(ts, rss, vsize))
            writer.writerow((ts.isoformat(), rss, vsize))
            handle.flush()
    return samples


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="watcher", description="Watch the memory use of a process"
    )
    parser.add_argument("--pid", type=int, default=0, help="PID of the process to watch")
    parser.add_argument(
        "--duration", type=parse_duration, default="500ms", help="Sampling interval"
    )
    parser.add_argument("--output", default="memory.csv", help="Output CSV file path")
    args = parser.parse_args(argv)

    if args.pid <= 0:
        print("--pid is required and must be > 0", file=sys.stderr)
        return 1

    stop = threading.Event()
    previous = {}
    if threading.current_thread() is threading.main_thread():
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, lambda *_: stop.set())
    try:
        samples = watch(args.pid, args.duration, args.output, stop)
    except (OSError, ValueError) as exc:
        print(str(exc), file=sys.stderr)
        return 1
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    if not samples:
        print("no samples collected", file=sys.stderr)
        return 0
    print(format_report(samples, args.pid, args.duration), end="")
    return 0