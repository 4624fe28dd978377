"""One CONNECT tunnel that paces packets to an echo target and measures their round trips."""

from __future__ import annotations

import contextlib
import random
import struct
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from tunnelstress import h2conn
from tunnelstress.stats import Stats

MAX_RTT_ENTRIES = 65536
_SEQ_MASK = 0xFFFFFFFF
_SEQ = struct.Struct(">I")
_BITS_PER_MEGABIT_IN_BYTES = 125000


class _Conn(Protocol):
    def read(self, size: int) -> bytes: ...

    def write(self, data: bytes) -> int: ...

    def close(self) -> None: ...


@dataclass
class TunnelConfig:
    """Where a tunnel connects and how fast it sends; conn reuses an open tunnel."""

    id: int
    proxy_addr: str
    target_addr: str
    rate_mbps: float
    conn: Optional[_Conn] = None


def pacing(packets_per_sec: float) -> tuple[float, float]:
    """Return the tick interval in seconds and the packets due per tick."""
    if packets_per_sec <= 0:
        return 1.0, 1.0
    if packets_per_sec < 1000:
        return int(1e9 / packets_per_sec) / 1e9, 1.0
    interval = 0.0001 if packets_per_sec > 100000 else 0.001
    return interval, packets_per_sec * interval


def is_conn_closed(err: Optional[BaseException]) -> bool:
    """Tell whether an error only reports that the connection was shut down."""
    if err is None:
        return True
    if isinstance(err, TimeoutError):
        return True
    text = str(err)
    if text in ("stream closed", "connection closed"):
        return True
    return len(text) > 10 and text.startswith("H3 error (")


class _SentLog:
    """Ring of send times keyed by sequence number."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._seqs = [0] * MAX_RTT_ENTRIES
        self._times = [0] * MAX_RTT_ENTRIES

    def record(self, seq: int, now_ns: int) -> None:
        idx = seq & (MAX_RTT_ENTRIES - 1)
        with self._lock:
            self._times[idx] = now_ns
            self._seqs[idx] = seq + 1

    def claim(self, seq: int) -> Optional[int]:
        """Return the send time of seq once; None if unknown or already claimed."""
        idx = seq & (MAX_RTT_ENTRIES - 1)
        with self._lock:
            if self._seqs[idx] != seq + 1 or self._times[idx] == 0:
                return None
            self._seqs[idx] = 0
            return self._times[idx]


class Tunnel:
    """Sends numbered packets at a fixed rate and times their echoes."""

    def __init__(self, config: TunnelConfig) -> None:
        self.id = config.id
        self.config = config
        self.stats = Stats()

    def run(self, stop_event: threading.Event) -> None:
        """Pump traffic until stop_event is set; raise ConnectionError on failure."""
        self.stats.mark_start(datetime.now())
        try:
            self._run(stop_event)
        finally:
            self.stats.mark_end(datetime.now())

    def _connect(self) -> _Conn:
        if self.config.conn is not None:
            return self.config.conn
        try:
            return h2conn.dial(self.config.proxy_addr, self.config.target_addr)
        except Exception as exc:
            self.stats.record_error()
            raise ConnectionError(f"tunnel {self.id} dial: {exc}") from exc

    def _run(self, stop_event: threading.Event) -> None:
        conn = self._connect()
        packet_size = h2conn.PACKET_DATA_SIZE
        header_size = h2conn.PACKET_HEADER_SIZE

        rng = random.Random(self.id * 1234567 + 1)
        packet = bytearray(header_size) + bytes(
            rng.randrange(256) for _ in range(packet_size - header_size)
        )

        packets_per_sec = (
            self.config.rate_mbps * _BITS_PER_MEGABIT_IN_BYTES / packet_size
        )
        interval, per_tick = pacing(packets_per_sec)
        sent = _SentLog()
        failures: dict[str, BaseException] = {}
        stats = self.stats

        def send() -> None:
            seq = 0
            due = 0.0
            next_tick = time.monotonic()
            while True:
                next_tick = max(next_tick + interval, time.monotonic())
                if stop_event.wait(max(0.0, next_tick - time.monotonic())):
                    return
                due += per_tick
                count = int(due)
                if count == 0:
                    continue
                due -= count
                for _ in range(count):
                    if stop_event.is_set():
                        return
                    _SEQ.pack_into(packet, 0, seq)
                    sent.record(seq, time.monotonic_ns())
                    seq = (seq + 1) & _SEQ_MASK
                    try:
                        n = conn.write(bytes(packet))
                    except Exception as exc:
                        failures["send"] = exc
                        return
                    if n > 0:
                        stats.add_sent(n)

        def process(pkt: bytes) -> None:
            (rcv_seq,) = _SEQ.unpack_from(pkt)
            sent_at = sent.claim(rcv_seq)
            if sent_at is not None:
                elapsed = time.monotonic_ns() - sent_at
                stats.record_rtt(timedelta(microseconds=elapsed // 1000))

        def receive() -> None:
            pending = bytearray()
            while True:
                try:
                    chunk = conn.read(packet_size * 32)
                except Exception as exc:
                    failures["recv"] = exc
                    return
                if not chunk:
                    failures["recv"] = EOFError("EOF")
                    return
                stats.add_recv(len(chunk))
                pending += chunk
                while len(pending) >= packet_size:
                    process(bytes(pending[:packet_size]))
                    del pending[:packet_size]

        sender = threading.Thread(target=send, daemon=True)
        receiver = threading.Thread(target=receive, daemon=True)
        sender.start()
        receiver.start()

        stop_event.wait()
        with contextlib.suppress(Exception):
            conn.close()
        sender.join()
        receiver.join()

        for direction in ("send", "recv"):
            err = failures.get(direction)
            if err is not None and not is_conn_closed(err):
                self.stats.record_error()
                raise ConnectionError(f"tunnel {self.id} {direction}: {err}") from err