import socket
import threading
from datetime import timedelta

import pytest

from tunnelstress import h2conn
from tunnelstress.tunnel import Tunnel, TunnelConfig, is_conn_closed, pacing


class EchoConn:
    """In-memory connection that hands back whatever is written to it."""

    def __init__(self, chunk=None, write_error=None):
        self._cond = threading.Condition()
        self._buf = bytearray()
        self._closed = False
        self._chunk = chunk
        self._write_error = write_error
        self.close_calls = 0

    def write(self, data):
        if self._write_error is not None:
            raise self._write_error
        with self._cond:
            if self._closed:
                raise RuntimeError("connection closed")
            self._buf += data
            self._cond.notify_all()
        return len(data)

    def read(self, size):
        with self._cond:
            self._cond.wait_for(lambda: self._buf or self._closed)
            if not self._buf:
                raise RuntimeError("stream closed")
            n = min(size, self._chunk or size, len(self._buf))
            out = bytes(self._buf[:n])
            del self._buf[:n]
            return out

    def close(self):
        with self._cond:
            self.close_calls += 1
            self._closed = True
            self._cond.notify_all()


def _run_for(tunnel, seconds):
    stop = threading.Event()
    timer = threading.Timer(seconds, stop.set)
    timer.start()
    try:
        tunnel.run(stop)
    finally:
        timer.cancel()


def _closed_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.mark.parametrize(
    "packets_per_sec, want_interval, want_packets",
    [
        (0, 1.0, 1),
        (0.5, 2.0, 1),
        (2000, 0.001, 2),
        (200000, 0.0001, 20),
    ],
    ids=["zero", "slow", "moderate", "high"],
)
def test_pacing(packets_per_sec, want_interval, want_packets):
    interval, packets = pacing(packets_per_sec)
    assert interval == pytest.approx(want_interval)
    assert packets == want_packets


def test_pacing_below_threshold_sends_one_per_tick():
    interval, packets = pacing(250)
    assert packets == 1
    assert interval == pytest.approx(1 / 250)


@pytest.mark.parametrize("chunk", [None, 1000])
def test_run_measures_echoed_packets(chunk):
    conn = EchoConn(chunk=chunk)
    tunnel = Tunnel(TunnelConfig(1, "proxy:1", "target:2", 1.0, conn=conn))
    _run_for(tunnel, 0.4)

    snap = tunnel.stats.snapshot()
    assert snap.samples > 0
    assert snap.errors == 0
    assert snap.bytes_sent == snap.bytes_recv
    assert snap.bytes_sent % h2conn.PACKET_DATA_SIZE == 0
    assert snap.samples * h2conn.PACKET_DATA_SIZE == snap.bytes_recv
    assert snap.start is not None and snap.end >= snap.start
    assert conn.close_calls == 1


def test_run_uses_tunnel_id():
    tunnel = Tunnel(TunnelConfig(4, "p", "t", 2.0))
    assert tunnel.id == 4


def test_run_reports_send_error():
    conn = EchoConn(write_error=OSError("boom"))
    tunnel = Tunnel(TunnelConfig(7, "p", "t", 100.0, conn=conn))
    with pytest.raises(ConnectionError, match="tunnel 7 send: boom"):
        _run_for(tunnel, 0.2)
    assert tunnel.stats.snapshot().errors == 1


def test_run_reports_dial_error():
    addr = f"127.0.0.1:{_closed_port()}"
    tunnel = Tunnel(TunnelConfig(3, addr, "127.0.0.1:1", 1.0))
    with pytest.raises(ConnectionError, match="tunnel 3 dial"):
        tunnel.run(threading.Event())
    snap = tunnel.stats.snapshot()
    assert snap.errors == 1
    assert snap.start is not None and snap.end >= snap.start


def test_record_rtt_for_timed_echo():
    conn = EchoConn()
    tunnel = Tunnel(TunnelConfig(2, "p", "t", 1.0, conn=conn))
    _run_for(tunnel, 0.3)
    snap = tunnel.stats.snapshot()
    assert snap.max_micros < timedelta(seconds=1) // timedelta(microseconds=1)


@pytest.mark.parametrize(
    "err, expected",
    [
        (None, True),
        (TimeoutError(), True),
        (socket.timeout(), True),
        (RuntimeError("stream closed"), True),
        (RuntimeError("connection closed"), True),
        (RuntimeError("H3 error (0x100)"), True),
        (RuntimeError("H3 error ("), False),
        (RuntimeError("boom"), False),
    ],
)
def test_is_conn_closed(err, expected):
    assert is_conn_closed(err) is expected