import socket
import threading

import h2.config
import h2.connection
import h2.events
import pytest

from tunnelstress.h2conn import (
    PACKET_DATA_SIZE,
    H2ConnError,
    MultiplexedConn,
    dial,
)


def _proxy(sock):
    """Minimal CONNECT proxy that echoes data; refuses the authority 'denied:1'."""
    config = h2.config.H2Configuration(client_side=False, header_encoding="utf-8")
    conn = h2.connection.H2Connection(config=config)
    conn.initiate_connection()
    sock.sendall(conn.data_to_send())
    try:
        while True:
            data = sock.recv(65536)
            if not data:
                return
            for event in conn.receive_data(data):
                if isinstance(event, h2.events.RequestReceived):
                    authority = dict(event.headers).get(":authority")
                    status = "403" if authority == "denied:1" else "200"
                    conn.send_headers(event.stream_id, [(":status", status)])
                elif isinstance(event, h2.events.DataReceived):
                    if event.data:
                        conn.send_data(event.stream_id, event.data)
                    conn.acknowledge_received_data(
                        event.flow_controlled_length, event.stream_id
                    )
            sock.sendall(conn.data_to_send())
    except Exception:
        return


@pytest.fixture
def mux():
    client, server = socket.socketpair()
    thread = threading.Thread(target=_proxy, args=(server,), daemon=True)
    thread.start()
    m = MultiplexedConn._from_socket(client)
    yield m
    m.close()
    server.close()


def _read_exactly(conn, n):
    out = b""
    while len(out) < n:
        out += conn.read(n - len(out))
    return out


def test_echo_round_trip(mux):
    conn = mux.dial("127.0.0.1:8080")
    assert conn.write(b"hello") == 5
    assert _read_exactly(conn, 5) == b"hello"


def test_large_write_is_split_and_echoed(mux):
    conn = mux.dial("127.0.0.1:8080")
    payload = bytes(range(256)) * 200
    assert conn.write(payload) == len(payload)
    assert _read_exactly(conn, len(payload)) == payload


def test_streams_are_independent(mux):
    a = mux.dial("127.0.0.1:8080")
    b = mux.dial("127.0.0.1:8080")
    a.write(b"aaaa")
    b.write(b"bb")
    assert _read_exactly(b, 2) == b"bb"
    assert _read_exactly(a, 4) == b"aaaa"


def test_non_200_status_is_rejected(mux):
    with pytest.raises(H2ConnError, match="proxy returned status 403"):
        mux.dial("denied:1")


def test_closed_stream_read_and_write(mux):
    conn = mux.dial("127.0.0.1:8080")
    conn.close()
    with pytest.raises(H2ConnError, match="stream closed"):
        conn.read(10)
    with pytest.raises(H2ConnError, match="connection closed"):
        conn.write(b"x")


def test_dial_after_mux_close(mux):
    mux.close()
    with pytest.raises(H2ConnError, match="multiplexed connection closed"):
        mux.dial("127.0.0.1:8080")


def test_dial_refused():
    listener = socket.socket()
    listener.bind(("127.0.0.1", 0))
    port = listener.getsockname()[1]
    listener.close()
    with pytest.raises(H2ConnError, match="tcp dial"):
        dial(f"127.0.0.1:{port}", "127.0.0.1:8080")


def test_full_packet_round_trip(mux):
    assert PACKET_DATA_SIZE == 1408
    conn = mux.dial("127.0.0.1:8080")
    packet = bytes(i % 251 for i in range(PACKET_DATA_SIZE))
    assert conn.write(packet) == PACKET_DATA_SIZE
    assert _read_exactly(conn, PACKET_DATA_SIZE) == packet