import socket
import threading
import time

import pytest

from tunnelstress.echoserver import handle_connection, main, serve


def _free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _read_all(sock):
    chunks = []
    while True:
        data = sock.recv(4096)
        if not data:
            return b"".join(chunks)
        chunks.append(data)


def _connect(port, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        try:
            return socket.create_connection(("127.0.0.1", port), timeout=2)
        except OSError:
            if time.monotonic() > deadline:
                raise
            time.sleep(0.05)


def test_handle_connection_echoes_until_eof():
    client, server = socket.socketpair()
    with client:
        client.sendall(b"hello")
        client.shutdown(socket.SHUT_WR)
        result = handle_connection(server, 0)
        assert result is None
        assert server.fileno() == -1
        assert _read_all(client) == b"hello"


def test_handle_connection_applies_delay():
    client, server = socket.socketpair()
    with client:
        client.sendall(b"x")
        client.shutdown(socket.SHUT_WR)
        started = time.monotonic()
        result = handle_connection(server, 0.2)
        elapsed = time.monotonic() - started
        assert result is None
        assert server.fileno() == -1
        assert _read_all(client) == b"x"
        assert elapsed >= 0.2


def test_serve_echoes_and_stops(capsys):
    port = _free_port()
    addr = f"127.0.0.1:{port}"
    stop = threading.Event()
    received = []

    def client_side():
        try:
            with _connect(port) as client:
                client.sendall(b"ping")
                received.append(client.recv(16))
        except OSError:
            pass
        finally:
            stop.set()

    safety = threading.Timer(10, stop.set)
    safety.start()
    worker = threading.Thread(target=client_side)
    worker.start()
    try:
        serve(addr, 0.0, stop)
    finally:
        stop.set()
        safety.cancel()
        worker.join(3)
    assert received == [b"ping"]
    assert f"echo server listening on {addr} (delay=0s)" in capsys.readouterr().out


def test_serve_rejects_address_without_port():
    with pytest.raises(ValueError):
        serve("localhost", 0.0, threading.Event())


def test_main_reports_listen_failure(capsys):
    assert main(["--addr", "localhost"]) == 1
    assert "listen:" in capsys.readouterr().err


def test_main_rejects_bad_delay():
    with pytest.raises(SystemExit) as info:
        main(["--delay", "soon"])
    assert info.value.code == 2