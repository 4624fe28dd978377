"""CONNECT tunnels carried over HTTP/2 streams, alone or multiplexed on one TCP connection."""

from __future__ import annotations

import socket
import ssl
import threading
import time
from typing import Optional

import h2.config
import h2.connection
import h2.events
import h2.exceptions
import h2.settings

DEFAULT_CONN_WINDOW = 65535
INITIAL_CONN_RECV_WINDOW = 64 << 20
INITIAL_STREAM_WINDOW = 1 << 20
MAX_CONCURRENT_STREAMS = 1000
SETTINGS_TIMEOUT = 5.0
REQUEST_TIMEOUT = 10.0
DIAL_TIMEOUT = 10.0

PACKET_HEADER_SIZE = 8
PACKET_PAYLOAD_SIZE = 1400
PACKET_DATA_SIZE = PACKET_HEADER_SIZE + PACKET_PAYLOAD_SIZE

_RECV_SIZE = 65536


class H2ConnError(Exception):
    """Raised when an HTTP/2 tunnel cannot be set up or used."""


class _Stream:
    def __init__(self, stream_id: int) -> None:
        self.id = stream_id
        self.buffer = bytearray()
        self.error: Optional[BaseException] = None
        self.closed = False
        self.responded = False
        self.connect_error: Optional[H2ConnError] = None


class _Session:
    """One HTTP/2 connection to the proxy, shared by any number of streams."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._cond = threading.Condition()
        self._streams: dict[int, _Stream] = {}
        self._closed = False
        config = h2.config.H2Configuration(client_side=True, header_encoding="utf-8")
        self._conn = h2.connection.H2Connection(config=config)
        self._conn.local_settings = h2.settings.Settings(
            client=True,
            initial_values={
                h2.settings.SettingCodes.INITIAL_WINDOW_SIZE: INITIAL_STREAM_WINDOW,
                h2.settings.SettingCodes.MAX_CONCURRENT_STREAMS: MAX_CONCURRENT_STREAMS,
            },
        )
        try:
            self._conn.initiate_connection()
            self._flush()
            self._exchange_settings()
            with self._cond:
                self._conn.increment_flow_control_window(
                    INITIAL_CONN_RECV_WINDOW - DEFAULT_CONN_WINDOW
                )
                self._flush()
        except BaseException:
            sock.close()
            raise
        self._reader = threading.Thread(target=self._read_loop, daemon=True)
        self._reader.start()

    @classmethod
    def connect(cls, proxy_addr: str) -> "_Session":
        host, _, port = proxy_addr.rpartition(":")
        try:
            raw = socket.create_connection((host.strip("[]"), int(port)), DIAL_TIMEOUT)
        except (OSError, ValueError) as exc:
            raise H2ConnError(f"tcp dial: {exc}") from exc
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        context.set_alpn_protocols(["h2"])
        try:
            tls = context.wrap_socket(raw, server_hostname="localhost")
        except OSError as exc:
            raw.close()
            raise H2ConnError(f"tls handshake: {exc}") from exc
        negotiated = tls.selected_alpn_protocol()
        if negotiated != "h2":
            tls.close()
            raise H2ConnError(f"proxy did not negotiate h2, got {negotiated!r}")
        tls.settimeout(None)
        return cls(tls)

    def _flush(self) -> None:
        data = self._conn.data_to_send()
        if data:
            try:
                self._sock.sendall(data)
            except OSError as exc:
                raise H2ConnError(f"write: {exc}") from exc

    def _exchange_settings(self) -> None:
        got_settings = got_ack = False
        deadline = time.monotonic() + SETTINGS_TIMEOUT
        while not (got_settings and got_ack):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise H2ConnError("timeout waiting for settings exchange")
            self._sock.settimeout(remaining)
            try:
                data = self._sock.recv(_RECV_SIZE)
            except socket.timeout as exc:
                raise H2ConnError("timeout waiting for settings exchange") from exc
            except OSError as exc:
                raise H2ConnError(f"read settings: {exc}") from exc
            if not data:
                raise H2ConnError("read settings: connection closed")
            try:
                events = self._conn.receive_data(data)
            except h2.exceptions.ProtocolError as exc:
                raise H2ConnError(f"read settings: {exc}") from exc
            for event in events:
                if isinstance(event, h2.events.RemoteSettingsChanged):
                    got_settings = True
                elif isinstance(event, h2.events.SettingsAcknowledged):
                    got_ack = True
            self._flush()
        self._sock.settimeout(None)

    def _fail_all(self, error: BaseException) -> None:
        for stream in self._streams.values():
            if stream.error is None:
                stream.error = error
            if not stream.responded:
                stream.responded = True
                stream.connect_error = H2ConnError(str(error))
        self._cond.notify_all()

    def _read_loop(self) -> None:
        while True:
            try:
                data = self._sock.recv(_RECV_SIZE)
            except OSError as exc:
                with self._cond:
                    if not self._closed:
                        self._fail_all(H2ConnError(f"read: {exc}"))
                return
            with self._cond:
                if self._closed:
                    return
                if not data:
                    self._fail_all(H2ConnError("EOF"))
                    return
                try:
                    events = self._conn.receive_data(data)
                    stop = any(self._handle(event) for event in events)
                    self._flush()
                except (h2.exceptions.ProtocolError, H2ConnError) as exc:
                    self._fail_all(H2ConnError(str(exc)))
                    return
                self._cond.notify_all()
                if stop:
                    return

    def _handle(self, event: h2.events.Event) -> bool:
        """Apply one event; return True when the connection is finished."""
        if isinstance(event, h2.events.DataReceived):
            stream = self._streams.get(event.stream_id)
            if stream is None or stream.closed or stream.error is not None:
                if event.flow_controlled_length:
                    self._conn.acknowledge_received_data(
                        event.flow_controlled_length, event.stream_id
                    )
                return False
            stream.buffer += event.data
        elif isinstance(event, h2.events.ResponseReceived):
            stream = self._streams.get(event.stream_id)
            if stream is None or stream.responded:
                return False
            status = dict(event.headers).get(":status", "")
            stream.responded = True
            if status != "200":
                stream.connect_error = H2ConnError(f"proxy returned status {status}")
        elif isinstance(event, h2.events.StreamReset):
            stream = self._streams.get(event.stream_id)
            if stream is not None:
                error = H2ConnError(f"RST_STREAM: {event.error_code!s}")
                if stream.error is None:
                    stream.error = error
                if not stream.responded:
                    stream.responded = True
                    stream.connect_error = error
        elif isinstance(event, h2.events.ConnectionTerminated):
            self._fail_all(H2ConnError(f"GOAWAY: {event.error_code!s}"))
            return True
        return False

    def dial_stream(self, target_addr: str) -> _Stream:
        with self._cond:
            if self._closed:
                raise H2ConnError("session closed")
            stream_id = self._conn.get_next_available_stream_id()
            stream = _Stream(stream_id)
            self._streams[stream_id] = stream
            try:
                self._conn.send_headers(
                    stream_id,
                    [(":method", "CONNECT"), (":authority", target_addr)],
                    end_stream=False,
                )
                self._flush()
            except (h2.exceptions.ProtocolError, H2ConnError) as exc:
                del self._streams[stream_id]
                raise H2ConnError(f"write connect headers: {exc}") from exc
            answered = self._cond.wait_for(
                lambda: stream.responded or self._closed, REQUEST_TIMEOUT
            )
            failure: Optional[H2ConnError] = None
            if not answered:
                failure = H2ConnError("timeout waiting for CONNECT response")
            elif stream.connect_error is not None:
                failure = stream.connect_error
            elif self._closed:
                failure = H2ConnError("session closed")
            if failure is not None:
                self._streams.pop(stream_id, None)
                raise failure
            return stream

    def read(self, stream: _Stream, size: int) -> bytes:
        with self._cond:
            self._cond.wait_for(
                lambda: stream.buffer
                or stream.error is not None
                or stream.closed
                or self._closed
            )
            if not stream.buffer:
                if stream.error is not None:
                    raise stream.error
                if stream.closed:
                    raise H2ConnError("stream closed")
                raise H2ConnError("connection closed")
            chunk = bytes(stream.buffer[:size])
            del stream.buffer[: len(chunk)]
            try:
                self._conn.acknowledge_received_data(len(chunk), stream.id)
                self._flush()
            except (h2.exceptions.ProtocolError, H2ConnError):
                pass
            return chunk

    def write(self, stream: _Stream, data: bytes) -> int:
        view = memoryview(data)
        total = 0
        with self._cond:
            while view:
                def window() -> int:
                    try:
                        return self._conn.local_flow_control_window(stream.id)
                    except h2.exceptions.ProtocolError:
                        return 0

                self._cond.wait_for(
                    lambda: stream.closed
                    or self._closed
                    or stream.error is not None
                    or window() > 0
                )
                if stream.closed or self._closed:
                    raise H2ConnError("connection closed")
                if stream.error is not None:
                    raise stream.error
                size = min(len(view), window(), self._conn.max_outbound_frame_size)
                try:
                    self._conn.send_data(stream.id, bytes(view[:size]))
                    self._flush()
                except h2.exceptions.ProtocolError as exc:
                    raise H2ConnError(f"write: {exc}") from exc
                total += size
                view = view[size:]
        return total

    def close_stream(self, stream: _Stream) -> None:
        with self._cond:
            stream.closed = True
            self._streams.pop(stream.id, None)
            self._cond.notify_all()
            if self._closed:
                return
            try:
                self._conn.end_stream(stream.id)
                self._flush()
            except (h2.exceptions.ProtocolError, H2ConnError):
                pass

    def close(self) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()
        if self._reader is not threading.current_thread():
            self._reader.join()


class StreamConn:
    """A byte stream tunnelled through one HTTP/2 CONNECT stream."""

    def __init__(self, session: _Session, stream: _Stream, owns_session: bool) -> None:
        self._session = session
        self._stream = stream
        self._owns_session = owns_session
        self._close_lock = threading.Lock()
        self._is_closed = False

    def read(self, size: int) -> bytes:
        """Return up to size bytes, blocking until some arrive."""
        return self._session.read(self._stream, size)

    def write(self, data: bytes) -> int:
        """Send all of data, respecting flow control; return the bytes sent."""
        return self._session.write(self._stream, data)

    def close(self) -> None:
        with self._close_lock:
            if self._is_closed:
                return
            self._is_closed = True
        self._session.close_stream(self._stream)
        if self._owns_session:
            self._session.close()

    def __enter__(self) -> "StreamConn":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class MultiplexedConn:
    """One HTTP/2 connection to a proxy on which many tunnels are opened."""

    def __init__(self, proxy_addr: str) -> None:
        self._session: Optional[_Session] = _Session.connect(proxy_addr)

    @classmethod
    def _from_socket(cls, sock: socket.socket) -> "MultiplexedConn":
        mux = cls.__new__(cls)
        mux._session = _Session(sock)
        return mux

    def dial(self, target_addr: str) -> StreamConn:
        if self._session is None:
            raise H2ConnError("multiplexed connection closed")
        stream = self._session.dial_stream(target_addr)
        return StreamConn(self._session, stream, owns_session=False)

    def close(self) -> None:
        if self._session is None:
            return
        session, self._session = self._session, None
        session.close()

    def __enter__(self) -> "MultiplexedConn":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def dial(proxy_addr: str, target_addr: str) -> StreamConn:
    """Open a dedicated HTTP/2 connection and a CONNECT tunnel to target_addr."""
    session = _Session.connect(proxy_addr)
    try:
        stream = session.dial_stream(target_addr)
    except BaseException:
        session.close()
        raise
    return StreamConn(session, stream, owns_session=True)