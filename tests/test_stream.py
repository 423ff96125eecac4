import io
import socket
import threading

import pytest

from tunnelkit.stream import (
    DuplexConnAdaptor,
    FuncStreamDialer,
    FuncStreamEndpoint,
    StreamDialerEndpoint,
    TCPDialer,
    TCPEndpoint,
    wrap_conn,
)


def _read_all(conn):
    data = b""
    while chunk := conn.read(1024):
        data += chunk
    return data


class CountWriter:
    def __init__(self):
        self.write_calls = 0
        self.read_from_calls = 0

    def write(self, data):
        self.write_calls += 1
        return len(data)

    def read_from(self, source):
        self.read_from_calls += 1
        return 0


class PlainWriter:
    def __init__(self):
        self.data = b""

    def write(self, data):
        self.data += data
        return len(data)


class RecordingConn:
    def __init__(self):
        self.calls = []

    def close_read(self):
        self.calls.append("close_read")

    def close_write(self):
        self.calls.append("close_write")

    def close(self):
        self.calls.append("close")


def test_func_stream_endpoint_returns_result():
    expected = object()
    endpoint = FuncStreamEndpoint(lambda: expected)
    assert endpoint.connect_stream() is expected


def test_func_stream_endpoint_propagates_error():
    def fail():
        raise ConnectionError("fake error")

    with pytest.raises(ConnectionError, match="fake error"):
        FuncStreamEndpoint(fail).connect_stream()


def test_func_stream_dialer_passes_address():
    seen = []
    expected = object()

    def dial(address):
        seen.append(address)
        return expected

    assert FuncStreamDialer(dial).dial_stream("unused") is expected
    assert seen == ["unused"]


def test_func_stream_dialer_propagates_error():
    def fail(address):
        raise ConnectionError("fake error")

    with pytest.raises(ConnectionError, match="fake error"):
        FuncStreamDialer(fail).dial_stream("unused")


def test_stream_dialer_endpoint_uses_address():
    seen = []
    dialer = FuncStreamDialer(lambda address: seen.append(address) or "conn")
    endpoint = StreamDialerEndpoint(dialer, "example.com:443")
    assert endpoint.connect_stream() == "conn"
    assert seen == ["example.com:443"]


def test_tcp_dialer_ipv4_exchange():
    with socket.create_server(("127.0.0.1", 0)) as listener:
        port = listener.getsockname()[1]
        address = f"127.0.0.1:{port}"
        received = {}

        def serve():
            conn, _ = listener.accept()
            with conn:
                data = b""
                while chunk := conn.recv(1024):
                    data += chunk
                received["request"] = data
                conn.sendall(b"Response")
                conn.shutdown(socket.SHUT_WR)

        thread = threading.Thread(target=serve)
        thread.start()
        with TCPDialer(timeout=5).dial_stream(address) as conn:
            assert conn.remote_address() == address
            assert conn.local_address().startswith("127.0.0.1:")
            assert conn.write(b"Request") == 7
            conn.close_write()
            response = _read_all(conn)
        thread.join(5)
    assert response == b"Response"
    assert received["request"] == b"Request"


def test_tcp_endpoint_connects_to_address():
    with socket.create_server(("127.0.0.1", 0)) as listener:
        address = f"127.0.0.1:{listener.getsockname()[1]}"
        conn = TCPEndpoint(address, timeout=5).connect_stream()
        try:
            assert conn.remote_address() == address
        finally:
            conn.close()


@pytest.mark.parametrize("address", ["noport", "host:port", "[::1", "a:b:c", "host:70000"])
def test_tcp_dialer_rejects_bad_address(address):
    with pytest.raises(ValueError):
        TCPDialer().dial_stream(address)


def test_duplex_adaptor_prefers_read_from():
    writer = CountWriter()
    conn = wrap_conn(None, None, writer)
    n = conn.read_from(io.BytesIO(b"data"))
    assert writer.read_from_calls == 1
    assert writer.write_calls == 0
    assert n == 0


def test_duplex_adaptor_read_from_falls_back_to_copy():
    writer = PlainWriter()
    conn = wrap_conn(None, None, writer)
    assert conn.read_from(io.BytesIO(b"payload")) == 7
    assert writer.data == b"payload"


def test_duplex_adaptor_routes_reads_and_writes():
    writer = PlainWriter()
    conn = wrap_conn(RecordingConn(), io.BytesIO(b"incoming"), writer)
    assert conn.read(3) == b"inc"
    assert conn.write(b"out") == 3
    assert writer.data == b"out"


def test_duplex_adaptor_write_to_copies_reader():
    destination = PlainWriter()
    conn = wrap_conn(RecordingConn(), io.BytesIO(b"all of it"), None)
    assert conn.write_to(destination) == 9
    assert destination.data == b"all of it"


def test_duplex_adaptor_closes_through_original():
    inner = RecordingConn()
    conn = wrap_conn(inner, None, None)
    conn.close_read()
    conn.close_write()
    conn.close()
    assert inner.calls == ["close_read", "close_write", "close"]


def test_wrap_conn_avoids_nesting():
    inner = RecordingConn()
    first = wrap_conn(inner, None, None)
    second = wrap_conn(first, None, None)
    assert isinstance(second, DuplexConnAdaptor)
    assert second.conn is inner