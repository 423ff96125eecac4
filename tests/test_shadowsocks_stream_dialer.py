import io
import socket
import threading
import time

import pytest

from tunnelkit.shadowsocks.cipher import CHACHA20IETFPOLY1305, new_encryption_key
from tunnelkit.shadowsocks.salt import PrefixSaltGenerator
from tunnelkit.shadowsocks.stream import Reader, Writer
from tunnelkit.shadowsocks.stream_dialer import StreamDialer, encode_target_address
from tunnelkit.stream import FuncStreamEndpoint, TCPEndpoint, TCPStreamConn

TARGET = "test.local:1111"


@pytest.fixture
def key():
    return new_encryption_key(CHACHA20IETFPOLY1305, "secret")


def _read_exactly(reader, size):
    buf = bytearray()
    while len(buf) < size:
        chunk = reader.read(size - len(buf))
        if not chunk:
            break
        buf += chunk
    return bytes(buf)


def _read_socks_address(reader):
    atyp = _read_exactly(reader, 1)[0]
    if atyp == 1:
        host = socket.inet_ntop(socket.AF_INET, _read_exactly(reader, 4))
    elif atyp == 4:
        host = "[" + socket.inet_ntop(socket.AF_INET6, _read_exactly(reader, 16)) + "]"
    else:
        length = _read_exactly(reader, 1)[0]
        host = _read_exactly(reader, length).decode()
    port = int.from_bytes(_read_exactly(reader, 2), "big")
    return f"{host}:{port}"


def _start_echo_proxy(key):
    server = socket.create_server(("127.0.0.1", 0))
    server.settimeout(5)
    result = {}

    def run():
        try:
            sock, _ = server.accept()
        except OSError as exc:
            result["error"] = exc
            return
        finally:
            server.close()
        sock.settimeout(5)
        with TCPStreamConn(sock) as conn:
            reader = Reader(conn, key)
            writer = Writer(conn, key)
            try:
                result["address"] = _read_socks_address(reader)
                writer.read_from(reader)
            except (OSError, EOFError) as exc:
                result["error"] = exc

    host, port = server.getsockname()[:2]
    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return f"{host}:{port}", result, thread


def _start_recording_server():
    """Accept one connection and record every byte received until EOF."""
    server = socket.create_server(("127.0.0.1", 0))
    server.settimeout(5)
    received = {}

    def run():
        try:
            sock, _ = server.accept()
        finally:
            server.close()
        sock.settimeout(5)
        with sock:
            buf = bytearray()
            while True:
                chunk = sock.recv(4096)
                if not chunk:
                    break
                buf += chunk
            received["data"] = bytes(buf)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    host, port = server.getsockname()[:2]
    return f"{host}:{port}", received, thread


class _FakeConn:
    def __init__(self):
        self.writes = []
        self.closed = False
        self.write_closed = False

    def read(self, size):
        return b""

    def write(self, data):
        self.writes.append(bytes(data))
        return len(data)

    def close_read(self):
        pass

    def close_write(self):
        self.write_closed = True

    def close(self):
        self.closed = True


def test_encode_target_address_domain():
    assert encode_target_address(TARGET) == b"\x03\x0atest.local\x04\x57"


def test_encode_target_address_ipv4():
    assert encode_target_address("8.8.8.8:853") == bytes([1, 8, 8, 8, 8, 0x3, 0x55])


def test_encode_target_address_ipv6():
    assert encode_target_address("[2001:4860:4860::8888]:853") == bytes(
        [0x04, 0x20, 0x01, 0x48, 0x60, 0x48, 0x60, 0, 0, 0, 0, 0, 0, 0, 0, 0x88, 0x88, 0x3, 0x55]
    )


@pytest.mark.parametrize(
    "address", ["noport", "dns.google:dns", "host:70000", "1234567890" * 26 + ":53"]
)
def test_encode_target_address_invalid(address):
    with pytest.raises(ValueError):
        encode_target_address(address)


def test_new_stream_dialer_rejects_none(key):
    endpoint = FuncStreamEndpoint(lambda: _FakeConn())
    with pytest.raises(ValueError):
        StreamDialer(None, key)
    with pytest.raises(ValueError):
        StreamDialer(endpoint, None)


def test_invalid_target_does_not_connect(key):
    calls = []
    dialer = StreamDialer(FuncStreamEndpoint(lambda: calls.append(1)), key)
    with pytest.raises(ValueError):
        dialer.dial_stream("noport")
    assert calls == []


def test_endpoint_error_propagates(key):
    def fail():
        raise ConnectionRefusedError("refused")

    dialer = StreamDialer(FuncStreamEndpoint(fail), key)
    with pytest.raises(ConnectionRefusedError):
        dialer.dial_stream(TARGET)


def test_header_and_payload_sent_together(key):
    fake = _FakeConn()
    dialer = StreamDialer(FuncStreamEndpoint(lambda: fake), key)
    dialer.client_data_wait = 5
    conn = dialer.dial_stream(TARGET)
    assert fake.writes == []
    assert conn.write(b"hi") == 2
    assert len(fake.writes) == 1
    decoded = Reader(io.BytesIO(fake.writes[0]), key).read(-1)
    assert decoded == b"\x03\x0atest.local\x04\x57hi"
    conn.close_write()
    assert fake.write_closed


def test_dial_echo(key):
    address, result, thread = _start_echo_proxy(key)
    dialer = StreamDialer(TCPEndpoint(address, timeout=5), key)
    conn = dialer.dial_stream(TARGET)
    payload = bytes(i % 256 for i in range(1024))
    assert conn.write(payload) == 1024
    assert _read_exactly(conn, 1024) == payload
    conn.close()
    thread.join(5)
    assert result.get("address") == TARGET


def test_dial_no_payload(key):
    address, result, thread = _start_echo_proxy(key)
    dialer = StreamDialer(TCPEndpoint(address, timeout=5), key)
    dialer.client_data_wait = 0
    conn = dialer.dial_stream(TARGET)
    time.sleep(0.1)
    conn.close()
    thread.join(5)
    assert result.get("address") == TARGET


def test_dial_fast_close(key):
    address, received, thread = _start_recording_server()
    dialer = StreamDialer(TCPEndpoint(address, timeout=5), key)
    dialer.client_data_wait = 0.1
    conn = dialer.dial_stream(TARGET)
    time.sleep(0.001)
    conn.close()
    thread.join(5)
    assert received.get("data") == b""
    assert Reader(io.BytesIO(received["data"]), key).read(10) == b""


def test_dial_with_salt_prefix(key):
    prefix = b"test prefix"
    address, received, thread = _start_recording_server()
    dialer = StreamDialer(TCPEndpoint(address, timeout=5), key)
    dialer.salt_generator = PrefixSaltGenerator(prefix)
    conn = dialer.dial_stream(TARGET)
    assert conn.write(b"") == 0
    conn.close()
    thread.join(5)
    data = received.get("data", b"")
    assert data[: len(prefix)] == prefix
    assert Reader(io.BytesIO(data), key).read(-1) == encode_target_address(TARGET)