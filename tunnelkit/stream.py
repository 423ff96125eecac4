"""Stream connections, endpoints and dialers."""

from __future__ import annotations

import socket
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

_COPY_CHUNK_SIZE = 32 * 1024


def _split_host_port(address: str) -> tuple[str, int]:
    """Split "host:port" (with "[v6]:port" for IPv6) into host and numeric port."""
    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise ValueError(f"address {address}: missing ']' in address")
        host = address[1:end]
        rest = address[end + 1:]
        if not rest.startswith(":"):
            raise ValueError(f"address {address}: missing port in address")
        port_text = rest[1:]
    else:
        if ":" not in address:
            raise ValueError(f"address {address}: missing port in address")
        host, port_text = address.rsplit(":", 1)
        if ":" in host:
            raise ValueError(f"address {address}: too many colons in address")
    if not port_text.isdigit():
        raise ValueError(f"address {address}: invalid port {port_text!r}")
    port = int(port_text)
    if port > 0xFFFF:
        raise ValueError(f"address {address}: port {port} out of range")
    return host, port


def _join_host_port(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _copy(destination: Any, source: Any) -> int:
    """Copy everything from source to destination, preferring write_to then read_from."""
    write_to = getattr(source, "write_to", None)
    if callable(write_to):
        return write_to(destination)
    read_from = getattr(destination, "read_from", None)
    if callable(read_from):
        return read_from(source)
    written = 0
    while True:
        chunk = source.read(_COPY_CHUNK_SIZE)
        if not chunk:
            return written
        view = memoryview(chunk)
        while view:
            n = destination.write(view.tobytes())
            written += n
            view = view[n:]


class StreamConn(ABC):
    """A bidirectional byte stream whose read and write ends can be closed separately."""

    @abstractmethod
    def read(self, size: int) -> bytes:
        """Read up to size bytes; an empty result means end of stream."""

    @abstractmethod
    def write(self, data: bytes) -> int:
        """Write data and return the number of bytes written."""

    @abstractmethod
    def close_read(self) -> None:
        """Close the read end of the connection."""

    @abstractmethod
    def close_write(self) -> None:
        """Close the write end, signalling end of stream to the peer."""

    @abstractmethod
    def close(self) -> None:
        """Close the whole connection."""

    def __enter__(self) -> "StreamConn":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class TCPStreamConn(StreamConn):
    """A StreamConn over a connected TCP socket."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock

    def read(self, size: int) -> bytes:
        return self._sock.recv(size)

    def write(self, data: bytes) -> int:
        self._sock.sendall(data)
        return len(data)

    def close_read(self) -> None:
        self._sock.shutdown(socket.SHUT_RD)

    def close_write(self) -> None:
        self._sock.shutdown(socket.SHUT_WR)

    def close(self) -> None:
        self._sock.close()

    def remote_address(self) -> str:
        host, port = self._sock.getpeername()[:2]
        return _join_host_port(host, port)

    def local_address(self) -> str:
        host, port = self._sock.getsockname()[:2]
        return _join_host_port(host, port)


class DuplexConnAdaptor(StreamConn):
    """A StreamConn reading and writing through replacement objects, closing through the original."""

    def __init__(self, conn: Any, reader: Any, writer: Any) -> None:
        self.conn = conn
        self.reader = reader
        self.writer = writer

    def read(self, size: int) -> bytes:
        return self.reader.read(size)

    def write(self, data: bytes) -> int:
        return self.writer.write(data)

    def read_from(self, source: Any) -> int:
        read_from = getattr(self.writer, "read_from", None)
        if callable(read_from):
            return read_from(source)
        return _copy(self.writer, source)

    def write_to(self, destination: Any) -> int:
        return _copy(destination, self.reader)

    def close_read(self) -> None:
        self.conn.close_read()

    def close_write(self) -> None:
        self.conn.close_write()

    def close(self) -> None:
        self.conn.close()

    def __getattr__(self, name: str) -> Any:
        conn = self.__dict__.get("conn")
        if conn is None:
            raise AttributeError(name)
        return getattr(conn, name)


def wrap_conn(conn: Any, reader: Any, writer: Any) -> DuplexConnAdaptor:
    """Wrap conn with a new reader and writer, keeping its close_read and close_write."""
    if isinstance(conn, DuplexConnAdaptor):
        conn = conn.conn
    return DuplexConnAdaptor(conn, reader, writer)


@dataclass
class TCPEndpoint:
    """Connects over TCP to a fixed "host:port" address."""

    address: str
    timeout: Optional[float] = None

    def connect_stream(self) -> TCPStreamConn:
        return TCPDialer(self.timeout).dial_stream(self.address)


@dataclass
class FuncStreamEndpoint:
    """An endpoint that connects by calling a function."""

    func: Callable[[], Any]

    def connect_stream(self) -> Any:
        return self.func()


@dataclass
class StreamDialerEndpoint:
    """An endpoint that connects to a fixed address through a dialer."""

    dialer: Any
    address: str

    def connect_stream(self) -> Any:
        return self.dialer.dial_stream(self.address)


@dataclass
class TCPDialer:
    """Dials TCP connections to "host:port" addresses."""

    timeout: Optional[float] = None

    def dial_stream(self, address: str) -> TCPStreamConn:
        host, port = _split_host_port(address)
        sock = socket.create_connection((host, port), timeout=self.timeout)
        return TCPStreamConn(sock)


@dataclass
class FuncStreamDialer:
    """A dialer that dials by calling a function with the address."""

    func: Callable[[str], Any]

    def dial_stream(self, address: str) -> Any:
        return self.func(address)