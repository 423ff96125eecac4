"""Splitting an outgoing stream into two writes at a fixed byte offset."""

from __future__ import annotations

from typing import Any

from tunnelkit.stream import DuplexConnAdaptor, wrap_conn

_COPY_CHUNK_SIZE = 32 * 1024


class _PrefixThenRest:
    """Reads at most limit bytes per call until limit is used up, then reads freely."""

    def __init__(self, source: Any, limit: int) -> None:
        self._source = source
        self._remaining = limit

    def read(self, size: int = -1) -> bytes:
        if self._remaining > 0:
            want = self._remaining if size < 0 else min(size, self._remaining)
            data = self._source.read(want)
            if data:
                self._remaining -= len(data)
                return data
            self._remaining = 0
        return self._source.read(size)


class SplitWriter:
    """A writer that makes sure the byte stream is split after prefix_bytes bytes.

    With prefix_bytes = 3, a write of b"0123456789" reaches the inner writer as
    b"012" and b"3456789".
    """

    def __init__(self, writer: Any, prefix_bytes: int) -> None:
        self.writer = writer
        self.prefix_bytes = prefix_bytes

    def _write_inner(self, data: bytes) -> int:
        n = self.writer.write(data)
        return len(data) if n is None else n

    def write(self, data: bytes) -> int:
        data = bytes(data)
        written = 0
        if 0 < self.prefix_bytes < len(data):
            n = self._write_inner(data[: self.prefix_bytes])
            self.prefix_bytes -= n
            written = n
            data = data[n:]
        n = self._write_inner(data)
        written += n
        self.prefix_bytes -= n
        return written

    def read_from(self, source: Any) -> int:
        """Copy everything from source, splitting at the prefix boundary."""
        inner_read_from = getattr(self.writer, "read_from", None)
        if callable(inner_read_from):
            written = inner_read_from(_PrefixThenRest(source, self.prefix_bytes))
            self.prefix_bytes -= written
            return written
        written = 0
        while True:
            chunk = source.read(_COPY_CHUNK_SIZE)
            if not chunk:
                return written
            written += self.write(chunk)


class SplitStreamDialer:
    """Dials through another dialer and splits each outgoing stream after prefix_bytes bytes."""

    def __init__(self, dialer: Any, prefix_bytes: int) -> None:
        if dialer is None:
            raise ValueError("argument dialer must not be None")
        self._dialer = dialer
        self.prefix_bytes = prefix_bytes

    def dial_stream(self, remote_address: str) -> DuplexConnAdaptor:
        inner = self._dialer.dial_stream(remote_address)
        return wrap_conn(inner, inner, SplitWriter(inner, self.prefix_bytes))