"""Shadowsocks AEAD stream encryption (TCP framing)."""

from __future__ import annotations

import io
import threading
from typing import Any, Optional

from tunnelkit.shadowsocks.cipher import AEAD, EncryptionKey
from tunnelkit.shadowsocks.salt import DEFAULT_SALT_GENERATOR, SaltGenerator

# Maximum payload size of one chunk.
PAYLOAD_SIZE_MASK = 0x3FFF


class _NonceCounter:
    """A little-endian counter used as the AEAD nonce, wrapping on overflow."""

    def __init__(self, size: int) -> None:
        self._size = size
        self._value = 0
        self._modulus = 1 << (8 * size)

    def next(self) -> bytes:
        nonce = self._value.to_bytes(self._size, "little")
        self._value = (self._value + 1) % self._modulus
        return nonce


class Writer:
    """Encrypts data onto an inner writer using the Shadowsocks stream protocol.

    lazy_write queues data (such as a header) that is sent with the next write or
    on flush.  Every method except flush must be called from a single thread.
    """

    def __init__(
        self,
        writer: Any,
        key: EncryptionKey,
        salt_generator: Optional[SaltGenerator] = None,
    ) -> None:
        self._writer = writer
        self._key = key
        # May be replaced before the first write.
        self.salt_generator: SaltGenerator = salt_generator or DEFAULT_SALT_GENERATOR
        self._lock = threading.Lock()
        self._need_flush = False
        self._pending = bytearray()
        self._aead: Optional[AEAD] = None
        self._salt = b""
        self._salt_sent = False
        self._counter: Optional[_NonceCounter] = None

    def _init(self) -> None:
        if self._aead is not None:
            return
        salt = self.salt_generator.get_salt(self._key.salt_size())
        self._aead = self._key.new_aead(salt)
        self._salt = bytes(salt)
        self._counter = _NonceCounter(self._key.cipher.nonce_size)

    def _encrypt(self, plaintext: bytes) -> bytes:
        assert self._aead is not None and self._counter is not None
        return self._aead.encrypt(self._counter.next(), plaintext, None)

    def _enqueue(self, data: memoryview) -> int:
        room = PAYLOAD_SIZE_MASK - len(self._pending)
        taken = min(room, len(data))
        self._pending += data[:taken]
        return taken

    def _enqueue_all(self, data: bytes) -> None:
        view = memoryview(data)
        while True:
            view = view[self._enqueue(view):]
            if not view:
                return
            self._flush()

    def _flush(self) -> None:
        if not self._pending:
            return
        size_block = self._encrypt(len(self._pending).to_bytes(2, "big"))
        payload_block = self._encrypt(bytes(self._pending))
        # The salt goes out with the first chunk to save a packet.
        prefix = b"" if self._salt_sent else self._salt
        self._salt_sent = True
        self._pending.clear()
        self._writer.write(prefix + size_block + payload_block)

    def write(self, data: bytes) -> int:
        """Encrypt and send data, together with anything queued by lazy_write."""
        return self.read_from(io.BytesIO(bytes(data)))

    def lazy_write(self, data: bytes) -> int:
        """Queue data to be sent with the next write, on flush, or when the buffer fills."""
        self._init()
        with self._lock:
            self._enqueue_all(bytes(data))
            self._need_flush = True
        return len(data)

    def flush(self) -> None:
        """Send data queued by lazy_write, if any. Safe to call from any thread."""
        with self._lock:
            if self._need_flush:
                self._flush()

    def read_from(self, source: Any) -> int:
        """Copy everything from source until end of stream; return the byte count."""
        self._init()
        written = 0
        with self._lock:
            need_flush = self._need_flush
        if need_flush:
            # The read happens outside the lock so that flush can run concurrently.
            chunk = b""
            try:
                chunk = source.read(PAYLOAD_SIZE_MASK) or b""
            finally:
                with self._lock:
                    try:
                        self._enqueue_all(bytes(chunk))
                        self._flush()
                    finally:
                        self._need_flush = False
            written += len(chunk)
            if not chunk:
                return written

        while True:
            chunk = source.read(PAYLOAD_SIZE_MASK)
            if not chunk:
                return written
            written += len(chunk)
            with self._lock:
                self._enqueue_all(bytes(chunk))
                self._flush()


class Reader:
    """Decrypts a Shadowsocks stream read from an inner reader.

    read returns b"" at a clean end of stream; a stream cut short raises EOFError
    and a chunk that fails authentication raises cryptography.exceptions.InvalidTag.
    """

    def __init__(self, reader: Any, key: EncryptionKey) -> None:
        self._reader = reader
        self._key = key
        self._aead: Optional[AEAD] = None
        self._counter: Optional[_NonceCounter] = None
        self._leftover = b""

    def _read_full(self, size: int) -> bytes:
        buf = bytearray()
        while len(buf) < size:
            chunk = self._reader.read(size - len(buf))
            if not chunk:
                break
            buf += chunk
        return bytes(buf)

    def _init(self) -> bool:
        if self._aead is not None:
            return True
        salt_size = self._key.salt_size()
        salt = self._read_full(salt_size)
        if not salt:
            return False
        if len(salt) < salt_size:
            raise EOFError("unexpected EOF")
        self._aead = self._key.new_aead(salt)
        self._counter = _NonceCounter(self._key.cipher.nonce_size)
        return True

    def _read_message(self, size: int) -> Optional[bytes]:
        data = self._read_full(size)
        if not data:
            return None
        if len(data) < size:
            raise EOFError("unexpected EOF")
        assert self._aead is not None and self._counter is not None
        nonce = self._counter.next()
        return self._aead.decrypt(nonce, data, None)

    def read_chunk(self) -> Optional[bytes]:
        """Return the payload of the next chunk, possibly empty, or None at end of stream."""
        if not self._init():
            return None
        tag_size = self._key.tag_size()
        size_block = self._read_message(2 + tag_size)
        if size_block is None:
            return None
        size = int.from_bytes(size_block, "big") & PAYLOAD_SIZE_MASK
        payload = self._read_message(size + tag_size)
        if payload is None:
            raise EOFError("unexpected EOF")
        return payload

    def _ensure_leftover(self) -> bool:
        while not self._leftover:
            chunk = self.read_chunk()
            if chunk is None:
                return False
            self._leftover = chunk
        return True

    def read(self, size: int = -1) -> bytes:
        """Read up to size bytes, or everything when size is negative."""
        if size < 0:
            parts = []
            while self._ensure_leftover():
                parts.append(self._leftover)
                self._leftover = b""
            return b"".join(parts)
        if not self._ensure_leftover():
            return b""
        out = self._leftover[:size]
        self._leftover = self._leftover[size:]
        return out

    def write_to(self, destination: Any) -> int:
        """Write the decrypted stream to destination until end of stream."""
        written = 0
        while self._ensure_leftover():
            n = destination.write(self._leftover)
            if n is None:
                n = len(self._leftover)
            written += n
            self._leftover = self._leftover[n:]
        return written