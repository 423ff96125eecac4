"""Shadowsocks UDP packet encryption."""

from __future__ import annotations

from tunnelkit.shadowsocks.cipher import EncryptionKey
from tunnelkit.shadowsocks.salt import DEFAULT_SALT_GENERATOR


class ShortPacketError(ValueError):
    """Raised when a packet is too short to hold its salt or tag."""


def _zero_nonce(key: EncryptionKey) -> bytes:
    return bytes(key.cipher.nonce_size)


def pack(plaintext: bytes, key: EncryptionKey) -> bytes:
    """Encrypt a packet as [salt][ciphertext][tag]."""
    salt = DEFAULT_SALT_GENERATOR.get_salt(key.salt_size())
    aead = key.new_aead(salt)
    return salt + aead.encrypt(_zero_nonce(key), bytes(plaintext), None)


def unpack(packet: bytes, key: EncryptionKey) -> bytes:
    """Decrypt a [salt][ciphertext][tag] packet and return its payload.

    Raises cryptography.exceptions.InvalidTag if authentication fails.
    """
    salt_size = key.salt_size()
    if len(packet) < salt_size:
        raise ShortPacketError("short packet")
    salt = bytes(packet[:salt_size])
    ciphertext_and_tag = bytes(packet[salt_size:])
    if len(ciphertext_and_tag) < key.tag_size():
        raise ShortPacketError("unexpected end of packet")
    aead = key.new_aead(salt)
    return aead.decrypt(_zero_nonce(key), ciphertext_and_tag, None)