import pytest
from cryptography.exceptions import InvalidTag

from tunnelkit.shadowsocks.cipher import (
    CHACHA20IETFPOLY1305,
    SUPPORTED_CIPHERS,
    new_encryption_key,
)
from tunnelkit.shadowsocks.packet import ShortPacketError, pack, unpack


@pytest.fixture
def key():
    return new_encryption_key(CHACHA20IETFPOLY1305, "secret")


@pytest.mark.parametrize("name", SUPPORTED_CIPHERS)
def test_round_trip(name):
    cipher_key = new_encryption_key(name, "secret")
    payload = bytes(range(256)) * 4
    packet = pack(payload, cipher_key)
    assert len(packet) == cipher_key.salt_size() + len(payload) + cipher_key.tag_size()
    assert unpack(packet, cipher_key) == payload


def test_mtu_sized_packet(key):
    mtu = 1500
    plaintext = bytes(mtu - key.salt_size() - key.tag_size())
    assert len(pack(plaintext, key)) == mtu


def test_empty_payload(key):
    packet = pack(b"", key)
    assert len(packet) == key.salt_size() + key.tag_size()
    assert unpack(packet, key) == b""


def test_salts_differ(key):
    first = pack(b"payload", key)
    second = pack(b"payload", key)
    assert first[: key.salt_size()] != second[: key.salt_size()]


def test_tampered_packet_fails(key):
    packet = bytearray(pack(b"payload", key))
    packet[-1] ^= 0x01
    with pytest.raises(InvalidTag):
        unpack(bytes(packet), key)


def test_wrong_key_fails(key):
    packet = pack(b"payload", key)
    other = new_encryption_key(CHACHA20IETFPOLY1305, "password")
    with pytest.raises(InvalidTag):
        unpack(packet, other)


def test_shorter_than_salt(key):
    with pytest.raises(ShortPacketError, match="short packet"):
        unpack(bytes(key.salt_size() - 1), key)


def test_shorter_than_tag(key):
    with pytest.raises(ShortPacketError):
        unpack(bytes(key.salt_size() + key.tag_size() - 1), key)