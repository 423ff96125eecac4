"""Shadowsocks AEAD cipher specifications and encryption keys."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Callable, Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

AEAD = Union[ChaCha20Poly1305, AESGCM]

CHACHA20IETFPOLY1305 = "AEAD_CHACHA20_POLY1305"
AES256GCM = "AEAD_AES_256_GCM"
AES192GCM = "AEAD_AES_192_GCM"
AES128GCM = "AEAD_AES_128_GCM"

SUPPORTED_CIPHERS = (CHACHA20IETFPOLY1305, AES256GCM, AES192GCM, AES128GCM)

# Largest tag size among the supported ciphers.
MAX_TAG_SIZE = 16

_SUBKEY_INFO = b"ss-subkey"


class UnsupportedCipherError(ValueError):
    """Raised when a cipher name is not supported."""

    def __init__(self, name: str) -> None:
        super().__init__(f"unsupported cipher {name}")
        self.name = name


@dataclass(frozen=True)
class CipherSpec:
    """The parameters of one Shadowsocks AEAD cipher."""

    name: str
    new_instance: Callable[[bytes], AEAD] = field(compare=False, repr=False)
    key_size: int
    salt_size: int
    tag_size: int = 16
    nonce_size: int = 12


CHACHA20_IETF_POLY1305_SPEC = CipherSpec(CHACHA20IETFPOLY1305, ChaCha20Poly1305, 32, 32)
AES_256_GCM_SPEC = CipherSpec(AES256GCM, AESGCM, 32, 32)
AES_192_GCM_SPEC = CipherSpec(AES192GCM, AESGCM, 24, 24)
AES_128_GCM_SPEC = CipherSpec(AES128GCM, AESGCM, 16, 16)

_CIPHERS = {
    "AEAD_CHACHA20_POLY1305": CHACHA20_IETF_POLY1305_SPEC,
    "CHACHA20-IETF-POLY1305": CHACHA20_IETF_POLY1305_SPEC,
    "AEAD_AES_256_GCM": AES_256_GCM_SPEC,
    "AES-256-GCM": AES_256_GCM_SPEC,
    "AEAD_AES_192_GCM": AES_192_GCM_SPEC,
    "AES-192-GCM": AES_192_GCM_SPEC,
    "AEAD_AES_128_GCM": AES_128_GCM_SPEC,
    "AES-128-GCM": AES_128_GCM_SPEC,
}


def cipher_by_name(name: str) -> CipherSpec:
    """Return the spec for an IETF cipher name or its Shadowsocks alias, case-insensitively."""
    try:
        return _CIPHERS[name.upper()]
    except KeyError:
        raise UnsupportedCipherError(name) from None


def simple_evp_bytes_to_key(data: bytes, key_len: int) -> bytes:
    """Derive key_len bytes from data with the MD5-based EVP_BytesToKey scheme."""
    derived = b""
    previous = b""
    while len(derived) < key_len:
        previous = hashlib.md5(previous + data).digest()
        derived += previous
    return derived[:key_len]


@dataclass(frozen=True)
class EncryptionKey:
    """A cipher spec together with its master secret."""

    cipher: CipherSpec
    secret: bytes = field(repr=False)

    def salt_size(self) -> int:
        return self.cipher.salt_size

    def tag_size(self) -> int:
        return self.cipher.tag_size

    def new_aead(self, salt: bytes) -> AEAD:
        """Create the AEAD for a session, deriving its subkey from the salt."""
        session_key = HKDF(
            algorithm=hashes.SHA1(),
            length=self.cipher.key_size,
            salt=bytes(salt),
            info=_SUBKEY_INFO,
        ).derive(self.secret)
        return self.cipher.new_instance(session_key)


def new_encryption_key(cipher_name: str, secret_text: str) -> EncryptionKey:
    """Create a key from a cipher name and a secret text."""
    spec = cipher_by_name(cipher_name)
    derived = simple_evp_bytes_to_key(secret_text.encode(), spec.key_size)
    return EncryptionKey(spec, derived)