"""Salt generators for Shadowsocks connections."""

from __future__ import annotations

import secrets
from abc import ABC, abstractmethod


class SaltGenerator(ABC):
    """Generates salts for Shadowsocks connections."""

    @abstractmethod
    def get_salt(self, size: int) -> bytes:
        """Return a new salt of the given size."""


class RandomSaltGenerator(SaltGenerator):
    """Generates fully random salts."""

    def get_salt(self, size: int) -> bytes:
        return secrets.token_bytes(size)


class PrefixSaltGenerator(SaltGenerator):
    """Generates salts that start with a fixed prefix followed by random bytes.

    A prefix takes entropy from the salt and makes salt reuse more likely.
    """

    def __init__(self, prefix: bytes | None) -> None:
        self.prefix = bytes(prefix or b"")

    def get_salt(self, size: int) -> bytes:
        if len(self.prefix) > size:
            raise ValueError("prefix is too long")
        return self.prefix + secrets.token_bytes(size - len(self.prefix))


DEFAULT_SALT_GENERATOR: SaltGenerator = RandomSaltGenerator()