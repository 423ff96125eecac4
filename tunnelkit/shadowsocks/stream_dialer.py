"""Dialing stream connections through a Shadowsocks proxy."""

from __future__ import annotations

import ipaddress
import threading
from typing import Any, Optional

from tunnelkit.shadowsocks.cipher import EncryptionKey
from tunnelkit.shadowsocks.salt import SaltGenerator
from tunnelkit.shadowsocks.stream import Reader, Writer
from tunnelkit.stream import DuplexConnAdaptor, _split_host_port, wrap_conn

# Time to wait for client data before sending the connection request on its own.
DEFAULT_CLIENT_DATA_WAIT = 0.01

_ATYP_IPV4 = 0x01
_ATYP_DOMAIN = 0x03
_ATYP_IPV6 = 0x04


def encode_target_address(address: str) -> bytes:
    """Encode "host:port" in the SOCKS address format used by Shadowsocks.

    Raises ValueError if the address cannot be parsed or the domain is too long.
    """
    try:
        host, port = _split_host_port(address)
    except ValueError as exc:
        raise ValueError("failed to parse target address") from exc

    port_bytes = port.to_bytes(2, "big")
    ip: Optional[ipaddress.IPv4Address | ipaddress.IPv6Address] = None
    if "%" not in host:
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            ip = None

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    if isinstance(ip, ipaddress.IPv4Address):
        return bytes([_ATYP_IPV4]) + ip.packed + port_bytes
    if isinstance(ip, ipaddress.IPv6Address):
        return bytes([_ATYP_IPV6]) + ip.packed + port_bytes

    name = host.encode("utf-8")
    if len(name) > 255:
        raise ValueError("failed to parse target address")
    return bytes([_ATYP_DOMAIN, len(name)]) + name + port_bytes


def _flush_quietly(writer: Writer) -> None:
    # A failed delayed flush surfaces on the next write or read of the connection.
    try:
        writer.flush()
    except Exception:  # noqa: BLE001
        pass


class StreamDialer:
    """Routes stream connections through a Shadowsocks proxy reached via an endpoint.

    The connection is returned once the proxy is reached, before the proxy connects
    to the target.  The target address is held back for up to client_data_wait
    seconds so it can travel in the same packet as the first client data.
    """

    def __init__(self, endpoint: Any, key: EncryptionKey) -> None:
        if endpoint is None:
            raise ValueError("argument endpoint must not be None")
        if key is None:
            raise ValueError("argument key must not be None")
        self._endpoint = endpoint
        self._key = key
        self.salt_generator: Optional[SaltGenerator] = None
        self.client_data_wait: float = DEFAULT_CLIENT_DATA_WAIT

    def dial_stream(self, remote_address: str) -> DuplexConnAdaptor:
        """Connect to remote_address ("host:port") through the proxy."""
        target = encode_target_address(remote_address)
        proxy_conn = self._endpoint.connect_stream()
        writer = Writer(proxy_conn, self._key, self.salt_generator)
        try:
            writer.lazy_write(target)
        except Exception as exc:
            proxy_conn.close()
            raise ConnectionError("failed to write target address") from exc
        timer = threading.Timer(self.client_data_wait, _flush_quietly, args=(writer,))
        timer.daemon = True
        timer.start()
        reader = Reader(proxy_conn, self._key)
        return wrap_conn(proxy_conn, reader, writer)