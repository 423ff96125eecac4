"""SOCKS5 client: address encoding, replies and stream dialing."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional, Union

from tunnelkit.stream import _join_host_port, _split_host_port

# SOCKS5 commands.
CMD_CONNECT = 1
CMD_BIND = 2
CMD_UDP_ASSOCIATE = 3

# SOCKS5 authentication methods.
_AUTH_METHOD_NO_AUTH = 0x00
_AUTH_METHOD_USER_PASS = 0x02

# SOCKS address types.
_ADDR_TYPE_IPV4 = 0x01
_ADDR_TYPE_DOMAIN_NAME = 0x03
_ADDR_TYPE_IPV6 = 0x04

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class ReplyCode(IntEnum):
    """Error codes a SOCKS5 server reports in the REP field of its reply."""

    GENERAL_SERVER_FAILURE = 0x01
    CONNECTION_NOT_ALLOWED_BY_RULESET = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_TYPE_NOT_SUPPORTED = 0x08


_REPLY_MESSAGES = {
    ReplyCode.GENERAL_SERVER_FAILURE: "general SOCKS server failure",
    ReplyCode.CONNECTION_NOT_ALLOWED_BY_RULESET: "connection not allowed by ruleset",
    ReplyCode.NETWORK_UNREACHABLE: "network unreachable",
    ReplyCode.HOST_UNREACHABLE: "host unreachable",
    ReplyCode.CONNECTION_REFUSED: "connection refused",
    ReplyCode.TTL_EXPIRED: "TTL expired",
    ReplyCode.COMMAND_NOT_SUPPORTED: "command not supported",
    ReplyCode.ADDRESS_TYPE_NOT_SUPPORTED: "address type not supported",
}


class ReplyError(ConnectionError):
    """Raised when the SOCKS5 server replies with a non-zero reply code."""

    def __init__(self, code: int) -> None:
        try:
            self.code: Union[ReplyCode, int] = ReplyCode(code)
        except ValueError:
            self.code = int(code)
        message = _REPLY_MESSAGES.get(self.code, f"reply code {int(code)}")  # type: ignore[arg-type]
        super().__init__(message)


@dataclass(frozen=True)
class Address:
    """A SOCKS address: either a domain name or an IP address, with a port."""

    name: str = ""
    ip: Optional[IPAddress] = None
    port: int = 0

    def __str__(self) -> str:
        """Return a "host:port" string suitable to dial, preferring the IP."""
        host = str(self.ip) if self.ip is not None else self.name
        return _join_host_port(host, self.port)


def encode_socks5_address(address: str) -> bytes:
    """Encode "host:port" as ATYP, DST.ADDR and DST.PORT.

    Raises ValueError for an unparsable address or a domain over 255 bytes.
    """
    host, port = _split_host_port(address)
    port_bytes = port.to_bytes(2, "big")

    ip: Optional[IPAddress] = None
    if "%" not in host:
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            ip = None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    if isinstance(ip, ipaddress.IPv4Address):
        return bytes([_ADDR_TYPE_IPV4]) + ip.packed + port_bytes
    if isinstance(ip, ipaddress.IPv6Address):
        return bytes([_ADDR_TYPE_IPV6]) + ip.packed + port_bytes

    name = host.encode("utf-8")
    if len(name) > 255:
        raise ValueError(f"domain name length = {len(name)} is over 255")
    return bytes([_ADDR_TYPE_DOMAIN_NAME, len(name)]) + name + port_bytes


def _read_exact(reader: Any, size: int) -> bytes:
    """Read exactly size bytes; raise EOFError if the stream ends first."""
    buf = bytearray()
    while len(buf) < size:
        chunk = reader.read(size - len(buf))
        if not chunk:
            raise EOFError("EOF" if not buf else "unexpected EOF")
        buf += chunk
    return bytes(buf)


def read_address(reader: Any) -> Address:
    """Read a SOCKS address (ATYP, ADDR, PORT) from reader.

    Raises EOFError on short input and ValueError for an unknown address type.
    """
    addr_type = _read_exact(reader, 1)[0]
    name = ""
    ip: Optional[IPAddress] = None
    if addr_type == _ADDR_TYPE_IPV4:
        ip = ipaddress.IPv4Address(_read_exact(reader, 4))
    elif addr_type == _ADDR_TYPE_IPV6:
        ip = ipaddress.IPv6Address(_read_exact(reader, 16))
    elif addr_type == _ADDR_TYPE_DOMAIN_NAME:
        length = _read_exact(reader, 1)[0]
        name = _read_exact(reader, length).decode("utf-8", errors="replace")
    else:
        raise ValueError("unrecognized address type")
    port = int.from_bytes(_read_exact(reader, 2), "big")
    return Address(name=name, ip=ip, port=port)


def _as_bytes(value: Union[bytes, str]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


@dataclass(frozen=True)
class _Credentials:
    username: bytes
    password: bytes


class Client:
    """A SOCKS5 client reaching its proxy through a stream endpoint."""

    def __init__(self, stream_endpoint: Any) -> None:
        if stream_endpoint is None:
            raise ValueError("argument endpoint must not be None")
        self._endpoint = stream_endpoint
        self._credentials: Optional[_Credentials] = None

    def set_credentials(self, username: Union[bytes, str], password: Union[bytes, str]) -> None:
        """Use username/password authentication; each must be 1 to 255 bytes."""
        user = _as_bytes(username)
        secret = _as_bytes(password)
        if len(user) > 255:
            raise ValueError("username exceeds 255 bytes")
        if not user:
            raise ValueError("username must be at least 1 byte")
        if len(secret) > 255:
            raise ValueError("password exceeds 255 bytes")
        if not secret:
            raise ValueError("password must be at least 1 byte")
        self._credentials = _Credentials(user, secret)

    def _request(self, conn: Any, cmd: int, destination: str) -> Address:
        """Send method selection, authentication and command in one write; return the bound address."""
        creds = self._credentials
        if creds is None:
            message = bytearray([5, 1, _AUTH_METHOD_NO_AUTH])
        else:
            message = bytearray([5, 1, _AUTH_METHOD_USER_PASS, 1])
            message.append(len(creds.username))
            message += creds.username
            message.append(len(creds.password))
            message += creds.password

        message += bytes([5, cmd, 0])
        try:
            message += encode_socks5_address(destination)
        except ValueError as exc:
            raise ValueError(f"failed to create SOCKS5 address: {exc}") from exc

        try:
            conn.write(bytes(message))
        except OSError as exc:
            raise ConnectionError(f"failed to write combined SOCKS5 request: {exc}") from exc

        try:
            version, method = _read_exact(conn, 2)
        except (EOFError, OSError) as exc:
            raise ConnectionError(f"failed to read method server response: {exc}") from exc
        if version != 5:
            raise ConnectionError(f"invalid protocol version {version}. Expected 5")

        if method == _AUTH_METHOD_USER_PASS:
            try:
                auth_version, status = _read_exact(conn, 2)
            except (EOFError, OSError) as exc:
                raise ConnectionError(
                    f"failed to read authentication version and status: {exc}"
                ) from exc
            if auth_version != 1:
                raise ConnectionError(f"invalid authentication version {auth_version}. Expected 1")
            if status != 0:
                raise ConnectionError(f"authentication failed: {status}")
        elif method != _AUTH_METHOD_NO_AUTH:
            raise ConnectionError(f"unsupported SOCKS authentication method {method}. Expected 2")

        try:
            version, reply, _reserved = _read_exact(conn, 3)
        except (EOFError, OSError) as exc:
            raise ConnectionError(f"failed to read connect server response: {exc}") from exc
        if version != 5:
            raise ConnectionError(f"invalid protocol version {version}. Expected 5")
        if reply != 0:
            raise ReplyError(reply)

        try:
            return read_address(conn)
        except (EOFError, ValueError, OSError) as exc:
            raise ConnectionError(f"failed to read bound address: {exc}") from exc

    def _connect_and_request(self, cmd: int, destination: str) -> tuple[Any, Address]:
        try:
            proxy_conn = self._endpoint.connect_stream()
        except OSError as exc:
            raise ConnectionError(f"could not connect to SOCKS5 proxy: {exc}") from exc
        try:
            bound = self._request(proxy_conn, cmd, destination)
        except BaseException:
            proxy_conn.close()
            raise
        return proxy_conn, bound

    def dial_stream(self, destination: str) -> Any:
        """Connect to destination ("host:port") through the proxy.

        Raises ReplyError if the server answers with an error reply code.
        """
        conn, _bound = self._connect_and_request(CMD_CONNECT, destination)
        return conn