"""TLS over stream connections, with configurable SNI and certificate name."""

from __future__ import annotations

import ipaddress
import ssl
from dataclasses import dataclass, field
from typing import Any, Callable, MutableMapping, Optional

from tunnelkit.stream import StreamConn, _split_host_port

_READ_SIZE = 16 * 1024

ClientOption = Callable[[str, "ClientConfig"], None]


@dataclass
class ClientConfig:
    """Parameters of a TLS client connection.

    server_name is sent as SNI (empty sends none); certificate_name is the name the
    server certificate is checked against (empty skips the name check).
    session_cache is a mutable mapping that this module fills with resumable sessions.
    root_certificates holds PEM trust anchors; None uses the system store.
    """

    server_name: str = ""
    certificate_name: str = ""
    next_protos: list[str] = field(default_factory=list)
    session_cache: Optional[MutableMapping[Any, Any]] = None
    root_certificates: Optional[str] = None


@dataclass(frozen=True)
class _CachedSession:
    fingerprint: tuple
    context: ssl.SSLContext
    session: ssl.SSLSession


def _normalize_host(host: str) -> str:
    return host.lower()


def _fingerprint(config: ClientConfig) -> tuple:
    return (tuple(config.next_protos), config.root_certificates, config.certificate_name)


def _cache_key(config: ClientConfig) -> str:
    return config.server_name or config.certificate_name


def _new_context(config: ClientConfig) -> ssl.SSLContext:
    if config.root_certificates is not None:
        context = ssl.create_default_context(cadata=config.root_certificates)
    else:
        context = ssl.create_default_context()
    # The chain is verified by OpenSSL; the name is checked separately so that it
    # can differ from the SNI.
    context.check_hostname = False
    context.verify_mode = ssl.CERT_REQUIRED
    if config.next_protos:
        context.set_alpn_protocols(list(config.next_protos))
    return context


def _context_for(config: ClientConfig) -> tuple[ssl.SSLContext, Optional[ssl.SSLSession]]:
    cache = config.session_cache
    if cache is not None:
        entry = cache.get(_cache_key(config))
        if isinstance(entry, _CachedSession) and entry.fingerprint == _fingerprint(config):
            return entry.context, entry.session
    return _new_context(config), None


def _dns_name_matches(pattern: str, name: str) -> bool:
    pattern = pattern.lower().rstrip(".")
    if pattern.startswith("*."):
        label, dot, rest = name.partition(".")
        return bool(label) and bool(dot) and rest == pattern[2:]
    return pattern == name


def _certificate_matches(cert: dict, name: str) -> bool:
    sans = cert.get("subjectAltName", ())
    try:
        ip = ipaddress.ip_address(name.strip("[]"))
    except ValueError:
        ip = None
    if ip is not None:
        for kind, value in sans:
            if kind != "IP Address":
                continue
            try:
                if ipaddress.ip_address(value.strip()) == ip:
                    return True
            except ValueError:
                continue
        return False
    wanted = name.lower().rstrip(".")
    return any(kind == "DNS" and _dns_name_matches(value, wanted) for kind, value in sans)


class TLSStreamConn(StreamConn):
    """A TLS client connection running over another StreamConn."""

    def __init__(
        self,
        conn: Any,
        config: ClientConfig,
        context: ssl.SSLContext,
        session: Optional[ssl.SSLSession] = None,
    ) -> None:
        self._conn = conn
        self._config = config
        self._context = context
        self._incoming = ssl.MemoryBIO()
        self._outgoing = ssl.MemoryBIO()
        self._tls = context.wrap_bio(
            self._incoming,
            self._outgoing,
            server_side=False,
            server_hostname=config.server_name or None,
            session=session,
        )
        self._close_notify_sent = False

    def _send_pending(self) -> None:
        data = self._outgoing.read()
        if data:
            self._conn.write(data)

    def _pump(self, operation: Callable[[], Any]) -> Any:
        while True:
            try:
                result = operation()
            except ssl.SSLWantReadError:
                self._send_pending()
                data = self._conn.read(_READ_SIZE)
                if data:
                    self._incoming.write(data)
                else:
                    self._incoming.write_eof()
            else:
                self._send_pending()
                return result

    def _remember_session(self) -> None:
        cache = self._config.session_cache
        if cache is None:
            return
        session = self._tls.session
        if session is None:
            return
        cache[_cache_key(self._config)] = _CachedSession(
            _fingerprint(self._config), self._context, session
        )

    def _handshake(self) -> None:
        self._pump(self._tls.do_handshake)
        name = self._config.certificate_name
        if name:
            cert = self._tls.getpeercert() or {}
            if not _certificate_matches(cert, name):
                raise ssl.SSLCertVerificationError(f"certificate is not valid for {name}")
        self._remember_session()

    def read(self, size: int) -> bytes:
        if size <= 0:
            return b""
        try:
            data = self._pump(lambda: self._tls.read(size))
        except ssl.SSLZeroReturnError:
            return b""
        self._remember_session()
        return data

    def write(self, data: bytes) -> int:
        view = memoryview(bytes(data))
        total = len(view)
        while view:
            chunk = view
            n = self._pump(lambda: self._tls.write(chunk))
            view = view[n:]
        return total

    def _send_close_notify(self) -> None:
        if self._close_notify_sent:
            return
        self._close_notify_sent = True
        try:
            self._tls.unwrap()
        except ssl.SSLWantReadError:
            pass
        self._send_pending()

    def close_read(self) -> None:
        self._conn.close_read()

    def close_write(self) -> None:
        """Send the TLS close alert, then close the write end of the inner connection."""
        tls_error: Optional[BaseException] = None
        try:
            self._send_close_notify()
        except (ssl.SSLError, OSError) as exc:
            tls_error = exc
        self._conn.close_write()
        if tls_error is not None:
            raise tls_error

    def close(self) -> None:
        try:
            self._send_close_notify()
        except (ssl.SSLError, OSError):
            pass
        self._conn.close()

    def server_name(self) -> str:
        """Return the name sent as SNI, or "" if none was sent."""
        return self._config.server_name


def wrap_conn(conn: Any, server_name: str, *args: ClientOption) -> TLSStreamConn:
    """Run a TLS client handshake over conn and return the TLS connection.

    Options in args are applied in order to a config defaulting to server_name for
    both SNI and certificate name.
    """
    config = ClientConfig(server_name=server_name, certificate_name=server_name)
    host = _normalize_host(server_name)
    for option in args:
        option(host, config)
    context, session = _context_for(config)
    tls_conn = TLSStreamConn(conn, config, context, session)
    tls_conn._handshake()
    return tls_conn


class TLSStreamDialer:
    """Dials through a base dialer and wraps each connection in TLS."""

    def __init__(self, base_dialer: Any, *options: ClientOption) -> None:
        if base_dialer is None:
            raise ValueError("base dialer must not be None")
        self._dialer = base_dialer
        self._options = options

    def dial_stream(self, remote_address: str) -> TLSStreamConn:
        try:
            host, _port = _split_host_port(remote_address)
        except ValueError as exc:
            raise ValueError(f"invalid address: {exc}") from exc
        inner = self._dialer.dial_stream(remote_address)
        try:
            return wrap_conn(inner, host, *self._options)
        except BaseException:
            inner.close()
            raise


def with_sni(host_name: str) -> ClientOption:
    """Send host_name as SNI instead of the dialed host; "" sends no SNI."""

    def option(_host: str, config: ClientConfig) -> None:
        config.server_name = host_name

    return option


def if_host(match_host: str, option: ClientOption) -> ClientOption:
    """Apply option only when the dialed host equals match_host (any host if empty)."""
    match_host = _normalize_host(match_host)

    def conditional(host: str, config: ClientConfig) -> None:
        if match_host and match_host != host:
            return
        option(host, config)

    return conditional


def with_alpn(protocol_name_list: list[str]) -> ClientOption:
    """Offer the given protocols through ALPN."""

    def option(_host: str, config: ClientConfig) -> None:
        config.next_protos = list(protocol_name_list)

    return option


def with_session_cache(session_cache: MutableMapping[Any, Any]) -> ClientOption:
    """Store and reuse sessions in session_cache to resume TLS connections."""

    def option(_host: str, config: ClientConfig) -> None:
        config.session_cache = session_cache

    return option


def with_certificate_name(hostname: str) -> ClientOption:
    """Check the server certificate against hostname instead of the dialed host."""

    def option(_host: str, config: ClientConfig) -> None:
        config.certificate_name = hostname

    return option