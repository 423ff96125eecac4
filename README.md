# tunnelkit

Building blocks for making outgoing stream connections through proxies and
obfuscating transports. Every dialer has `dial_stream(address)`, taking a
`"host:port"` string (`"[v6]:port"` for IPv6), and returns a connection with
`read`, `write`, `close_read`, `close_write` and `close`, so the transports
stack on top of each other.

## Installing

```
pip install .
```

For development and tests:

```
pip install ".[test]"
pytest
```

## Modules

- `tunnelkit.stream`: `TCPDialer` and `TCPEndpoint` (both with an optional
  `timeout` in seconds), `FuncStreamDialer`, `FuncStreamEndpoint`,
  `StreamDialerEndpoint`, the `StreamConn` base class with its socket-backed
  `TCPStreamConn`, and `wrap_conn(conn, reader, writer)`, which swaps the
  reader and writer of a connection while keeping its close methods.
- `tunnelkit.shadowsocks.cipher`: `new_encryption_key(cipher_name, secret_text)`
  for `AEAD_CHACHA20_POLY1305`, `AEAD_AES_256_GCM`, `AEAD_AES_192_GCM` and
  `AEAD_AES_128_GCM`, and the aliases `chacha20-ietf-poly1305`,
  `aes-256-gcm`, `aes-192-gcm` and `aes-128-gcm` (case-insensitive). Unknown
  names raise `UnsupportedCipherError`.
- `tunnelkit.shadowsocks.salt`: `RandomSaltGenerator` and
  `PrefixSaltGenerator(prefix)`, which starts every salt with a fixed prefix
  and fills the rest at random.
- `tunnelkit.shadowsocks.packet`: `pack(plaintext, key)` and
  `unpack(packet, key)` for Shadowsocks UDP packets. Packets too short for a
  salt and tag raise `ShortPacketError`.
- `tunnelkit.shadowsocks.stream`: `Writer`, which encrypts onto any object with
  `write`, and `Reader`, which decrypts from any object with `read`.
  `Writer.lazy_write` queues data (such as a header) that goes out with the
  next `write` or on `flush`. `Reader.read` returns `b""` at a clean end of
  stream, raises `EOFError` for a stream cut short and
  `cryptography.exceptions.InvalidTag` for data that fails authentication.
- `tunnelkit.shadowsocks.stream_dialer`: `StreamDialer(endpoint, key)`, a
  Shadowsocks client. Its `salt_generator` and `client_data_wait` (seconds,
  0.01 by default) can be set before dialing.
- `tunnelkit.split`: `SplitWriter(writer, prefix_bytes)` and
  `SplitStreamDialer(dialer, prefix_bytes)`, which make the outgoing byte
  stream reach the inner writer in two writes split at `prefix_bytes`.
- `tunnelkit.socks5`: `Client(endpoint)`, a SOCKS5 client with optional
  username/password authentication through `set_credentials`. An error reply
  from the server raises `ReplyError`, whose `code` is a `ReplyCode`.
  `encode_socks5_address` and `read_address` handle the SOCKS address format.
- `tunnelkit.tls`: `TLSStreamDialer(base_dialer, *options)` and
  `wrap_conn(conn, server_name, *options)`, with the options `with_sni`,
  `with_certificate_name`, `with_alpn`, `with_session_cache` (any mutable
  mapping) and `if_host`. An option is any callable taking the dialed host and
  a `ClientConfig`, so a custom one can also set `root_certificates` to PEM
  trust anchors.

## Example

```python
from tunnelkit.stream import TCPEndpoint
from tunnelkit.shadowsocks.cipher import new_encryption_key
from tunnelkit.shadowsocks.stream_dialer import StreamDialer

key = new_encryption_key("chacha20-ietf-poly1305", "secret")
dialer = StreamDialer(TCPEndpoint("127.0.0.1:8388"), key)
conn = dialer.dial_stream("example.com:80")
conn.write(b"GET / HTTP/1.0\r\nHost: example.com\r\n\r\n")
print(conn.read(4096))
conn.close()
```

Transports stack. For example, split the first three bytes of a TLS
ClientHello sent through a SOCKS5 proxy:

```python
from tunnelkit.stream import TCPEndpoint
from tunnelkit.socks5 import Client
from tunnelkit.split import SplitStreamDialer
from tunnelkit.tls import TLSStreamDialer, with_sni

socks = Client(TCPEndpoint("127.0.0.1:1080"))
dialer = TLSStreamDialer(SplitStreamDialer(socks, 3), with_sni("example.com"))
conn = dialer.dial_stream("example.com:443")
```

## A note on Shadowsocks and IPv6

The Shadowsocks protocol cannot report whether the proxy reached the
destination, so `StreamDialer.dial_stream` succeeds as soon as the proxy
connection is up. Prefer dialing host names over IP addresses so that address
selection happens on the proxy.

## What is not included

- Only outgoing stream (TCP-style) connections are dialed. There is no UDP
  listener: `pack` and `unpack` encrypt single packets, but nothing sends them
  through a proxy, and the SOCKS5 client does not do UDP ASSOCIATE.
- There are no servers and no command-line program; this is a library for
  client code.