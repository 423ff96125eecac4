"""Shadowsocks AEAD ciphers, salts, packet and stream encryption, and a stream dialer."""