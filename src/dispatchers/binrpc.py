"""Minimal kamailio BINRPC client.

Only what is needed to ask kamailio to reload its dispatcher list: requests
are encoded and sent as a single UDP datagram. Replies are never read, so a
successful call only means the datagram left this host.

Packet layout:

    | 4 bit magic (0xA) | 4 bit version (1) |
    | 4 bit flags | 2 bit length size - 1 | 2 bit cookie size - 1 |
    | body length (1-4 bytes) | cookie (1-4 bytes) | body records ... |

Record layout:

    | 1 bit size flag | 3 bit size | 4 bit type | [size bytes] | value |

With the size flag clear the 3 bit size is the value length (0-7); with it
set the 3 bit size is the number of bytes holding the value length.
"""

from __future__ import annotations

import logging
import random
import socket

logger = logging.getLogger(__name__)

MAGIC = 0xA
VERSION = 0x1

TYPE_INT = 0
TYPE_STR = 1

MAX_COOKIE = 0xFFFFFFFF


def _byte_length(value: int) -> int:
    """Number of bytes (1-4) needed to hold ``value``."""
    if value < 0 or value > 0xFFFFFFFF:
        raise ValueError(f"value {value} does not fit in 4 bytes")
    return max(1, (value.bit_length() + 7) // 8)


def encode_record(record_type: int, value: bytes) -> bytes:
    size = len(value)
    if size < 8:
        return bytes([(size << 4) | record_type]) + value
    size_len = _byte_length(size)
    return bytes([0x80 | (size_len << 4) | record_type]) + size.to_bytes(size_len, "big") + value


def encode_str(value: str) -> bytes:
    return encode_record(TYPE_STR, value.encode("utf-8") + b"\x00")


def encode_int(value: int) -> bytes:
    if value == 0:
        return encode_record(TYPE_INT, b"")
    return encode_record(TYPE_INT, value.to_bytes(_byte_length(value), "big"))


def encode_request(method: str, cookie: int, *args: str | int) -> bytes:
    """Encode a BINRPC request calling ``method`` with ``args``."""
    body = encode_str(method)
    for arg in args:
        body += encode_int(arg) if isinstance(arg, int) else encode_str(str(arg))

    length_len = _byte_length(len(body))
    cookie_len = _byte_length(cookie)
    header = bytes(
        [
            (MAGIC << 4) | VERSION,
            ((length_len - 1) << 2) | (cookie_len - 1),
        ]
    )
    return (
        header
        + len(body).to_bytes(length_len, "big")
        + cookie.to_bytes(cookie_len, "big")
        + body
    )


def invoke_method(method: str, host: str, port: str | int, timeout_seconds: float = 5.0) -> None:
    """Send a BINRPC request over UDP without waiting for a reply.

    Raises ``OSError`` (including ``socket.gaierror``) when the datagram
    cannot be sent.
    """
    packet = encode_request(method, random.randint(0, MAX_COOKIE))
    address = socket.getaddrinfo(host, int(port), type=socket.SOCK_DGRAM)[0]
    family, _, _, _, sockaddr = address
    with socket.socket(family, socket.SOCK_DGRAM) as sock:
        sock.settimeout(timeout_seconds)
        sock.sendto(packet, sockaddr)
    logger.debug(f"Sent BINRPC {method} to {host}:{port}")
