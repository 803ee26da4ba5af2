"""Unit tests for the BINRPC encoder and UDP sender."""

import socket
from unittest.mock import patch

import pytest

from dispatchers import binrpc

METHOD_RECORD = bytes([0x91, 0x12]) + b"dispatcher.reload\x00"


def test_encode_short_string_record() -> None:
    """Values up to 7 bytes store their size in the record header."""
    assert binrpc.encode_str("ok") == bytes([0x31]) + b"ok\x00"


def test_encode_long_string_record() -> None:
    """Longer values carry a separate size field."""
    assert binrpc.encode_str("dispatcher.reload") == METHOD_RECORD


def test_encode_int_records() -> None:
    assert binrpc.encode_int(0) == bytes([0x00])
    assert binrpc.encode_int(300) == bytes([0x20, 0x01, 0x2C])


def test_encode_request_header() -> None:
    packet = binrpc.encode_request("dispatcher.reload", 0x12345678)

    assert packet == bytes([0xA1, 0x03, 0x14, 0x12, 0x34, 0x56, 0x78]) + METHOD_RECORD


def test_encode_request_minimal_cookie() -> None:
    packet = binrpc.encode_request("dispatcher.reload", 1)

    assert packet[:4] == bytes([0xA1, 0x00, 0x14, 0x01])
    assert packet[4:] == METHOD_RECORD


def test_encode_request_with_arguments() -> None:
    packet = binrpc.encode_request("dispatcher.set_state", 1, "ip", 2)

    body = packet[4:]
    assert packet[2] == len(body)
    assert body.endswith(bytes([0x31]) + b"ip\x00" + bytes([0x10, 0x02]))


def test_encode_request_rejects_oversized_cookie() -> None:
    with pytest.raises(ValueError):
        binrpc.encode_request("dispatcher.reload", 1 << 40)


def test_invoke_method_sends_one_datagram() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as listener:
        listener.bind(("127.0.0.1", 0))
        listener.settimeout(2)
        port = listener.getsockname()[1]

        with patch("dispatchers.binrpc.random.randint", return_value=1):
            binrpc.invoke_method("dispatcher.reload", "127.0.0.1", str(port))

        data, _ = listener.recvfrom(4096)

    assert data == bytes([0xA1, 0x00, 0x14, 0x01]) + METHOD_RECORD
