"""Protocol fingerprints applied to transport-layer payloads."""

from __future__ import annotations

_HTTP_METHODS = frozenset(
    {
        b"GET ",
        b"POST",
        b"HEAD",
        b"PUT ",
        b"DELE",
        b"OPTI",
        b"PATC",
        b"CONN",
    }
)

_SOCKS5_VERSION = 0x05

_WG_TYPE_HANDSHAKE_INIT = 1
_WG_TYPE_HANDSHAKE_RESP = 2
_WG_TYPE_COOKIE_REPLY = 3
_WG_TYPE_DATA = 4

_WG_SIZE_HANDSHAKE_INIT = 148
_WG_SIZE_HANDSHAKE_RESP = 92
_WG_SIZE_COOKIE_REPLY = 64
_WG_MIN_SIZE_DATA = 32

_QUIC_VERSIONS = frozenset({0x00000000, 0x00000001, 0x6B3343CF})
_GOOGLE_QUIC_MASK = 0xFFFF0000
_GOOGLE_QUIC_PREFIX = 0x51303000

_FET_MIN_LEN = 16
_FET_FULL_LEN = 32
_FET_LOW_X100 = 340
_FET_HIGH_X100 = 460


def is_tls(payload: bytes) -> bool:
    """Return True if the payload starts like a TLS record."""
    if len(payload) < 3:
        return False
    content_type, major, minor = payload[:3]
    return 0x16 <= content_type <= 0x17 and major == 0x03 and minor <= 0x09


def is_http_request(payload: bytes) -> bool:
    """Return True if the payload starts with a common HTTP method."""
    return len(payload) >= 4 and bytes(payload[:4]) in _HTTP_METHODS


def is_socks5_request(payload: bytes) -> bool:
    """Return True if the payload is a plausible SOCKS5 greeting."""
    if len(payload) < 2:
        return False
    version, nmethods = payload[0], payload[1]
    if version != _SOCKS5_VERSION or nmethods == 0:
        return False
    return len(payload) >= 2 + nmethods


def _is_printable(byte: int) -> bool:
    return 0x20 <= byte <= 0x7E


def is_fully_encrypted_traffic(payload: bytes, strict_mode: bool) -> bool:
    """Judge whether a payload looks like fully encrypted traffic.

    TLS, HTTP and payloads whose first six bytes are printable are exempt,
    as are payloads whose average set bits per byte fall outside 3.4-4.6.
    What remains is blocked in strict mode and let through in loose mode.
    """
    if is_tls(payload):
        return False
    if is_http_request(payload):
        return False
    if len(payload) < _FET_MIN_LEN:
        return False
    if all(_is_printable(byte) for byte in payload[:6]):
        return False

    # The second 16-byte window is only examined when it is complete.
    window = _FET_FULL_LEN if len(payload) >= _FET_FULL_LEN else _FET_MIN_LEN
    sample = payload[:window]
    popcount = sum(byte.bit_count() for byte in sample)
    avg_x100 = popcount * 100 // len(sample)

    if avg_x100 <= _FET_LOW_X100 or avg_x100 >= _FET_HIGH_X100:
        return False
    return strict_mode


def is_wireguard_packet(payload: bytes) -> bool:
    """Return True if the payload matches a WireGuard message shape."""
    if len(payload) < 4:
        return False
    msg_type = payload[0]
    if any(payload[1:4]):
        return False
    size = len(payload)
    if msg_type == _WG_TYPE_HANDSHAKE_INIT:
        return size == _WG_SIZE_HANDSHAKE_INIT
    if msg_type == _WG_TYPE_HANDSHAKE_RESP:
        return size == _WG_SIZE_HANDSHAKE_RESP
    if msg_type == _WG_TYPE_COOKIE_REPLY:
        return size == _WG_SIZE_COOKIE_REPLY
    if msg_type == _WG_TYPE_DATA:
        return size >= _WG_MIN_SIZE_DATA and size % 16 == 0
    return False


def is_quic_packet(payload: bytes) -> bool:
    """Return True if the payload looks like a QUIC packet."""
    if len(payload) < 5:
        return False
    first = payload[0]
    if first & 0x80:
        version = int.from_bytes(payload[1:5], "big")
        if version in _QUIC_VERSIONS:
            return True
        if version & _GOOGLE_QUIC_MASK == _GOOGLE_QUIC_PREFIX:
            return True
        return 0 < version < 0x0A
    return len(payload) >= 20 and (first & 0x40) == 0x40