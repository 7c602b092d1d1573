"""Rule flags and the records shared between the packet engine and its tools."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntFlag


class Rule(IntFlag):
    """Bit flags that switch firewall rules on."""

    BLOCK_EMAIL = 1 << 0
    BLOCK_HTTP = 1 << 1
    BLOCK_SOCKS5 = 1 << 2
    BLOCK_FET_STRICT = 1 << 3
    BLOCK_WIREGUARD = 1 << 4
    BLOCK_ALL = 1 << 5
    BLOCK_FET_LOOSE = 1 << 6
    BLOCK_QUIC = 1 << 7
    GEOIP_ENABLED = 1 << 8
    GEOIP_WHITELIST = 1 << 9
    LOG_PORT_ACCESS = 1 << 10


@dataclass
class FirewallConfig:
    """The set of enabled rules, held as a bit mask."""

    flags: int = 0

    def enable_rule(self, rule: int) -> None:
        """Turn on every bit set in ``rule``."""
        self.flags |= int(rule)

    def has_rule(self, rule: int) -> bool:
        """Return True if any bit of ``rule`` is enabled."""
        return (self.flags & int(rule)) != 0


@dataclass(frozen=True)
class GeoIpEntry:
    """An IPv4 address range tagged with a two-letter country code."""

    start_ip: int
    end_ip: int
    country_code: int


@dataclass(frozen=True)
class LpmTrieKey:
    """Key for longest-prefix-match lookups: prefix length and address."""

    prefix_len: int
    data: int


@dataclass(frozen=True)
class PortAccessKey:
    """Identifies one source address reaching one destination port."""

    dst_port: int
    protocol: int
    src_ip: int


@dataclass
class PortAccessStats:
    """How often a source was allowed or blocked on a port."""

    allowed_count: int = 0
    blocked_count: int = 0
    last_seen: int = 0