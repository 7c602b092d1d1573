"""Packet filtering engine applying the configured rules to Ethernet frames."""

from __future__ import annotations

import ipaddress
import logging
import struct
from collections import OrderedDict
from collections.abc import Iterator
from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Generic, TypeVar

from .detectors import (
    is_fully_encrypted_traffic,
    is_http_request,
    is_quic_packet,
    is_socks5_request,
    is_wireguard_packet,
)
from .flags import FirewallConfig, PortAccessKey, PortAccessStats, Rule
from .geoip import LpmTrie

log = logging.getLogger(__name__)

MAX_ENTRIES = 65536

ETH_HDR_LEN = 14
ETH_P_IP = 0x0800
IP_HDR_LEN = 20
TCP_HDR_LEN = 20
UDP_HDR_LEN = 8
IPPROTO_TCP = 6
IPPROTO_UDP = 17
TCP_SYN = 0x02

SMTP_PORTS = frozenset({25, 587, 465, 2525})

_U64_MAX = (1 << 64) - 1

_PROTOCOL_DETECTION = (
    Rule.BLOCK_HTTP | Rule.BLOCK_SOCKS5 | Rule.BLOCK_FET_STRICT | Rule.BLOCK_FET_LOOSE
)

K = TypeVar("K")
V = TypeVar("V")


class Verdict(IntEnum):
    """What happens to a frame: dropped or passed on."""

    DROP = 1
    PASS = 2


class _ConnState(IntEnum):
    ALLOWED = 0
    BLOCKED = 1


@dataclass(frozen=True)
class _ConnKey:
    src_ip: int
    dst_ip: int
    src_port: int
    dst_port: int
    protocol: int


class LruMap(Generic[K, V]):
    """A bounded mapping that evicts the least recently used entry."""

    def __init__(self, max_entries: int = MAX_ENTRIES) -> None:
        if max_entries <= 0:
            raise ValueError(f"max_entries must be positive: {max_entries}")
        self.max_entries = max_entries
        self._data: OrderedDict[K, V] = OrderedDict()

    def get(self, key: K) -> V | None:
        """Return the value for ``key`` and mark it recently used, or None."""
        if key not in self._data:
            return None
        self._data.move_to_end(key)
        return self._data[key]

    def insert(self, key: K, value: V) -> None:
        """Store ``value`` under ``key``, evicting the oldest entry if full."""
        if key in self._data:
            self._data.move_to_end(key)
        elif len(self._data) >= self.max_entries:
            self._data.popitem(last=False)
        self._data[key] = value

    def items(self) -> Iterator[tuple[K, V]]:
        """Iterate over entries from least to most recently used."""
        return iter(list(self._data.items()))

    def __len__(self) -> int:
        return len(self._data)


def _fmt_ip(value: int) -> str:
    return str(ipaddress.IPv4Address(value))


class Firewall:
    """Decides for each Ethernet frame whether it passes or is dropped."""

    def __init__(
        self,
        config: FirewallConfig | int = 0,
        geoip: LpmTrie | None = None,
        max_entries: int = MAX_ENTRIES,
    ) -> None:
        self.config = (
            config if isinstance(config, FirewallConfig) else FirewallConfig(int(config))
        )
        self.geoip = geoip if geoip is not None else LpmTrie()
        self.conn_tracker: LruMap[_ConnKey, _ConnState] = LruMap(max_entries)
        self.port_access_log: LruMap[PortAccessKey, PortAccessStats] = LruMap(max_entries)

    def _geoip_selects(self, src_ip: int) -> bool:
        """Whether GeoIP filtering puts ``src_ip`` under the rules."""
        in_list = self.geoip.contains(src_ip)
        if self.config.has_rule(Rule.GEOIP_WHITELIST):
            return not in_list
        return in_list

    def _in_scope(self, src_ip: int) -> bool:
        if self.config.has_rule(Rule.GEOIP_ENABLED):
            return self._geoip_selects(src_ip)
        return True

    def _record(self, src_ip: int, dst_port: int, protocol: int, blocked: bool) -> None:
        if self.config.has_rule(Rule.LOG_PORT_ACCESS):
            self.log_port_access(src_ip, dst_port, protocol, blocked)

    def process(self, frame: bytes) -> Verdict:
        """Apply the rules to one Ethernet frame and return the verdict.

        Frames that are too short to parse are passed.
        """
        data = bytes(frame)
        if len(data) < ETH_HDR_LEN:
            return Verdict.PASS
        (eth_proto,) = struct.unpack_from("!H", data, 12)
        if eth_proto != ETH_P_IP:
            return Verdict.PASS

        if len(data) < ETH_HDR_LEN + IP_HDR_LEN:
            return Verdict.PASS
        ip_start = ETH_HDR_LEN
        protocol = data[ip_start + 9]
        src_ip = int.from_bytes(data[ip_start + 12 : ip_start + 16], "big")
        dst_ip = int.from_bytes(data[ip_start + 16 : ip_start + 20], "big")
        ip_hdr_len = (data[ip_start] & 0x0F) * 4
        if not IP_HDR_LEN <= ip_hdr_len <= 60:
            return Verdict.PASS

        if self.config.has_rule(Rule.BLOCK_ALL):
            if self.config.has_rule(Rule.GEOIP_ENABLED):
                if self._geoip_selects(src_ip):
                    log.info("BLOCKED: all inbound traffic from restricted IP %s", _fmt_ip(src_ip))
                    return Verdict.DROP
            else:
                log.info("BLOCKED: all inbound traffic (global rule) %s", _fmt_ip(src_ip))
                return Verdict.DROP

        transport = ETH_HDR_LEN + ip_hdr_len
        if protocol == IPPROTO_TCP:
            return self._process_tcp(data, transport, src_ip, dst_ip)
        if protocol == IPPROTO_UDP:
            return self._process_udp(data, transport, src_ip)
        return Verdict.PASS

    def _process_tcp(self, data: bytes, offset: int, src_ip: int, dst_ip: int) -> Verdict:
        if len(data) < offset + TCP_HDR_LEN:
            return Verdict.PASS
        src_port, dst_port = struct.unpack_from("!HH", data, offset)
        (bitfield,) = struct.unpack_from("!H", data, offset + 12)
        tcp_hdr_len = (bitfield >> 12) * 4
        if tcp_hdr_len < TCP_HDR_LEN:
            return Verdict.PASS
        payload_offset = offset + tcp_hdr_len

        if self.config.has_rule(Rule.BLOCK_EMAIL):
            if dst_port in SMTP_PORTS:
                self._record(src_ip, dst_port, IPPROTO_TCP, True)
                log.info("BLOCKED: SMTP traffic, destination port %d", dst_port)
                return Verdict.DROP
            if src_port in SMTP_PORTS:
                self._record(src_ip, dst_port, IPPROTO_TCP, True)
                log.info("BLOCKED: SMTP traffic, source port %d", src_port)
                return Verdict.DROP

        if not self.config.has_rule(_PROTOCOL_DETECTION):
            return Verdict.PASS
        if self.config.has_rule(Rule.GEOIP_ENABLED) and not self._geoip_selects(src_ip):
            return Verdict.PASS

        tcp_flags = bitfield & 0xFF
        if tcp_flags & TCP_SYN:
            return Verdict.PASS

        payload = data[payload_offset:]
        payload_size = len(payload)
        if payload_size == 0:
            return Verdict.PASS

        conn_key = _ConnKey(src_ip, dst_ip, src_port, dst_port, IPPROTO_TCP)
        state = self.conn_tracker.get(conn_key)
        if state is _ConnState.BLOCKED:
            self._record(src_ip, dst_port, IPPROTO_TCP, True)
            return Verdict.DROP
        if state is _ConnState.ALLOWED:
            self._record(src_ip, dst_port, IPPROTO_TCP, False)
            return Verdict.PASS

        source = f"{_fmt_ip(src_ip)}:{src_port}"
        should_block = False
        if (
            self.config.has_rule(Rule.BLOCK_HTTP)
            and payload_size >= 4
            and is_http_request(payload)
        ):
            log.info("BLOCKED: inbound HTTP from %s to port %d", source, dst_port)
            should_block = True

        if (
            not should_block
            and self.config.has_rule(Rule.BLOCK_SOCKS5)
            and payload_size >= 2
            and is_socks5_request(payload)
        ):
            log.info("BLOCKED: inbound SOCKS5 from %s to port %d", source, dst_port)
            should_block = True

        if not should_block and payload_size >= 16:
            strict = self.config.has_rule(Rule.BLOCK_FET_STRICT)
            loose = self.config.has_rule(Rule.BLOCK_FET_LOOSE)
            if (strict or loose) and is_fully_encrypted_traffic(payload, strict):
                mode = "strict" if strict else "loose"
                log.info(
                    "BLOCKED: fully encrypted traffic (FET-%s) from %s to port %d",
                    mode,
                    source,
                    dst_port,
                )
                should_block = True

        # Small payloads are let through undecided; a larger one decides later.
        if payload_size <= 6:
            return Verdict.PASS

        if should_block:
            self.conn_tracker.insert(conn_key, _ConnState.BLOCKED)
            self._record(src_ip, dst_port, IPPROTO_TCP, True)
            return Verdict.DROP
        self.conn_tracker.insert(conn_key, _ConnState.ALLOWED)
        self._record(src_ip, dst_port, IPPROTO_TCP, False)
        return Verdict.PASS

    def _process_udp(self, data: bytes, offset: int, src_ip: int) -> Verdict:
        if len(data) < offset + UDP_HDR_LEN:
            return Verdict.PASS
        src_port, dst_port = struct.unpack_from("!HH", data, offset)
        payload = data[offset + UDP_HDR_LEN :]
        source = f"{_fmt_ip(src_ip)}:{src_port}"

        if (
            self.config.has_rule(Rule.BLOCK_WIREGUARD)
            and self._in_scope(src_ip)
            and is_wireguard_packet(payload)
        ):
            self._record(src_ip, dst_port, IPPROTO_UDP, True)
            log.info("BLOCKED: inbound WireGuard from %s to port %d", source, dst_port)
            return Verdict.DROP

        if (
            self.config.has_rule(Rule.BLOCK_QUIC)
            and self._in_scope(src_ip)
            and is_quic_packet(payload)
        ):
            self._record(src_ip, dst_port, IPPROTO_UDP, True)
            log.info("BLOCKED: inbound QUIC from %s to port %d", source, dst_port)
            return Verdict.DROP

        return Verdict.PASS

    def log_port_access(self, src_ip: int, dst_port: int, protocol: int, blocked: bool) -> None:
        """Count one allowed or blocked access of ``dst_port`` by ``src_ip``."""
        key = PortAccessKey(dst_port=dst_port, protocol=protocol, src_ip=src_ip)
        current = self.port_access_log.get(key)
        if current is None:
            stats = PortAccessStats(
                allowed_count=0 if blocked else 1,
                blocked_count=1 if blocked else 0,
            )
        elif blocked:
            stats = replace(current, blocked_count=min(current.blocked_count + 1, _U64_MAX))
        else:
            stats = replace(current, allowed_count=min(current.allowed_count + 1, _U64_MAX))
        self.port_access_log.insert(key, stats)

    def port_access_records(self) -> list[tuple[PortAccessKey, PortAccessStats]]:
        """Return every logged (key, stats) pair."""
        return list(self.port_access_log.items())