"""Filtering, ordering and rendering of port access records."""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable

from .flags import PortAccessKey, PortAccessStats

IPPROTO_TCP = 6

_LIST_ROW = "{:<16} {:<8} {:>8} {:>12} {:>12} {:>12}"
_GROUP_ROW = "{:<16} {:>12} {:>12} {:>12}"

NO_RECORDS_MESSAGE = "No matching access records found"
NO_RECORDS_HINT = "Hint: make sure the firewall runs with --log-port-access"

Record = tuple[PortAccessKey, PortAccessStats]


def _protocol_name(protocol: int) -> str:
    return "TCP" if protocol == IPPROTO_TCP else "UDP"


def _address(value: int) -> str:
    return str(ipaddress.IPv4Address(value))


def filter_records(
    records: Iterable[Record],
    port: int | None = None,
    ip: str | None = None,
    blocked_only: bool = False,
    allowed_only: bool = False,
) -> list[Record]:
    """Keep the records that match every given filter.

    ``ip`` is a dotted IPv4 address; a malformed one raises ValueError.
    """
    wanted_ip = int(ipaddress.IPv4Address(ip)) if ip is not None else None
    return [
        (key, stats)
        for key, stats in records
        if (port is None or key.dst_port == port)
        and (wanted_ip is None or key.src_ip == wanted_ip)
        and not (blocked_only and stats.blocked_count == 0)
        and not (allowed_only and stats.allowed_count == 0)
    ]


def sort_records(records: Iterable[Record]) -> list[Record]:
    """Order records by blocked count, then allowed count, both descending."""
    return sorted(
        records,
        key=lambda record: (record[1].blocked_count, record[1].allowed_count),
        reverse=True,
    )


def format_stats(records: Iterable[Record], group_by_port: bool = False) -> str:
    """Render records as a table, optionally one table per port."""
    ordered = sort_records(records)
    if not ordered:
        return f"{NO_RECORDS_MESSAGE}\n{NO_RECORDS_HINT}"

    lines: list[str] = []
    if group_by_port:
        groups: dict[tuple[int, int], list[Record]] = {}
        for key, stats in ordered:
            groups.setdefault((key.dst_port, key.protocol), []).append((key, stats))
        for (port, protocol), entries in sorted(groups.items()):
            lines.append("")
            lines.append(f"Port {port}/{_protocol_name(protocol)}")
            lines.append(_GROUP_ROW.format("Source IP", "Allowed", "Blocked", "Total"))
            lines.append("-" * 56)
            for key, stats in entries:
                lines.append(
                    _GROUP_ROW.format(
                        _address(key.src_ip),
                        stats.allowed_count,
                        stats.blocked_count,
                        stats.allowed_count + stats.blocked_count,
                    )
                )
    else:
        lines.append(
            _LIST_ROW.format("Source IP", "Proto", "Port", "Allowed", "Blocked", "Total")
        )
        lines.append("-" * 72)
        for key, stats in ordered:
            lines.append(
                _LIST_ROW.format(
                    _address(key.src_ip),
                    _protocol_name(key.protocol),
                    key.dst_port,
                    stats.allowed_count,
                    stats.blocked_count,
                    stats.allowed_count + stats.blocked_count,
                )
            )

    lines.append("")
    lines.append(f"Total records: {len(ordered)}")
    return "\n".join(lines)