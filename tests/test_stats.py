import ipaddress

import pytest

from rfwall.flags import PortAccessKey, PortAccessStats
from rfwall.stats import (
    NO_RECORDS_MESSAGE,
    filter_records,
    format_stats,
    sort_records,
)


def _record(ip, port, protocol, allowed, blocked):
    key = PortAccessKey(
        dst_port=port, protocol=protocol, src_ip=int(ipaddress.IPv4Address(ip))
    )
    return key, PortAccessStats(allowed_count=allowed, blocked_count=blocked)


@pytest.fixture
def records():
    return [
        _record("192.0.2.1", 80, 6, 5, 0),
        _record("192.0.2.2", 80, 6, 0, 3),
        _record("198.51.100.7", 22, 6, 2, 7),
        _record("203.0.113.9", 53, 17, 1, 1),
    ]


def test_filter_by_port(records):
    result = filter_records(records, port=80)
    assert [key.dst_port for key, _ in result] == [80, 80]


def test_filter_by_ip(records):
    result = filter_records(records, ip="198.51.100.7")
    assert result == [records[2]]


def test_filter_blocked_only(records):
    result = filter_records(records, blocked_only=True)
    assert all(stats.blocked_count > 0 for _, stats in result)
    assert records[0] not in result
    assert len(result) == 3


def test_filter_allowed_only(records):
    result = filter_records(records, allowed_only=True)
    assert all(stats.allowed_count > 0 for _, stats in result)
    assert records[1] not in result


def test_filter_without_filters_keeps_everything(records):
    assert filter_records(records) == records


def test_filter_bad_ip(records):
    with pytest.raises(ValueError):
        filter_records(records, ip="not-an-ip")


def test_sort_blocked_then_allowed(records):
    ordered = sort_records(records)
    keys = [(stats.blocked_count, stats.allowed_count) for _, stats in ordered]
    assert keys == sorted(keys, reverse=True)
    assert ordered[0] == records[2]
    assert ordered[-1] == records[0]


def test_format_empty():
    text = format_stats([], group_by_port=False)
    assert text.splitlines()[0] == NO_RECORDS_MESSAGE


def test_format_list(records):
    lines = format_stats(records, group_by_port=False).splitlines()
    assert lines[0].startswith("Source IP")
    assert lines[1] == "-" * 72
    assert lines[2].split() == ["198.51.100.7", "TCP", "22", "2", "7", "9"]
    assert lines[-1] == "Total records: 4"
    assert any(line.split()[:2] == ["203.0.113.9", "UDP"] for line in lines)


def test_format_grouped(records):
    lines = format_stats(records, group_by_port=True).splitlines()
    headings = [line for line in lines if line.startswith("Port ")]
    assert headings == ["Port 22/TCP", "Port 53/UDP", "Port 80/TCP"]
    assert lines.count("-" * 56) == 3
    port80 = lines.index("Port 80/TCP")
    assert lines[port80 + 3].split()[0] == "192.0.2.2"
    assert lines[port80 + 4].split()[0] == "192.0.2.1"
    assert lines[-1] == "Total records: 4"