import json

import pytest

from rfwall.cli import (
    DEFAULT_IFACE,
    DEFAULT_XDP_MODE,
    XdpMode,
    build_config,
    main,
    parse_args,
    parse_xdp_mode,
)
from rfwall.flags import Rule
from rfwall.stats import NO_RECORDS_MESSAGE


def _write_log(path, entries):
    path.write_text(json.dumps(entries), encoding="utf-8")
    return str(path)


SAMPLE = [
    {
        "dst_port": 80,
        "protocol": 6,
        "src_ip": "10.0.0.1",
        "allowed_count": 3,
        "blocked_count": 0,
    },
    {
        "dst_port": 53,
        "protocol": 17,
        "src_ip": "10.0.0.2",
        "allowed_count": 0,
        "blocked_count": 5,
    },
]


def test_parse_args_defaults():
    args = parse_args([])
    assert args.command is None
    assert args.iface == DEFAULT_IFACE == "eth0"
    assert args.xdp_mode == DEFAULT_XDP_MODE == "auto"
    assert args.countries == []
    assert args.block_http is False


def test_parse_args_splits_country_lists():
    args = parse_args(["--countries", "CN,RU", "--countries", "KP"])
    assert args.countries == ["CN", "RU", "KP"]


@pytest.mark.parametrize(
    "argv",
    [
        ["--countries", "CN", "--allow-only-countries", "US"],
        ["--countries", "CN", "--block-all-from", "RU"],
        ["--block-fet-strict", "--block-fet-loose"],
    ],
)
def test_parse_args_rejects_conflicts(argv):
    with pytest.raises(SystemExit) as excinfo:
        parse_args(argv)
    assert excinfo.value.code == 2


def test_parse_args_stats_options():
    args = parse_args(["stats", "-p", "80", "-i", "10.0.0.1", "--blocked-only", "-g"])
    assert args.command == "stats"
    assert args.port == 80
    assert args.ip == "10.0.0.1"
    assert args.blocked_only is True
    assert args.allowed_only is False
    assert args.group_by_port is True


def test_parse_args_rejects_port_out_of_range():
    with pytest.raises(SystemExit):
        parse_args(["stats", "--port", "70000"])


def test_build_config_without_rules_is_empty():
    settings = build_config(parse_args([]))
    assert settings.config.flags == 0
    assert settings.countries == []
    assert settings.whitelist is False


def test_build_config_sets_rule_bits():
    settings = build_config(parse_args(["--block-http", "--log-port-access", "--block-email"]))
    assert settings.config.flags == Rule.BLOCK_HTTP | Rule.LOG_PORT_ACCESS | Rule.BLOCK_EMAIL
    assert not settings.config.has_rule(Rule.GEOIP_ENABLED)


def test_build_config_blacklist_countries():
    settings = build_config(parse_args(["--countries", "CN,RU", "--block-quic"]))
    assert settings.countries == ["CN", "RU"]
    assert settings.whitelist is False
    assert settings.config.has_rule(Rule.GEOIP_ENABLED)
    assert not settings.config.has_rule(Rule.GEOIP_WHITELIST)
    assert settings.config.has_rule(Rule.BLOCK_QUIC)


def test_build_config_whitelist_countries():
    settings = build_config(parse_args(["--allow-only-countries", "US,JP", "--block-all"]))
    assert settings.countries == ["US", "JP"]
    assert settings.whitelist is True
    assert settings.config.flags == (
        Rule.GEOIP_ENABLED | Rule.GEOIP_WHITELIST | Rule.BLOCK_ALL
    )


def test_build_config_block_all_from_selects_countries_only():
    settings = build_config(parse_args(["--block-all-from", "CN"]))
    assert settings.countries == ["CN"]
    assert settings.config.flags == Rule.GEOIP_ENABLED


def test_build_config_every_protocol_rule():
    argv = [
        "--block-socks5",
        "--block-fet-loose",
        "--block-wireguard",
    ]
    settings = build_config(parse_args(argv))
    assert settings.config.flags == (
        Rule.BLOCK_SOCKS5 | Rule.BLOCK_FET_LOOSE | Rule.BLOCK_WIREGUARD
    )


@pytest.mark.parametrize(
    "name, expected",
    [
        ("skb", XdpMode.SKB),
        ("SKB", XdpMode.SKB),
        ("drv", XdpMode.DRV),
        ("driver", XdpMode.DRV),
        ("hw", XdpMode.HW),
        ("Hardware", XdpMode.HW),
        ("auto", XdpMode.AUTO),
        ("bogus", XdpMode.AUTO),
    ],
)
def test_parse_xdp_mode(name, expected):
    assert parse_xdp_mode(name) is expected


def test_stats_lists_records_sorted_by_blocked(tmp_path, capsys):
    path = _write_log(tmp_path / "log.json", SAMPLE)
    assert main(["stats", "--state-file", path]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[0].split() == ["Source", "IP", "Proto", "Port", "Allowed", "Blocked", "Total"]
    assert lines[2].split() == ["10.0.0.2", "UDP", "53", "0", "5", "5"]
    assert lines[3].split() == ["10.0.0.1", "TCP", "80", "3", "0", "3"]
    assert lines[-1] == "Total records: 2"


def test_stats_filters_blocked_only(tmp_path, capsys):
    path = _write_log(tmp_path / "log.json", SAMPLE)
    assert main(["stats", "--state-file", path, "--blocked-only"]) == 0
    out = capsys.readouterr().out
    assert "10.0.0.2" in out
    assert "10.0.0.1" not in out
    assert out.strip().endswith("Total records: 1")


def test_stats_filters_by_ip(tmp_path, capsys):
    path = _write_log(tmp_path / "log.json", SAMPLE)
    assert main(["stats", "--state-file", path, "-i", "10.0.0.1"]) == 0
    out = capsys.readouterr().out
    assert "10.0.0.1" in out
    assert "10.0.0.2" not in out


def test_stats_group_by_port(tmp_path, capsys):
    path = _write_log(tmp_path / "log.json", SAMPLE)
    assert main(["stats", "--state-file", path, "-g"]) == 0
    out = capsys.readouterr().out
    assert "Port 53/UDP" in out
    assert "Port 80/TCP" in out
    assert out.index("Port 53/UDP") < out.index("Port 80/TCP")


def test_stats_reports_no_matches(tmp_path, capsys):
    path = _write_log(tmp_path / "log.json", SAMPLE)
    assert main(["stats", "--state-file", path, "--port", "443"]) == 0
    assert NO_RECORDS_MESSAGE in capsys.readouterr().out


def test_stats_missing_log_fails(tmp_path, capsys):
    missing = str(tmp_path / "absent.json")
    assert main(["stats", "--state-file", missing]) == 1
    assert "--log-port-access" in capsys.readouterr().err


def test_stats_invalid_ip_fails(tmp_path, capsys):
    path = _write_log(tmp_path / "log.json", SAMPLE)
    assert main(["stats", "--state-file", path, "--ip", "not-an-ip"]) == 1
    assert "not-an-ip" in capsys.readouterr().err


def test_stats_corrupt_log_fails(tmp_path):
    path = tmp_path / "log.json"
    path.write_text("{not json", encoding="utf-8")
    assert main(["stats", "--state-file", str(path)]) == 1