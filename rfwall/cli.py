"""Command line entry point: run the packet filter or show port access statistics."""

from __future__ import annotations

import argparse
import ipaddress
import json
import logging
import os
import socket
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .engine import Firewall
from .flags import FirewallConfig, PortAccessKey, PortAccessStats, Rule
from .geoip import GeoIpError, LpmTrie, fetch_multiple_geoip_data, parse_cidr_to_lpm
from .stats import filter_records, format_stats

log = logging.getLogger(__name__)

DEFAULT_IFACE = "eth0"
DEFAULT_XDP_MODE = "auto"
DEFAULT_STATE_FILE = "/run/rfwall/port_access_log.json"
LOG_LEVEL_ENV = "RFWALL_LOG"

_SAVE_INTERVAL = 1.0
_ETH_P_ALL = 0x0003
_PACKET_OUTGOING = 4
_MAX_FRAME = 65535
_MAX_REPORTED_INSERT_ERRORS = 5

_BLOCKING_RULES = (
    Rule.BLOCK_EMAIL
    | Rule.BLOCK_HTTP
    | Rule.BLOCK_SOCKS5
    | Rule.BLOCK_FET_STRICT
    | Rule.BLOCK_FET_LOOSE
    | Rule.BLOCK_WIREGUARD
    | Rule.BLOCK_QUIC
    | Rule.BLOCK_ALL
)

# Option attribute, rule bit and description, in the order they are reported.
_SCOPED_RULES = (
    ("block_http", Rule.BLOCK_HTTP, "inbound HTTP"),
    ("block_socks5", Rule.BLOCK_SOCKS5, "inbound SOCKS5"),
    (
        "block_fet_strict",
        Rule.BLOCK_FET_STRICT,
        "inbound fully encrypted traffic (strict mode - blocked by default)",
    ),
    (
        "block_fet_loose",
        Rule.BLOCK_FET_LOOSE,
        "inbound fully encrypted traffic (loose mode - passed by default)",
    ),
    ("block_wireguard", Rule.BLOCK_WIREGUARD, "inbound WireGuard VPN"),
    ("block_quic", Rule.BLOCK_QUIC, "inbound QUIC"),
    ("block_all", Rule.BLOCK_ALL, "all inbound traffic"),
)


class XdpMode(Enum):
    """How the filter is attached to the interface."""

    AUTO = "auto"
    SKB = "skb"
    DRV = "drv"
    HW = "hw"


_XDP_MODES = {
    "skb": (XdpMode.SKB, "attaching in SKB mode (compatibility mode)"),
    "drv": (XdpMode.DRV, "attaching in driver mode (needs driver support)"),
    "driver": (XdpMode.DRV, "attaching in driver mode (needs driver support)"),
    "hw": (XdpMode.HW, "attaching in hardware mode (needs hardware support)"),
    "hardware": (XdpMode.HW, "attaching in hardware mode (needs hardware support)"),
    "auto": (XdpMode.AUTO, "attaching in automatic mode"),
}


@dataclass
class RunSettings:
    """The rule mask and GeoIP country selection derived from the options."""

    config: FirewallConfig
    countries: list[str] = field(default_factory=list)
    whitelist: bool = False


def _country_list(text: str) -> list[str]:
    return text.split(",")


def _port(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {text!r}") from None
    if not 0 <= value <= 0xFFFF:
        raise argparse.ArgumentTypeError(f"port out of range: {text}")
    return value


def _build_parser() -> tuple[argparse.ArgumentParser, argparse.ArgumentParser]:
    parser = argparse.ArgumentParser(
        prog="rfw", description="High-performance packet firewall"
    )
    parser.add_argument(
        "-i", "--iface", default=DEFAULT_IFACE, help="network interface name (e.g. eth0)"
    )
    parser.add_argument(
        "--countries",
        type=_country_list,
        action="extend",
        default=[],
        help="comma-separated country codes the protocol rules apply to",
    )
    parser.add_argument(
        "--allow-only-countries",
        type=_country_list,
        action="extend",
        default=[],
        help="comma-separated country codes to allow; all others are filtered",
    )
    parser.add_argument(
        "--block-all-from",
        type=_country_list,
        action="extend",
        default=[],
        help="comma-separated country codes whose traffic is filtered",
    )
    parser.add_argument("--block-email", action="store_true", help="block SMTP ports")
    parser.add_argument("--block-http", action="store_true", help="block inbound HTTP")
    parser.add_argument("--block-socks5", action="store_true", help="block inbound SOCKS5")
    parser.add_argument(
        "--block-fet-strict",
        action="store_true",
        help="block fully encrypted traffic, blocking by default",
    )
    parser.add_argument(
        "--block-fet-loose",
        action="store_true",
        help="block fully encrypted traffic, passing by default",
    )
    parser.add_argument(
        "--block-wireguard", action="store_true", help="block inbound WireGuard"
    )
    parser.add_argument("--block-quic", action="store_true", help="block inbound QUIC")
    parser.add_argument("--block-all", action="store_true", help="block all inbound traffic")
    parser.add_argument(
        "--xdp-mode",
        default=DEFAULT_XDP_MODE,
        help="attach mode: auto, skb, drv or hw",
    )
    parser.add_argument(
        "--log-port-access", action="store_true", help="record port access statistics"
    )
    parser.add_argument(
        "--state-file",
        default=DEFAULT_STATE_FILE,
        help="where port access statistics are published",
    )

    subparsers = parser.add_subparsers(dest="command")
    stats = subparsers.add_parser("stats", help="show port access statistics")
    stats.add_argument("-p", "--port", type=_port, default=None, help="filter by port")
    stats.add_argument("-i", "--ip", default=None, help="filter by source IP address")
    stats.add_argument(
        "--blocked-only", action="store_true", help="show only blocked accesses"
    )
    stats.add_argument(
        "--allowed-only", action="store_true", help="show only allowed accesses"
    )
    stats.add_argument(
        "-g", "--group-by-port", action="store_true", help="group the output by port"
    )
    stats.add_argument(
        "--state-file",
        default=DEFAULT_STATE_FILE,
        help="where port access statistics are read from",
    )
    return parser, stats


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse the command line; conflicting options exit with status 2."""
    parser, _ = _build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        if args.countries and args.allow_only_countries:
            parser.error("--allow-only-countries cannot be used with --countries")
        if args.countries and args.block_all_from:
            parser.error("--block-all-from cannot be used with --countries")
        if args.block_fet_strict and args.block_fet_loose:
            parser.error("--block-fet-strict cannot be used with --block-fet-loose")
    return args


def build_config(args: argparse.Namespace) -> RunSettings:
    """Turn the run options into a rule mask and a country selection."""
    countries: list[str] = []
    whitelist = False
    if args.block_all_from:
        countries = list(args.block_all_from)
        log.info("shortcut mode: filtering all traffic from %s", countries)
    elif args.allow_only_countries:
        countries = list(args.allow_only_countries)
        whitelist = True
        log.info("whitelist mode: only allowing traffic from %s", countries)
    elif args.countries:
        countries = list(args.countries)
        log.info("GeoIP filter countries: %s", countries)

    config = FirewallConfig()
    if args.block_email:
        config.enable_rule(Rule.BLOCK_EMAIL)
        log.info("rule enabled: block outgoing e-mail")

    if countries:
        config.enable_rule(Rule.GEOIP_ENABLED)
        if whitelist:
            config.enable_rule(Rule.GEOIP_WHITELIST)

    scope = f"{countries} countries" if countries else "all sources"
    for attribute, rule, description in _SCOPED_RULES:
        if getattr(args, attribute):
            config.enable_rule(rule)
            log.info("rule enabled: block %s from %s", description, scope)

    if args.log_port_access:
        config.enable_rule(Rule.LOG_PORT_ACCESS)
        log.info("rule enabled: record port access")

    return RunSettings(config=config, countries=countries, whitelist=whitelist)


def parse_xdp_mode(mode: str) -> XdpMode:
    """Map a mode name to an attach mode; unknown names fall back to auto."""
    entry = _XDP_MODES.get(mode.lower())
    if entry is None:
        log.warning("unknown XDP mode '%s', using automatic mode", mode)
        return XdpMode.AUTO
    chosen, message = entry
    log.info(message)
    return chosen


def _save_port_access_log(
    path: str, records: list[tuple[PortAccessKey, PortAccessStats]]
) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    document = [
        {
            "dst_port": key.dst_port,
            "protocol": key.protocol,
            "src_ip": str(ipaddress.IPv4Address(key.src_ip)),
            "allowed_count": stats.allowed_count,
            "blocked_count": stats.blocked_count,
        }
        for key, stats in records
    ]
    temporary = target.with_name(target.name + ".tmp")
    temporary.write_text(json.dumps(document), encoding="utf-8")
    os.replace(temporary, target)


def _load_port_access_log(path: str) -> list[tuple[PortAccessKey, PortAccessStats]]:
    document = json.loads(Path(path).read_text(encoding="utf-8"))
    return [
        (
            PortAccessKey(
                dst_port=int(entry["dst_port"]),
                protocol=int(entry["protocol"]),
                src_ip=int(ipaddress.IPv4Address(entry["src_ip"])),
            ),
            PortAccessStats(
                allowed_count=int(entry["allowed_count"]),
                blocked_count=int(entry["blocked_count"]),
            ),
        )
        for entry in document
    ]


def _run_stats(args: argparse.Namespace) -> int:
    try:
        records = _load_port_access_log(args.state_file)
    except FileNotFoundError:
        print(
            "Cannot find the port access log; make sure the firewall is running "
            "with --log-port-access",
            file=sys.stderr,
        )
        return 1
    except (OSError, ValueError, KeyError, TypeError) as exc:
        print(f"Cannot read the port access log: {exc}", file=sys.stderr)
        return 1

    try:
        selected = filter_records(
            records,
            port=args.port,
            ip=args.ip,
            blocked_only=args.blocked_only,
            allowed_only=args.allowed_only,
        )
    except ValueError:
        print(f"Invalid IP address: {args.ip}", file=sys.stderr)
        return 1

    print(format_stats(selected, group_by_port=args.group_by_port))
    return 0


def _load_geoip(trie: LpmTrie, geo_data: list[tuple[str, list[str]]]) -> tuple[int, int]:
    loaded = 0
    errors = 0
    for country_code, cidrs in geo_data:
        log.info("loading IP prefixes of %s", country_code)
        for cidr in cidrs:
            parsed = parse_cidr_to_lpm(cidr)
            if parsed is None:
                continue
            ip, prefix_len = parsed
            try:
                trie.insert(prefix_len, ip)
            except GeoIpError as exc:
                if errors < _MAX_REPORTED_INSERT_ERRORS:
                    log.warning(
                        "inserting %s prefix %s (0x%08x/%d) failed: %s",
                        country_code,
                        cidr,
                        ip,
                        prefix_len,
                        exc,
                    )
                errors += 1
            else:
                loaded += 1
        log.info("loaded IP prefixes of %s", country_code)
    return loaded, errors


def _configure_logging() -> None:
    name = os.environ.get(LOG_LEVEL_ENV, "WARNING").upper()
    level = logging.getLevelName(name)
    if not isinstance(level, int):
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _open_capture(iface: str) -> socket.socket:
    sock = socket.socket(socket.AF_PACKET, socket.SOCK_RAW, socket.htons(_ETH_P_ALL))
    try:
        sock.bind((iface, 0))
        sock.settimeout(_SAVE_INTERVAL)
    except OSError:
        sock.close()
        raise
    return sock


def _capture_loop(sock: socket.socket, firewall: Firewall, state_file: str | None) -> None:
    last_save = time.monotonic()
    while True:
        try:
            frame, address = sock.recvfrom(_MAX_FRAME)
        except TimeoutError:
            pass
        else:
            if address[2] != _PACKET_OUTGOING:
                verdict = firewall.process(frame)
                log.debug("frame of %d bytes: %s", len(frame), verdict.name)
        if state_file is not None and time.monotonic() - last_save >= _SAVE_INTERVAL:
            try:
                _save_port_access_log(state_file, firewall.port_access_records())
            except OSError as exc:
                log.warning("publishing port access log failed: %s", exc)
            last_save = time.monotonic()


def _run_firewall(args: argparse.Namespace) -> int:
    _configure_logging()
    settings = build_config(args)

    if not settings.config.has_rule(_BLOCKING_RULES):
        print("Warning: no firewall rule is enabled; traffic will not be filtered")
        print("Use 'rfw --help' to list the available rules")

    log_access = settings.config.has_rule(Rule.LOG_PORT_ACCESS)
    if log_access:
        try:
            _save_port_access_log(args.state_file, [])
        except OSError as exc:
            print(
                f"Cannot publish the port access log at {args.state_file}: {exc}",
                file=sys.stderr,
            )
            return 1
        log.info("publishing the port access log at %s", args.state_file)

    log.info("firewall configuration set: flags = 0x%x", settings.config.flags)

    trie = LpmTrie()
    if settings.countries:
        log.info("GeoIP rules requested, downloading IP data of %s", settings.countries)
        try:
            geo_data = fetch_multiple_geoip_data(settings.countries)
        except GeoIpError as exc:
            print(
                f"Downloading GeoIP data failed, check the network connection: {exc}",
                file=sys.stderr,
            )
            return 1
        loaded, errors = _load_geoip(trie, geo_data)
        if errors:
            log.warning(
                "%d IP prefixes could not be inserted (table full, capacity %d)",
                errors,
                trie.max_entries,
            )
        log.info(
            "loaded %d IP prefixes, covering countries %s", loaded, settings.countries
        )

    firewall = Firewall(settings.config, trie)
    mode = parse_xdp_mode(args.xdp_mode)

    try:
        sock = _open_capture(args.iface)
    except (OSError, AttributeError) as exc:
        print(
            f"Cannot attach to interface {args.iface} in {mode.value} mode: {exc}\n"
            "Hint: try the --xdp-mode skb option",
            file=sys.stderr,
        )
        return 1

    log.info("attached to interface %s (mode: %s)", args.iface, mode.value)
    print("Firewall running, press Ctrl-C to exit...")
    try:
        _capture_loop(sock, firewall, args.state_file if log_access else None)
    except KeyboardInterrupt:
        pass
    finally:
        sock.close()
    print("Exiting...")

    if log_access:
        try:
            os.remove(args.state_file)
        except OSError as exc:
            log.warning("removing the port access log failed: %s", exc)
        else:
            log.info("removed the port access log")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the firewall, or show statistics with the ``stats`` command."""
    args = parse_args(argv)
    if args.command == "stats":
        return _run_stats(args)
    return _run_firewall(args)


if __name__ == "__main__":
    sys.exit(main())