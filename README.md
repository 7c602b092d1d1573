# rfwall

`rfwall` is an inbound firewall rule engine that works on raw Ethernet
frames. For each IPv4 frame it returns a verdict, pass or drop, using:

- SMTP port blocking (25, 587, 465, 2525), on either the source or the
  destination port
- inspection of the first TCP payload of a connection for HTTP requests,
  SOCKS5 greetings and fully encrypted traffic (FET), in strict or loose
  mode; the outcome is remembered per connection in a bounded LRU table
- UDP inspection for WireGuard and QUIC packets
- a block-everything rule
- GeoIP filtering by country, in blacklist or whitelist mode, using a
  longest-prefix-match table of CIDR ranges
- optional per-port, per-source access statistics

It has no dependencies outside the standard library.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Command line

The `rfwall` command takes the rules as flags:

```
rfwall --iface eth0 --block-http --block-socks5
rfwall --countries CN,RU --block-fet-loose --log-port-access
rfwall --allow-only-countries US,JP --block-all
rfwall --block-all-from CN,RU
rfwall --block-email --block-wireguard --block-quic --xdp-mode skb
```

`--countries`, `--allow-only-countries` and `--block-all-from` cannot be
combined with each other's first form (`--countries` conflicts with the other
two), and `--block-fet-strict` conflicts with `--block-fet-loose`; a conflict
exits with status 2. `--xdp-mode` accepts `auto`, `skb`, `drv`/`driver` and
`hw`/`hardware`, case-insensitively; an unknown mode is reported and treated
as `auto`. If no blocking rule is given, a warning is printed.

When countries are given, the CIDR list of each country is downloaded from the
URL template in the `RFWALL_GEOIP_URL` environment variable, where `{}` stands
for the lower-case country code. Countries whose download fails are skipped
with a warning; if all fail, the command exits with status 1.

The command then opens a raw packet socket on the interface (Linux, needs the
privileges for that), runs every inbound frame through the engine until
Ctrl-C, and logs the verdicts at debug level. The log level is set with the
`RFWALL_LOG` environment variable (default `WARNING`).

With `--log-port-access`, the access statistics are written about once a
second as JSON to the file given by `--state-file` (default
`/run/rfwall/port_access_log.json`), and the file is removed on exit.

Statistics are shown with the `stats` subcommand, which reads that file:

```
rfwall stats --port 22 --blocked-only
rfwall stats --ip 203.0.113.7 --group-by-port
rfwall stats --allowed-only --state-file /tmp/access.json
```

Records are sorted by blocked count, then allowed count, both descending.

## Library use

```python
from rfwall.flags import FirewallConfig, Rule
from rfwall.engine import Firewall, Verdict

config = FirewallConfig()
config.enable_rule(Rule.BLOCK_HTTP)
config.enable_rule(Rule.LOG_PORT_ACCESS)

firewall = Firewall(config)
verdict = firewall.process(frame_bytes)   # Verdict.PASS or Verdict.DROP

for key, stats in firewall.port_access_records():
    print(key.dst_port, stats.allowed_count, stats.blocked_count)
```

`Firewall` also accepts a plain integer mask and an `LpmTrie` for GeoIP
rules. Frames too short to parse, and non-IPv4 frames, are passed.

- `rfwall.flags`: the `Rule` flags, `FirewallConfig` (`enable_rule`,
  `has_rule`) and the records `GeoIpEntry`, `LpmTrieKey`, `PortAccessKey`,
  `PortAccessStats`.
- `rfwall.detectors`: `is_tls`, `is_http_request`, `is_socks5_request`,
  `is_fully_encrypted_traffic`, `is_wireguard_packet` and `is_quic_packet`,
  each taking a payload as `bytes`.
- `rfwall.geoip`: `parse_cidr_to_lpm`, the `LpmTrie` prefix table (`insert`,
  `contains`, `len()`, at most 65536 entries by default, `GeoIpError` when
  full) and `fetch_geoip_data` / `fetch_multiple_geoip_data`.
- `rfwall.engine`: `Firewall`, `Verdict` and the bounded `LruMap`.
- `rfwall.stats`: `filter_records`, `sort_records` and `format_stats`.

## What it does not do

The command does not drop anything on the wire. It observes frames on a raw
socket and computes verdicts; nothing is attached to the kernel's packet path,
and `--xdp-mode` only selects the mode that is reported. Enforcing the
verdicts is left to whatever embeds `Firewall`. No GeoIP source is built in:
without `RFWALL_GEOIP_URL`, country rules cannot be loaded.