"""GeoIP prefix data: CIDR parsing, a longest-prefix-match table and downloads."""

from __future__ import annotations

import ipaddress
import logging
import os
import urllib.error
import urllib.request

from .flags import LpmTrieKey

log = logging.getLogger(__name__)

MAX_ENTRIES = 65536
DEFAULT_TIMEOUT = 30.0
GEOIP_URL_ENV = "RFWALL_GEOIP_URL"

_FULL_MASK = 0xFFFFFFFF


class GeoIpError(Exception):
    """Raised when GeoIP data cannot be obtained or stored."""


def _mask(prefix_len: int) -> int:
    if prefix_len == 0:
        return 0
    return (_FULL_MASK << (32 - prefix_len)) & _FULL_MASK


def _parse_uint(text: str, limit: int) -> int | None:
    digits = text[1:] if text.startswith("+") else text
    if not digits or not (digits.isascii() and digits.isdigit()):
        return None
    value = int(digits)
    return value if value <= limit else None


def parse_cidr_to_lpm(cidr: str) -> tuple[int, int] | None:
    """Parse ``a.b.c.d/len`` into ``(network, prefix_len)``.

    The network is the address with host bits cleared, as an integer in
    host order. Returns None if the text is not a valid IPv4 CIDR.
    """
    parts = cidr.split("/")
    if len(parts) != 2:
        return None
    address, prefix_text = parts

    octets = address.split(".")
    if len(octets) != 4:
        return None
    ip = 0
    for octet in octets:
        value = _parse_uint(octet, 0xFF)
        if value is None:
            return None
        ip = (ip << 8) | value

    prefix_len = _parse_uint(prefix_text, 32)
    if prefix_len is None:
        return None
    return ip & _mask(prefix_len), prefix_len


def _address_value(ip: int | str | ipaddress.IPv4Address) -> int:
    if isinstance(ip, str):
        return int(ipaddress.IPv4Address(ip))
    value = int(ip)
    if not 0 <= value <= _FULL_MASK:
        raise ValueError(f"not an IPv4 address value: {value}")
    return value


class LpmTrie:
    """A bounded table of IPv4 prefixes answering longest-prefix matches."""

    def __init__(self, max_entries: int = MAX_ENTRIES) -> None:
        self.max_entries = max_entries
        self._keys: set[LpmTrieKey] = set()
        self._lengths: dict[int, int] = {}

    def insert(self, prefix_len: int, ip: int | str) -> None:
        """Add the prefix ``ip/prefix_len``; host bits are ignored."""
        if not 0 <= prefix_len <= 32:
            raise ValueError(f"prefix length out of range: {prefix_len}")
        key = LpmTrieKey(prefix_len, _address_value(ip) & _mask(prefix_len))
        if key in self._keys:
            return
        if len(self._keys) >= self.max_entries:
            raise GeoIpError(f"prefix table is full ({self.max_entries} entries)")
        self._keys.add(key)
        self._lengths[prefix_len] = self._lengths.get(prefix_len, 0) + 1

    def contains(self, ip: int | str) -> bool:
        """Return True if some stored prefix covers ``ip``."""
        address = _address_value(ip)
        return any(
            LpmTrieKey(length, address & _mask(length)) in self._keys
            for length in sorted(self._lengths, reverse=True)
        )

    def __len__(self) -> int:
        return len(self._keys)


def _url_for(country_code: str) -> str:
    template = os.environ.get(GEOIP_URL_ENV)
    if not template:
        raise GeoIpError(
            f"no GeoIP source configured: set {GEOIP_URL_ENV} to a URL "
            "in which '{}' stands for the country code"
        )
    return template.replace("{}", country_code.lower())


def fetch_geoip_data(country_code: str, timeout: float = DEFAULT_TIMEOUT) -> list[str]:
    """Download the list of CIDR prefixes for one country."""
    url = _url_for(country_code)
    log.info("downloading GeoIP data for %s from %s", country_code.upper(), url)
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:
            status = response.status
            body = response.read()
    except urllib.error.HTTPError as exc:
        raise GeoIpError(
            f"failed to download GeoIP data for {country_code}: HTTP {exc.code}"
        ) from exc
    except OSError as exc:
        raise GeoIpError(
            f"failed to download GeoIP data for {country_code}: {exc}"
        ) from exc

    if not 200 <= status < 300:
        raise GeoIpError(
            f"failed to download GeoIP data for {country_code}: HTTP {status}"
        )

    text = body.decode("utf-8", errors="replace")
    cidrs = [line.strip() for line in text.split("\n") if line.strip()]
    log.info(
        "downloaded %d CIDR prefixes for %s", len(cidrs), country_code.upper()
    )
    return cidrs


def fetch_multiple_geoip_data(country_codes: list[str]) -> list[tuple[str, list[str]]]:
    """Download prefixes for several countries, skipping those that fail.

    Raises GeoIpError only if every download failed.
    """
    results: list[tuple[str, list[str]]] = []
    for code in country_codes:
        code_upper = code.upper()
        try:
            results.append((code_upper, fetch_geoip_data(code_upper)))
        except GeoIpError as exc:
            log.warning("could not fetch GeoIP data for %s: %s", code_upper, exc)
    if not results:
        raise GeoIpError("GeoIP download failed for every country")
    return results