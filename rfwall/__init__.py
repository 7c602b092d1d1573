"""Inbound firewall rule engine for Ethernet frames, with protocol detection, GeoIP filtering and access statistics."""

__version__ = "0.1.9"

__all__ = ["cli", "detectors", "engine", "flags", "geoip", "stats"]