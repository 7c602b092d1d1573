[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rfwall"
version = "0.1.9"
description = "Inbound firewall rule engine for Ethernet frames: protocol detection, GeoIP filtering and port access statistics"
requires-python = ">=3.10"
dependencies = []
keywords = ["firewall", "geoip", "packet-filter", "protocol-detection", "quic", "wireguard", "socks5"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Firewalls",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
rfwall = "rfwall.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["rfwall"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
