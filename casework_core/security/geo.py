"""
IP Utility Functions
====================
Private-address checks, IP masking for logs and alerts, and the country
resolver seam used by the geographic anomaly check.
"""

import ipaddress
from typing import Mapping, Optional, Protocol

import structlog

logger = structlog.get_logger(__name__)

# Returned for loopback and private ranges; never treated as a country
LOCAL_COUNTRY = "LOCAL"


def is_private_ip(ip: str) -> bool:
    """Check if IP is private, loopback or otherwise not routable."""
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return address.is_private or address.is_loopback or address.is_link_local


def mask_ip(ip: Optional[str]) -> Optional[str]:
    """Keep the network half of an IPv4 address, e.g. ``10.1.xxx.xxx``."""
    if not ip:
        return ip
    parts = ip.split(".")
    if len(parts) == 4:
        return f"{parts[0]}.{parts[1]}.xxx.xxx"
    return ip[:10] + "..."


class CountryResolver(Protocol):
    """Maps an IP address to an ISO country code."""

    async def resolve(self, ip: str) -> Optional[str]:
        ...


class NullCountryResolver:
    """
    Resolver used when no geolocation service is configured.

    Private addresses resolve to LOCAL; everything else is unknown, which
    skips the geographic check.
    """

    async def resolve(self, ip: str) -> Optional[str]:
        if is_private_ip(ip):
            return LOCAL_COUNTRY
        logger.debug("IP geolocation not configured", ip=mask_ip(ip))
        return None


class StaticCountryResolver:
    """Resolver backed by a fixed IP-prefix table (tests, air-gapped deployments)."""

    def __init__(self, table: Mapping[str, str]):
        self.table = dict(table)

    async def resolve(self, ip: str) -> Optional[str]:
        if is_private_ip(ip):
            return LOCAL_COUNTRY
        # Longest matching prefix wins
        for prefix in sorted(self.table, key=len, reverse=True):
            if ip.startswith(prefix):
                return self.table[prefix].upper()
        return None
