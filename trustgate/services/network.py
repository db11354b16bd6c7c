"""
Network & geo helpers.

1. SSRF prevention for outbound webhook URLs
2. IP classification (private ranges, hosting / VPN prefixes)
3. Great-circle distance for impossible-travel checks
"""

import ipaddress
import math
from typing import Iterable, Optional
from urllib.parse import urlparse

import structlog

logger = structlog.get_logger(__name__)

EARTH_RADIUS_KM = 6371.0

# Private/reserved IP ranges that should never be reachable via webhooks
_PRIVATE_RANGES = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),  # link-local
    ipaddress.ip_network("::1/128"),          # IPv6 loopback
    ipaddress.ip_network("fc00::/7"),         # IPv6 private
    ipaddress.ip_network("fe80::/10"),        # IPv6 link-local
]

# Address prefixes of large hosting providers commonly used as VPN / proxy exits
HOSTING_PREFIXES: tuple[str, ...] = (
    "104.16.", "104.17.", "104.18.",         # Cloudflare
    "34.", "35.",                           # Google Cloud
    "52.", "54.",                           # AWS
    "40.", "13.",                           # Azure
)


def validate_webhook_url(url: str) -> tuple[bool, str]:
    """
    Validate a webhook URL to prevent SSRF attacks.

    DENY:
    - Private/reserved IP addresses
    - Non-HTTP(S) schemes
    - URLs with embedded credentials
    - Localhost/loopback
    - URLs without valid hostname

    Returns:
        (is_valid, reason)
    """
    if not url or not isinstance(url, str):
        return False, "URL is empty or invalid"

    try:
        parsed = urlparse(url)
    except ValueError:
        return False, "Malformed URL"

    if parsed.scheme not in ("https", "http"):
        return False, f"Invalid scheme: {parsed.scheme}. Only HTTP(S) allowed."

    if parsed.username or parsed.password:
        return False, "URLs with embedded credentials are not allowed"

    hostname = parsed.hostname
    if not hostname:
        return False, "No hostname in URL"

    if hostname.lower() in {"localhost", "127.0.0.1", "::1", "0.0.0.0"}:
        return False, f"Localhost ({hostname}) is not allowed"

    if is_private_ip(hostname):
        return False, f"Private/reserved IP address: {hostname}"

    return True, "OK"


def is_private_ip(value: str) -> bool:
    try:
        ip = ipaddress.ip_address(value)
    except ValueError:
        return False
    return any(ip in network for network in _PRIVATE_RANGES)


def is_hosting_ip(ip_address: Optional[str], prefixes: Iterable[str] = HOSTING_PREFIXES) -> bool:
    """Heuristic: does the address sit in a known hosting / VPN range?"""
    if not ip_address:
        return False
    return any(ip_address.startswith(prefix) for prefix in prefixes)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))
