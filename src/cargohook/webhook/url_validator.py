"""Subscriber URL validation, applied when a subscription is created."""

import ipaddress
import socket
from urllib.parse import urlsplit

# Loopback, private, link-local (incl. cloud metadata), CGNAT and broadcast
BLOCKED_IP_RANGES = [
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("fe80::/10"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("100.64.0.0/10"),
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("255.255.255.255/32"),
]

BLOCKED_HOSTNAMES = {
    "localhost",
    "localhost.localdomain",
    "ip6-localhost",
    "ip6-loopback",
    "metadata.google.internal",
    "metadata",
}


class SSRFError(ValueError):
    """Raised when a subscriber URL targets an internal address."""


def is_ip_blocked(ip_str: str) -> bool:
    """Check if an IP address falls in a blocked range.

    Returns False for strings that are not IP addresses.
    """
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(ip in network for network in BLOCKED_IP_RANGES)


def validate_webhook_url(
    url: str,
    block_private: bool = True,
    resolve_dns: bool = False,
) -> None:
    """Validate a subscriber URL.

    Args:
        url: Candidate URL; must be absolute http(s) with a host.
        block_private: Reject loopback, private and metadata targets.
        resolve_dns: Also resolve the hostname and check every address.

    Raises:
        ValueError: If the URL is not an absolute http(s) URI.
        SSRFError: If the URL targets a blocked host.
    """
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as e:
        raise ValueError(f"Invalid URL format: {e}") from e

    if parts.scheme not in ("http", "https"):
        raise ValueError(f"URL scheme must be http or https, got: {parts.scheme or 'none'}")

    hostname = parts.hostname
    if not hostname:
        raise ValueError("URL must have a hostname")

    if not block_private:
        return

    if hostname.lower() in BLOCKED_HOSTNAMES:
        raise SSRFError(f"Hostname '{hostname}' is blocked")

    if is_ip_blocked(hostname):
        raise SSRFError(f"IP address '{hostname}' is in a blocked range")

    if resolve_dns:
        try:
            addrinfo = socket.getaddrinfo(
                hostname,
                port or (443 if parts.scheme == "https" else 80),
                proto=socket.IPPROTO_TCP,
            )
        except socket.gaierror:
            # Unresolvable now; delivery attempts will fail and be recorded
            return
        for _family, _, _, _, sockaddr in addrinfo:
            if is_ip_blocked(str(sockaddr[0])):
                raise SSRFError(f"Hostname '{hostname}' resolves to blocked IP '{sockaddr[0]}'")

