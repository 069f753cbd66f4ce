"""Per-token IP allow-list matching."""

import ipaddress
import logging

import sentry_sdk

from auth.exceptions import MissingRequestIpForRestrictedToken

logger = logging.getLogger(__name__)


def is_valid_ip_or_cidr(value: str) -> bool:
    """True for a single IPv4/IPv6 address or a CIDR range with a valid mask."""
    if not isinstance(value, str) or not value:
        return False

    if "/" not in value:
        try:
            ipaddress.ip_address(value)
            return True
        except ValueError:
            return False

    address, mask = value.split("/", 1)
    if not mask.isdigit():
        return False
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return int(mask) <= ip.max_prefixlen


def _matches(ip: ipaddress.IPv4Address | ipaddress.IPv6Address, entry: str) -> bool:
    try:
        if "/" in entry:
            return ip in ipaddress.ip_network(entry, strict=False)
        return ip == ipaddress.ip_address(entry)
    except ValueError:
        # Mixed IP versions compare unequal; malformed entries never match
        return False


def is_ip_allowed(request_ip: str | None, allowed_ips: list[str] | None) -> bool:
    """
    Check a request IP against a token's allow-list.

    No allow-list means unrestricted. An allow-list with no request IP is
    denied and reported, since it points at proxy misconfiguration.
    """
    if not allowed_ips:
        return True

    if not request_ip:
        logger.warning("Request IP missing for IP-restricted access token")
        sentry_sdk.capture_exception(MissingRequestIpForRestrictedToken(allowed_ips))
        return False

    try:
        ip = ipaddress.ip_address(request_ip)
    except ValueError:
        return False

    return any(_matches(ip, entry) for entry in allowed_ips)
