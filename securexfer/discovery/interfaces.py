"""Pick the local IPv4 address to advertise in discovery responses."""

import logging

import ifaddr

from securexfer.config import PREFERRED_INTERFACES

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"


def _ipv4_addresses(adapters) -> list[tuple[str, str]]:
    """(adapter name, address) pairs for every non-loopback IPv4 address."""
    found = []
    for adapter in adapters:
        name = (adapter.nice_name or adapter.name or "").lower()
        for ip in adapter.ips:
            # ifaddr reports IPv4 as str and IPv6 as a tuple
            if isinstance(ip.ip, str) and not ip.ip.startswith("127."):
                found.append((name, ip.ip))
    return found


def select_address(adapters=None) -> str:
    """
    Prefer physical wired/wireless adapters, then any non-loopback IPv4,
    then loopback.
    """
    if adapters is None:
        try:
            adapters = ifaddr.get_adapters()
        except OSError as e:
            logger.warning(f"Could not enumerate network adapters: {e}")
            return LOOPBACK

    candidates = _ipv4_addresses(adapters)
    for name, address in candidates:
        # prefix match so virtual adapters like "veth0" are not picked up
        if name.startswith(PREFERRED_INTERFACES):
            return address
    if candidates:
        return candidates[0][1]
    return LOOPBACK
