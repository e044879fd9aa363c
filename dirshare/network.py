import ipaddress
import logging
import socket
from typing import List

import psutil

logger = logging.getLogger("dirshare.network")

LOOPBACK_FALLBACK = "127.0.0.1"


def discover_addresses() -> List[str]:
    """Return every non-loopback IPv4 address bound to a local interface.

    Falls back to ``["127.0.0.1"]`` when the interfaces cannot be read or
    none of them carries a usable address.
    """

    try:
        interfaces = psutil.net_if_addrs()
    except (OSError, RuntimeError) as error:
        logger.warning("address_discovery_failed error=%s", error)
        return [LOOPBACK_FALLBACK]

    addresses: List[str] = []
    for addrs in interfaces.values():
        for addr in addrs:
            if addr.family != socket.AF_INET:
                continue
            try:
                parsed = ipaddress.IPv4Address(addr.address)
            except ValueError:
                continue
            if parsed.is_loopback:
                continue
            addresses.append(addr.address)

    if not addresses:
        return [LOOPBACK_FALLBACK]
    return addresses
