"""Resolve a network interface name to the local address requests bind to"""

import ipaddress
import logging
import socket
from typing import Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)


def _usable(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return False
    return not ip.is_link_local


def list_interfaces() -> Dict[str, List[str]]:
    """
    Map every interface name to its usable addresses, IPv4 first.

    Link-local IPv6 addresses are left out since they cannot be bound
    without a scope id.
    """
    interfaces: Dict[str, List[str]] = {}
    for name, addresses in psutil.net_if_addrs().items():
        ipv4 = [a.address for a in addresses if a.family == socket.AF_INET and _usable(a.address)]
        ipv6 = [a.address for a in addresses if a.family == socket.AF_INET6 and _usable(a.address)]
        if ipv4 or ipv6:
            interfaces[name] = ipv4 + ipv6
    return interfaces


def resolve_interface(name: str) -> Optional[str]:
    """
    Return the local address for an interface name.

    Args:
        name: Interface name as reported by the OS (e.g. "eth0")

    Returns:
        The first usable address, or None if the name is unknown or has none
    """
    addresses = list_interfaces().get(name)
    if not addresses:
        logger.debug("Interface %s has no usable address", name)
        return None
    return addresses[0]


def _default_route_address() -> Optional[str]:
    # connect() on a UDP socket only selects a route, nothing is sent
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            sock.connect(("1.1.1.1", 80))
        except OSError as e:
            logger.debug("No default IPv4 route: %s", e)
            return None
        return sock.getsockname()[0]


def default_interface() -> Optional[str]:
    """
    Name of the interface carrying the default IPv4 route.

    Returns:
        The interface name, or None when there is no route or no interface
        owns the route's local address
    """
    address = _default_route_address()
    if not address:
        return None
    for name, addresses in list_interfaces().items():
        if address in addresses:
            return name
    logger.debug("No interface owns default route address %s", address)
    return None
