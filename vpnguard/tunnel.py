"""
VPN tunnel detection from the host's interface list.
"""
import ipaddress
import logging
import socket
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)

# name -> list of IPv4 addresses assigned to it
InterfaceProvider = Callable[[], Dict[str, List[str]]]


@dataclass(frozen=True)
class TunnelState:
    """One observation of a live tunnel."""
    interface_id: str
    assigned_address: str
    observed_at: float = field(default_factory=time.time)


def is_valid_ipv4(address: str) -> bool:
    try:
        ipaddress.IPv4Address(address)
        return True
    except (ipaddress.AddressValueError, ValueError):
        return False


def is_loopback(address: str) -> bool:
    """Check if address is in 127.0.0.0/8. Unparseable addresses count as loopback."""
    try:
        return ipaddress.IPv4Address(address).is_loopback
    except (ipaddress.AddressValueError, ValueError):
        return True


def psutil_interfaces() -> Dict[str, List[str]]:
    """Read IPv4 addresses of every interface via psutil."""
    interfaces: Dict[str, List[str]] = {}
    for name, addrs in psutil.net_if_addrs().items():
        interfaces[name] = [a.address for a in addrs if a.family == socket.AF_INET]
    return interfaces


class TunnelDetector:
    """
    Finds the active tunnel interface.

    Candidates are `<prefix>0` .. `<prefix>N-1` checked in that order, so
    when several tunnels are up the lowest-numbered one wins.
    """

    def __init__(self, prefix: str = 'utun', count: int = 16,
                 provider: Optional[InterfaceProvider] = None):
        self.prefix = prefix
        self.count = count
        self.provider = provider or psutil_interfaces

    def candidates(self) -> List[str]:
        return [f"{self.prefix}{i}" for i in range(self.count)]

    def find_tunnel(self) -> Optional[TunnelState]:
        """
        Return the first non-loopback IPv4 address on a candidate interface.

        Returns:
            TunnelState or None when no tunnel carries an address
        """
        try:
            interfaces = self.provider()
        except Exception as e:
            # Can't see the interface list; report "no tunnel" (fail-safe).
            logger.error("Interface enumeration failed: %s", e)
            return None

        for name in self.candidates():
            for address in interfaces.get(name, []):
                if is_valid_ipv4(address) and not is_loopback(address):
                    return TunnelState(interface_id=name, assigned_address=address)
        return None
