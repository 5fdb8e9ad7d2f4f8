"""
Local network discovery

Finds the address the sender should advertise in its QR code and a free
port to serve on. Interfaces are enumerated with psutil and ranked
Wi-Fi > Ethernet > other, since the receiver is usually a phone on Wi-Fi.
"""
import socket
import asyncio
import logging
import ipaddress
from enum import Enum
from dataclasses import dataclass
from typing import List, Optional

import psutil

from qrshare import config

logger = logging.getLogger(__name__)

_PRIVATE_NETWORKS = [
    ipaddress.ip_network('10.0.0.0/8'),
    ipaddress.ip_network('172.16.0.0/12'),
    ipaddress.ip_network('192.168.0.0/16'),
    ipaddress.ip_network('169.254.0.0/16'),  # link-local
]

_WIFI_CONTAINS = ('wlan', 'wifi', 'wireless', 'wi-fi', '802.11')
_WIFI_PREFIXES = ('en0', 'wlp', 'wl')
_ETHERNET_CONTAINS = ('eth', 'lan', 'ethernet', 'local area connection')
_ETHERNET_PREFIXES = ('en1', 'enp', 'em', 'igb', 're')


class InterfaceType(Enum):
    """Network interface kinds, value is the priority (lower wins)"""
    WIFI = 1
    ETHERNET = 2
    OTHER = 3


@dataclass(frozen=True)
class NetworkInterfaceInfo:
    """An IPv4 address on a named interface"""
    name: str
    address: str
    type: InterfaceType


def classify_interface(name: str) -> InterfaceType:
    """Guess the interface kind from its OS name"""
    lowered = name.lower()

    if any(p in lowered for p in _WIFI_CONTAINS) or lowered.startswith(_WIFI_PREFIXES):
        return InterfaceType.WIFI
    if any(p in lowered for p in _ETHERNET_CONTAINS) or lowered.startswith(_ETHERNET_PREFIXES):
        return InterfaceType.ETHERNET
    return InterfaceType.OTHER


def is_private_address(address: str) -> bool:
    """True for RFC1918 and link-local IPv4 addresses"""
    try:
        ip = ipaddress.IPv4Address(address)
    except ValueError:
        return False
    return any(ip in network for network in _PRIVATE_NETWORKS)


def get_all_local_addresses() -> List[NetworkInterfaceInfo]:
    """All private IPv4 addresses on non-loopback interfaces, best first"""
    result = []
    try:
        interfaces = psutil.net_if_addrs()
    except OSError as e:
        logger.warning(f"Could not enumerate network interfaces: {e}")
        return result

    for name, addresses in interfaces.items():
        for addr in addresses:
            if addr.family != socket.AF_INET:
                continue
            if addr.address.startswith('127.'):
                continue
            if is_private_address(addr.address):
                result.append(NetworkInterfaceInfo(name=name, address=addr.address,
                                                   type=classify_interface(name)))

    # sorted() is stable, so OS order is kept within a class
    return sorted(result, key=lambda info: info.type.value)


def get_local_ip_address() -> Optional[str]:
    """
    Address to advertise to the receiver.

    Returns:
        The first private address of the highest-priority interface class,
        or None when no interface qualifies.
    """
    addresses = get_all_local_addresses()
    if not addresses:
        logger.warning("No private IPv4 address found on any interface")
        return None

    best = addresses[0]
    logger.debug(f"Using {best.address} on {best.name} ({best.type.name})")
    return best.address


def is_connected_to_wifi() -> bool:
    return any(info.type is InterfaceType.WIFI for info in get_all_local_addresses())


def find_available_port(start_port: int = config.DEFAULT_PORT_START,
                        end_port: int = config.DEFAULT_PORT_END) -> Optional[int]:
    """First port in [start_port, end_port] that can be bound, or None"""
    for port in range(start_port, end_port + 1):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind(('0.0.0.0', port))
            return port
        except OSError:
            continue
        finally:
            sock.close()

    logger.warning(f"No free port in range {start_port}-{end_port}")
    return None


async def validate_connection(ip_address: str, port: int, timeout: float = config.CONNECT_TIMEOUT) -> bool:
    """True if a TCP connection to ip_address:port succeeds within timeout"""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(ip_address, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError) as e:
        logger.debug(f"Connection to {ip_address}:{port} failed: {e}")
        return False

    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


class NetworkDiscovery:
    """
    Address and port lookup used by the transfer server.

    Tests and embedders can pass a fixed address instead of enumerating
    interfaces.
    """

    def __init__(self, ip_address: Optional[str] = None,
                 port_range: tuple = (config.DEFAULT_PORT_START, config.DEFAULT_PORT_END)):
        self.fixed_ip_address = ip_address
        self.port_range = port_range

    def get_local_ip_address(self) -> Optional[str]:
        if self.fixed_ip_address:
            return self.fixed_ip_address
        return get_local_ip_address()

    def find_available_port(self) -> Optional[int]:
        start, end = self.port_range
        return find_available_port(start, end)

    async def validate_connection(self, ip_address: str, port: int,
                                  timeout: float = config.CONNECT_TIMEOUT) -> bool:
        return await validate_connection(ip_address, port, timeout)
