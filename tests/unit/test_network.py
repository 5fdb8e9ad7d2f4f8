"""
Unit tests for network.py - Local address and port discovery
"""
import pytest
import socket
import asyncio
from types import SimpleNamespace

from qrshare.common import network
from qrshare.common.network import (
    InterfaceType, NetworkDiscovery, classify_interface, find_available_port,
    get_all_local_addresses, get_local_ip_address, is_private_address, validate_connection,
)

LOOPBACK = "127.0.0.1"


def fake_addr(address: str, family=socket.AF_INET):
    return SimpleNamespace(family=family, address=address, netmask=None, broadcast=None, ptp=None)


class TestClassifyInterface:
    """Tests for interface classification"""

    @pytest.mark.parametrize("name", ["wlan0", "wlp3s0", "en0", "Wi-Fi", "Wireless Network Connection"])
    def test_wifi(self, name):
        assert classify_interface(name) is InterfaceType.WIFI

    @pytest.mark.parametrize("name", ["eth0", "enp0s31f6", "en1", "Ethernet", "Local Area Connection"])
    def test_ethernet(self, name):
        assert classify_interface(name) is InterfaceType.ETHERNET

    @pytest.mark.parametrize("name", ["docker0", "tun0", "utun3"])
    def test_other(self, name):
        assert classify_interface(name) is InterfaceType.OTHER


class TestPrivateAddress:
    """Tests for private range checks"""

    @pytest.mark.parametrize("address", ["10.1.2.3", "172.16.0.1", "172.31.255.254",
                                         "192.168.0.10", "169.254.3.4"])
    def test_private(self, address):
        assert is_private_address(address)

    @pytest.mark.parametrize("address", ["8.8.8.8", "172.32.0.1", "127.0.0.1", "not-an-ip", "::1"])
    def test_not_private(self, address):
        assert not is_private_address(address)


class TestLocalAddresses:
    """Tests for address enumeration with a faked psutil"""

    def test_priority_and_filtering(self, monkeypatch):
        interfaces = {
            "lo": [fake_addr("127.0.0.1")],
            "docker0": [fake_addr("172.17.0.1")],
            "eth0": [fake_addr("10.0.0.5"), fake_addr("fe80::1", family=socket.AF_INET6)],
            "wlan0": [fake_addr("192.168.1.20")],
            "ppp0": [fake_addr("8.8.4.4")],
        }
        monkeypatch.setattr(network.psutil, "net_if_addrs", lambda: interfaces)

        addresses = get_all_local_addresses()
        assert [a.address for a in addresses] == ["192.168.1.20", "10.0.0.5", "172.17.0.1"]
        assert addresses[0].type is InterfaceType.WIFI
        assert get_local_ip_address() == "192.168.1.20"
        assert network.is_connected_to_wifi()

    def test_no_private_address(self, monkeypatch):
        monkeypatch.setattr(network.psutil, "net_if_addrs", lambda: {"lo": [fake_addr("127.0.0.1")]})
        assert get_local_ip_address() is None
        assert not network.is_connected_to_wifi()

    def test_enumeration_failure(self, monkeypatch):
        def broken():
            raise OSError("no interfaces")

        monkeypatch.setattr(network.psutil, "net_if_addrs", broken)
        assert get_all_local_addresses() == []


class TestFindAvailablePort:
    """Tests for port probing"""

    def test_returns_first_free_port(self, unused_port):
        assert find_available_port(unused_port, unused_port) == unused_port

    def test_skips_busy_port(self):
        busy = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        busy.bind(("0.0.0.0", 0))
        busy.listen(1)
        try:
            port = busy.getsockname()[1]
            assert find_available_port(port, port) is None
        finally:
            busy.close()

    def test_empty_range(self):
        assert find_available_port(9000, 8999) is None


class TestValidateConnection:
    """Tests for TCP reachability checks"""

    def test_reachable(self):
        async def run():
            server = await asyncio.start_server(lambda r, w: w.close(), LOOPBACK, 0)
            port = server.sockets[0].getsockname()[1]
            try:
                return await validate_connection(LOOPBACK, port, timeout=2.0)
            finally:
                server.close()
                await server.wait_closed()

        assert asyncio.run(run()) is True

    def test_unreachable(self, unused_port):
        assert asyncio.run(validate_connection(LOOPBACK, unused_port, timeout=2.0)) is False


class TestNetworkDiscovery:
    """Tests for the injectable discovery object"""

    def test_fixed_address(self):
        discovery = NetworkDiscovery(ip_address=LOOPBACK)
        assert discovery.get_local_ip_address() == LOOPBACK

    def test_port_range(self, unused_port):
        discovery = NetworkDiscovery(port_range=(unused_port, unused_port))
        assert discovery.find_available_port() == unused_port

    def test_falls_back_to_interfaces(self, monkeypatch):
        monkeypatch.setattr(network.psutil, "net_if_addrs", lambda: {"wlan0": [fake_addr("192.168.4.2")]})
        assert NetworkDiscovery().get_local_ip_address() == "192.168.4.2"
