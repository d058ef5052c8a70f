"""
Tests for server inventory collection.
"""

import pytest

from conftest import ScriptedExecutor, command_failure
from nexusfleet.models.schemas import OSFamily
from nexusfleet.services.server_inventory_service import (
    ServerInventoryService,
    parse_interfaces,
)

WG0_CONF = (
    "[Interface]\n"
    "PrivateKey = cHJpdmF0ZQ==\n"
    "Address = 10.100.0.1/24\n"
    "ListenPort = 51820\n"
)

IP_ADDR_OUTPUT = (
    "2: eth0: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500\n"
    "    inet 203.0.113.10/24 brd 203.0.113.255 scope global eth0\n"
    "3: wg0: <POINTOPOINT,NOARP,UP,LOWER_UP> mtu 1420\n"
    "    inet 10.100.0.1/24 scope global wg0\n"
)


def debian_rules():
    return [
        ("PSVersion", command_failure()),
        ("uname -s", "Linux"),
        ("test -f /etc/os-release", "yes"),
        ("cat /etc/os-release", 'ID=debian\nVERSION_ID="12"\n'),
        ("uname -m", "x86_64"),
        ("hostname", "fra-1"),
        ("uname -r", "6.1.0-18-amd64"),
        ("uptime -p", "up 3 days, 2 hours"),
        ("timedatectl", "Europe/Berlin"),
        ("free -m", "Mem:           3936        1200        2100          10         600        2500"),
        ("df -BG", "40 25"),
        ("ip -4 addr", IP_ADDR_OUTPUT),
        ("which wg", "/usr/bin/wg\ninstalled"),
        ("test -f /etc/wireguard/wg0.conf", "exists"),
        ("cat /etc/wireguard/wg0.conf", WG0_CONF),
    ]


class TestServerInventoryService:
    """Test best-effort inventory snapshots"""

    @pytest.mark.asyncio
    async def test_collects_linux_inventory(self, metrics):
        """
        GIVEN a Debian host with WireGuard configured
        WHEN collecting inventory
        THEN should fill hardware, interfaces and WireGuard details
        """
        executor = ScriptedExecutor(rules=debian_rules(), metrics=metrics)

        inventory = await ServerInventoryService(executor).collect("203.0.113.10")

        assert inventory.os.family == OSFamily.LINUX
        assert inventory.os.distribution == "debian"
        assert inventory.hostname == "fra-1"
        assert inventory.kernel == "6.1.0-18-amd64"
        assert inventory.timezone == "Europe/Berlin"
        assert inventory.memory.total_mb == 3936
        assert inventory.memory.available_mb == 2100
        assert inventory.disk.total_gb == 40
        assert inventory.disk.available_gb == 25
        assert [(i.name, i.address) for i in inventory.interfaces] == [
            ("eth0", "203.0.113.10"),
            ("wg0", "10.100.0.1"),
        ]
        assert inventory.wireguard.installed is True
        assert inventory.wireguard.config_path == "/etc/wireguard/wg0.conf"
        assert inventory.wireguard.listen_port == 51820
        assert inventory.wireguard.interface_address == "10.100.0.1/24"

    @pytest.mark.asyncio
    async def test_linux_without_wireguard(self, metrics):
        rules = [r for r in debian_rules() if r[0] != "which wg"]
        rules.insert(0, ("which wg", "not-installed"))
        executor = ScriptedExecutor(rules=rules, metrics=metrics)

        inventory = await ServerInventoryService(executor).collect("203.0.113.10")

        assert inventory.wireguard.installed is False
        assert inventory.wireguard.config_path is None

    @pytest.mark.asyncio
    async def test_failed_probes_leave_fields_empty(self, metrics):
        rules = [
            ("PSVersion", command_failure()),
            ("uname -s", "Linux"),
        ]
        executor = ScriptedExecutor(rules=rules, default=command_failure(), metrics=metrics)

        inventory = await ServerInventoryService(executor).collect("203.0.113.10")

        assert inventory.hostname is None
        assert inventory.memory is None
        assert inventory.disk is None
        assert inventory.timezone == "UTC"
        assert inventory.wireguard.installed is False

    @pytest.mark.asyncio
    async def test_unknown_host_has_no_details(self, metrics):
        executor = ScriptedExecutor(default=command_failure(), metrics=metrics)

        inventory = await ServerInventoryService(executor).collect("192.0.2.1")

        assert inventory.os.family == OSFamily.UNKNOWN
        assert inventory.hostname is None

    @pytest.mark.asyncio
    async def test_fetch_wireguard_config(self, metrics):
        executor = ScriptedExecutor(rules=debian_rules(), metrics=metrics)

        content = await ServerInventoryService(executor).fetch_wireguard_config("203.0.113.10")

        assert content == WG0_CONF

    @pytest.mark.asyncio
    async def test_fetch_wireguard_config_missing(self, metrics):
        rules = [
            ("PSVersion", command_failure()),
            ("uname -s", "Linux"),
            ("test -f", "notfound"),
            ("find /etc", ""),
            ("cat /etc/wireguard/wg0.conf", "cat: /etc/wireguard/wg0.conf: No such file or directory"),
        ]
        executor = ScriptedExecutor(rules=rules, metrics=metrics)

        assert await ServerInventoryService(executor).fetch_wireguard_config("h") is None

    @pytest.mark.asyncio
    async def test_windows_config_discovered_by_search(self, metrics):
        found = "C:\\Users\\admin\\wg0.conf"
        executor = ScriptedExecutor(metrics=metrics, rules=[
            ("PSVersion", "5"),
            ("Caption", "Microsoft Windows 11 Pro"),
            ("Test-Path", "False"),
            ("Get-ChildItem", found),
            ("Get-Content", WG0_CONF),
        ])

        inventory = await ServerInventoryService(executor).collect("198.51.100.7", "admin")

        assert inventory.os.distribution == "windows"
        assert inventory.wireguard.installed is True
        assert inventory.wireguard.config_path == found
        assert inventory.wireguard.listen_port == 51820


def test_parse_interfaces_ignores_orphan_inet_lines():
    assert parse_interfaces("    inet 10.0.0.5/24 scope global\n") == []
