from __future__ import annotations

import socket
from types import SimpleNamespace

from sfubridge.utils import netif


def fake_interfaces():
    return {
        "lo": [SimpleNamespace(family=socket.AF_INET, address="127.0.0.1")],
        "eth0": [
            SimpleNamespace(family=socket.AF_INET, address="192.168.1.20"),
            SimpleNamespace(family=socket.AF_INET6, address="fe80::1%eth0"),
            SimpleNamespace(family=getattr(socket, "AF_PACKET", 17), address="00:11:22:33:44:55"),
        ],
    }


def test_local_addresses_strip_zone(monkeypatch) -> None:
    monkeypatch.setattr(netif.psutil, "net_if_addrs", fake_interfaces)

    assert netif.local_addresses() == {"127.0.0.1", "192.168.1.20", "fe80::1"}


def test_rewrite_loopback_for_own_address(monkeypatch) -> None:
    monkeypatch.setattr(netif.psutil, "net_if_addrs", fake_interfaces)

    assert netif.rewrite_loopback("192.168.1.20") == "127.0.0.1"
    assert netif.rewrite_loopback("127.0.0.1") == "127.0.0.1"
    assert netif.rewrite_loopback("10.9.9.9") == "10.9.9.9"
