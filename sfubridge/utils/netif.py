"""Local network interface helpers."""

from __future__ import annotations

import logging
import socket
from typing import Set

import psutil

LOG = logging.getLogger(__name__)

LOOPBACK_IP = "127.0.0.1"


def local_addresses() -> Set[str]:
    """IPv4/IPv6 addresses bound to any local interface."""

    addresses: Set[str] = set()
    for entries in psutil.net_if_addrs().values():
        for entry in entries:
            if entry.family in (socket.AF_INET, socket.AF_INET6) and entry.address:
                # Strip the IPv6 zone suffix (fe80::1%eth0).
                addresses.add(entry.address.split("%", 1)[0])
    return addresses


def rewrite_loopback(address: str) -> str:
    """
    Return ``127.0.0.1`` when ``address`` belongs to this host.

    A peer engine running on the same machine may announce one of our own
    interface addresses which is only reachable through loopback from inside
    some container network namespaces.
    """

    if address in local_addresses():
        if address != LOOPBACK_IP:
            LOG.info("Peer address %s is local; using %s", address, LOOPBACK_IP)
        return LOOPBACK_IP
    return address


__all__ = ["LOOPBACK_IP", "local_addresses", "rewrite_loopback"]
