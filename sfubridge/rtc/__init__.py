"""
Cross-engine helpers: SDP offer/answer and the peer engine client.
"""

from __future__ import annotations

from .bridge import BridgeLeg, PeerBridge
from .kurento import KurentoClient, PeerEngine

__all__ = ["BridgeLeg", "KurentoClient", "PeerBridge", "PeerEngine"]
