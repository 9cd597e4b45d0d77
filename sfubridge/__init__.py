"""
SFU session-negotiation bridge.

This package orchestrates one browser WebRTC client, an SFU style media engine
and an external media endpoint: either a filter hosted by a peer engine that
speaks SDP offer/answer, or a recorder subprocess fed with plain RTP.  The
media engines themselves are consumed through the contracts in
:mod:`sfubridge.media.engine` and :mod:`sfubridge.rtc.kurento`.
"""

from __future__ import annotations

from .config import BridgeConfig, load_config
from .errors import (
    BridgeError,
    ConfigurationError,
    EngineError,
    NegotiationError,
    OrderingError,
    ProcessError,
    TransportStateError,
)

__version__ = "0.1.0"

__all__ = [
    "BridgeConfig",
    "BridgeError",
    "ConfigurationError",
    "EngineError",
    "NegotiationError",
    "OrderingError",
    "ProcessError",
    "TransportStateError",
    "load_config",
]
