"""
Error taxonomy shared by the orchestration layers.

Every error carries a stable ``code`` that is forwarded to the signaling client
so the browser console shows the same diagnostics as the server log.
"""

from __future__ import annotations


class BridgeError(RuntimeError):
    """Base class for orchestration errors."""

    code = "E_INTERNAL"


class ConfigurationError(BridgeError):
    """Raised when the configuration cannot satisfy a request (missing codec, certificate...)."""

    code = "E_CONFIGURATION"


class EngineError(BridgeError):
    """Raised when the media engine fails to create a worker, router or transport."""

    code = "E_ENGINE"


class OrderingError(BridgeError):
    """Raised when an operation is requested before its preconditions are met."""

    code = "E_PRECONDITION"


class TransportStateError(OrderingError):
    """Raised on an illegal transport state transition."""


class NegotiationError(BridgeError):
    """Raised when two endpoints share no usable media format."""

    code = "E_NEGOTIATION"


class ProcessError(BridgeError):
    """Raised when an external process cannot be started or never becomes ready."""

    code = "E_PROCESS"


__all__ = [
    "BridgeError",
    "ConfigurationError",
    "EngineError",
    "NegotiationError",
    "OrderingError",
    "ProcessError",
    "TransportStateError",
]
