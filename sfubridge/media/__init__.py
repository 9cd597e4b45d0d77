"""
Media engine contract, RTP models and the in-process engine.
"""

from __future__ import annotations

from .engine import MediaEngine, TransportState
from .memory import InMemoryEngine

__all__ = ["InMemoryEngine", "MediaEngine", "TransportState"]
