"""
Signaling API: WebSocket channel and per-client session state.
"""

from __future__ import annotations

from .session import Session, SessionPhase

__all__ = ["Session", "SessionPhase"]
