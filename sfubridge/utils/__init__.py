"""Utility helpers for the bridge."""

from .logging import configure_logging, session_log_handler
from .netif import rewrite_loopback

__all__ = ["configure_logging", "rewrite_loopback", "session_log_handler"]
