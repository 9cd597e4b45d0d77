"""
Logging helpers for the bridge server.

Besides the process-wide configuration this module provides
:class:`SessionLogHandler`, the second sink that mirrors every record of the
``sfubridge`` logger tree to the attached signaling client.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from typing import Callable, Optional

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
MIRROR_FORMAT = "%(levelname)s %(name)s: %(message)s"

LogSink = Callable[[str], None]


def configure_logging(level: int = logging.INFO, format: Optional[str] = None) -> None:
    """
    Ensure the root logger is configured exactly once.
    """

    if logging.getLogger().handlers:
        # Respect any user provided configuration.
        return

    logging.basicConfig(
        level=level,
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )


class SessionLogHandler(logging.Handler):
    """
    Forward formatted records to the active client connection.

    The sink is a non-blocking callable installed by the signaling layer when a
    client attaches and removed when it detaches.  Records emitted from other
    threads are marshalled onto the sink's event loop.
    """

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level=level)
        self.setFormatter(logging.Formatter(MIRROR_FORMAT))
        self._sink: Optional[LogSink] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._local = threading.local()

    def attach(self, sink: LogSink, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._sink = sink
        self._loop = loop or asyncio.get_running_loop()

    def detach(self, sink: Optional[LogSink] = None) -> None:
        if sink is not None and sink is not self._sink:
            return
        self._sink = None
        self._loop = None

    @property
    def attached(self) -> bool:
        return self._sink is not None

    def emit(self, record: logging.LogRecord) -> None:
        sink = self._sink
        loop = self._loop
        if sink is None or loop is None or getattr(self._local, "busy", False):
            return
        try:
            line = self.format(record)
        except Exception:  # pragma: no cover - formatting guard
            self.handleError(record)
            return

        self._local.busy = True
        try:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                sink(line)
            elif not loop.is_closed():
                loop.call_soon_threadsafe(sink, line)
        except Exception:  # pragma: no cover - never let mirroring break logging
            self.handleError(record)
        finally:
            self._local.busy = False


_SESSION_HANDLER: Optional[SessionLogHandler] = None


def session_log_handler(logger_name: str = "sfubridge") -> SessionLogHandler:
    """Return the shared mirror handler, installing it on ``logger_name`` once."""

    global _SESSION_HANDLER
    if _SESSION_HANDLER is None:
        _SESSION_HANDLER = SessionLogHandler()
        logging.getLogger(logger_name).addHandler(_SESSION_HANDLER)
    return _SESSION_HANDLER


__all__ = ["DEFAULT_FORMAT", "SessionLogHandler", "configure_logging", "session_log_handler"]
