"""
Supervision of external recorder processes.
"""

from __future__ import annotations

from .process import CountdownHandle, ExternalProcessHandle, ProcessExit
from .recorder import plan_recording, start_recorder

__all__ = [
    "CountdownHandle",
    "ExternalProcessHandle",
    "ProcessExit",
    "plan_recording",
    "start_recorder",
]
