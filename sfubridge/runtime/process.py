"""
Supervision of external media processes.

An :class:`ExternalProcessHandle` spawns a command, mirrors its output to the
log, detects readiness by matching a marker at the start of an output line and
reports the exit status to an async callback.  :class:`CountdownHandle` offers
the same surface for recorders that run outside this process and only need a
fixed head start.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import re
import signal
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from ..errors import ProcessError

LOG = logging.getLogger(__name__)

_LINE_SPLIT = re.compile(r"[\r\n]+")


class ProcessState(str, enum.Enum):
    SPAWNED = "spawned"
    READY = "ready"
    EXITED = "exited"


@dataclass(frozen=True)
class ProcessExit:
    returncode: Optional[int]
    signal: Optional[int] = None

    @classmethod
    def from_returncode(cls, returncode: Optional[int]) -> "ProcessExit":
        if returncode is not None and returncode < 0:
            return cls(returncode=None, signal=-returncode)
        return cls(returncode=returncode)

    @property
    def signal_name(self) -> Optional[str]:
        if self.signal is None:
            return None
        try:
            return signal.Signals(self.signal).name
        except ValueError:
            return str(self.signal)

    @property
    def clean(self) -> bool:
        if self.signal is not None:
            return self.signal == signal.SIGINT
        return not self.returncode

    def describe(self) -> str:
        if self.signal is not None:
            return f"signal {self.signal_name}"
        return f"code {self.returncode}"

    def to_dict(self) -> dict:
        return {"code": self.returncode, "signal": self.signal_name, "clean": self.clean}


ExitCallback = Callable[[ProcessExit], Awaitable[None]]


class _Supervised:
    """State, readiness and exit bookkeeping shared by the handle types."""

    def __init__(self, name: str, on_exit: Optional[ExitCallback]) -> None:
        self.name = name
        self.state = ProcessState.SPAWNED
        self.exit_info: Optional[ProcessExit] = None
        self._on_exit = on_exit
        self.ready_timed_out = False
        self._ready = asyncio.Event()
        self._exited = asyncio.Event()

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    @property
    def alive(self) -> bool:
        return self.state != ProcessState.EXITED

    def _mark_ready(self) -> None:
        if self.state == ProcessState.SPAWNED:
            self.state = ProcessState.READY
            self._ready.set()
            LOG.info("%s is ready", self.name)

    async def _finish(self, info: ProcessExit) -> None:
        if self.state == ProcessState.EXITED:
            return
        self.state = ProcessState.EXITED
        self.exit_info = info
        self._exited.set()
        LOG.info("%s exited with %s", self.name, info.describe())
        if self._on_exit is not None:
            try:
                await self._on_exit(info)
            except Exception:  # pragma: no cover - callback bug
                LOG.exception("Exit handler for %s failed", self.name)

    async def wait_exit(self) -> Optional[ProcessExit]:
        await self._exited.wait()
        return self.exit_info

    async def wait_ready(self, timeout: Optional[float] = None) -> None:
        """
        Block until the process is ready.

        Raises :class:`ProcessError` when the process exits first or the
        timeout expires; in the latter case the process is stopped.
        """

        if self._ready.is_set():
            return
        ready_task = asyncio.ensure_future(self._ready.wait())
        exit_task = asyncio.ensure_future(self._exited.wait())
        try:
            done, _ = await asyncio.wait(
                {ready_task, exit_task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (ready_task, exit_task):
                task.cancel()
        if ready_task in done and self._ready.is_set():
            return
        if exit_task in done:
            reason = self.exit_info.describe() if self.exit_info else "unknown"
            raise ProcessError(f"{self.name} exited before becoming ready ({reason})")
        LOG.warning("%s not ready after %ss; stopping it", self.name, timeout)
        self.ready_timed_out = True
        await self.stop()
        raise ProcessError(f"{self.name} did not become ready within {timeout}s")

    async def stop(self) -> bool:  # pragma: no cover - overridden
        raise NotImplementedError

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "exit": self.exit_info.to_dict() if self.exit_info else None,
        }


class ExternalProcessHandle(_Supervised):
    """Own one spawned subprocess."""

    def __init__(
        self,
        argv: Sequence[str],
        *,
        name: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        ready_marker: Optional[str] = None,
        marker_stream: str = "stderr",
        settle_delay: float = 1.0,
        stop_timeout: float = 10.0,
        on_exit: Optional[ExitCallback] = None,
    ) -> None:
        if not argv:
            raise ProcessError("empty command line")
        super().__init__(name or argv[0], on_exit)
        self.argv: List[str] = [str(arg) for arg in argv]
        self.env: Optional[Dict[str, str]] = dict(env) if env is not None else None
        self.ready_marker = ready_marker
        self.marker_stream = marker_stream
        self.settle_delay = max(0.0, float(settle_delay))
        self.stop_timeout = max(0.0, float(stop_timeout))
        self.process: Optional[asyncio.subprocess.Process] = None
        self._tasks: List[asyncio.Task] = []
        self._settle_task: Optional[asyncio.Task] = None
        self._marker_seen = False

    @classmethod
    async def spawn(cls, argv: Sequence[str], **kwargs) -> "ExternalProcessHandle":
        handle = cls(argv, **kwargs)
        await handle.start()
        return handle

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    async def start(self) -> None:
        if self.process is not None:
            raise ProcessError(f"{self.name} already started")
        LOG.info("Run command: %s", " ".join(self.argv))
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
            )
        except OSError as exc:
            self.state = ProcessState.EXITED
            self._exited.set()
            raise ProcessError(f"cannot start {self.name}: {exc}") from exc

        LOG.info("%s started [pid:%s]", self.name, self.process.pid)
        if self.ready_marker is None:
            self._schedule_ready()
        assert self.process.stdout is not None and self.process.stderr is not None
        self._tasks = [
            asyncio.create_task(self._pump(self.process.stdout, "stdout")),
            asyncio.create_task(self._pump(self.process.stderr, "stderr")),
        ]
        self._tasks.append(asyncio.create_task(self._watch()))

    async def _pump(self, stream: asyncio.StreamReader, label: str) -> None:
        pending = ""
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            pending += chunk.decode("utf-8", errors="replace")
            *lines, pending = _LINE_SPLIT.split(pending)
            for line in lines:
                self._handle_line(line, label)
        if pending:
            self._handle_line(pending, label)

    def _handle_line(self, line: str, label: str) -> None:
        if not line:
            return
        LOG.info("[%s %s] %s", self.name, label, line)
        if (
            not self._marker_seen
            and self.ready_marker is not None
            and label == self.marker_stream
            and line.startswith(self.ready_marker)
        ):
            self._marker_seen = True
            self._schedule_ready()

    def _schedule_ready(self) -> None:
        if self._settle_task is None:
            self._settle_task = asyncio.create_task(self._settle())

    async def _settle(self) -> None:
        if self.settle_delay:
            await asyncio.sleep(self.settle_delay)
        if self.state == ProcessState.SPAWNED:
            self._mark_ready()

    async def _watch(self) -> None:
        assert self.process is not None
        returncode = await self.process.wait()
        readers = [task for task in self._tasks if task is not asyncio.current_task()]
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(asyncio.gather(*readers, return_exceptions=True), timeout=2.0)
        if self._settle_task is not None and not self._settle_task.done():
            self._settle_task.cancel()
        await self._finish(ProcessExit.from_returncode(returncode))

    async def stop(self) -> bool:
        """
        Interrupt the process and wait for it to exit.

        Returns ``False`` when nothing was running.  The exit callback runs
        before this returns.
        """

        if self.process is None or self.state == ProcessState.EXITED:
            return False
        if self.process.returncode is None:
            LOG.info("Stopping %s with SIGINT", self.name)
            with contextlib.suppress(ProcessLookupError):
                self.process.send_signal(signal.SIGINT)
        watcher = self._tasks[-1]
        try:
            await asyncio.wait_for(asyncio.shield(watcher), timeout=self.stop_timeout or None)
        except asyncio.TimeoutError:
            LOG.warning("%s ignored SIGINT for %ss; killing it", self.name, self.stop_timeout)
            with contextlib.suppress(ProcessLookupError):
                self.process.kill()
            await watcher
        return True

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["pid"] = self.pid
        payload["argv"] = list(self.argv)
        return payload


class CountdownHandle(_Supervised):
    """Become ready after ``seconds``, logging the remaining time each second."""

    def __init__(self, seconds: int, *, name: str = "external recorder", on_exit: Optional[ExitCallback] = None) -> None:
        super().__init__(name, on_exit)
        self.seconds = max(0, int(seconds))
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._countdown())

    async def _countdown(self) -> None:
        for remaining in range(self.seconds, 0, -1):
            LOG.info("Recording starts in %s...", remaining)
            await asyncio.sleep(1)
        self._mark_ready()

    async def stop(self) -> bool:
        if self.state == ProcessState.EXITED:
            return False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        await self._finish(ProcessExit(returncode=0))
        return True


__all__ = ["CountdownHandle", "ExternalProcessHandle", "ProcessExit", "ProcessState"]
