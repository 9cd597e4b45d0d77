from __future__ import annotations

import signal
import sys

import pytest

from sfubridge.errors import ProcessError
from sfubridge.runtime.process import CountdownHandle, ExternalProcessHandle, ProcessExit, ProcessState

READY_THEN_WAIT = (
    "import sys, time\n"
    "print('starting up', flush=True)\n"
    "sys.stderr.write('READY to record\\n')\n"
    "sys.stderr.flush()\n"
    "time.sleep(60)\n"
)

MARKER_MID_LINE = (
    "import sys\n"
    "sys.stderr.write('not READY yet\\n')\n"
    "sys.exit(3)\n"
)


def python_command(script: str) -> list:
    return [sys.executable, "-c", script]


def test_exit_classification() -> None:
    assert ProcessExit.from_returncode(0).clean
    assert ProcessExit.from_returncode(None).clean
    assert ProcessExit.from_returncode(-signal.SIGINT).clean
    assert not ProcessExit.from_returncode(255).clean
    killed = ProcessExit.from_returncode(-signal.SIGKILL)
    assert not killed.clean
    assert killed.describe() == "signal SIGKILL"
    assert ProcessExit.from_returncode(1).describe() == "code 1"


async def test_marker_readiness_and_interrupt() -> None:
    exits = []

    async def on_exit(info: ProcessExit) -> None:
        exits.append(info)

    handle = await ExternalProcessHandle.spawn(
        python_command(READY_THEN_WAIT),
        name="fake recorder",
        ready_marker="READY",
        marker_stream="stderr",
        settle_delay=0.0,
        stop_timeout=5.0,
        on_exit=on_exit,
    )
    await handle.wait_ready(10.0)

    assert handle.ready
    assert handle.state == ProcessState.READY

    assert await handle.stop() is True
    assert exits == [handle.exit_info]
    assert handle.exit_info.signal == signal.SIGINT
    assert handle.exit_info.clean
    assert not handle.alive
    assert await handle.stop() is False


async def test_killed_process_reports_unclean_exit() -> None:
    handle = await ExternalProcessHandle.spawn(
        python_command(READY_THEN_WAIT), ready_marker="READY", settle_delay=0.0
    )
    await handle.wait_ready(10.0)

    handle.process.kill()
    info = await handle.wait_exit()

    assert info.signal == signal.SIGKILL
    assert not info.clean
    assert handle.to_dict()["exit"]["clean"] is False


async def test_marker_must_start_the_line() -> None:
    handle = await ExternalProcessHandle.spawn(
        python_command(MARKER_MID_LINE), ready_marker="READY", settle_delay=0.0
    )

    with pytest.raises(ProcessError, match="exited before becoming ready"):
        await handle.wait_ready(10.0)
    assert handle.exit_info.returncode == 3


async def test_marker_on_other_stream_is_ignored() -> None:
    handle = await ExternalProcessHandle.spawn(
        python_command(READY_THEN_WAIT),
        ready_marker="READY",
        marker_stream="stdout",
        settle_delay=0.0,
        stop_timeout=5.0,
    )

    with pytest.raises(ProcessError, match="did not become ready"):
        await handle.wait_ready(0.5)
    assert not handle.alive


async def test_missing_program_fails_to_spawn(tmp_path) -> None:
    with pytest.raises(ProcessError, match="cannot start"):
        await ExternalProcessHandle.spawn([str(tmp_path / "no-such-recorder")])


async def test_countdown_handle() -> None:
    exits = []

    async def on_exit(info: ProcessExit) -> None:
        exits.append(info)

    handle = CountdownHandle(0, on_exit=on_exit)
    handle.start()
    await handle.wait_ready(1.0)

    assert handle.ready
    assert await handle.stop() is True
    assert exits == [ProcessExit(returncode=0)]
