"""Tests covering the per-client session state machine."""

from __future__ import annotations

import asyncio
import logging
import sys

import pytest

from helpers import FakePeerEngine, client_dtls, opus_parameters, vp8_parameters
from sfubridge.api.session import Session, SessionPhase
from sfubridge.errors import ConfigurationError, NegotiationError, OrderingError, TransportStateError
from sfubridge.media.engine import BweTrace
from sfubridge.media.memory import InMemoryEngine
from sfubridge.media.rtp import RtpCapabilities


class Harness:
    def __init__(self, config, *, peer=None, dtls_handshake_delay: float = 0.0) -> None:
        self.engine = InMemoryEngine(bind_plain_sockets=False, dtls_handshake_delay=dtls_handshake_delay)
        self.peer = peer or FakePeerEngine()
        self.notes = []
        self.fatal = []
        self.session = Session(
            config,
            self.engine,
            peer_factory=lambda _config: self.peer,
            notify=lambda msg_type, data: self.notes.append((msg_type, data)),
            fatal=self.fatal.append,
        )

    def count(self, msg_type: str) -> int:
        return sum(1 for noted, _data in self.notes if noted == msg_type)

    async def wait_for(self, msg_type: str, count: int = 1, timeout: float = 10.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.count(msg_type) < count:
            if loop.time() > deadline:
                raise AssertionError(f"no {msg_type!r} notification; got {self.notes!r}")
            await asyncio.sleep(0.02)

    async def produce(self, *kinds: str) -> None:
        session = self.session
        await session.start_session()
        await session.start_client_transport()
        await session.connect_client_transport(client_dtls())
        for kind in kinds:
            parameters = opus_parameters() if kind == "audio" else vp8_parameters()
            await session.start_producer(kind, parameters)


def fake_gst_launch(tmp_path, *, announce: bool = True):
    script = tmp_path / "gst-launch-fake"
    banner = "Setting pipeline to PLAYING ..." if announce else "Setting pipeline to PAUSED ..."
    script.write_text(
        f"#!{sys.executable}\n"
        "import time\n"
        f"print('{banner}', flush=True)\n"
        "time.sleep(60)\n",
        encoding="utf-8",
    )
    script.chmod(0o755)
    return script


async def test_transport_requires_negotiated_session(bridge_config) -> None:
    harness = Harness(bridge_config)

    with pytest.raises(OrderingError, match="start-session"):
        await harness.session.start_client_transport()
    with pytest.raises(OrderingError, match="start-session"):
        await harness.session.start_peer_transport()


async def test_start_session_negotiates_once(bridge_config) -> None:
    harness = Harness(bridge_config)

    caps = await harness.session.start_session()

    assert [codec["mimeType"] for codec in caps["codecs"]] == ["audio/opus", "video/VP8", "video/rtx"]
    assert harness.session.phase == SessionPhase.NEGOTIATED
    with pytest.raises(OrderingError):
        await harness.session.start_session("H264")


async def test_undefined_codec_rejects_only_the_request(bridge_config) -> None:
    harness = Harness(bridge_config)

    with pytest.raises(ConfigurationError, match="video/H265"):
        await harness.session.start_session("H265")

    caps = await harness.session.start_session("H264")
    assert caps["codecs"][1]["mimeType"] == "video/H264"


async def test_producer_requires_connected_client_transport(bridge_config) -> None:
    harness = Harness(bridge_config)
    session = harness.session
    await session.start_session()

    with pytest.raises(OrderingError):
        await session.start_producer("video", vp8_parameters())

    await session.start_client_transport()
    with pytest.raises(OrderingError, match="connected"):
        await session.start_producer("video", vp8_parameters())

    await session.connect_client_transport(client_dtls())
    produced = await session.start_producer("video", vp8_parameters())

    assert produced["kind"] == "video"
    assert ("producer-ready", "video") in harness.notes
    with pytest.raises(OrderingError, match="already exists"):
        await session.start_producer("video", vp8_parameters())


async def test_unconnected_transport_times_out(bridge_config, caplog) -> None:
    caplog.set_level(logging.WARNING, logger="sfubridge.api.session")
    bridge_config.session.transport_connect_timeout = 0.05
    harness = Harness(bridge_config)
    session = harness.session
    await session.start_session()
    await session.start_client_transport()
    transport = session.recv_transport

    await asyncio.sleep(0.3)

    assert transport.closed
    assert session.recv_transport is None
    assert "not connected after" in caplog.text
    assert not session.closed
    descriptor = await session.start_client_transport()
    assert descriptor["id"] != transport.id


async def test_connected_transport_survives_timeout(bridge_config) -> None:
    bridge_config.session.transport_connect_timeout = 0.05
    harness = Harness(bridge_config)
    session = harness.session
    await session.start_session()
    await session.start_client_transport()
    await session.connect_client_transport(client_dtls())

    await asyncio.sleep(0.2)

    assert session.recv_transport is not None
    assert session.recv_transport.connected


async def test_close_while_transport_is_connecting(bridge_config) -> None:
    harness = Harness(bridge_config, dtls_handshake_delay=0.5)
    session = harness.session
    await session.start_session()
    await session.start_client_transport()

    worker = harness.engine.workers[0]
    pending = asyncio.create_task(session.connect_client_transport(client_dtls()))
    await asyncio.sleep(0.05)
    await session.close()

    with pytest.raises(TransportStateError):
        await pending
    assert session.closed
    assert worker.closed
    assert harness.engine.workers == []
    with pytest.raises(OrderingError, match="closed"):
        await session.start_client_transport()


async def test_peer_consumer_before_bridge_is_a_precondition_error(bridge_config, caplog) -> None:
    caplog.set_level(logging.ERROR, logger="sfubridge.api.session")
    harness = Harness(bridge_config)
    session = harness.session
    caps = await session.start_session()
    await session.start_peer_transport()

    with pytest.raises(OrderingError):
        await session.start_peer_consumer(RtpCapabilities.model_validate(caps))
    assert "BUG" in caplog.text


async def test_bridge_requires_video_producer(bridge_config) -> None:
    harness = Harness(bridge_config)
    await harness.produce("audio")

    with pytest.raises(OrderingError, match="video producer"):
        await harness.session.start_bridge()


async def test_bridge_and_bandwidth_forwarding(bridge_config) -> None:
    harness = Harness(bridge_config)
    session = harness.session
    await harness.produce("video")

    await session.start_bridge()
    bridge = session.bridge
    bridge.send_leg.transport.emit_trace(BweTrace(available_bitrate=750_000))
    await asyncio.sleep(0.01)

    assert session.recv_transport.max_incoming_bitrate == 750_000

    caps = session.router.rtp_capabilities.to_wire()
    await session.start_peer_transport()
    session.send_transport.emit_trace(BweTrace(available_bitrate=320_000))
    await asyncio.sleep(0.01)

    assert bridge.recv_leg.transport.max_incoming_bitrate == 320_000

    consumer = await session.start_peer_consumer(RtpCapabilities.model_validate(caps))

    assert consumer["producerId"] == bridge.recv_producer.id
    assert consumer["kind"] == "video"
    assert consumer["rtpParameters"]["codecs"][0]["mimeType"] == "video/VP8"
    with pytest.raises(OrderingError):
        await session.start_peer_consumer(RtpCapabilities.model_validate(caps))
    with pytest.raises(OrderingError):
        await session.start_bridge()

    labels = [label for label, _stats in await session.debug()]
    assert "Bridge send transport stats" in labels
    assert "WebRTC SEND consumer stats" in labels

    await session.close()

    assert harness.peer.closed
    assert bridge.send_leg.transport.closed
    assert session.to_dict()["phase"] == "closed"


async def test_failed_bridge_can_be_retried(bridge_config) -> None:
    bridge_config.peer.offer_answer_timeout = 0.05
    harness = Harness(bridge_config, peer=FakePeerEngine(stall_recv_leg=True))
    session = harness.session
    await harness.produce("video")

    with pytest.raises(NegotiationError):
        await session.start_bridge()

    assert session.bridge is None
    assert any(released.startswith("pipeline") for released in harness.peer.released)

    harness.peer.stall_recv_leg = False
    await session.start_bridge()
    assert session.bridge.recv_producer is not None


async def test_worker_death_is_fatal(bridge_config) -> None:
    harness = Harness(bridge_config)
    await harness.session.start_session()

    harness.engine.workers[0].crash("segmentation fault")
    await asyncio.sleep(0.05)

    assert len(harness.fatal) == 1
    assert "segmentation fault" in harness.fatal[0]
    errors = [data for msg_type, data in harness.notes if msg_type == "error"]
    assert errors[0]["code"] == "E_ENGINE"


async def test_stop_recording_without_recording(bridge_config, caplog) -> None:
    caplog.set_level(logging.INFO, logger="sfubridge.api.session")
    harness = Harness(bridge_config)
    await harness.session.start_session()

    await harness.session.stop_recording()

    assert "No recording is active" in caplog.text
    assert harness.count("recording-stopped") == 0


async def test_recording_preconditions(bridge_config) -> None:
    harness = Harness(bridge_config)
    session = harness.session
    await session.start_session()

    with pytest.raises(ConfigurationError, match="Invalid recorder"):
        await session.start_recording("vlc")
    with pytest.raises(OrderingError, match="producer"):
        await session.start_recording("external")


async def test_external_recording_resumes_consumers(bridge_config) -> None:
    harness = Harness(bridge_config)
    session = harness.session
    await harness.produce("audio", "video")

    await session.start_recording("external")
    recording = session.recording

    assert [leg.kind for leg in recording.legs] == ["audio", "video"]
    assert [leg.transport.tuple.remote_port for leg in recording.legs] == [5006, 5004]
    assert recording.legs[0].transport.rtcp_tuple.remote_port == 5007
    with pytest.raises(OrderingError, match="already active"):
        await session.start_recording("external")

    await harness.wait_for("recording-ready")

    assert all(not leg.consumer.paused for leg in recording.legs)
    assert session.to_dict()["recording"]["recorder"] == "external"

    await session.stop_recording()

    assert session.recording is None
    assert harness.count("recording-stopped") == 1
    assert all(leg.transport.closed and leg.consumer.closed for leg in recording.legs)


async def test_killed_recorder_is_cleaned_up_and_restartable(bridge_config, tmp_path, caplog) -> None:
    caplog.set_level(logging.INFO, logger="sfubridge.api.session")
    bridge_config.recording.gst_launch_path = str(fake_gst_launch(tmp_path))
    harness = Harness(bridge_config)
    session = harness.session
    await harness.produce("audio", "video")

    await session.start_recording("gstreamer")
    await harness.wait_for("recording-ready")
    first = session.recording
    assert first.plan.input_path.is_file()

    first.handle.process.kill()
    await harness.wait_for("recording-stopped")

    assert "didn't exit cleanly" in caplog.text
    assert session.recording is None
    assert all(leg.transport.closed for leg in first.legs)

    await session.start_recording("gstreamer")
    await harness.wait_for("recording-ready", count=2)
    second = session.recording
    assert second is not first

    await session.stop_recording()

    assert harness.count("recording-stopped") == 2
    assert second.handle.exit_info.clean
    assert not second.handle.alive


async def test_recorder_readiness_timeout_is_reported(bridge_config, tmp_path, caplog) -> None:
    caplog.set_level(logging.WARNING, logger="sfubridge.api.session")
    bridge_config.recording.gst_launch_path = str(fake_gst_launch(tmp_path, announce=False))
    bridge_config.recording.ready_timeout = 0.3
    harness = Harness(bridge_config)
    session = harness.session
    await harness.produce("audio", "video")

    await session.start_recording("gstreamer")
    recording = session.recording
    await harness.wait_for("error")

    errors = [data for msg_type, data in harness.notes if msg_type == "error"]
    assert errors[0]["code"] == "E_PROCESS"
    assert "did not become ready" in errors[0]["message"]
    assert "Recorder did not start" in caplog.text
    assert harness.count("recording-ready") == 0
    assert harness.count("recording-stopped") == 1
    assert session.recording is None
    assert not recording.handle.alive
    assert all(leg.transport.closed for leg in recording.legs)

    await session.close()
