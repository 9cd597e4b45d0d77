"""
Per-connection session state.

A :class:`Session` owns everything one signaling client creates: the media
worker and router, the client facing WebRTC transports, the producers, the
peer engine bridge and an optional recording.  Every operation checks its
preconditions and raises a typed :mod:`sfubridge.errors` exception instead of
trusting the caller to sequence requests correctly.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import functools
import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, TypeVar

from ..config import BridgeConfig
from ..errors import BridgeError, ConfigurationError, EngineError, OrderingError, ProcessError
from ..media import ortc
from ..media.engine import (
    Consumer,
    EngineEvent,
    EngineEventMessage,
    EventSource,
    MediaEngine,
    PlainTransport,
    PlainTransportOptions,
    Producer,
    Router,
    Transport,
    WebRtcTransport,
    WebRtcTransportOptions,
    Worker,
    WorkerSettings,
)
from ..media.rtp import DtlsParameters, MediaKind, RtpCapabilities, RtpParameters
from ..rtc.bridge import PeerBridge
from ..rtc.kurento import KurentoClient, PeerEngine
from ..runtime.process import ProcessExit
from ..runtime.recorder import (
    RECORDERS,
    RecorderHandle,
    RecorderPlan,
    RecordingStream,
    plan_recording,
    start_recorder,
)

LOG = logging.getLogger(__name__)

T = TypeVar("T")

Notifier = Callable[[str, Any], None]
FatalHook = Callable[[str], None]
PeerFactory = Callable[[BridgeConfig], PeerEngine]


def terminate_process(reason: str) -> None:
    """Default fatal hook: the media engine is unusable, leave immediately."""

    LOG.critical("Fatal media engine failure, exiting: %s", reason)
    logging.shutdown()
    os._exit(1)


def kurento_peer_factory(config: BridgeConfig) -> PeerEngine:
    return KurentoClient(config.peer.url, request_timeout=config.peer.offer_answer_timeout or 10.0)


def _discard(_type: str, _data: Any) -> None:
    return None


class SessionPhase(str, enum.Enum):
    IDLE = "idle"
    NEGOTIATED = "negotiated"
    CLOSED = "closed"


@dataclass
class RecordingLeg:
    kind: str
    transport: PlainTransport
    consumer: Optional[Consumer] = None

    def to_stream(self) -> RecordingStream:
        assert self.consumer is not None
        port = self.transport.tuple.remote_port or 0
        rtcp_tuple = self.transport.rtcp_tuple
        rtcp_port = rtcp_tuple.remote_port if rtcp_tuple and rtcp_tuple.remote_port else port + 1
        return RecordingStream(
            kind=self.kind,
            port=port,
            rtcp_port=rtcp_port,
            rtp_parameters=self.consumer.rtp_parameters,
        )

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "transportId": self.transport.id,
            "tuple": self.transport.tuple.to_wire(),
            "consumerId": self.consumer.id if self.consumer else None,
            "paused": self.consumer.paused if self.consumer else None,
        }


@dataclass
class Recording:
    recorder: str
    legs: List[RecordingLeg] = field(default_factory=list)
    plan: Optional[RecorderPlan] = None
    handle: Optional[RecorderHandle] = None
    ready_task: Optional[asyncio.Task] = None
    finished: bool = False

    def to_dict(self) -> dict:
        return {
            "recorder": self.recorder,
            "legs": [leg.to_dict() for leg in self.legs],
            "plan": self.plan.to_dict() if self.plan else None,
            "process": self.handle.to_dict() if self.handle else None,
            "ready": bool(self.handle and self.handle.ready),
        }


class Session:
    """State machine for one attached client."""

    def __init__(
        self,
        config: BridgeConfig,
        engine: MediaEngine,
        *,
        peer_factory: Optional[PeerFactory] = None,
        notify: Optional[Notifier] = None,
        fatal: Optional[FatalHook] = None,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.config = config
        self.engine = engine
        self.peer_factory = peer_factory or kurento_peer_factory
        self.notify: Notifier = notify or _discard
        self.fatal: FatalHook = fatal or terminate_process
        self.phase = SessionPhase.IDLE
        self.lock = asyncio.Lock()

        self.worker: Optional[Worker] = None
        self.router: Optional[Router] = None
        # Client -> router.
        self.recv_transport: Optional[WebRtcTransport] = None
        self.producers: Dict[str, Producer] = {}
        # Router -> client.
        self.send_transport: Optional[WebRtcTransport] = None
        self.peer_consumer: Optional[Consumer] = None

        self.peer: Optional[PeerEngine] = None
        self.bridge: Optional[PeerBridge] = None
        self.recording: Optional[Recording] = None

        self._tasks: Set[asyncio.Task] = set()
        self._subscriptions: List[Tuple[EventSource, int]] = []
        self._fatal_handle: Optional[asyncio.TimerHandle] = None

    @property
    def closed(self) -> bool:
        return self.phase == SessionPhase.CLOSED

    # ------------------------------------------------------------------
    # helpers

    def _ensure_open(self) -> None:
        if self.closed:
            raise OrderingError("session is closed")

    def _require_router(self) -> Router:
        self._ensure_open()
        if self.router is None or self.router.closed:
            raise OrderingError("start-session must complete before any transport is created")
        return self.router

    @staticmethod
    def _require_transport(transport: Optional[WebRtcTransport], label: str) -> WebRtcTransport:
        if transport is None or transport.closed:
            raise OrderingError(f"{label} transport has not been created")
        return transport

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOG.error("Session background task failed: %s", exc, exc_info=exc)

    def _watch(self, source: EventSource, callback: Callable[[EngineEventMessage], None]) -> None:
        self._subscriptions.append((source, source.subscribe(callback)))

    async def _engine_call(self, what: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except EngineError as exc:
            self._escalate(f"{what} failed: {exc}")
            raise

    def _escalate(self, reason: str) -> None:
        grace = max(0.0, float(self.config.session.engine_fatal_grace))
        LOG.error("Media engine error: %s; exit in %s seconds...", reason, grace)
        self.notify("error", {"code": EngineError.code, "message": reason})
        if self._fatal_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._fatal_handle = loop.call_later(grace, self.fatal, reason)

    def _on_worker_event(self, message: EngineEventMessage) -> None:
        if message.kind != EngineEvent.DIED:
            return
        pid = self.worker.pid if self.worker else None
        self._escalate(f"media worker died [pid:{pid}]: {message.payload}")

    def _webrtc_options(self) -> WebRtcTransportOptions:
        media = self.config.media
        return WebRtcTransportOptions(
            listen_ip=media.listen_ip,
            announced_ip=media.announced_ip,
            initial_available_outgoing_bitrate=media.initial_available_outgoing_bitrate,
        )

    def _arm_connect_timeout(self, transport: WebRtcTransport) -> None:
        timeout = float(self.config.session.transport_connect_timeout)
        if timeout <= 0:
            return
        self._spawn(self._expire_unconnected(transport, timeout))

    async def _expire_unconnected(self, transport: WebRtcTransport, timeout: float) -> None:
        await asyncio.sleep(timeout)
        async with self.lock:
            if transport.closed or transport.connected:
                return
            label = "client" if transport is self.recv_transport else "peer"
            LOG.warning(
                "WebRTC %s transport %s not connected after %ss; closing it", label, transport.id, timeout
            )
            await transport.close()
            if transport is self.recv_transport:
                self.recv_transport = None
            elif transport is self.send_transport:
                self.send_transport = None

    def _forward_bwe(
        self, source: Transport, target: Callable[[], Optional[Transport]], label: str
    ) -> None:
        def _on_event(message: EngineEventMessage) -> None:
            if message.kind != EngineEvent.TRACE:
                return
            destination = target()
            if destination is None or destination.closed:
                return
            bitrate = message.payload.available_bitrate
            LOG.info("[BWE] Forward to %s, availableBitrate: %s", label, bitrate)
            self._spawn(destination.set_max_incoming_bitrate(bitrate))

        self._watch(source, _on_event)

    def _bridge_recv_transport(self) -> Optional[Transport]:
        if self.bridge is None or self.bridge.recv_leg is None:
            return None
        return self.bridge.recv_leg.transport

    # ------------------------------------------------------------------
    # capability negotiation

    async def start_session(self, codec: Optional[str] = None) -> Dict[str, Any]:
        """Create the worker and router; return the router RTP capabilities."""

        async with self.lock:
            self._ensure_open()
            if self.router is not None:
                raise OrderingError("session already negotiated")
            media = self.config.media
            media_codecs = ortc.select_media_codecs(
                self.config.codec_catalog(), codec or media.default_video_codec
            )
            settings = WorkerSettings(
                log_level=media.log_level,
                log_tags=list(media.log_tags),
                rtc_min_port=media.rtc_min_port,
                rtc_max_port=media.rtc_max_port,
            )
            self.worker = await self._engine_call("worker creation", self.engine.create_worker(settings))
            self._watch(self.worker, self._on_worker_event)
            self.router = await self._engine_call("router creation", self.worker.create_router(media_codecs))
            self.phase = SessionPhase.NEGOTIATED

            capabilities = self.router.rtp_capabilities.to_wire()
            LOG.info("Router created")
            LOG.info("Router RtpCapabilities:\n%s", json.dumps(capabilities, indent=2))
            return capabilities

    # ------------------------------------------------------------------
    # client -> router

    async def start_client_transport(self) -> Dict[str, Any]:
        async with self.lock:
            router = self._require_router()
            if self.recv_transport is not None and not self.recv_transport.closed:
                raise OrderingError("client transport already exists")
            transport = await self._engine_call(
                "client transport creation", router.create_webrtc_transport(self._webrtc_options())
            )
            self.recv_transport = transport
            self._arm_connect_timeout(transport)
            descriptor = transport.describe()
            LOG.info("WebRTC RECV transport created")
            LOG.debug("WebRTC RECV TransportOptions:\n%s", json.dumps(descriptor, indent=2))
            return descriptor

    async def connect_client_transport(self, dtls_parameters: DtlsParameters) -> None:
        async with self.lock:
            self._ensure_open()
            transport = self._require_transport(self.recv_transport, "client")
            await transport.connect(dtls_parameters)
            LOG.info("WebRTC RECV transport connected")

    async def start_producer(
        self, kind: MediaKind, rtp_parameters: RtpParameters, paused: bool = False
    ) -> Dict[str, Any]:
        async with self.lock:
            self._ensure_open()
            transport = self._require_transport(self.recv_transport, "client")
            if not transport.connected:
                raise OrderingError("client transport must be connected before producing")
            existing = self.producers.get(kind)
            if existing is not None and not existing.closed:
                raise OrderingError(f"a {kind} producer already exists")
            producer = await transport.produce(kind, rtp_parameters, paused=paused)
            self.producers[kind] = producer
            self.notify("producer-ready", kind)
            LOG.info(
                "WebRTC RECV producer created, kind: %s, type: %s, paused: %s",
                producer.kind,
                producer.type,
                producer.paused,
            )
            return {"id": producer.id, "kind": producer.kind}

    # ------------------------------------------------------------------
    # bridge towards the peer engine

    async def start_bridge(self, enable_srtp: bool = False) -> None:
        async with self.lock:
            router = self._require_router()
            video = self.producers.get("video")
            if video is None or video.closed:
                raise OrderingError("start-bridge needs a client video producer")
            if self.bridge is not None:
                raise OrderingError("bridge already started")
            if self.peer is None:
                self.peer = self.peer_factory(self.config)
            bridge = PeerBridge(
                router,
                self.peer,
                peer_config=self.config.peer,
                srtp_config=self.config.srtp,
                media_config=self.config.media,
            )
            LOG.info("Start bridge, SRTP: %s", enable_srtp)
            try:
                await bridge.start(video, enable_srtp=enable_srtp)
            except EngineError as exc:
                self._escalate(f"bridge transport creation failed: {exc}")
                await bridge.close()
                raise
            except BaseException:
                await bridge.close()
                raise
            self.bridge = bridge
            assert bridge.send_leg is not None
            self._forward_bwe(bridge.send_leg.transport, lambda: self.recv_transport, "browser")

    # ------------------------------------------------------------------
    # router -> client

    async def start_peer_transport(self) -> Dict[str, Any]:
        async with self.lock:
            router = self._require_router()
            if self.send_transport is not None and not self.send_transport.closed:
                raise OrderingError("peer transport already exists")
            transport = await self._engine_call(
                "peer transport creation", router.create_webrtc_transport(self._webrtc_options())
            )
            await transport.enable_trace_event(["bwe"])
            self._forward_bwe(transport, self._bridge_recv_transport, "peer engine")
            self.send_transport = transport
            self._arm_connect_timeout(transport)
            descriptor = transport.describe()
            LOG.info("WebRTC SEND transport created")
            LOG.debug("WebRTC SEND TransportOptions:\n%s", json.dumps(descriptor, indent=2))
            return descriptor

    async def connect_peer_transport(self, dtls_parameters: DtlsParameters) -> None:
        async with self.lock:
            self._ensure_open()
            transport = self._require_transport(self.send_transport, "peer")
            await transport.connect(dtls_parameters)
            LOG.info("WebRTC SEND transport connected")

    async def start_peer_consumer(self, rtp_capabilities: RtpCapabilities) -> Dict[str, Any]:
        async with self.lock:
            self._ensure_open()
            transport = self._require_transport(self.send_transport, "peer")
            producer = self.bridge.recv_producer if self.bridge is not None else None
            if producer is None:
                LOG.error("BUG: peer consumer requested before the bridge producer exists")
                raise OrderingError("bridge producer does not exist yet")
            if self.peer_consumer is not None and not self.peer_consumer.closed:
                raise OrderingError("peer consumer already exists")
            consumer = await transport.consume(producer.id, rtp_capabilities, paused=False)
            self.peer_consumer = consumer
            LOG.info(
                "WebRTC SEND consumer created, kind: %s, type: %s, paused: %s",
                consumer.kind,
                consumer.type,
                consumer.paused,
            )
            return consumer.describe()

    # ------------------------------------------------------------------
    # recording

    async def start_recording(self, recorder: str = "ffmpeg") -> None:
        """
        Feed the client producers to a recorder.

        Consumers are created paused and resumed by a background task once the
        recorder reports readiness, so this returns as soon as it is spawned.
        """

        async with self.lock:
            router = self._require_router()
            if recorder not in RECORDERS:
                LOG.warning("Invalid recorder: %s", recorder)
                raise ConfigurationError(f"Invalid recorder: {recorder!r}")
            if self.recording is not None:
                raise OrderingError("a recording is already active")
            producers = {kind: p for kind, p in self.producers.items() if not p.closed}
            if not producers:
                raise OrderingError("start-recording needs at least one client producer")

            recording = Recording(recorder=recorder)
            self.recording = recording
            settings = self.config.recording
            try:
                for kind in ("audio", "video"):
                    if kind in producers:
                        recording.legs.append(await self._start_recording_leg(router, kind, producers[kind]))
                recording.plan = plan_recording(
                    recorder,
                    settings,
                    [leg.to_stream() for leg in recording.legs],
                    h264=ortc.h264_enabled(router.rtp_capabilities),
                )
                recording.handle = await start_recorder(
                    recording.plan,
                    settings,
                    on_exit=functools.partial(self._on_recorder_exit, recording),
                )
            except EngineError as exc:
                self._escalate(f"recording transport creation failed: {exc}")
                await self._finish_recording(recording)
                raise
            except BaseException:
                await self._finish_recording(recording)
                raise
            recording.ready_task = self._spawn(self._resume_when_ready(recording))

    async def _start_recording_leg(self, router: Router, kind: str, producer: Producer) -> RecordingLeg:
        settings = self.config.recording
        port = settings.audio_port if kind == "audio" else settings.video_port
        options = PlainTransportOptions(
            listen_ip=self.config.media.listen_ip,
            announced_ip=self.config.media.announced_ip,
            rtcp_mux=False,
            comedia=False,
        )
        transport = await self._engine_call(
            "recording transport creation", router.create_plain_transport(options)
        )
        leg = RecordingLeg(kind=kind, transport=transport)
        try:
            await transport.connect(ip=settings.ip, port=port, rtcp_port=port + 1)
            LOG.info("%s RTP SEND transport connected: %s", kind.upper(), transport.tuple.describe())
            if transport.rtcp_tuple is not None:
                LOG.info("%s RTCP SEND transport connected: %s", kind.upper(), transport.rtcp_tuple.describe())
            # The recorder is assumed to accept the router formats.
            leg.consumer = await transport.consume(producer.id, router.rtp_capabilities, paused=True)
            encoding = leg.consumer.rtp_parameters.encodings[0]
            LOG.info(
                "%s RTP SEND consumer created, kind: %s, type: %s, paused: %s, SSRC: %s CNAME: %s",
                kind.upper(),
                leg.consumer.kind,
                leg.consumer.type,
                leg.consumer.paused,
                encoding.ssrc,
                leg.consumer.rtp_parameters.rtcp.cname,
            )
        except BaseException:
            await transport.close()
            raise
        return leg

    async def _resume_when_ready(self, recording: Recording) -> None:
        handle = recording.handle
        assert handle is not None
        timeout = float(self.config.recording.ready_timeout) or None
        try:
            await handle.wait_ready(timeout)
        except ProcessError as exc:
            LOG.warning("Recorder did not start: %s", exc)
            self.notify("error", {"code": exc.code, "message": str(exc)})
            await self._finish_recording(recording)
            return
        async with self.lock:
            if recording.finished or self.recording is not recording:
                return
            for leg in recording.legs:
                if leg.consumer is not None and not leg.consumer.closed:
                    LOG.info("Resume RTP consumer, kind: %s, type: %s", leg.consumer.kind, leg.consumer.type)
                    await leg.consumer.resume()
        self.notify("recording-ready", recording.recorder)

    async def _on_recorder_exit(self, recording: Recording, info: ProcessExit) -> None:
        LOG.info("Recording process exit, %s", info.describe())
        if recording.handle is not None and recording.handle.ready_timed_out:
            LOG.warning("Recording process stopped before it became ready")
        elif info.clean:
            LOG.info("Recording stopped")
        else:
            LOG.warning("Recording process didn't exit cleanly, output file might be corrupt")
        await self._finish_recording(recording)

    async def _finish_recording(self, recording: Optional[Recording]) -> None:
        """Close the recording transports and consumers; safe to call repeatedly."""

        if recording is None or recording.finished:
            return
        recording.finished = True
        if self.recording is recording:
            self.recording = None
        task = recording.ready_task
        # After its own timeout the readiness task reports the failure itself.
        timed_out = recording.handle is not None and recording.handle.ready_timed_out
        if task is not None and task is not asyncio.current_task() and not task.done() and not timed_out:
            task.cancel()
        LOG.info("Stop RTP transport and consumer")
        for leg in recording.legs:
            if leg.consumer is not None:
                await leg.consumer.close()
            await leg.transport.close()
        self.notify("recording-stopped", recording.recorder)

    async def stop_recording(self) -> None:
        """
        Stop the active recording.

        A live recorder is interrupted and its exit handler performs the
        cleanup; without one the cleanup runs directly.  Calling this with
        nothing recorded is not an error.
        """

        async with self.lock:
            recording = self.recording
            if recording is None:
                LOG.info("No recording is active")
            elif recording.handle is not None and recording.handle.alive:
                await recording.handle.stop()
            await self._finish_recording(recording)

    # ------------------------------------------------------------------
    # diagnostics and teardown

    async def debug(self) -> List[Tuple[str, Any]]:
        async with self.lock:
            dumps: List[Tuple[str, Any]] = []
            if self.recv_transport is not None and not self.recv_transport.closed:
                dumps.append(("WebRTC RECV transport stats", await self.recv_transport.get_stats()))
            for kind, producer in self.producers.items():
                if not producer.closed:
                    dumps.append((f"WebRTC RECV {kind} producer stats", await producer.get_stats()))
            if self.bridge is not None:
                dumps.extend(await self.bridge.stats())
            if self.send_transport is not None and not self.send_transport.closed:
                dumps.append(("WebRTC SEND transport stats", await self.send_transport.get_stats()))
            if self.peer_consumer is not None and not self.peer_consumer.closed:
                dumps.append(("WebRTC SEND consumer stats", await self.peer_consumer.get_stats()))
            if self.recording is not None:
                for leg in self.recording.legs:
                    dumps.append((f"Recording {leg.kind} transport stats", await leg.transport.get_stats()))
            for label, stats in dumps:
                LOG.info("[DEBUG] %s:\n%s", label, json.dumps(stats, indent=2, default=str))
            return dumps

    async def close(self) -> None:
        """
        Release everything the session owns.

        Does not wait for the handler lock, so it also works while a request
        is suspended inside the engine (e.g. a transport mid-connect).
        """

        if self.closed:
            return
        self.phase = SessionPhase.CLOSED
        LOG.info("Closing session %s", self.id)

        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current]
        for task in pending:
            task.cancel()

        recording = self.recording
        if recording is not None:
            if recording.handle is not None and recording.handle.alive:
                try:
                    await recording.handle.stop()
                except (BridgeError, OSError) as exc:
                    LOG.warning("Failed to stop recorder: %s", exc)
            await self._finish_recording(recording)

        for source, token in self._subscriptions:
            source.unsubscribe(token)
        self._subscriptions.clear()

        if self.peer_consumer is not None:
            await self.peer_consumer.close()
        for producer in self.producers.values():
            await producer.close()
        for transport in (self.send_transport, self.recv_transport):
            if transport is not None:
                await transport.close()
        if self.bridge is not None:
            await self.bridge.close()
        if self.peer is not None:
            await self.peer.close()
        if self.router is not None:
            await self.router.close()
        if self.worker is not None:
            await self.worker.close()

        if pending:
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.gather(*pending, return_exceptions=True)
        LOG.info("Session %s closed", self.id)

    @staticmethod
    def _transport_dict(transport: Optional[Transport]) -> Optional[dict]:
        if transport is None:
            return None
        return {"id": transport.id, "kind": transport.kind, "state": transport.state.value}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "phase": self.phase.value,
            "workerPid": self.worker.pid if self.worker else None,
            "routerId": self.router.id if self.router else None,
            "codecs": [codec.mime_type for codec in self.router.rtp_capabilities.codecs]
            if self.router
            else [],
            "clientTransport": self._transport_dict(self.recv_transport),
            "peerTransport": self._transport_dict(self.send_transport),
            "producers": {
                kind: {"id": producer.id, "paused": producer.paused, "closed": producer.closed}
                for kind, producer in self.producers.items()
            },
            "peerConsumer": self.peer_consumer.id if self.peer_consumer else None,
            "bridge": self.bridge.to_dict() if self.bridge else None,
            "recording": self.recording.to_dict() if self.recording else None,
        }


__all__ = [
    "FatalHook",
    "Notifier",
    "PeerFactory",
    "Recording",
    "RecordingLeg",
    "Session",
    "SessionPhase",
    "kurento_peer_factory",
    "terminate_process",
]
