"""
In-process media engine.

``InMemoryEngine`` performs the bookkeeping side of an SFU: capability
computation, id/SSRC/CNAME allocation, port allocation, ICE/DTLS/SRTP
parameter generation and consumer parameter derivation.  It does not forward
media.  Plain transports may bind real UDP sockets so that comedia discovery
(remote tuple learned from the first inbound datagram) behaves like the real
thing.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import os
import secrets
import uuid
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..errors import EngineError, NegotiationError, OrderingError, TransportStateError
from . import ortc
from .engine import (
    BweTrace,
    Consumer,
    EngineEvent,
    MediaEngine,
    PlainTransport,
    PlainTransportOptions,
    Producer,
    Router,
    Transport,
    TransportState,
    WebRtcTransport,
    WebRtcTransportOptions,
    Worker,
    WorkerSettings,
)
from .rtp import (
    DtlsFingerprint,
    DtlsParameters,
    IceCandidate,
    IceParameters,
    MediaKind,
    RtpCapabilities,
    RtpCodecCapability,
    RtpEncodingParameters,
    RtpParameters,
    SrtpParameters,
    TransportTuple,
)

LOG = logging.getLogger(__name__)

SRTP_KEY_LENGTHS = {
    "AES_CM_128_HMAC_SHA1_80": 30,
    "AES_CM_128_HMAC_SHA1_32": 30,
}


class PortAllocator:
    """Hand out ports from a closed range, lowest free first."""

    def __init__(self, min_port: int, max_port: int) -> None:
        if min_port > max_port:
            raise EngineError(f"invalid port range {min_port}-{max_port}")
        self.min_port = min_port
        self.max_port = max_port
        self._used: Set[int] = set()

    def allocate(self, *, skip: Iterable[int] = ()) -> int:
        skipped = set(skip)
        for port in range(self.min_port, self.max_port + 1):
            if port not in self._used and port not in skipped:
                self._used.add(port)
                return port
        raise EngineError(f"no free port left in {self.min_port}-{self.max_port}")

    def release(self, port: Optional[int]) -> None:
        if port is not None:
            self._used.discard(port)


class _DatagramReceiver(asyncio.DatagramProtocol):
    def __init__(self, transport: "InMemoryPlainTransport", rtcp: bool) -> None:
        self._owner = transport
        self._rtcp = rtcp

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self._owner._on_datagram(data, addr, rtcp=self._rtcp)

    def error_received(self, exc: Exception) -> None:  # pragma: no cover - OS dependent
        LOG.debug("UDP error on transport %s: %s", self._owner.id, exc)


class InMemoryProducer(Producer):
    def __init__(
        self,
        transport: "_BaseTransport",
        kind: MediaKind,
        rtp_parameters: RtpParameters,
        paused: bool,
        *,
        engine_ssrcs: Iterable[int] = (),
    ) -> None:
        super().__init__()
        self.id = str(uuid.uuid4())
        self.kind = kind
        self.rtp_parameters = rtp_parameters
        self.transport = transport
        self._paused = paused
        self._closed = False
        self._engine_ssrcs = list(engine_ssrcs)

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def closed(self) -> bool:
        return self._closed

    async def pause(self) -> None:
        self._paused = True

    async def resume(self) -> None:
        self._paused = False

    async def get_stats(self) -> List[Dict[str, Any]]:
        return [
            {
                "type": "inbound-rtp",
                "producerId": self.id,
                "kind": self.kind,
                "ssrc": encoding.ssrc,
                "mimeType": self.rtp_parameters.codecs[0].mime_type if self.rtp_parameters.codecs else None,
                "paused": self._paused,
            }
            for encoding in self.rtp_parameters.encodings
        ]

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.transport.router._forget_producer(self)
        self.transport.router.engine.release_ssrcs(self._engine_ssrcs)
        self.transport._producers.pop(self.id, None)
        self._dispatch(EngineEvent.CLOSE)

    def to_dict(self) -> dict:
        return {"id": self.id, "kind": self.kind, "paused": self._paused, "closed": self._closed}


class InMemoryConsumer(Consumer):
    def __init__(
        self,
        transport: "_BaseTransport",
        producer: InMemoryProducer,
        rtp_parameters: RtpParameters,
        paused: bool,
        *,
        engine_ssrcs: Iterable[int] = (),
    ) -> None:
        super().__init__()
        self.id = str(uuid.uuid4())
        self._engine_ssrcs = list(engine_ssrcs)
        self.producer_id = producer.id
        self.kind = producer.kind
        self.rtp_parameters = rtp_parameters
        self.transport = transport
        self._paused = paused
        self._closed = False
        self._producer_token = producer.subscribe(self._on_producer_event)
        self._producer = producer

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def producer_paused(self) -> bool:
        return self._producer.paused

    @property
    def closed(self) -> bool:
        return self._closed

    async def pause(self) -> None:
        self._paused = True

    async def resume(self) -> None:
        self._paused = False

    async def get_stats(self) -> List[Dict[str, Any]]:
        return [
            {
                "type": "outbound-rtp",
                "consumerId": self.id,
                "producerId": self.producer_id,
                "kind": self.kind,
                "ssrc": encoding.ssrc,
                "paused": self._paused,
            }
            for encoding in self.rtp_parameters.encodings
        ]

    def _on_producer_event(self, message) -> None:
        if message.kind == EngineEvent.CLOSE:
            self._teardown()
            self._dispatch(EngineEvent.PRODUCER_CLOSE)

    def _teardown(self) -> bool:
        if self._closed:
            return False
        self._closed = True
        self._producer.unsubscribe(self._producer_token)
        self.transport.router.engine.release_ssrcs(self._engine_ssrcs)
        self.transport._consumers.pop(self.id, None)
        return True

    async def close(self) -> None:
        if self._teardown():
            self._dispatch(EngineEvent.CLOSE)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "producerId": self.producer_id,
            "kind": self.kind,
            "paused": self._paused,
            "closed": self._closed,
        }


class _BaseTransport(Transport):
    def __init__(self, router: "InMemoryRouter") -> None:
        super().__init__()
        self.id = str(uuid.uuid4())
        self.router = router
        self._state = TransportState.CREATED
        self._producers: Dict[str, InMemoryProducer] = {}
        self._consumers: Dict[str, InMemoryConsumer] = {}
        self._trace_types: Set[str] = set()
        self.max_incoming_bitrate: Optional[int] = None
        self._next_mid = 0

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def producers(self) -> List[InMemoryProducer]:
        return list(self._producers.values())

    @property
    def consumers(self) -> List[InMemoryConsumer]:
        return list(self._consumers.values())

    def _ensure_open(self) -> None:
        if self._state == TransportState.CLOSED:
            raise TransportStateError(f"transport {self.id} is closed")

    def _can_produce(self) -> bool:
        return True

    def _assign_mid(self) -> Optional[str]:
        return None

    async def produce(
        self, kind: MediaKind, rtp_parameters: RtpParameters, *, paused: bool = False
    ) -> InMemoryProducer:
        self._ensure_open()
        if not self._can_produce():
            raise TransportStateError(
                f"cannot produce on transport {self.id} in state {self._state.value}"
            )
        parameters = rtp_parameters.model_copy(deep=True)
        media_codecs = parameters.media_codecs()
        if not media_codecs:
            raise NegotiationError("producer rtpParameters contain no media codec")
        for codec in media_codecs:
            if not codec.mime_type.lower().startswith(f"{kind}/"):
                raise NegotiationError(f"codec {codec.mime_type} does not match kind {kind}")
        if not ortc.can_consume(parameters, self.router.rtp_capabilities):
            raise NegotiationError(
                f"router does not support codec {media_codecs[0].mime_type}"
            )
        engine_ssrcs: List[int] = []
        if not parameters.encodings:
            engine_ssrcs.append(self.router.engine.allocate_ssrc())
            parameters.encodings = [RtpEncodingParameters(ssrc=engine_ssrcs[0])]
        if not parameters.rtcp.cname:
            parameters.rtcp.cname = self.router.engine.cname

        producer = InMemoryProducer(self, kind, parameters, paused, engine_ssrcs=engine_ssrcs)
        self._producers[producer.id] = producer
        self.router._register_producer(producer)
        LOG.debug("Producer %s (%s) created on transport %s", producer.id, kind, self.id)
        return producer

    async def consume(
        self, producer_id: str, rtp_capabilities: RtpCapabilities, *, paused: bool = False
    ) -> InMemoryConsumer:
        self._ensure_open()
        producer = self.router.get_producer(producer_id)
        if producer is None:
            raise OrderingError(f"Producer with id {producer_id!r} not found")
        ortc.validate_rtp_capabilities(rtp_capabilities)
        engine = self.router.engine
        engine_ssrcs = [engine.allocate_ssrc(), engine.allocate_ssrc()]
        try:
            parameters = ortc.get_consumer_rtp_parameters(
                producer.rtp_parameters,
                rtp_capabilities,
                ssrc=engine_ssrcs[0],
                rtx_ssrc=engine_ssrcs[1],
                cname=producer.rtp_parameters.rtcp.cname or engine.cname,
            )
        except NegotiationError:
            engine.release_ssrcs(engine_ssrcs)
            raise
        parameters.mid = self._assign_mid()
        consumer = InMemoryConsumer(self, producer, parameters, paused, engine_ssrcs=engine_ssrcs)
        self._consumers[consumer.id] = consumer
        LOG.debug("Consumer %s of producer %s created on transport %s", consumer.id, producer_id, self.id)
        return consumer

    async def set_max_incoming_bitrate(self, bitrate: int) -> None:
        self._ensure_open()
        self.max_incoming_bitrate = int(bitrate)

    async def enable_trace_event(self, types: Iterable[str]) -> None:
        self._trace_types = set(types)

    def emit_trace(self, trace: BweTrace) -> None:
        """Publish a bandwidth trace if the ``bwe`` trace type is enabled."""

        if "bwe" in self._trace_types and not self.closed:
            self._dispatch(EngineEvent.TRACE, trace)

    def _set_state(self, state: TransportState) -> None:
        self._state = state

    async def close(self) -> None:
        if self._state == TransportState.CLOSED:
            return
        self._state = TransportState.CLOSED
        for consumer in list(self._consumers.values()):
            await consumer.close()
        for producer in list(self._producers.values()):
            await producer.close()
        self._release_resources()
        self.router._forget_transport(self)
        self._dispatch(EngineEvent.CLOSE)

    def _release_resources(self) -> None:
        pass


class InMemoryWebRtcTransport(_BaseTransport, WebRtcTransport):
    def __init__(self, router: "InMemoryRouter", options: WebRtcTransportOptions) -> None:
        super().__init__(router)
        engine = router.engine
        self.options = options
        self.port = engine.ports.allocate()
        ip = options.announced_ip or options.listen_ip
        self.ice_parameters = IceParameters(
            username_fragment=secrets.token_hex(8),
            password=secrets.token_hex(16),
            ice_lite=True,
        )
        candidates: List[IceCandidate] = []
        if options.enable_udp:
            candidates.append(
                IceCandidate(
                    foundation="udpcandidate",
                    priority=1076302079 if options.prefer_udp else 1076276479,
                    ip=ip,
                    protocol="udp",
                    port=self.port,
                )
            )
        if options.enable_tcp:
            candidates.append(
                IceCandidate(
                    foundation="tcpcandidate",
                    priority=1076276479 if options.prefer_udp else 1076302079,
                    ip=ip,
                    protocol="tcp",
                    port=self.port,
                    tcp_type="passive",
                )
            )
        self.ice_candidates = candidates
        self.dtls_parameters = DtlsParameters(
            role="auto",
            fingerprints=[DtlsFingerprint(algorithm="sha-256", value=engine.fingerprint)],
        )
        self.remote_dtls_parameters: Optional[DtlsParameters] = None

    def _can_produce(self) -> bool:
        return self._state == TransportState.CONNECTED

    def _assign_mid(self) -> Optional[str]:
        mid = str(self._next_mid)
        self._next_mid += 1
        return mid

    async def connect(self, dtls_parameters: DtlsParameters) -> None:
        self._ensure_open()
        if self.remote_dtls_parameters is not None:
            if self.remote_dtls_parameters == dtls_parameters:
                LOG.debug("Ignoring repeated connect on transport %s", self.id)
                return
            raise TransportStateError(
                f"transport {self.id} already connected with different DTLS parameters"
            )
        if not dtls_parameters.fingerprints:
            raise NegotiationError("dtlsParameters contain no fingerprint")
        self.remote_dtls_parameters = dtls_parameters
        self._set_state(TransportState.CONNECTING)
        delay = self.router.engine.dtls_handshake_delay
        if delay > 0:
            await asyncio.sleep(delay)
        if self._state == TransportState.CLOSED:
            raise TransportStateError(f"transport {self.id} closed while connecting")
        self._set_state(TransportState.CONNECTED)

    async def get_stats(self) -> List[Dict[str, Any]]:
        connected = self._state == TransportState.CONNECTED
        return [
            {
                "type": "webrtc-transport",
                "transportId": self.id,
                "iceState": "completed" if connected else "new",
                "dtlsState": "connected" if connected else "new",
                "iceRole": "controlled",
                "maxIncomingBitrate": self.max_incoming_bitrate,
                "availableOutgoingBitrate": self.options.initial_available_outgoing_bitrate,
            }
        ]

    def _release_resources(self) -> None:
        self.router.engine.ports.release(self.port)


class InMemoryPlainTransport(_BaseTransport, PlainTransport):
    def __init__(self, router: "InMemoryRouter", options: PlainTransportOptions) -> None:
        super().__init__(router)
        self.options = options
        self.comedia = options.comedia
        self.rtcp_mux = options.rtcp_mux
        self.srtp_parameters: Optional[SrtpParameters] = None
        self.remote_srtp_parameters: Optional[SrtpParameters] = None
        if options.enable_srtp:
            key_length = SRTP_KEY_LENGTHS.get(options.srtp_crypto_suite)
            if key_length is None:
                raise EngineError(f"unsupported SRTP crypto suite {options.srtp_crypto_suite}")
            self.srtp_parameters = SrtpParameters(
                crypto_suite=options.srtp_crypto_suite,
                key_base64=base64.b64encode(os.urandom(key_length)).decode("ascii"),
            )
        self._sockets: List[asyncio.DatagramTransport] = []
        self._tuple_future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.bytes_received = 0
        self.tuple = TransportTuple(local_ip=options.announced_ip or options.listen_ip, local_port=0)
        self.rtcp_tuple: Optional[TransportTuple] = None

    async def _bind(self) -> None:
        engine = self.router.engine
        ip = self.options.listen_ip
        if not engine.bind_plain_sockets:
            self.tuple.local_port = engine.ports.allocate()
            if not self.rtcp_mux:
                self.rtcp_tuple = TransportTuple(
                    local_ip=self.tuple.local_ip, local_port=engine.ports.allocate()
                )
            return

        loop = asyncio.get_running_loop()
        rtp_port = await self._bind_socket(loop, ip, rtcp=False)
        self.tuple.local_port = rtp_port
        if not self.rtcp_mux:
            rtcp_port = await self._bind_socket(loop, ip, rtcp=True)
            self.rtcp_tuple = TransportTuple(local_ip=self.tuple.local_ip, local_port=rtcp_port)

    async def _bind_socket(self, loop: asyncio.AbstractEventLoop, ip: str, *, rtcp: bool) -> int:
        ports = self.router.engine.ports
        refused: List[int] = []
        while True:
            port = ports.allocate(skip=refused)
            try:
                transport, _ = await loop.create_datagram_endpoint(
                    lambda: _DatagramReceiver(self, rtcp), local_addr=(ip, port)
                )
            except OSError as exc:
                ports.release(port)
                refused.append(port)
                LOG.debug("Port %s on %s unavailable (%s); trying next", port, ip, exc)
                continue
            self._sockets.append(transport)
            return port

    def _on_datagram(self, data: bytes, addr: Tuple[str, int], *, rtcp: bool) -> None:
        if self.closed:
            return
        self.bytes_received += len(data)
        if not self.comedia:
            return
        if rtcp:
            if self.rtcp_tuple is not None and self.rtcp_tuple.remote_ip is None:
                self.rtcp_tuple.remote_ip, self.rtcp_tuple.remote_port = addr[0], addr[1]
                self._dispatch(EngineEvent.RTCP_TUPLE, self.rtcp_tuple)
            return
        if self.tuple.remote_ip is None:
            self.learn_remote(addr[0], addr[1])

    def learn_remote(self, ip: str, port: int) -> None:
        """Record the remote RTP tuple discovered from inbound traffic."""

        if self.closed or self.tuple.remote_ip is not None:
            return
        self.tuple.remote_ip = ip
        self.tuple.remote_port = port
        self._set_state(TransportState.CONNECTED)
        if not self._tuple_future.done():
            self._tuple_future.set_result(self.tuple)
        self._dispatch(EngineEvent.TUPLE, self.tuple)

    async def connect(
        self,
        *,
        ip: Optional[str] = None,
        port: Optional[int] = None,
        rtcp_port: Optional[int] = None,
        srtp_parameters: Optional[SrtpParameters] = None,
    ) -> None:
        self._ensure_open()
        if srtp_parameters is not None:
            if self.srtp_parameters is None:
                raise TransportStateError(f"transport {self.id} was created without SRTP")
            self.remote_srtp_parameters = srtp_parameters
        if ip is None and port is None:
            if srtp_parameters is None:
                raise TransportStateError("plain transport connect needs ip/port or srtpParameters")
            return
        if self.comedia:
            raise TransportStateError(f"transport {self.id} learns its remote address (comedia)")
        if not ip or not port:
            raise TransportStateError("plain transport connect needs both ip and port")
        if self.tuple.remote_ip is not None:
            raise TransportStateError(f"transport {self.id} is already connected")
        self.tuple.remote_ip = ip
        self.tuple.remote_port = int(port)
        if not self.rtcp_mux and self.rtcp_tuple is not None:
            self.rtcp_tuple.remote_ip = ip
            self.rtcp_tuple.remote_port = int(rtcp_port) if rtcp_port else int(port) + 1
        self._set_state(TransportState.CONNECTED)
        if not self._tuple_future.done():
            self._tuple_future.set_result(self.tuple)
        self._dispatch(EngineEvent.TUPLE, self.tuple)

    async def wait_tuple(self, timeout: Optional[float] = None) -> TransportTuple:
        return await asyncio.wait_for(asyncio.shield(self._tuple_future), timeout)

    async def get_stats(self) -> List[Dict[str, Any]]:
        return [
            {
                "type": "plain-rtp-transport",
                "transportId": self.id,
                "comedia": self.comedia,
                "rtcpMux": self.rtcp_mux,
                "tuple": self.tuple.to_wire(),
                "rtcpTuple": self.rtcp_tuple.to_wire() if self.rtcp_tuple else None,
                "bytesReceived": self.bytes_received,
                "maxIncomingBitrate": self.max_incoming_bitrate,
                "srtp": self.srtp_parameters is not None,
            }
        ]

    def _release_resources(self) -> None:
        ports = self.router.engine.ports
        for sock in self._sockets:
            sock.close()
        self._sockets.clear()
        ports.release(self.tuple.local_port)
        if self.rtcp_tuple is not None:
            ports.release(self.rtcp_tuple.local_port)
        if not self._tuple_future.done():
            self._tuple_future.set_exception(TransportStateError(f"transport {self.id} closed"))
            self._tuple_future.exception()


class InMemoryRouter(Router):
    def __init__(self, worker: "InMemoryWorker", capabilities: RtpCapabilities) -> None:
        self.id = str(uuid.uuid4())
        self.worker = worker
        self.engine = worker.engine
        self._capabilities = capabilities
        self._closed = False
        self._transports: Dict[str, _BaseTransport] = {}
        self._producers: Dict[str, InMemoryProducer] = {}

    @property
    def rtp_capabilities(self) -> RtpCapabilities:
        return self._capabilities

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise EngineError(f"router {self.id} is closed")

    async def create_webrtc_transport(self, options: WebRtcTransportOptions) -> InMemoryWebRtcTransport:
        self._ensure_open()
        transport = InMemoryWebRtcTransport(self, options)
        self._transports[transport.id] = transport
        return transport

    async def create_plain_transport(self, options: PlainTransportOptions) -> InMemoryPlainTransport:
        self._ensure_open()
        transport = InMemoryPlainTransport(self, options)
        try:
            await transport._bind()
        except EngineError:
            await transport.close()
            raise
        self._transports[transport.id] = transport
        return transport

    def get_producer(self, producer_id: str) -> Optional[InMemoryProducer]:
        return self._producers.get(producer_id)

    def can_consume(self, producer_id: str, rtp_capabilities: RtpCapabilities) -> bool:
        producer = self._producers.get(producer_id)
        if producer is None:
            return False
        return ortc.can_consume(producer.rtp_parameters, rtp_capabilities)

    def _register_producer(self, producer: InMemoryProducer) -> None:
        self._producers[producer.id] = producer

    def _forget_producer(self, producer: InMemoryProducer) -> None:
        self._producers.pop(producer.id, None)

    def _forget_transport(self, transport: _BaseTransport) -> None:
        self._transports.pop(transport.id, None)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for transport in list(self._transports.values()):
            await transport.close()
        self.worker._routers.pop(self.id, None)


class InMemoryWorker(Worker):
    def __init__(self, engine: "InMemoryEngine", settings: WorkerSettings) -> None:
        super().__init__()
        self.engine = engine
        self.settings = settings
        self.pid = os.getpid()
        self._closed = False
        self._routers: Dict[str, InMemoryRouter] = {}

    @property
    def closed(self) -> bool:
        return self._closed

    async def create_router(self, media_codecs: Iterable[RtpCodecCapability]) -> InMemoryRouter:
        if self._closed:
            raise EngineError("worker is closed")
        capabilities = ortc.generate_router_rtp_capabilities(list(media_codecs))
        router = InMemoryRouter(self, capabilities)
        self._routers[router.id] = router
        return router

    def crash(self, reason: str = "worker crashed") -> None:
        """Simulate an unexpected worker exit."""

        if self._closed:
            return
        self._closed = True
        self._dispatch(EngineEvent.DIED, reason)

    async def close(self) -> None:
        # A crashed worker is already closed but may still hold routers.
        self._closed = True
        for router in list(self._routers.values()):
            await router.close()
        self.engine._forget_worker(self)


class InMemoryEngine(MediaEngine):
    """Bookkeeping SFU used by the server and the test-suite."""

    def __init__(self, *, bind_plain_sockets: bool = True, dtls_handshake_delay: float = 0.0) -> None:
        self.bind_plain_sockets = bind_plain_sockets
        self.dtls_handshake_delay = max(0.0, float(dtls_handshake_delay))
        self.cname = secrets.token_hex(8)
        self.fingerprint = ":".join(
            f"{byte:02X}" for byte in hashlib.sha256(os.urandom(32)).digest()
        )
        # Shared by every worker; created with the first worker's range.
        self.ports: Optional[PortAllocator] = None
        self._ssrcs: Set[int] = set()
        self.workers: List[InMemoryWorker] = []

    def allocate_ssrc(self) -> int:
        while True:
            ssrc = secrets.randbelow(0xFFFFFFFF - 1) + 1
            if ssrc not in self._ssrcs:
                self._ssrcs.add(ssrc)
                return ssrc

    def release_ssrcs(self, ssrcs: Iterable[Optional[int]]) -> None:
        for ssrc in ssrcs:
            if ssrc is not None:
                self._ssrcs.discard(ssrc)

    async def create_worker(self, settings: WorkerSettings) -> InMemoryWorker:
        if self.ports is None:
            self.ports = PortAllocator(settings.rtc_min_port, settings.rtc_max_port)
        elif (self.ports.min_port, self.ports.max_port) != (settings.rtc_min_port, settings.rtc_max_port):
            LOG.warning(
                "Ignoring port range %s-%s, engine already allocates from %s-%s",
                settings.rtc_min_port,
                settings.rtc_max_port,
                self.ports.min_port,
                self.ports.max_port,
            )
        worker = InMemoryWorker(self, settings)
        self.workers.append(worker)
        LOG.info("Media worker created [pid:%s]", worker.pid)
        return worker

    def _forget_worker(self, worker: InMemoryWorker) -> None:
        if worker in self.workers:
            self.workers.remove(worker)


__all__ = [
    "InMemoryConsumer",
    "InMemoryEngine",
    "InMemoryPlainTransport",
    "InMemoryProducer",
    "InMemoryRouter",
    "InMemoryWebRtcTransport",
    "InMemoryWorker",
    "PortAllocator",
]
