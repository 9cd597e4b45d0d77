"""
Media engine contract.

The orchestration layer only ever talks to the SFU through the classes in
this module.  Engine objects report asynchronous happenings (tuple learned,
bandwidth trace, closure, worker death) through :class:`EventSource`, a single
dispatch point per object instead of ad-hoc callbacks.
"""

from __future__ import annotations

import abc
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from .rtp import (
    DtlsParameters,
    IceCandidate,
    IceParameters,
    MediaKind,
    RtpCapabilities,
    RtpCodecCapability,
    RtpParameters,
    SrtpParameters,
    TransportTuple,
)

LOG = logging.getLogger(__name__)


class TransportState(str, enum.Enum):
    CREATED = "created"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


class EngineEvent(str, enum.Enum):
    TUPLE = "tuple"
    RTCP_TUPLE = "rtcptuple"
    TRACE = "trace"
    CLOSE = "close"
    PRODUCER_CLOSE = "producerclose"
    DIED = "died"


@dataclass(frozen=True)
class EngineEventMessage:
    kind: EngineEvent
    payload: Any = None


@dataclass(frozen=True)
class BweTrace:
    """Bandwidth estimation trace emitted by a transport."""

    available_bitrate: int
    desired_bitrate: int = 0
    direction: str = "out"

    def to_dict(self) -> dict:
        return {
            "type": "bwe",
            "direction": self.direction,
            "availableBitrate": self.available_bitrate,
            "desiredBitrate": self.desired_bitrate,
        }


EventCallback = Callable[[EngineEventMessage], None]


class EventSource:
    """Minimal observer registry shared by every engine object."""

    def __init__(self) -> None:
        self._observers: Dict[int, EventCallback] = {}
        self._observer_counter = 0

    def subscribe(self, callback: EventCallback) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        self._observer_counter += 1
        token = self._observer_counter
        self._observers[token] = callback
        return token

    def unsubscribe(self, token: int) -> None:
        self._observers.pop(token, None)

    def _dispatch(self, kind: EngineEvent, payload: Any = None) -> None:
        if not self._observers:
            return
        message = EngineEventMessage(kind=kind, payload=payload)
        for token, callback in list(self._observers.items()):
            try:
                callback(message)
            except Exception:  # pragma: no cover - observer bug
                LOG.exception("Engine event observer %s failed for %s", token, kind.value)


@dataclass
class WorkerSettings:
    log_level: str = "warn"
    log_tags: List[str] = field(default_factory=list)
    rtc_min_port: int = 32256
    rtc_max_port: int = 65535


@dataclass
class WebRtcTransportOptions:
    listen_ip: str = "127.0.0.1"
    announced_ip: Optional[str] = None
    enable_udp: bool = True
    enable_tcp: bool = True
    prefer_udp: bool = True
    initial_available_outgoing_bitrate: int = 600_000


@dataclass
class PlainTransportOptions:
    listen_ip: str = "127.0.0.1"
    announced_ip: Optional[str] = None
    rtcp_mux: bool = False
    comedia: bool = False
    enable_srtp: bool = False
    srtp_crypto_suite: str = "AES_CM_128_HMAC_SHA1_80"


class MediaEngine(abc.ABC):
    """Factory for workers; one per process."""

    @abc.abstractmethod
    async def create_worker(self, settings: WorkerSettings) -> "Worker":
        """Start a worker.  Failures raise :class:`~sfubridge.errors.EngineError`."""


class Worker(EventSource, abc.ABC):
    pid: int

    @property
    @abc.abstractmethod
    def closed(self) -> bool: ...

    @abc.abstractmethod
    async def create_router(self, media_codecs: Iterable[RtpCodecCapability]) -> "Router": ...

    @abc.abstractmethod
    async def close(self) -> None: ...


class Router(abc.ABC):
    id: str

    @property
    @abc.abstractmethod
    def rtp_capabilities(self) -> RtpCapabilities: ...

    @property
    @abc.abstractmethod
    def closed(self) -> bool: ...

    @abc.abstractmethod
    async def create_webrtc_transport(self, options: WebRtcTransportOptions) -> "WebRtcTransport": ...

    @abc.abstractmethod
    async def create_plain_transport(self, options: PlainTransportOptions) -> "PlainTransport": ...

    @abc.abstractmethod
    def get_producer(self, producer_id: str) -> Optional["Producer"]: ...

    @abc.abstractmethod
    def can_consume(self, producer_id: str, rtp_capabilities: RtpCapabilities) -> bool: ...

    @abc.abstractmethod
    async def close(self) -> None: ...


class Transport(EventSource, abc.ABC):
    id: str
    kind: str

    @property
    @abc.abstractmethod
    def state(self) -> TransportState: ...

    @property
    def closed(self) -> bool:
        return self.state == TransportState.CLOSED

    @property
    def connected(self) -> bool:
        return self.state == TransportState.CONNECTED

    @abc.abstractmethod
    async def produce(
        self, kind: MediaKind, rtp_parameters: RtpParameters, *, paused: bool = False
    ) -> "Producer": ...

    @abc.abstractmethod
    async def consume(
        self, producer_id: str, rtp_capabilities: RtpCapabilities, *, paused: bool = False
    ) -> "Consumer": ...

    @abc.abstractmethod
    async def get_stats(self) -> List[Dict[str, Any]]: ...

    @abc.abstractmethod
    async def set_max_incoming_bitrate(self, bitrate: int) -> None: ...

    @abc.abstractmethod
    async def enable_trace_event(self, types: Iterable[str]) -> None: ...

    @abc.abstractmethod
    async def close(self) -> None: ...


class WebRtcTransport(Transport):
    kind = "webrtc"
    ice_parameters: IceParameters
    ice_candidates: List[IceCandidate]
    dtls_parameters: DtlsParameters

    @abc.abstractmethod
    async def connect(self, dtls_parameters: DtlsParameters) -> None:
        """
        Complete the DTLS handshake with the client.

        A repeated call with identical parameters is a no-op; different
        parameters raise :class:`~sfubridge.errors.TransportStateError`.
        """

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "iceParameters": self.ice_parameters.to_wire(),
            "iceCandidates": [candidate.to_wire() for candidate in self.ice_candidates],
            "dtlsParameters": self.dtls_parameters.to_wire(),
        }


class PlainTransport(Transport):
    kind = "plain"
    tuple: TransportTuple
    rtcp_tuple: Optional[TransportTuple]
    srtp_parameters: Optional[SrtpParameters]

    @abc.abstractmethod
    async def connect(
        self,
        *,
        ip: Optional[str] = None,
        port: Optional[int] = None,
        rtcp_port: Optional[int] = None,
        srtp_parameters: Optional[SrtpParameters] = None,
    ) -> None: ...

    @abc.abstractmethod
    async def wait_tuple(self, timeout: Optional[float] = None) -> TransportTuple:
        """Resolve once the remote RTP tuple is known (explicit or learned)."""


class Producer(EventSource, abc.ABC):
    id: str
    kind: MediaKind
    rtp_parameters: RtpParameters
    type: str = "simple"

    @property
    @abc.abstractmethod
    def paused(self) -> bool: ...

    @property
    @abc.abstractmethod
    def closed(self) -> bool: ...

    @abc.abstractmethod
    async def pause(self) -> None: ...

    @abc.abstractmethod
    async def resume(self) -> None: ...

    @abc.abstractmethod
    async def get_stats(self) -> List[Dict[str, Any]]: ...

    @abc.abstractmethod
    async def close(self) -> None: ...


class Consumer(EventSource, abc.ABC):
    id: str
    producer_id: str
    kind: MediaKind
    rtp_parameters: RtpParameters
    type: str = "simple"

    @property
    @abc.abstractmethod
    def paused(self) -> bool: ...

    @property
    @abc.abstractmethod
    def closed(self) -> bool: ...

    @abc.abstractmethod
    async def pause(self) -> None: ...

    @abc.abstractmethod
    async def resume(self) -> None: ...

    @abc.abstractmethod
    async def get_stats(self) -> List[Dict[str, Any]]: ...

    @abc.abstractmethod
    async def close(self) -> None: ...

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "producerId": self.producer_id,
            "kind": self.kind,
            "rtpParameters": self.rtp_parameters.to_wire(),
        }


__all__ = [
    "BweTrace",
    "Consumer",
    "EngineEvent",
    "EngineEventMessage",
    "EventSource",
    "MediaEngine",
    "PlainTransport",
    "PlainTransportOptions",
    "Producer",
    "Router",
    "Transport",
    "TransportState",
    "WebRtcTransport",
    "WebRtcTransportOptions",
    "Worker",
    "WorkerSettings",
]
