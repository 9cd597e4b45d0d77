"""
Cross-engine bridging.

A bridge chains the SFU router to a filter pipeline hosted by a peer engine:

    router --(send leg: plain transport + consumer)--> peer RTP endpoint
           --> peer filter -->
    peer RTP endpoint --(recv leg: comedia plain transport + producer)--> router

Each leg negotiates with the peer through one SDP offer/answer pair.  A leg
that fails releases whatever it created and raises
:class:`~sfubridge.errors.NegotiationError`; other legs are not touched.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from ..config import MediaConfig, PeerConfig, SrtpConfig
from ..errors import BridgeError, NegotiationError
from ..media.engine import (
    Consumer,
    EngineEvent,
    EngineEventMessage,
    PlainTransport,
    PlainTransportOptions,
    Producer,
    Router,
)
from ..media.rtp import SrtpParameters
from ..utils.netif import rewrite_loopback
from .kurento import PeerEngine, SdesCrypto
from .sdp import BridgeAnswer, BridgeOffer, bridge_capabilities, rtp_parameters_from_answer

LOG = logging.getLogger(__name__)


@dataclass
class BridgeLeg:
    name: str
    transport: PlainTransport
    endpoint: Optional[str] = None
    offer: Optional[BridgeOffer] = None
    answer: Optional[BridgeAnswer] = None
    consumer: Optional[Consumer] = None
    producer: Optional[Producer] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "transportId": self.transport.id,
            "tuple": self.transport.tuple.to_wire(),
            "endpoint": self.endpoint,
            "consumerId": self.consumer.id if self.consumer else None,
            "producerId": self.producer.id if self.producer else None,
        }


class PeerBridge:
    """Own the peer pipeline, both bridge legs and the filter between them."""

    def __init__(
        self,
        router: Router,
        peer: PeerEngine,
        *,
        peer_config: PeerConfig,
        srtp_config: SrtpConfig,
        media_config: MediaConfig,
    ) -> None:
        self.router = router
        self.peer = peer
        self.peer_config = peer_config
        self.srtp_config = srtp_config
        self.media_config = media_config
        self.pipeline: Optional[str] = None
        self.filter: Optional[str] = None
        self.send_leg: Optional[BridgeLeg] = None
        self.recv_leg: Optional[BridgeLeg] = None
        self._closed = False

    @property
    def recv_producer(self) -> Optional[Producer]:
        if self.recv_leg is None or self.recv_leg.producer is None or self.recv_leg.producer.closed:
            return None
        return self.recv_leg.producer

    async def start(self, video_producer: Producer, *, enable_srtp: bool = False) -> None:
        """Build the whole chain: pipeline, both legs and the filter."""

        if self.pipeline is None:
            self.pipeline = await self.peer.create_pipeline()
        if self.send_leg is None:
            self.send_leg = await self.start_send_leg(video_producer, enable_srtp=enable_srtp)
        if self.recv_leg is None:
            self.recv_leg = await self.start_recv_leg(enable_srtp=enable_srtp)
        if self.filter is None:
            await self.start_filter()

    def _plain_options(self, *, comedia: bool, enable_srtp: bool) -> PlainTransportOptions:
        return PlainTransportOptions(
            listen_ip=self.media_config.listen_ip,
            announced_ip=self.media_config.announced_ip,
            rtcp_mux=False,
            comedia=comedia,
            enable_srtp=enable_srtp,
            srtp_crypto_suite=self.srtp_config.crypto_suite,
        )

    def _peer_crypto(self, enable_srtp: bool) -> Optional[SdesCrypto]:
        if not enable_srtp:
            return None
        return SdesCrypto(crypto_suite=self.srtp_config.crypto_suite, key_base64=self.srtp_config.key_base64)

    def _shared_srtp(self) -> SrtpParameters:
        return SrtpParameters(
            crypto_suite=self.srtp_config.crypto_suite, key_base64=self.srtp_config.key_base64
        )

    def _offer_for(self, transport: PlainTransport, direction: str, **extra: Any) -> BridgeOffer:
        caps = self.router.rtp_capabilities
        codec = caps.find_codec("video/VP8")
        extension = caps.find_header_extension("video", "abs-send-time")
        if codec is None or codec.preferred_payload_type is None:
            raise NegotiationError("router has no video/VP8 codec to bridge")
        rtcp_tuple = transport.rtcp_tuple
        return BridgeOffer(
            ip=transport.tuple.local_ip,
            port=transport.tuple.local_port,
            rtcp_port=rtcp_tuple.local_port if rtcp_tuple else transport.tuple.local_port + 1,
            payload_type=codec.preferred_payload_type,
            abs_send_time_id=extension.preferred_id if extension else 0,
            direction=direction,
            srtp_key_base64=transport.srtp_parameters.key_base64 if transport.srtp_parameters else None,
            srtp_crypto_suite=self.srtp_config.crypto_suite,
            **extra,
        )

    async def _exchange(self, endpoint: str, offer: BridgeOffer) -> BridgeAnswer:
        sdp = offer.to_sdp()
        LOG.info("SDP offer to peer endpoint %s:\n%s", endpoint, sdp)
        timeout = self.peer_config.offer_answer_timeout or None
        try:
            answer_sdp = await asyncio.wait_for(self.peer.process_offer(endpoint, sdp), timeout)
        except asyncio.TimeoutError as exc:
            raise NegotiationError(
                f"peer endpoint {endpoint} did not answer within {timeout}s"
            ) from exc
        LOG.info("SDP answer from peer endpoint %s:\n%s", endpoint, answer_sdp)
        return BridgeAnswer.parse(answer_sdp, kind=offer.kind)

    def resolve_peer_address(self, answer: BridgeAnswer) -> str:
        """Address to send to, after the deployment-specific rewrites."""

        if self.peer_config.override_address or not answer.ip:
            address = self.peer_config.ip
        else:
            address = answer.ip
        if self.peer_config.use_announced_address:
            return address
        return rewrite_loopback(address)

    async def start_send_leg(self, video_producer: Producer, *, enable_srtp: bool = False) -> BridgeLeg:
        """Router -> peer: consume the client video and offer it as sendonly."""

        if self.pipeline is None:
            self.pipeline = await self.peer.create_pipeline()
        transport = await self.router.create_plain_transport(
            self._plain_options(comedia=False, enable_srtp=enable_srtp)
        )
        leg = BridgeLeg(name="send", transport=transport)
        try:
            await transport.enable_trace_event(["bwe"])
            LOG.info("Bridge send transport created: %s", transport.tuple.describe())

            consumer = await transport.consume(
                video_producer.id, bridge_capabilities(self.router.rtp_capabilities), paused=False
            )
            leg.consumer = consumer
            encoding = consumer.rtp_parameters.encodings[0]
            LOG.info(
                "Bridge send consumer created, kind: %s, type: %s, paused: %s, SSRC: %s CNAME: %s",
                consumer.kind,
                consumer.type,
                consumer.paused,
                encoding.ssrc,
                consumer.rtp_parameters.rtcp.cname,
            )

            leg.offer = self._offer_for(
                transport,
                "sendonly",
                ssrc=encoding.ssrc,
                cname=consumer.rtp_parameters.rtcp.cname,
            )
            leg.endpoint = await self.peer.create_rtp_endpoint(self.pipeline, self._peer_crypto(enable_srtp))
            leg.answer = await self._exchange(leg.endpoint, leg.offer)

            address = self.resolve_peer_address(leg.answer)
            LOG.info("Peer RTP listening on %s:%s", address, leg.answer.port)
            LOG.info("Peer RTCP listening on %s:%s", address, leg.answer.rtcp_port)
            await transport.connect(
                ip=address,
                port=leg.answer.port,
                rtcp_port=leg.answer.rtcp_port,
                srtp_parameters=self._shared_srtp() if enable_srtp else None,
            )
            LOG.info("Bridge send transport connected: %s", transport.tuple.describe())
        except BaseException:
            await self._abort_leg(leg)
            raise
        return leg

    async def start_recv_leg(self, *, enable_srtp: bool = False) -> BridgeLeg:
        """Peer -> router: offer recvonly, produce what the answer announces."""

        if self.pipeline is None:
            self.pipeline = await self.peer.create_pipeline()
        transport = await self.router.create_plain_transport(
            self._plain_options(comedia=True, enable_srtp=enable_srtp)
        )
        leg = BridgeLeg(name="recv", transport=transport)
        transport.subscribe(self._log_tuple_events)
        try:
            LOG.info("Bridge recv transport created: %s", transport.tuple.describe())
            leg.offer = self._offer_for(transport, "recvonly")
            leg.endpoint = await self.peer.create_rtp_endpoint(self.pipeline, self._peer_crypto(enable_srtp))
            await self.peer.set_max_video_send_bandwidth(
                leg.endpoint, self.peer_config.max_video_send_bandwidth
            )
            leg.answer = await self._exchange(leg.endpoint, leg.offer)

            parameters = rtp_parameters_from_answer(leg.answer, self.router.rtp_capabilities, kind="video")
            LOG.info("Bridge recv RtpParameters: %s", parameters.to_wire())
            leg.producer = await transport.produce("video", parameters, paused=False)
            LOG.info(
                "Bridge recv producer created, kind: %s, type: %s, paused: %s",
                leg.producer.kind,
                leg.producer.type,
                leg.producer.paused,
            )
            if enable_srtp:
                await transport.connect(srtp_parameters=self._shared_srtp())
        except BaseException:
            await self._abort_leg(leg)
            raise
        return leg

    @staticmethod
    def _log_tuple_events(message: EngineEventMessage) -> None:
        if message.kind == EngineEvent.TUPLE:
            LOG.info("Bridge recv transport connected: %s", message.payload.describe())
        elif message.kind == EngineEvent.RTCP_TUPLE:
            LOG.info("Bridge recv RTCP connected: %s", message.payload.describe())

    async def start_filter(self) -> None:
        if self.pipeline is None or self.send_leg is None or self.recv_leg is None:
            raise NegotiationError("both bridge legs must exist before the filter is linked")
        if self.send_leg.endpoint is None or self.recv_leg.endpoint is None:
            raise NegotiationError("bridge legs have no peer endpoints")
        self.filter = await self.peer.create_filter(self.pipeline, self.peer_config.filter_command)
        await self.peer.connect(self.send_leg.endpoint, self.filter)
        await self.peer.connect(self.filter, self.recv_leg.endpoint)
        LOG.info("Peer filter linked: %s", self.peer_config.filter_command)

    async def _release(self, object_id: Optional[str]) -> None:
        if object_id is None:
            return
        try:
            await self.peer.release(object_id)
        except (BridgeError, OSError) as exc:
            LOG.warning("Failed to release peer object %s: %s", object_id, exc)

    async def _abort_leg(self, leg: BridgeLeg) -> None:
        LOG.warning("Bridge %s leg failed; releasing its resources", leg.name)
        if leg.consumer is not None:
            await leg.consumer.close()
        if leg.producer is not None:
            await leg.producer.close()
        await leg.transport.close()
        await self._release(leg.endpoint)

    async def stats(self) -> List[Tuple[str, Any]]:
        dumps: List[Tuple[str, Any]] = []
        if self.send_leg is not None:
            dumps.append(("Bridge send transport stats", await self.send_leg.transport.get_stats()))
            if self.send_leg.consumer is not None:
                dumps.append(("Bridge send consumer stats", await self.send_leg.consumer.get_stats()))
        if self.recv_leg is not None:
            dumps.append(("Bridge recv transport stats", await self.recv_leg.transport.get_stats()))
            if self.recv_leg.producer is not None:
                dumps.append(("Bridge recv producer stats", await self.recv_leg.producer.get_stats()))
        return dumps

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for leg in (self.send_leg, self.recv_leg):
            if leg is None:
                continue
            if leg.consumer is not None:
                await leg.consumer.close()
            if leg.producer is not None:
                await leg.producer.close()
            await leg.transport.close()
        await self._release(self.filter)
        for leg in (self.send_leg, self.recv_leg):
            if leg is not None:
                await self._release(leg.endpoint)
        await self._release(self.pipeline)
        self.filter = None
        self.pipeline = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "filter": self.filter,
            "sendLeg": self.send_leg.to_dict() if self.send_leg else None,
            "recvLeg": self.recv_leg.to_dict() if self.recv_leg else None,
        }


__all__ = ["BridgeLeg", "PeerBridge"]
