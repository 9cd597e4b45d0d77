"""Fakes and builders shared by the test modules."""

from __future__ import annotations

import asyncio
import itertools
from typing import Dict, List, Optional, Tuple

from sfubridge.media.rtp import (
    DtlsFingerprint,
    DtlsParameters,
    RtpCodecParameters,
    RtpEncodingParameters,
    RtpParameters,
)
from sfubridge.rtc.kurento import SdesCrypto

SEND_LEG_ANSWER = "\r\n".join(
    [
        "v=0",
        "o=- 3800000000 3800000000 IN IP4 127.0.0.1",
        "s=Kurento Media Server",
        "c=IN IP4 127.0.0.1",
        "t=0 0",
        "m=video 40000 RTP/AVPF 96",
        "a=extmap:4 http://www.webrtc.org/experiments/rtp-hdrext/abs-send-time",
        "a=recvonly",
        "a=rtcp:40001",
        "a=rtpmap:96 VP8/90000",
        "a=rtcp-fb:96 goog-remb",
        "a=rtcp-fb:96 nack",
        "",
    ]
)

RECV_LEG_ANSWER = "\r\n".join(
    [
        "v=0",
        "o=- 3800000000 3800000000 IN IP4 127.0.0.1",
        "s=Kurento Media Server",
        "c=IN IP4 127.0.0.1",
        "t=0 0",
        "m=video 40002 RTP/AVPF 96",
        "a=extmap:4 http://www.webrtc.org/experiments/rtp-hdrext/abs-send-time",
        "a=sendonly",
        "a=rtpmap:96 VP8/90000",
        "a=rtcp-fb:96 goog-remb",
        "a=rtcp-fb:96 ccm fir",
        "a=rtcp-fb:96 nack",
        "a=rtcp-fb:96 nack pli",
        "a=ssrc:424242 cname:user1234@host-5678",
        "",
    ]
)


class FakePeerEngine:
    """Peer engine answering every offer with a canned SDP."""

    def __init__(self, *, stall_recv_leg: bool = False) -> None:
        self.stall_recv_leg = stall_recv_leg
        self._ids = itertools.count(1)
        self.offers: List[Tuple[str, str]] = []
        self.endpoints: Dict[str, Optional[SdesCrypto]] = {}
        self.links: List[Tuple[str, str]] = []
        self.bandwidth: Dict[str, int] = {}
        self.released: List[str] = []
        self.closed = False

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    async def create_pipeline(self) -> str:
        return self._new_id("pipeline")

    async def create_rtp_endpoint(self, pipeline: str, crypto: Optional[SdesCrypto] = None) -> str:
        endpoint = self._new_id("rtp")
        self.endpoints[endpoint] = crypto
        return endpoint

    async def process_offer(self, endpoint: str, offer: str) -> str:
        self.offers.append((endpoint, offer))
        if "a=sendonly" in offer:
            return SEND_LEG_ANSWER
        if self.stall_recv_leg:
            await asyncio.sleep(3600)
        return RECV_LEG_ANSWER

    async def set_max_video_send_bandwidth(self, endpoint: str, kbps: int) -> None:
        self.bandwidth[endpoint] = kbps

    async def create_filter(self, pipeline: str, command: str) -> str:
        return self._new_id("filter")

    async def connect(self, source: str, sink: str) -> None:
        self.links.append((source, sink))

    async def release(self, object_id: str) -> None:
        self.released.append(object_id)

    async def close(self) -> None:
        self.closed = True


def client_dtls(value: str = "AA:BB:CC:DD") -> DtlsParameters:
    return DtlsParameters(
        role="client", fingerprints=[DtlsFingerprint(algorithm="sha-256", value=value)]
    )


def vp8_parameters(ssrc: int = 11111111) -> RtpParameters:
    return RtpParameters(
        mid="0",
        codecs=[RtpCodecParameters(mime_type="video/VP8", payload_type=96, clock_rate=90000)],
        encodings=[RtpEncodingParameters(ssrc=ssrc)],
    )


def opus_parameters(ssrc: int = 22222222) -> RtpParameters:
    return RtpParameters(
        mid="1",
        codecs=[
            RtpCodecParameters(mime_type="audio/opus", payload_type=111, clock_rate=48000, channels=2)
        ],
        encodings=[RtpEncodingParameters(ssrc=ssrc)],
    )


