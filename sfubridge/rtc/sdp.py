"""
Minimal SDP offer/answer support for plain RTP bridging.

Only the subset needed to talk to an RTP endpoint of a second media engine is
handled: one connection address, media lines with their port and formats, and
the ``rtpmap``/``fmtp``/``rtcp-fb``/``extmap``/``ssrc``/``crypto``/``rtcp``
attributes.  Offers are generated with CRLF line endings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..errors import NegotiationError
from ..media import ortc
from ..media.rtp import (
    RtcpFeedback,
    RtcpParameters,
    RtpCapabilities,
    RtpCodecCapability,
    RtpEncodingParameters,
    RtpHeaderExtension,
    RtpParameters,
    RtxParameters,
)

LOG = logging.getLogger(__name__)

CRLF = "\r\n"
DIRECTIONS = ("sendrecv", "sendonly", "recvonly", "inactive")

# Feedback advertised for the bridged video stream.
BRIDGE_RTCP_FEEDBACK: Tuple[Tuple[str, str], ...] = (
    ("goog-remb", ""),
    ("ccm", "fir"),
    ("nack", ""),
    ("nack", "pli"),
)


@dataclass
class RtpMap:
    payload_type: int
    encoding_name: str
    clock_rate: int
    channels: Optional[int] = None


@dataclass
class CryptoLine:
    tag: int
    suite: str
    key_params: str

    @property
    def key_base64(self) -> str:
        value = self.key_params
        if value.startswith("inline:"):
            value = value[len("inline:"):]
        return value.split("|", 1)[0]


@dataclass
class MediaDescription:
    kind: str
    port: int
    protocol: str
    formats: List[int] = field(default_factory=list)
    connection_ip: Optional[str] = None
    direction: str = "sendrecv"
    rtcp_port: Optional[int] = None
    rtcp_mux: bool = False
    rtcp_rsize: bool = False
    mid: Optional[str] = None
    rtpmap: Dict[int, RtpMap] = field(default_factory=dict)
    fmtp: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    rtcp_fb: Dict[str, List[Tuple[str, str]]] = field(default_factory=dict)
    extmap: List[Tuple[int, str]] = field(default_factory=list)
    ssrcs: List[Tuple[int, str, str]] = field(default_factory=list)
    ssrc_groups: List[Tuple[str, List[int]]] = field(default_factory=list)
    crypto: List[CryptoLine] = field(default_factory=list)

    @property
    def effective_rtcp_port(self) -> int:
        return self.rtcp_port if self.rtcp_port is not None else self.port + 1

    def feedback_for(self, payload_type: int) -> List[Tuple[str, str]]:
        return list(self.rtcp_fb.get("*", [])) + list(self.rtcp_fb.get(str(payload_type), []))


@dataclass
class SessionDescription:
    origin_ip: Optional[str] = None
    session_name: str = "-"
    connection_ip: Optional[str] = None
    media: List[MediaDescription] = field(default_factory=list)

    def find_media(self, kind: str) -> MediaDescription:
        for section in self.media:
            if section.kind == kind:
                return section
        raise NegotiationError(f"m={kind} section not found")

    def connection_for(self, section: MediaDescription) -> Optional[str]:
        return section.connection_ip or self.connection_ip


def _parse_value(value: str) -> Any:
    if value.isdigit():
        return int(value)
    return value


def _parse_fmtp(config: str) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    for chunk in config.split(";"):
        chunk = chunk.strip()
        if not chunk:
            continue
        key, _, value = chunk.partition("=")
        key = key.strip()
        # profile-level-id is hex even when it happens to be all digits.
        params[key] = value.strip() if key == "profile-level-id" else _parse_value(value.strip())
    return params


def _connection_address(value: str) -> Optional[str]:
    parts = value.split()
    if len(parts) >= 3:
        return parts[2].split("/", 1)[0]
    return None


def parse_sdp(text: str) -> SessionDescription:
    """Parse ``text`` into a :class:`SessionDescription`."""

    if not text or not text.strip():
        raise NegotiationError("empty SDP")

    session = SessionDescription()
    current: Optional[MediaDescription] = None
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if len(line) < 2 or line[1] != "=":
            continue
        kind, value = line[0], line[2:]
        try:
            if kind == "o":
                parts = value.split()
                session.origin_ip = parts[5] if len(parts) >= 6 else None
            elif kind == "s":
                session.session_name = value
            elif kind == "c":
                address = _connection_address(value)
                if current is None:
                    session.connection_ip = address
                else:
                    current.connection_ip = address
            elif kind == "m":
                parts = value.split()
                current = MediaDescription(
                    kind=parts[0],
                    port=int(parts[1].split("/", 1)[0]),
                    protocol=parts[2],
                    formats=[int(fmt) for fmt in parts[3:] if fmt.isdigit()],
                )
                session.media.append(current)
            elif kind == "a" and current is not None:
                _parse_media_attribute(current, value)
        except (IndexError, ValueError) as exc:
            raise NegotiationError(f"malformed SDP line {line!r}: {exc}") from exc
    return session


def _parse_media_attribute(media: MediaDescription, value: str) -> None:
    name, _, rest = value.partition(":")
    if name in DIRECTIONS and not rest:
        media.direction = name
    elif name == "rtcp":
        media.rtcp_port = int(rest.split()[0])
    elif name == "rtcp-mux":
        media.rtcp_mux = True
    elif name == "rtcp-rsize":
        media.rtcp_rsize = True
    elif name == "mid":
        media.mid = rest.strip()
    elif name == "rtpmap":
        pt_text, _, encoding = rest.partition(" ")
        pieces = encoding.strip().split("/")
        media.rtpmap[int(pt_text)] = RtpMap(
            payload_type=int(pt_text),
            encoding_name=pieces[0],
            clock_rate=int(pieces[1]),
            channels=int(pieces[2]) if len(pieces) > 2 else None,
        )
    elif name == "fmtp":
        pt_text, _, config = rest.partition(" ")
        media.fmtp[int(pt_text)] = _parse_fmtp(config)
    elif name == "rtcp-fb":
        pt_text, _, feedback = rest.partition(" ")
        fb_type, _, parameter = feedback.strip().partition(" ")
        media.rtcp_fb.setdefault(pt_text, []).append((fb_type, parameter.strip()))
    elif name == "extmap":
        id_text, _, uri = rest.partition(" ")
        media.extmap.append((int(id_text.split("/", 1)[0]), uri.strip().split()[0]))
    elif name == "ssrc":
        ssrc_text, _, attribute = rest.partition(" ")
        attr_name, _, attr_value = attribute.partition(":")
        media.ssrcs.append((int(ssrc_text), attr_name.strip(), attr_value.strip()))
    elif name == "ssrc-group":
        semantics, *members = rest.split()
        media.ssrc_groups.append((semantics, [int(member) for member in members]))
    elif name == "crypto":
        tag, suite, key_params = rest.split()[:3]
        media.crypto.append(CryptoLine(tag=int(tag), suite=suite, key_params=key_params))


@dataclass(frozen=True)
class BridgeOffer:
    """Offer describing the local plain transport of one bridge leg."""

    ip: str
    port: int
    rtcp_port: int
    payload_type: int
    abs_send_time_id: int
    direction: str
    kind: str = "video"
    codec_name: str = "VP8"
    clock_rate: int = 90000
    ssrc: Optional[int] = None
    cname: Optional[str] = None
    srtp_key_base64: Optional[str] = None
    srtp_crypto_suite: str = "AES_CM_128_HMAC_SHA1_80"

    @property
    def protocol(self) -> str:
        return "RTP/SAVPF" if self.srtp_key_base64 else "RTP/AVPF"

    def to_sdp(self) -> str:
        pt = self.payload_type
        lines = [
            "v=0",
            f"o=- 0 0 IN IP4 {self.ip}",
            "s=-",
            f"c=IN IP4 {self.ip}",
            "t=0 0",
            f"m={self.kind} {self.port} {self.protocol} {pt}",
            f"a=extmap:{self.abs_send_time_id} {ortc.ABS_SEND_TIME_URI}",
            f"a={self.direction}",
            f"a=rtcp:{self.rtcp_port}",
        ]
        if self.srtp_key_base64:
            lines.append(
                f"a=crypto:2 {self.srtp_crypto_suite} inline:{self.srtp_key_base64}|2^31|1:1"
            )
        lines.append(f"a=rtpmap:{pt} {self.codec_name}/{self.clock_rate}")
        for fb_type, parameter in BRIDGE_RTCP_FEEDBACK:
            lines.append(f"a=rtcp-fb:{pt} {fb_type} {parameter}".rstrip())
        if self.ssrc is not None and self.cname:
            lines.append(f"a=ssrc:{self.ssrc} cname:{self.cname}")
        return CRLF.join(lines) + CRLF


@dataclass(frozen=True)
class BridgeAnswer:
    """Parsed answer of the peer engine for one bridge leg."""

    sdp: str
    description: SessionDescription
    kind: str
    ip: Optional[str]
    port: int
    rtcp_port: int

    @classmethod
    def parse(cls, sdp: str, kind: str = "video") -> "BridgeAnswer":
        description = parse_sdp(sdp)
        media = description.find_media(kind)
        return cls(
            sdp=sdp,
            description=description,
            kind=kind,
            ip=description.connection_for(media),
            port=media.port,
            rtcp_port=media.effective_rtcp_port,
        )

    @property
    def media(self) -> MediaDescription:
        return self.description.find_media(self.kind)


def bridge_capabilities(router_caps: RtpCapabilities, codec_name: str = "VP8") -> RtpCapabilities:
    """
    Capabilities of the peer endpoint as announced in our offers.

    Built from the router's own payload type and abs-send-time id so that the
    consumer feeding the peer sends exactly what the offer describes.
    """

    codec = router_caps.find_codec(f"video/{codec_name}")
    if codec is None:
        raise NegotiationError(f"router has no video/{codec_name} codec")
    extension = router_caps.find_header_extension("video", "abs-send-time")
    caps = RtpCapabilities(
        codecs=[
            RtpCodecCapability(
                kind="video",
                mime_type=codec.mime_type,
                preferred_payload_type=codec.preferred_payload_type,
                clock_rate=codec.clock_rate,
                rtcp_feedback=[
                    RtcpFeedback(type=fb_type, parameter=parameter)
                    for fb_type, parameter in BRIDGE_RTCP_FEEDBACK
                ],
            )
        ],
        header_extensions=[
            RtpHeaderExtension(
                kind="video",
                uri=ortc.ABS_SEND_TIME_URI,
                preferred_id=extension.preferred_id if extension else 0,
            )
        ],
    )
    ortc.validate_rtp_capabilities(caps)
    return caps


def extract_rtp_capabilities(description: SessionDescription) -> RtpCapabilities:
    """Translate the media sections of an answer into engine capabilities."""

    codecs: List[RtpCodecCapability] = []
    extensions: List[RtpHeaderExtension] = []
    for media in description.media:
        if media.kind not in ("audio", "video") or media.port == 0:
            continue
        for payload_type in media.formats:
            rtpmap = media.rtpmap.get(payload_type)
            if rtpmap is None:
                continue
            channels = rtpmap.channels
            if media.kind == "audio" and channels is None:
                channels = 1
            codecs.append(
                RtpCodecCapability(
                    kind=media.kind,
                    mime_type=f"{media.kind}/{rtpmap.encoding_name}",
                    clock_rate=rtpmap.clock_rate,
                    channels=channels if media.kind == "audio" else None,
                    preferred_payload_type=payload_type,
                    parameters=dict(media.fmtp.get(payload_type, {})),
                    rtcp_feedback=[
                        RtcpFeedback(type=fb_type, parameter=parameter)
                        for fb_type, parameter in media.feedback_for(payload_type)
                    ],
                )
            )
        for ext_id, uri in media.extmap:
            extensions.append(RtpHeaderExtension(kind=media.kind, uri=uri, preferred_id=ext_id))

    if not codecs:
        raise NegotiationError("answer contains no usable codec")
    caps = RtpCapabilities(codecs=codecs, header_extensions=extensions)
    ortc.validate_rtp_capabilities(caps)
    return caps


def rtp_encodings(media: MediaDescription) -> List[RtpEncodingParameters]:
    """One encoding for the first announced SSRC, with RTX from an FID group."""

    ssrcs: List[int] = []
    for ssrc, _attr, _value in media.ssrcs:
        if ssrc not in ssrcs:
            ssrcs.append(ssrc)
    if not ssrcs:
        raise NegotiationError(f"no a=ssrc line in m={media.kind} section")

    primary = ssrcs[0]
    rtx_ssrc: Optional[int] = None
    for semantics, members in media.ssrc_groups:
        if semantics == "FID" and len(members) >= 2 and members[0] == primary:
            rtx_ssrc = members[1]
            break
    encoding = RtpEncodingParameters(ssrc=primary)
    if rtx_ssrc is not None:
        encoding.rtx = RtxParameters(ssrc=rtx_ssrc)
    return [encoding]


def rtcp_parameters(media: MediaDescription) -> RtcpParameters:
    cname = next((value for _ssrc, attr, value in media.ssrcs if attr == "cname" and value), None)
    return RtcpParameters(cname=cname, reduced_size=media.rtcp_rsize)


def rtp_parameters_from_answer(
    answer: BridgeAnswer, router_caps: RtpCapabilities, kind: str = "video"
) -> RtpParameters:
    """Parameters for a producer receiving the stream described by ``answer``."""

    remote_caps = extract_rtp_capabilities(answer.description)
    parameters = ortc.get_sending_rtp_parameters(kind, router_caps, remote_caps)
    media = answer.description.find_media(kind)
    parameters.mid = None
    parameters.encodings = rtp_encodings(media)
    parameters.rtcp = rtcp_parameters(media)
    return parameters


__all__ = [
    "BridgeAnswer",
    "BridgeOffer",
    "MediaDescription",
    "SessionDescription",
    "bridge_capabilities",
    "extract_rtp_capabilities",
    "parse_sdp",
    "rtcp_parameters",
    "rtp_encodings",
    "rtp_parameters_from_answer",
]
