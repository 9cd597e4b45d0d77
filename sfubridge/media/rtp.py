"""
RTP parameter and capability models.

Field names are snake_case in Python and camelCase on the wire, so payloads
produced here can be handed to a browser-side device unchanged.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

MediaKind = Literal["audio", "video"]
Direction = Literal["sendrecv", "sendonly", "recvonly", "inactive"]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class RtcpFeedback(WireModel):
    type: str
    parameter: str = ""


class RtpCodecCapability(WireModel):
    kind: MediaKind
    mime_type: str
    clock_rate: int
    channels: Optional[int] = None
    preferred_payload_type: Optional[int] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    rtcp_feedback: List[RtcpFeedback] = Field(default_factory=list)


class RtpHeaderExtension(WireModel):
    kind: Optional[MediaKind] = None
    uri: str
    preferred_id: int
    preferred_encrypt: bool = False
    direction: Direction = "sendrecv"


class RtpCapabilities(WireModel):
    codecs: List[RtpCodecCapability] = Field(default_factory=list)
    header_extensions: List[RtpHeaderExtension] = Field(default_factory=list)

    def find_codec(self, mime_type: str) -> Optional[RtpCodecCapability]:
        wanted = mime_type.lower()
        for codec in self.codecs:
            if codec.mime_type.lower() == wanted:
                return codec
        return None

    def find_header_extension(self, kind: str, name: str) -> Optional[RtpHeaderExtension]:
        for extension in self.header_extensions:
            if extension.kind == kind and name in extension.uri:
                return extension
        return None


class RtpCodecParameters(WireModel):
    mime_type: str
    payload_type: int
    clock_rate: int
    channels: Optional[int] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    rtcp_feedback: List[RtcpFeedback] = Field(default_factory=list)


class RtpHeaderExtensionParameters(WireModel):
    uri: str
    id: int
    encrypt: bool = False
    parameters: Dict[str, Any] = Field(default_factory=dict)


class RtxParameters(WireModel):
    ssrc: int


class RtpEncodingParameters(WireModel):
    ssrc: Optional[int] = None
    rid: Optional[str] = None
    codec_payload_type: Optional[int] = None
    rtx: Optional[RtxParameters] = None
    dtx: Optional[bool] = None
    scalability_mode: Optional[str] = None
    max_bitrate: Optional[int] = None


class RtcpParameters(WireModel):
    cname: Optional[str] = None
    reduced_size: bool = True
    mux: Optional[bool] = None


class RtpParameters(WireModel):
    mid: Optional[str] = None
    codecs: List[RtpCodecParameters] = Field(default_factory=list)
    header_extensions: List[RtpHeaderExtensionParameters] = Field(default_factory=list)
    encodings: List[RtpEncodingParameters] = Field(default_factory=list)
    rtcp: RtcpParameters = Field(default_factory=RtcpParameters)

    def media_codecs(self) -> List[RtpCodecParameters]:
        return [codec for codec in self.codecs if not is_rtx_mime(codec.mime_type)]


class IceParameters(WireModel):
    username_fragment: str
    password: str
    ice_lite: bool = True


class IceCandidate(WireModel):
    foundation: str
    priority: int
    ip: str
    protocol: Literal["udp", "tcp"]
    port: int
    type: str = "host"
    tcp_type: Optional[str] = None


class DtlsFingerprint(WireModel):
    algorithm: str
    value: str


class DtlsParameters(WireModel):
    role: Literal["auto", "client", "server"] = "auto"
    fingerprints: List[DtlsFingerprint] = Field(default_factory=list)


class SrtpParameters(WireModel):
    crypto_suite: str
    key_base64: str


class TransportTuple(WireModel):
    local_ip: str
    local_port: int
    remote_ip: Optional[str] = None
    remote_port: Optional[int] = None
    protocol: Literal["udp", "tcp"] = "udp"

    def describe(self) -> str:
        remote = f"{self.remote_ip}:{self.remote_port}" if self.remote_ip else "?"
        return f"{self.local_ip}:{self.local_port} <--> {remote} ({self.protocol})"


def is_rtx_mime(mime_type: str) -> bool:
    return mime_type.lower().endswith("/rtx")


__all__ = [
    "DtlsFingerprint",
    "DtlsParameters",
    "IceCandidate",
    "IceParameters",
    "MediaKind",
    "RtcpFeedback",
    "RtcpParameters",
    "RtpCapabilities",
    "RtpCodecCapability",
    "RtpCodecParameters",
    "RtpEncodingParameters",
    "RtpHeaderExtension",
    "RtpHeaderExtensionParameters",
    "RtpParameters",
    "RtxParameters",
    "SrtpParameters",
    "TransportTuple",
    "WireModel",
    "is_rtx_mime",
]
