"""
Pydantic schemas mirroring the signaling contract.
"""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..media.rtp import DtlsParameters, RtpCapabilities, RtpParameters

# Legacy upper-case message names of the demo clients.
MESSAGE_ALIASES: Dict[str, str] = {
    "START_MEDIASOUP": "start-session",
    "WEBRTC_RECV_START": "start-client-transport",
    "WEBRTC_RECV_CONNECT": "connect-client-transport",
    "WEBRTC_RECV_PRODUCE": "start-producer",
    "START_KURENTO": "start-bridge",
    "WEBRTC_SEND_START": "start-peer-transport",
    "WEBRTC_SEND_CONNECT": "connect-peer-transport",
    "WEBRTC_SEND_CONSUME": "start-peer-consumer",
    "START_RECORDING": "start-recording",
    "STOP_RECORDING": "stop-recording",
    "DEBUG": "debug",
}

# Messages whose payload may be a bare value instead of an object.
SCALAR_ARGUMENTS: Dict[str, str] = {
    "start-session": "codec",
    "start-bridge": "enableSrtp",
    "start-recording": "recorder",
}

# Messages whose legacy payload is the bare object instead of a wrapper.
OBJECT_ARGUMENTS: Dict[str, Tuple[str, str]] = {
    "connect-client-transport": ("dtlsParameters", "fingerprints"),
    "connect-peer-transport": ("dtlsParameters", "fingerprints"),
    "start-peer-consumer": ("rtpCapabilities", "codecs"),
}


def canonical_type(raw: Any) -> str:
    value = str(raw or "").strip()
    return MESSAGE_ALIASES.get(value, MESSAGE_ALIASES.get(value.upper(), value.lower()))


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StartSessionRequest(_Request):
    codec: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("codec", "vCodecName", "videoCodec"),
    )

    @field_validator("codec")
    @classmethod
    def _strip_codec(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


class ConnectTransportRequest(_Request):
    dtls_parameters: DtlsParameters = Field(
        validation_alias=AliasChoices("dtlsParameters", "dtls_parameters"),
    )


class StartProducerRequest(_Request):
    kind: Literal["audio", "video"]
    rtp_parameters: RtpParameters = Field(
        validation_alias=AliasChoices("rtpParameters", "rtp_parameters"),
    )
    paused: bool = False


class StartBridgeRequest(_Request):
    enable_srtp: bool = Field(
        default=False,
        validation_alias=AliasChoices("enableSrtp", "enable_srtp", "srtp"),
    )


class StartPeerConsumerRequest(_Request):
    rtp_capabilities: RtpCapabilities = Field(
        validation_alias=AliasChoices("rtpCapabilities", "rtp_capabilities"),
    )


class RecordingRequest(_Request):
    recorder: str = "ffmpeg"

    @field_validator("recorder")
    @classmethod
    def _normalise_recorder(cls, value: str) -> str:
        return value.strip().lower()


__all__ = [
    "ConnectTransportRequest",
    "MESSAGE_ALIASES",
    "OBJECT_ARGUMENTS",
    "RecordingRequest",
    "SCALAR_ARGUMENTS",
    "StartBridgeRequest",
    "StartPeerConsumerRequest",
    "StartProducerRequest",
    "StartSessionRequest",
    "canonical_type",
]
