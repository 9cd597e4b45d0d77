"""
Capability negotiation helpers.

These functions implement the parts of the ORTC model the orchestration layer
relies on: building the router capability descriptor from a codec selection,
validating capability descriptors, and deriving consumer RTP parameters from a
producer and the capabilities of the receiving endpoint.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence

from ..errors import ConfigurationError, NegotiationError
from .rtp import (
    RtcpFeedback,
    RtcpParameters,
    RtpCapabilities,
    RtpCodecCapability,
    RtpCodecParameters,
    RtpEncodingParameters,
    RtpHeaderExtension,
    RtpHeaderExtensionParameters,
    RtpParameters,
    RtxParameters,
    is_rtx_mime,
)

LOG = logging.getLogger(__name__)

DYNAMIC_PAYLOAD_TYPES = tuple(range(96, 128))

ABS_SEND_TIME_URI = "http://www.webrtc.org/experiments/rtp-hdrext/abs-send-time"
MID_URI = "urn:ietf:params:rtp-hdrext:sdes:mid"
TRANSPORT_CC_URI = "http://www.ietf.org/id/draft-holmer-rmcat-transport-wide-cc-extensions-01"
AUDIO_LEVEL_URI = "urn:ietf:params:rtp-hdrext:ssrc-audio-level"
VIDEO_ORIENTATION_URI = "urn:3gpp:video-orientation"

# (kind, uri, preferred id)
SUPPORTED_HEADER_EXTENSIONS = (
    ("audio", MID_URI, 1),
    ("video", MID_URI, 1),
    ("audio", ABS_SEND_TIME_URI, 4),
    ("video", ABS_SEND_TIME_URI, 4),
    ("audio", TRANSPORT_CC_URI, 5),
    ("video", TRANSPORT_CC_URI, 5),
    ("audio", AUDIO_LEVEL_URI, 10),
    ("video", VIDEO_ORIENTATION_URI, 11),
)

VIDEO_FEEDBACK = (
    ("nack", ""),
    ("nack", "pli"),
    ("ccm", "fir"),
    ("goog-remb", ""),
    ("transport-cc", ""),
)
AUDIO_FEEDBACK = (("transport-cc", ""),)


def select_media_codecs(
    catalog: Sequence[RtpCodecCapability], video_codec: Optional[str] = None
) -> List[RtpCodecCapability]:
    """
    Pick exactly one audio codec (opus) and one video codec from ``catalog``.

    A codec missing from the catalog is a configuration problem, never a
    transient condition.
    """

    video_name = (video_codec or "VP8").strip()
    selected: List[RtpCodecCapability] = []
    for mime_type in ("audio/opus", f"video/{video_name}"):
        match = next(
            (codec for codec in catalog if codec.mime_type.lower() == mime_type.lower()),
            None,
        )
        if match is None:
            raise ConfigurationError(f"Undefined codec mime type: {mime_type} -- check media.codecs")
        selected.append(match.model_copy(deep=True))
    return selected


def generate_router_rtp_capabilities(media_codecs: Sequence[RtpCodecCapability]) -> RtpCapabilities:
    """
    Compute the authoritative capability descriptor for a router.

    The result adds what the request does not carry: payload types for codecs
    without one, RTX companions for video codecs, RTCP feedback and the header
    extensions supported by the engine.
    """

    if not media_codecs:
        raise ConfigurationError("at least one media codec is required")

    used: set[int] = set()
    for codec in media_codecs:
        if codec.preferred_payload_type is not None:
            if codec.preferred_payload_type in used:
                raise ConfigurationError(
                    f"duplicated preferredPayloadType {codec.preferred_payload_type}"
                )
            used.add(codec.preferred_payload_type)

    def next_payload_type() -> int:
        for candidate in DYNAMIC_PAYLOAD_TYPES:
            if candidate not in used:
                used.add(candidate)
                return candidate
        raise ConfigurationError("no free dynamic payload type left")

    codecs: List[RtpCodecCapability] = []
    for requested in media_codecs:
        kind = requested.kind
        if not requested.mime_type.lower().startswith(f"{kind}/"):
            raise ConfigurationError(f"mimeType {requested.mime_type} does not match kind {kind}")
        payload_type = requested.preferred_payload_type
        if payload_type is None:
            payload_type = next_payload_type()
        feedback = VIDEO_FEEDBACK if kind == "video" else AUDIO_FEEDBACK
        channels = requested.channels
        if kind == "audio" and channels is None:
            channels = 1
        codec = RtpCodecCapability(
            kind=kind,
            mime_type=requested.mime_type,
            clock_rate=requested.clock_rate,
            channels=channels if kind == "audio" else None,
            preferred_payload_type=payload_type,
            parameters=dict(requested.parameters),
            rtcp_feedback=[RtcpFeedback(type=fb_type, parameter=param) for fb_type, param in feedback],
        )
        codecs.append(codec)
        if kind == "video":
            codecs.append(
                RtpCodecCapability(
                    kind="video",
                    mime_type="video/rtx",
                    clock_rate=requested.clock_rate,
                    preferred_payload_type=next_payload_type(),
                    parameters={"apt": payload_type},
                )
            )

    kinds = {codec.kind for codec in codecs}
    header_extensions = [
        RtpHeaderExtension(kind=kind, uri=uri, preferred_id=preferred_id)
        for kind, uri, preferred_id in SUPPORTED_HEADER_EXTENSIONS
        if kind in kinds
    ]
    return RtpCapabilities(codecs=codecs, header_extensions=header_extensions)


def validate_rtp_capabilities(caps: RtpCapabilities) -> None:
    """Raise :class:`NegotiationError` when ``caps`` is not usable for consumption."""

    if not caps.codecs:
        raise NegotiationError("RtpCapabilities contain no codecs")

    payload_types: Dict[int, RtpCodecCapability] = {}
    for codec in caps.codecs:
        prefix, _, name = codec.mime_type.partition("/")
        if not name:
            raise NegotiationError(f"invalid mimeType {codec.mime_type!r}")
        if prefix.lower() != codec.kind:
            raise NegotiationError(f"mimeType {codec.mime_type} does not match kind {codec.kind}")
        if codec.clock_rate <= 0:
            raise NegotiationError(f"invalid clockRate for {codec.mime_type}")
        if codec.preferred_payload_type is None:
            raise NegotiationError(f"missing preferredPayloadType for {codec.mime_type}")
        if not 0 <= codec.preferred_payload_type <= 127:
            raise NegotiationError(f"invalid preferredPayloadType {codec.preferred_payload_type}")
        if codec.preferred_payload_type in payload_types:
            raise NegotiationError(f"duplicated preferredPayloadType {codec.preferred_payload_type}")
        payload_types[codec.preferred_payload_type] = codec

    for codec in caps.codecs:
        if not is_rtx_mime(codec.mime_type):
            continue
        apt = codec.parameters.get("apt")
        try:
            associated = payload_types.get(int(apt))
        except (TypeError, ValueError):
            associated = None
        if associated is None:
            raise NegotiationError(f"RTX codec {codec.preferred_payload_type} has no valid apt")

    if not any(not is_rtx_mime(codec.mime_type) for codec in caps.codecs):
        raise NegotiationError("RtpCapabilities contain only RTX codecs")

    seen_ids: set[tuple] = set()
    for extension in caps.header_extensions:
        if extension.preferred_id <= 0:
            raise NegotiationError(f"invalid header extension id {extension.preferred_id}")
        key = (extension.kind, extension.preferred_id)
        if key in seen_ids:
            raise NegotiationError(f"duplicated header extension id {extension.preferred_id}")
        seen_ids.add(key)


def _int_param(parameters: Dict[str, object], key: str, default: int = 0) -> int:
    value = parameters.get(key, default)
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def codecs_match(a, b) -> bool:
    """
    Compare a codec from RTP parameters with a capability codec.

    Works for both :class:`RtpCodecParameters` and :class:`RtpCodecCapability`.
    """

    if a.mime_type.lower() != b.mime_type.lower():
        return False
    if a.clock_rate != b.clock_rate:
        return False
    if a.mime_type.lower().startswith("audio/"):
        if (a.channels or 1) != (b.channels or 1):
            return False
    if a.mime_type.lower() == "video/h264":
        if _int_param(a.parameters, "packetization-mode") != _int_param(b.parameters, "packetization-mode"):
            return False
        a_profile = a.parameters.get("profile-level-id")
        b_profile = b.parameters.get("profile-level-id")
        if a_profile and b_profile and str(a_profile)[:4].lower() != str(b_profile)[:4].lower():
            return False
    return True


def _match_capability(
    codec: RtpCodecParameters, caps: RtpCapabilities
) -> Optional[RtpCodecCapability]:
    for candidate in caps.codecs:
        if is_rtx_mime(candidate.mime_type):
            continue
        if codecs_match(codec, candidate):
            return candidate
    return None


def _rtx_for(payload_type: int, codecs: Iterable) -> Optional[object]:
    for codec in codecs:
        if not is_rtx_mime(codec.mime_type):
            continue
        if _int_param(codec.parameters, "apt", -1) == payload_type:
            return codec
    return None


def can_consume(producer_parameters: RtpParameters, caps: RtpCapabilities) -> bool:
    return any(_match_capability(codec, caps) for codec in producer_parameters.media_codecs())


def get_consumer_rtp_parameters(
    producer_parameters: RtpParameters,
    caps: RtpCapabilities,
    *,
    ssrc: int,
    rtx_ssrc: Optional[int],
    cname: Optional[str],
) -> RtpParameters:
    """
    Derive the parameters a consumer sends with, given the receiver's ``caps``.

    The first producer codec the receiver supports wins.  Payload types and
    header extension ids are the receiver's, the SSRCs are freshly allocated.
    """

    chosen: Optional[RtpCodecCapability] = None
    for codec in producer_parameters.media_codecs():
        chosen = _match_capability(codec, caps)
        if chosen is not None:
            break
    if chosen is None or chosen.preferred_payload_type is None:
        raise NegotiationError("no common codec between producer and receiver capabilities")

    feedback = [RtcpFeedback(type=fb.type, parameter=fb.parameter) for fb in chosen.rtcp_feedback]
    codecs = [
        RtpCodecParameters(
            mime_type=chosen.mime_type,
            payload_type=chosen.preferred_payload_type,
            clock_rate=chosen.clock_rate,
            channels=chosen.channels,
            parameters=dict(chosen.parameters),
            rtcp_feedback=feedback,
        )
    ]

    encoding = RtpEncodingParameters(ssrc=ssrc)
    rtx_capability = _rtx_for(chosen.preferred_payload_type, caps.codecs)
    producer_has_rtx = any(is_rtx_mime(codec.mime_type) for codec in producer_parameters.codecs)
    if rtx_capability is not None and rtx_ssrc is not None and (
        producer_has_rtx or chosen.kind == "video"
    ):
        codecs.append(
            RtpCodecParameters(
                mime_type=rtx_capability.mime_type,
                payload_type=rtx_capability.preferred_payload_type,
                clock_rate=rtx_capability.clock_rate,
                parameters={"apt": chosen.preferred_payload_type},
            )
        )
        encoding.rtx = RtxParameters(ssrc=rtx_ssrc)

    header_extensions = [
        RtpHeaderExtensionParameters(uri=extension.uri, id=extension.preferred_id)
        for extension in caps.header_extensions
        if extension.kind in (None, chosen.kind) and extension.uri != MID_URI
    ]

    return RtpParameters(
        codecs=codecs,
        header_extensions=header_extensions,
        encodings=[encoding],
        rtcp=RtcpParameters(cname=cname, reduced_size=True),
    )


def get_sending_rtp_parameters(
    kind: str, local_caps: RtpCapabilities, remote_caps: RtpCapabilities
) -> RtpParameters:
    """
    Build the parameters for media a remote endpoint sends into the router.

    Only codecs both sides support are kept; payload types and header
    extension ids are the remote endpoint's since it is the one stamping the
    packets.  ``encodings`` and ``rtcp`` are left for the caller to fill.
    """

    codecs: List[RtpCodecParameters] = []
    for remote in remote_caps.codecs:
        if remote.kind != kind or is_rtx_mime(remote.mime_type):
            continue
        if _match_capability(_as_parameters(remote), local_caps) is None:
            continue
        codecs.append(_as_parameters(remote))
        rtx = _rtx_for(remote.preferred_payload_type or -1, remote_caps.codecs)
        if rtx is not None:
            codecs.append(_as_parameters(rtx))
        break

    if not codecs:
        raise NegotiationError(f"no common {kind} codec between router and remote endpoint")

    local_uris = {ext.uri for ext in local_caps.header_extensions if ext.kind in (None, kind)}
    header_extensions = [
        RtpHeaderExtensionParameters(uri=ext.uri, id=ext.preferred_id)
        for ext in remote_caps.header_extensions
        if ext.kind in (None, kind) and ext.uri in local_uris
    ]
    return RtpParameters(codecs=codecs, header_extensions=header_extensions)


def _as_parameters(codec: RtpCodecCapability) -> RtpCodecParameters:
    return RtpCodecParameters(
        mime_type=codec.mime_type,
        payload_type=codec.preferred_payload_type if codec.preferred_payload_type is not None else 0,
        clock_rate=codec.clock_rate,
        channels=codec.channels,
        parameters=dict(codec.parameters),
        rtcp_feedback=list(codec.rtcp_feedback),
    )


def h264_enabled(caps: RtpCapabilities) -> bool:
    return caps.find_codec("video/H264") is not None


__all__ = [
    "ABS_SEND_TIME_URI",
    "can_consume",
    "codecs_match",
    "generate_router_rtp_capabilities",
    "get_consumer_rtp_parameters",
    "get_sending_rtp_parameters",
    "h264_enabled",
    "select_media_codecs",
    "validate_rtp_capabilities",
]
