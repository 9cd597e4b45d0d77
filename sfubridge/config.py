"""
Configuration model and YAML loader.

Defaults mirror the demo deployment: everything listens on loopback, the peer
engine is expected on ``ws://127.0.0.1:8888/kurento`` and recorders receive RTP
on ports 5004 (video) / 5006 (audio).
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError

from .errors import ConfigurationError
from .media.rtp import RtpCodecCapability

LOG = logging.getLogger(__name__)

ENV_CONFIG_VAR = "SFUBRIDGE_CONFIG"
ENV_HOST_VAR = "SFUBRIDGE_HOST"
ENV_PORT_VAR = "SFUBRIDGE_PORT"


def _default_codecs() -> List[Dict[str, Any]]:
    return [
        {
            "kind": "audio",
            "mimeType": "audio/opus",
            "preferredPayloadType": 111,
            "clockRate": 48000,
            "channels": 2,
        },
        {
            "kind": "video",
            "mimeType": "video/VP8",
            "preferredPayloadType": 96,
            "clockRate": 90000,
            "parameters": {"x-google-start-bitrate": 1000},
        },
        {
            "kind": "video",
            "mimeType": "video/H264",
            "preferredPayloadType": 125,
            "clockRate": 90000,
            "parameters": {
                "level-asymmetry-allowed": 1,
                "packetization-mode": 1,
                "profile-level-id": "42e01f",
            },
        },
    ]


@dataclass
class HttpConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    ws_path: str = "/server"
    ws_ping_interval: float = 25.0
    ws_ping_timeout: float = 5.0
    certfile: Optional[str] = None
    keyfile: Optional[str] = None
    static_dir: Optional[str] = None


@dataclass
class MediaConfig:
    listen_ip: str = "127.0.0.1"
    announced_ip: Optional[str] = None
    rtc_min_port: int = 32256
    rtc_max_port: int = 65535
    log_level: str = "warn"
    log_tags: List[str] = field(
        default_factory=lambda: ["info", "ice", "dtls", "rtp", "srtp", "rtcp"]
    )
    codecs: List[Dict[str, Any]] = field(default_factory=_default_codecs)
    default_video_codec: str = "VP8"
    initial_available_outgoing_bitrate: int = 600_000
    bind_plain_sockets: bool = True


@dataclass
class PeerConfig:
    ip: str = "127.0.0.1"
    port: int = 8888
    ws_path: str = "/kurento"
    filter_command: str = "videobalance saturation=0.0"
    max_video_send_bandwidth: int = 2000
    use_announced_address: bool = False
    override_address: bool = False
    offer_answer_timeout: float = 10.0

    @property
    def url(self) -> str:
        return f"ws://{self.ip}:{self.port}{self.ws_path}"


@dataclass
class RecordingConfig:
    ip: str = "127.0.0.1"
    audio_port: int = 5006
    video_port: int = 5004
    output_dir: str = "recording"
    ffmpeg_path: str = "ffmpeg"
    gst_launch_path: str = "gst-launch-1.0"
    gst_debug: str = "2"
    settle_delay: float = 1.0
    ready_timeout: float = 15.0
    stop_timeout: float = 10.0
    external_countdown: int = 10


@dataclass
class SrtpConfig:
    crypto_suite: str = "AES_CM_128_HMAC_SHA1_80"
    # Shared demo key; every session uses the same key material.
    key_base64: str = "ZnQ3eWJraDg0d3ZoYzM5cXN1Y2pnaHU5NWxrZTVv"


@dataclass
class SessionConfig:
    transport_connect_timeout: float = 30.0
    engine_fatal_grace: float = 3.0


@dataclass
class BridgeConfig:
    """Top level configuration for the bridge server."""

    http: HttpConfig = field(default_factory=HttpConfig)
    media: MediaConfig = field(default_factory=MediaConfig)
    peer: PeerConfig = field(default_factory=PeerConfig)
    recording: RecordingConfig = field(default_factory=RecordingConfig)
    srtp: SrtpConfig = field(default_factory=SrtpConfig)
    session: SessionConfig = field(default_factory=SessionConfig)

    def codec_catalog(self) -> List[RtpCodecCapability]:
        try:
            return [RtpCodecCapability.model_validate(entry) for entry in self.media.codecs]
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid codec entry in media.codecs: {exc}") from exc

    def validate(self) -> None:
        catalog = self.codec_catalog()
        mime_types = {codec.mime_type.lower() for codec in catalog}
        if "audio/opus" not in mime_types:
            raise ConfigurationError("Undefined codec mime type: audio/opus -- check media.codecs")
        video_mime = f"video/{self.media.default_video_codec}".lower()
        if video_mime not in mime_types:
            raise ConfigurationError(
                f"Undefined codec mime type: video/{self.media.default_video_codec} -- check media.codecs"
            )
        if self.media.rtc_min_port > self.media.rtc_max_port:
            raise ConfigurationError("media.rtc_min_port must not exceed media.rtc_max_port")

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


def _apply_section(target: Any, section_name: str, payload: Any) -> None:
    if payload is None:
        return
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Config section '{section_name}' must be a mapping")
    known = {item.name for item in dataclasses.fields(target)}
    for key, value in payload.items():
        if key not in known:
            LOG.warning("Ignoring unknown config key %s.%s", section_name, key)
            continue
        setattr(target, key, value)


def config_from_dict(payload: Optional[Dict[str, Any]]) -> BridgeConfig:
    config = BridgeConfig()
    for key, value in (payload or {}).items():
        section = getattr(config, key, None)
        if section is None or not dataclasses.is_dataclass(section):
            LOG.warning("Ignoring unknown config section %s", key)
            continue
        _apply_section(section, key, value)
    config.validate()
    return config


def load_config(path: Optional[Union[str, Path]] = None) -> BridgeConfig:
    """
    Load configuration from ``path`` (or ``$SFUBRIDGE_CONFIG``).

    A missing file yields the defaults.  Environment overrides for the bind
    address are applied last.
    """

    candidate = path or os.environ.get(ENV_CONFIG_VAR)
    payload: Dict[str, Any] = {}
    if candidate:
        config_path = Path(candidate).expanduser()
        try:
            with config_path.open("r", encoding="utf-8") as handle:
                payload = yaml.safe_load(handle) or {}
        except FileNotFoundError:
            LOG.warning("Config file %s not found; using defaults", config_path)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")

    config = config_from_dict(payload)

    host = os.environ.get(ENV_HOST_VAR)
    if host:
        config.http.host = host
    port = os.environ.get(ENV_PORT_VAR)
    if port:
        try:
            config.http.port = int(port)
        except ValueError as exc:
            raise ConfigurationError(f"{ENV_PORT_VAR} must be an integer, got {port!r}") from exc
    return config


__all__ = [
    "BridgeConfig",
    "HttpConfig",
    "MediaConfig",
    "PeerConfig",
    "RecordingConfig",
    "SessionConfig",
    "SrtpConfig",
    "config_from_dict",
    "load_config",
]
