"""
Recorder command lines.

Recorders receive the consumed RTP streams on fixed local ports and store them
without transcoding.  The stream layout is handed over as an SDP file written
next to the output, generated from the negotiated consumer parameters.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from ..config import RecordingConfig
from ..errors import ConfigurationError, ProcessError
from ..media.rtp import RtpParameters
from .process import CountdownHandle, ExitCallback, ExternalProcessHandle

LOG = logging.getLogger(__name__)

RECORDERS = ("ffmpeg", "gstreamer", "external")

FFMPEG_READY_MARKER = "ffmpeg version"
GSTREAMER_READY_MARKER = "Setting pipeline to PLAYING"

_FFMPEG_VERSION = re.compile(r"ffmpeg version (\d+)\.(\d+)(?:\.(\d+))?")

RecorderHandle = Union[ExternalProcessHandle, CountdownHandle]


@dataclass
class RecordingStream:
    """One consumed stream as the recorder will receive it."""

    kind: str
    port: int
    rtcp_port: int
    rtp_parameters: RtpParameters


@dataclass
class RecorderPlan:
    recorder: str
    argv: List[str] = field(default_factory=list)
    env: Optional[Dict[str, str]] = None
    ready_marker: Optional[str] = None
    marker_stream: str = "stderr"
    input_path: Optional[Path] = None
    output_path: Optional[Path] = None

    def to_dict(self) -> dict:
        return {
            "recorder": self.recorder,
            "argv": list(self.argv),
            "input": str(self.input_path) if self.input_path else None,
            "output": str(self.output_path) if self.output_path else None,
        }


def recording_sdp(streams: Sequence[RecordingStream], ip: str) -> str:
    """Describe ``streams`` as a receive-only SDP session on ``ip``."""

    lines = ["v=0", f"o=- 0 0 IN IP4 {ip}", "s=-", f"c=IN IP4 {ip}", "t=0 0"]
    for stream in streams:
        media_codecs = stream.rtp_parameters.media_codecs()
        if not media_codecs:
            raise ProcessError(f"{stream.kind} stream has no codec to record")
        codec = media_codecs[0]
        name = codec.mime_type.split("/", 1)[1]
        encoding = f"{name}/{codec.clock_rate}"
        if stream.kind == "audio" and codec.channels and codec.channels > 1:
            encoding += f"/{codec.channels}"
        lines.append(f"m={stream.kind} {stream.port} RTP/AVPF {codec.payload_type}")
        lines.append(f"a=rtcp:{stream.rtcp_port}")
        lines.append("a=recvonly")
        lines.append(f"a=rtpmap:{codec.payload_type} {encoding}")
        if codec.parameters:
            params = ";".join(f"{key}={value}" for key, value in codec.parameters.items())
            lines.append(f"a=fmtp:{codec.payload_type} {params}")
    return "\r\n".join(lines) + "\r\n"


def ffmpeg_command(
    program: str,
    input_path: Union[str, Path],
    output_dir: Union[str, Path],
    *,
    audio: bool,
    video: bool,
    h264: bool,
) -> Tuple[List[str], Path]:
    use_h264 = video and h264
    suffix = "h264.mp4" if use_h264 else "vp8.webm"
    output_path = Path(output_dir) / f"output-ffmpeg-{suffix}"
    argv = [
        program,
        "-nostdin",
        "-protocol_whitelist",
        "file,rtp,udp",
        "-fflags",
        "+genpts",
        "-i",
        str(input_path),
    ]
    if audio:
        argv += ["-map", "0:a:0", "-c:a", "copy"]
    if video:
        argv += ["-map", "0:v:0", "-c:v", "copy"]
    if use_h264:
        # Opus in MP4 needs "-strict experimental".
        argv += ["-f", "mp4", "-strict", "experimental"]
    else:
        argv += ["-f", "webm", "-flags", "+global_header"]
    argv += ["-y", str(output_path)]
    return argv, output_path


def gstreamer_command(
    program: str,
    input_path: Union[str, Path],
    output_dir: Union[str, Path],
    *,
    audio: bool,
    video: bool,
    h264: bool,
) -> Tuple[List[str], Path]:
    use_h264 = video and h264
    suffix = "h264.mp4" if use_h264 else "vp8.webm"
    output_path = Path(output_dir) / f"output-gstreamer-{suffix}"
    mux = ["webmmux"]
    if use_h264:
        mux = ["mp4mux", "faststart=true", f"faststart-file={output_path}.tmp"]
    argv = [
        program,
        "--eos-on-shutdown",
        "filesrc",
        f"location={input_path}",
        "!",
        "sdpdemux",
        "timeout=0",
        "name=demux",
        *mux,
        "name=mux",
        "!",
        "filesink",
        f"location={output_path}",
    ]
    if audio:
        argv += ["demux.", "!", "queue", "!", "rtpopusdepay", "!", "opusparse", "!", "mux."]
    if video:
        depay = ["rtph264depay", "!", "h264parse"] if use_h264 else ["rtpvp8depay"]
        argv += ["demux.", "!", "queue", "!", *depay, "!", "mux."]
    return argv, output_path


def ffmpeg_version_ok(output: str) -> bool:
    """Accept FFmpeg 4 or newer, or any git build."""

    if output.startswith("ffmpeg version git"):
        return True
    match = _FFMPEG_VERSION.search(output)
    return bool(match) and int(match.group(1)) >= 4


async def check_ffmpeg(program: str) -> None:
    try:
        process = await asyncio.create_subprocess_exec(
            program,
            "-version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        stdout, _ = await process.communicate()
    except OSError as exc:
        raise ConfigurationError(f"FFmpeg >= 4.0.0 not found ({program}): {exc}") from exc
    if not ffmpeg_version_ok(stdout.decode("utf-8", errors="replace")):
        raise ConfigurationError(f"FFmpeg >= 4.0.0 not found ({program}); please install it")


def plan_recording(
    recorder: str,
    config: RecordingConfig,
    streams: Sequence[RecordingStream],
    *,
    h264: bool,
) -> RecorderPlan:
    """Write the input SDP and build the command line for ``recorder``."""

    if recorder not in RECORDERS:
        raise ConfigurationError(f"Invalid recorder: {recorder!r} (expected one of {', '.join(RECORDERS)})")
    if recorder == "external":
        return RecorderPlan(recorder=recorder)

    kinds = {stream.kind for stream in streams}
    audio, video = "audio" in kinds, "video" in kinds
    output_dir = Path(config.output_dir).expanduser().resolve()
    output_dir.mkdir(parents=True, exist_ok=True)
    input_path = output_dir / f"input-{'h264' if video and h264 else 'vp8'}.sdp"
    input_path.write_text(recording_sdp(streams, config.ip), encoding="utf-8")
    LOG.info("Recorder input written to %s", input_path)

    if recorder == "ffmpeg":
        argv, output_path = ffmpeg_command(
            config.ffmpeg_path, input_path, output_dir, audio=audio, video=video, h264=h264
        )
        return RecorderPlan(
            recorder=recorder,
            argv=argv,
            ready_marker=FFMPEG_READY_MARKER,
            marker_stream="stderr",
            input_path=input_path,
            output_path=output_path,
        )

    argv, output_path = gstreamer_command(
        config.gst_launch_path, input_path, output_dir, audio=audio, video=video, h264=h264
    )
    env = {"GST_DEBUG": config.gst_debug, **os.environ}
    LOG.info("GST_DEBUG=%s", env["GST_DEBUG"])
    return RecorderPlan(
        recorder=recorder,
        argv=argv,
        env=env,
        ready_marker=GSTREAMER_READY_MARKER,
        marker_stream="stdout",
        input_path=input_path,
        output_path=output_path,
    )


async def start_recorder(
    plan: RecorderPlan, config: RecordingConfig, *, on_exit: ExitCallback
) -> RecorderHandle:
    """Launch the recorder described by ``plan``; readiness is awaited by the caller."""

    if plan.recorder == "external":
        handle = CountdownHandle(config.external_countdown, on_exit=on_exit)
        handle.start()
        return handle
    if plan.recorder == "ffmpeg":
        await check_ffmpeg(plan.argv[0])
    return await ExternalProcessHandle.spawn(
        plan.argv,
        name=f"{plan.recorder} recorder",
        env=plan.env,
        ready_marker=plan.ready_marker,
        marker_stream=plan.marker_stream,
        settle_delay=config.settle_delay,
        stop_timeout=config.stop_timeout,
        on_exit=on_exit,
    )


__all__ = [
    "FFMPEG_READY_MARKER",
    "GSTREAMER_READY_MARKER",
    "RECORDERS",
    "RecorderHandle",
    "RecorderPlan",
    "RecordingStream",
    "check_ffmpeg",
    "ffmpeg_command",
    "ffmpeg_version_ok",
    "gstreamer_command",
    "plan_recording",
    "recording_sdp",
    "start_recorder",
]
