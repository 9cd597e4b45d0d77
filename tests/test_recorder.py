from __future__ import annotations

import pytest

from helpers import opus_parameters, vp8_parameters
from sfubridge.config import RecordingConfig
from sfubridge.errors import ConfigurationError
from sfubridge.media.rtp import RtpCodecParameters, RtpParameters
from sfubridge.runtime.process import CountdownHandle
from sfubridge.runtime.recorder import (
    RecordingStream,
    ffmpeg_command,
    ffmpeg_version_ok,
    gstreamer_command,
    plan_recording,
    recording_sdp,
    start_recorder,
)


def streams():
    return [
        RecordingStream(kind="audio", port=5006, rtcp_port=5007, rtp_parameters=opus_parameters()),
        RecordingStream(kind="video", port=5004, rtcp_port=5005, rtp_parameters=vp8_parameters()),
    ]


def test_recording_sdp_describes_each_stream() -> None:
    lines = recording_sdp(streams(), "127.0.0.1").split("\r\n")

    assert "c=IN IP4 127.0.0.1" in lines
    assert "m=audio 5006 RTP/AVPF 111" in lines
    assert "a=rtpmap:111 opus/48000/2" in lines
    assert "m=video 5004 RTP/AVPF 96" in lines
    assert "a=rtcp:5005" in lines
    assert "a=rtpmap:96 VP8/90000" in lines


def test_recording_sdp_includes_fmtp() -> None:
    h264 = RtpParameters(
        codecs=[
            RtpCodecParameters(
                mime_type="video/H264",
                payload_type=125,
                clock_rate=90000,
                parameters={"packetization-mode": 1, "profile-level-id": "42e01f"},
            )
        ]
    )
    sdp = recording_sdp([RecordingStream(kind="video", port=5004, rtcp_port=5005, rtp_parameters=h264)], "10.0.0.1")

    assert "a=fmtp:125 packetization-mode=1;profile-level-id=42e01f" in sdp


def test_ffmpeg_command_for_vp8_and_h264(tmp_path) -> None:
    argv, output = ffmpeg_command("ffmpeg", tmp_path / "input-vp8.sdp", tmp_path, audio=True, video=True, h264=False)

    assert output.name == "output-ffmpeg-vp8.webm"
    assert argv[:3] == ["ffmpeg", "-nostdin", "-protocol_whitelist"]
    assert ["-map", "0:a:0", "-c:a", "copy"] == argv[argv.index("-map"):argv.index("-map") + 4]
    assert "webm" in argv and "mp4" not in argv
    assert argv[-2:] == ["-y", str(output)]

    argv, output = ffmpeg_command("ffmpeg", tmp_path / "input-h264.sdp", tmp_path, audio=True, video=True, h264=True)

    assert output.name == "output-ffmpeg-h264.mp4"
    assert "-strict" in argv and "experimental" in argv


def test_gstreamer_command_for_vp8_and_h264(tmp_path) -> None:
    argv, output = gstreamer_command(
        "gst-launch-1.0", tmp_path / "input-vp8.sdp", tmp_path, audio=True, video=True, h264=False
    )

    assert argv[:2] == ["gst-launch-1.0", "--eos-on-shutdown"]
    assert "webmmux" in argv
    assert "rtpvp8depay" in argv and "rtpopusdepay" in argv
    assert output.name == "output-gstreamer-vp8.webm"

    argv, output = gstreamer_command(
        "gst-launch-1.0", tmp_path / "input-h264.sdp", tmp_path, audio=False, video=True, h264=True
    )

    assert "mp4mux" in argv and "rtph264depay" in argv
    assert "rtpopusdepay" not in argv
    assert f"faststart-file={output}.tmp" in argv


def test_ffmpeg_version_check() -> None:
    assert ffmpeg_version_ok("ffmpeg version 6.1.1-3ubuntu5 Copyright (c) 2000-2023")
    assert ffmpeg_version_ok("ffmpeg version git-2020-08-31-4a11a6f Copyright")
    assert not ffmpeg_version_ok("ffmpeg version 3.4.8 Copyright")
    assert not ffmpeg_version_ok("command not found")


def test_plan_writes_input_sdp(tmp_path) -> None:
    config = RecordingConfig(output_dir=str(tmp_path / "rec"))

    plan = plan_recording("ffmpeg", config, streams(), h264=False)

    assert plan.input_path == (tmp_path / "rec").resolve() / "input-vp8.sdp"
    assert "m=video 5004 RTP/AVPF 96" in plan.input_path.read_text(encoding="utf-8")
    assert plan.ready_marker == "ffmpeg version"
    assert plan.marker_stream == "stderr"
    assert plan.to_dict()["output"].endswith("output-ffmpeg-vp8.webm")


def test_plan_for_gstreamer_sets_debug_env(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("GST_DEBUG", raising=False)
    config = RecordingConfig(output_dir=str(tmp_path), gst_debug="3")

    plan = plan_recording("gstreamer", config, streams(), h264=False)

    assert plan.env["GST_DEBUG"] == "3"
    assert plan.marker_stream == "stdout"
    assert plan.ready_marker == "Setting pipeline to PLAYING"


def test_plan_rejects_unknown_recorder(tmp_path) -> None:
    with pytest.raises(ConfigurationError, match="Invalid recorder"):
        plan_recording("vlc", RecordingConfig(output_dir=str(tmp_path)), streams(), h264=False)


async def test_external_recorder_needs_no_process(tmp_path) -> None:
    config = RecordingConfig(output_dir=str(tmp_path), external_countdown=0)
    plan = plan_recording("external", config, streams(), h264=False)

    async def on_exit(_info) -> None:
        return None

    handle = await start_recorder(plan, config, on_exit=on_exit)

    assert plan.argv == []
    assert isinstance(handle, CountdownHandle)
    await handle.wait_ready(1.0)
    await handle.stop()


async def test_missing_ffmpeg_is_a_configuration_error(tmp_path) -> None:
    config = RecordingConfig(output_dir=str(tmp_path), ffmpeg_path=str(tmp_path / "ffmpeg-missing"))
    plan = plan_recording("ffmpeg", config, streams(), h264=False)

    async def on_exit(_info) -> None:
        return None

    with pytest.raises(ConfigurationError, match="FFmpeg"):
        await start_recorder(plan, config, on_exit=on_exit)
