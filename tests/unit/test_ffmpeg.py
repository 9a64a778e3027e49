import pytest
from pathlib import Path
from downtranscoder.config.models import AppConfig
from downtranscoder.domain.models import TranscodePreset
from downtranscoder.infrastructure.ffmpeg import (
    FFmpegTranscoder,
    build_scale_filter,
    codec_name,
    image_q_value,
)

@pytest.mark.parametrize("codec, expected", [
    ("H264", "libx264"),
    ("H265", "libx265"),
    ("VP9", "libvpx-vp9"),
    ("av1", "libaom-av1"),
    ("MPEG2", "libx265"),
])
def test_codec_name_mapping(codec, expected):
    assert codec_name(codec) == expected

@pytest.mark.parametrize("quality, expected", [
    (100, 1),
    (85, 5),
    (50, 16),
    (1, 30),
])
def test_image_q_value(quality, expected):
    assert image_q_value(quality) == expected

def test_scale_filter_variants():
    assert build_scale_filter(3840, 2160) == (
        "scale='min(3840,iw)':'min(2160,ih)':force_original_aspect_ratio=decrease"
    )
    assert build_scale_filter(1280, 0) == "scale='min(1280,iw)':-2"
    assert build_scale_filter(0, 720) == "scale=-2:'min(720,ih)'"
    assert build_scale_filter(0, 720, free_side=-1) == "scale=-1:'min(720,ih)'"
    assert build_scale_filter(0, 0) is None

def test_video_command_with_preset():
    transcoder = FFmpegTranscoder(AppConfig())
    cmd = transcoder.build_video_command(Path("in.mkv"), Path("out.mkv"), TranscodePreset.H264_CRF23)

    assert cmd[cmd.index("-c:v") + 1] == "libx264"
    assert cmd[cmd.index("-crf") + 1] == "23"

def test_video_command_falls_back_to_config_defaults():
    config = AppConfig(video={"codec": "VP9", "crf": 31, "max_threads": 2, "max_width": 1920, "max_height": 0})
    transcoder = FFmpegTranscoder(config)
    cmd = transcoder.build_video_command(Path("in.mkv"), Path("out.mkv"))

    assert cmd[:3] == ["ffmpeg", "-y", "-nostdin"]
    assert cmd[cmd.index("-progress") + 1] == "pipe:1"
    assert cmd[cmd.index("-i") + 1] == "in.mkv"
    assert cmd[cmd.index("-threads") + 1] == "2"
    assert cmd[cmd.index("-c:v") + 1] == "libvpx-vp9"
    assert cmd[cmd.index("-crf") + 1] == "31"
    assert cmd[cmd.index("-vf") + 1] == "scale='min(1920,iw)':-2"
    assert cmd[-5:] == ["-c:a", "copy", "-movflags", "+faststart", "out.mkv"]

def test_video_command_without_progress_or_threads():
    transcoder = FFmpegTranscoder(AppConfig(video={"max_width": 0, "max_height": 0}))
    cmd = transcoder.build_video_command(Path("in.mp4"), Path("out.mp4"), with_progress=False)

    assert "-progress" not in cmd
    assert "-threads" not in cmd
    assert "-vf" not in cmd
    assert cmd[cmd.index("-c:v") + 1] == "libx265"

@pytest.mark.parametrize("preset, codec, crf", [
    (TranscodePreset.H265_CRF23, "libx265", 23),
    (TranscodePreset.H265_CRF26, "libx265", 26),
    (TranscodePreset.H265_CRF28, "libx265", 28),
    (None, "libx264", 19),
])
def test_resolve_video_settings(preset, codec, crf):
    transcoder = FFmpegTranscoder(AppConfig(video={"codec": "H264", "crf": 19}))
    assert transcoder.resolve_video_settings(preset) == (codec, crf)

def test_image_command():
    transcoder = FFmpegTranscoder(AppConfig(image={"quality": 85, "max_width": 1920, "max_height": 1080}))
    cmd = transcoder.build_image_command(Path("in.png"), Path("out.png"))

    assert cmd == [
        "ffmpeg", "-y", "-nostdin", "-i", "in.png",
        "-vf", "scale='min(1920,iw)':'min(1080,ih)':force_original_aspect_ratio=decrease",
        "-q:v", "5", "out.png",
    ]

def test_custom_binary():
    transcoder = FFmpegTranscoder(AppConfig(general={"ffmpeg_bin": "/opt/ffmpeg/bin/ffmpeg"}))
    assert transcoder.build_image_command(Path("a.jpg"), Path("b.jpg"))[0] == "/opt/ffmpeg/bin/ffmpeg"
