"""Configuration for the transcode/relay pipeline and stream defaults."""

from __future__ import annotations

import shutil
import sys
from dataclasses import dataclass
from pathlib import Path

from mashumaro.mixins.orjson import DataClassORJSONMixin

DEFAULT_AVATAR_URL = "https://i.imgur.com/ozINkq3.jpeg"


@dataclass
class PipelineConfig(DataClassORJSONMixin):
    """Constants handed to the external transcoder."""

    ffmpeg_path: str = "ffmpeg"
    """Executable used for all three stages."""

    # Source ingest
    user_agent: str = "Mozilla/5.0"
    reconnect_delay_max: int = 5
    """Upper bound in seconds for ffmpeg's own reconnect backoff."""
    io_timeout_us: int = 10_000_000
    deinterlace_filter: str = "yadif=1:-1:0"

    # Video transcode
    video_codec: str = "libx264"
    video_preset: str = "veryfast"
    video_tune: str = "zerolatency"
    video_profile: str = "baseline"
    video_level: str = "3.1"
    pixel_format: str = "yuv420p"
    video_bitrate: str = "2500k"
    video_maxrate: str = "3000k"
    video_bufsize: str = "6000k"
    gop_size: int = 50
    frame_rate: int = 25

    # Audio transcode
    audio_codec: str = "libopus"
    audio_sample_rate: int = 48_000
    audio_channels: int = 2
    audio_bitrate: str = "128k"

    # Rolling HLS buffer
    segment_seconds: int = 2
    segment_list_size: int = 15
    playlist_name: str = "stream.m3u8"
    segment_pattern: str = "segment_%03d.ts"

    # Readiness
    min_segments: int = 4
    ready_timeout_s: float = 30.0
    poll_interval_s: float = 0.5
    settle_delay_s: float = 2.0
    """Extra wait after the threshold is met so the newest segment is fully written."""

    # RTP output
    video_payload_type: int = 102
    audio_payload_type: int = 111
    video_ssrc: int = 11111111
    audio_ssrc: int = 22222222
    packet_size: int = 1200


@dataclass
class StreamDefaults(DataClassORJSONMixin):
    """Presentation defaults for streams started without metadata."""

    title: str = "IPTV"
    avatar_url: str = DEFAULT_AVATAR_URL


def resolve_ffmpeg(plugin_path: Path | None = None) -> str:
    """
    Return the ffmpeg executable to use.

    A binary bundled under ``<plugin_path>/bin`` wins over one found on PATH.
    """
    binary_name = "ffmpeg.exe" if sys.platform == "win32" else "ffmpeg"
    if plugin_path is not None:
        bundled = plugin_path / "bin" / binary_name
        if bundled.is_file():
            return str(bundled)
    return shutil.which(binary_name) or binary_name
