"""Data models for aioiptv."""

__all__ = [
    "ListenInfo",
    "MediaKind",
    "PipelineStage",
    "PlainTransportOptions",
    "PlaylistEntry",
    "ProducerOptions",
    "RtpCodecParameters",
    "RtpEncoding",
    "SessionPhase",
    "SessionStatus",
    "StreamOptions",
    "audio_producer_options",
    "video_producer_options",
]

from .playlist import PlaylistEntry
from .rtp import (
    ListenInfo,
    PlainTransportOptions,
    ProducerOptions,
    RtpCodecParameters,
    RtpEncoding,
    StreamOptions,
    audio_producer_options,
    video_producer_options,
)
from .status import SessionStatus
from .types import MediaKind, PipelineStage, SessionPhase
