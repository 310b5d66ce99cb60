"""aioiptv: stream IPTV channels into voice channels through an ffmpeg pipeline."""

from __future__ import annotations

# Re-export the plugin surface for easy import
from aioiptv.config import PipelineConfig, StreamDefaults, resolve_ffmpeg
from aioiptv.errors import (
    AlreadyActiveError,
    AlreadyStartingError,
    IptvError,
    NoChannelError,
    NotFoundError,
    ParseError,
    PlaylistEmptyError,
    ReadinessTimeoutError,
    ResourceAcquisitionError,
    SpawnError,
    StartAbortedError,
    UsageError,
)
from aioiptv.playlist import PlaylistIndex, PlaylistResolver, PlaylistSource, parse_playlist
from aioiptv.plugin import Invoker, IptvPlugin, PluginContext
from aioiptv.registry import (
    SessionEndedEvent,
    SessionEvent,
    SessionRegistry,
    SessionStartedEvent,
)
from aioiptv.session import StreamSession

__all__ = [
    "AlreadyActiveError",
    "AlreadyStartingError",
    "Invoker",
    "IptvError",
    "IptvPlugin",
    "NoChannelError",
    "NotFoundError",
    "ParseError",
    "PipelineConfig",
    "PlaylistEmptyError",
    "PlaylistIndex",
    "PlaylistResolver",
    "PlaylistSource",
    "PluginContext",
    "ReadinessTimeoutError",
    "ResourceAcquisitionError",
    "SessionEndedEvent",
    "SessionEvent",
    "SessionRegistry",
    "SessionStartedEvent",
    "SpawnError",
    "StartAbortedError",
    "StreamDefaults",
    "StreamSession",
    "UsageError",
    "parse_playlist",
    "resolve_ffmpeg",
]
