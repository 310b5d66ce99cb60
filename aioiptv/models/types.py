"""Enum types used by aioiptv."""

from enum import Enum


class SessionPhase(Enum):
    """Lifecycle phase of a channel session."""

    IDLE = "idle"
    """No resources held; the session is not registered."""
    STARTING = "starting"
    """Transports, producers and the pipeline are being brought up."""
    ACTIVE = "active"
    """The pipeline is running and media is flowing into the room."""
    CLEANING = "cleaning"
    """Teardown in progress."""


class MediaKind(Enum):
    """Kind of media carried by a producer."""

    VIDEO = "video"
    AUDIO = "audio"


class PipelineStage(Enum):
    """Stages of the external transcode/relay pipeline."""

    BUFFER = "buffer"
    VIDEO_RELAY = "video-relay"
    AUDIO_RELAY = "audio-relay"
