"""Option payloads exchanged with the media host.

These describe the plain transports the pipeline sends RTP into, the
producers created on them and the room stream that publishes both producers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from aioiptv.config import PipelineConfig

from .types import MediaKind

H264_CLOCK_RATE = 90_000
OPUS_CLOCK_RATE = 48_000


@dataclass
class ListenInfo(DataClassORJSONMixin):
    """Local bind address of the media host and the address it announces."""

    ip: str
    announced_address: str | None = None

    class Config(BaseConfig):
        """Config for serializing options."""

        omit_none = True


@dataclass
class PlainTransportOptions(DataClassORJSONMixin):
    """Options for a plain (non-WebRTC) RTP transport."""

    listen_info: ListenInfo
    rtcp_mux: bool
    comedia: bool = True
    """Learn the remote address from the first received packet."""
    enable_srtp: bool = False
    protocol: str = "udp"


@dataclass
class RtpCodecParameters(DataClassORJSONMixin):
    """One codec entry of a producer's RTP parameters."""

    mime_type: str
    payload_type: int
    clock_rate: int
    channels: int | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    rtcp_feedback: list[dict[str, Any]] = field(default_factory=list)

    class Config(BaseConfig):
        """Config for serializing options."""

        omit_none = True


@dataclass
class RtpEncoding(DataClassORJSONMixin):
    """Single encoding, identified by its SSRC."""

    ssrc: int


@dataclass
class ProducerOptions(DataClassORJSONMixin):
    """Options for producing a fixed-codec RTP stream on a plain transport."""

    kind: MediaKind
    codecs: list[RtpCodecParameters]
    encodings: list[RtpEncoding]


@dataclass
class StreamOptions(DataClassORJSONMixin):
    """Presentation of the session's feed in the room."""

    key: str
    channel_id: int
    title: str
    avatar_url: str


def video_producer_options(config: PipelineConfig) -> ProducerOptions:
    """Return producer options matching the relayed H.264 baseline stream."""
    return ProducerOptions(
        kind=MediaKind.VIDEO,
        codecs=[
            RtpCodecParameters(
                mime_type="video/H264",
                payload_type=config.video_payload_type,
                clock_rate=H264_CLOCK_RATE,
                parameters={
                    "packetization-mode": 1,
                    "profile-level-id": "42e01f",
                    "level-asymmetry-allowed": 1,
                    "x-google-start-bitrate": 1000,
                },
            )
        ],
        encodings=[RtpEncoding(ssrc=config.video_ssrc)],
    )


def audio_producer_options(config: PipelineConfig) -> ProducerOptions:
    """Return producer options matching the relayed Opus stream."""
    return ProducerOptions(
        kind=MediaKind.AUDIO,
        codecs=[
            RtpCodecParameters(
                mime_type="audio/opus",
                payload_type=config.audio_payload_type,
                clock_rate=OPUS_CLOCK_RATE,
                channels=config.audio_channels,
            )
        ],
        encodings=[RtpEncoding(ssrc=config.audio_ssrc)],
    )
