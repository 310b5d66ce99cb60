"""
Two-stage ffmpeg pipeline: a transcoding HLS buffer feeding two RTP relays.

The buffering stage pulls the original source once, transcodes it to H.264
baseline and Opus and keeps a rolling HLS buffer on disk. The relay stages
read that buffer in real time and copy the elementary streams out as RTP
without re-encoding, so a relay restart resumes close to the live edge
instead of reconnecting to the network source.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from aioiptv.config import PipelineConfig
from aioiptv.models.types import PipelineStage

from .process import ProcessHandle, ProcessSupervisor, kill_all
from .readiness import wait_until_ready

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RtpTarget:
    """Where the relays send their RTP packets."""

    host: str
    video_port: int
    audio_port: int


@dataclass(frozen=True)
class PipelineHandles:
    """The three processes of a running pipeline."""

    buffer: ProcessHandle
    video_relay: ProcessHandle
    audio_relay: ProcessHandle

    def __iter__(self) -> Iterator[ProcessHandle]:
        """Iterate over the handles, buffering stage first."""
        return iter((self.buffer, self.video_relay, self.audio_relay))

    def kill(self) -> None:
        """Kill all three processes."""
        kill_all(self)


def build_buffer_args(
    config: PipelineConfig, source_url: str, playlist_path: Path, segment_path: Path
) -> list[str]:
    """Return ffmpeg arguments that turn source_url into a rolling HLS buffer."""
    return [
        # Ride out network hiccups on the source
        "-reconnect", "1",
        "-reconnect_streamed", "1",
        "-reconnect_on_network_error", "1",
        "-reconnect_delay_max", str(config.reconnect_delay_max),
        "-timeout", str(config.io_timeout_us),
        "-user_agent", config.user_agent,
        "-fflags", "+genpts+discardcorrupt",
        "-err_detect", "ignore_err",
        "-i", source_url,
        # Deinterlace and transcode once, here, so the relays can copy
        "-vf", config.deinterlace_filter,
        "-c:v", config.video_codec,
        "-preset", config.video_preset,
        "-tune", config.video_tune,
        "-profile:v", config.video_profile,
        "-level", config.video_level,
        "-pix_fmt", config.pixel_format,
        "-b:v", config.video_bitrate,
        "-maxrate", config.video_maxrate,
        "-bufsize", config.video_bufsize,
        "-g", str(config.gop_size),
        "-sc_threshold", "0",
        "-r", str(config.frame_rate),
        "-c:a", config.audio_codec,
        "-ar", str(config.audio_sample_rate),
        "-ac", str(config.audio_channels),
        "-b:a", config.audio_bitrate,
        "-f", "hls",
        "-hls_time", str(config.segment_seconds),
        "-hls_list_size", str(config.segment_list_size),
        "-hls_flags", "delete_segments+append_list",
        "-hls_segment_type", "mpegts",
        "-hls_segment_filename", str(segment_path),
        "-start_number", "0",
        str(playlist_path),
    ]  # fmt: skip


def _relay_args(
    config: PipelineConfig,
    playlist_path: Path,
    *,
    select: list[str],
    payload_type: int,
    ssrc: int,
    host: str,
    port: int,
) -> list[str]:
    return [
        "-re",
        "-stream_loop", "-1",
        "-i", str(playlist_path),
        *select,
        "-payload_type", str(payload_type),
        "-ssrc", str(ssrc),
        "-f", "rtp",
        f"rtp://{host}:{port}?pkt_size={config.packet_size}",
    ]  # fmt: skip


def build_video_relay_args(
    config: PipelineConfig, playlist_path: Path, target: RtpTarget
) -> list[str]:
    """Return ffmpeg arguments relaying the buffered video stream as RTP."""
    return _relay_args(
        config,
        playlist_path,
        select=["-map", "0:v:0", "-an", "-c:v", "copy"],
        payload_type=config.video_payload_type,
        ssrc=config.video_ssrc,
        host=target.host,
        port=target.video_port,
    )


def build_audio_relay_args(
    config: PipelineConfig, playlist_path: Path, target: RtpTarget
) -> list[str]:
    """Return ffmpeg arguments relaying the buffered audio stream as RTP."""
    return _relay_args(
        config,
        playlist_path,
        select=["-map", "0:a:0", "-vn", "-c:a", "copy"],
        payload_type=config.audio_payload_type,
        ssrc=config.audio_ssrc,
        host=target.host,
        port=target.audio_port,
    )


def prepare_work_dir(work_dir: Path) -> None:
    """Create work_dir, or empty it so no stale segments get served."""
    if not work_dir.exists():
        work_dir.mkdir(parents=True)
        return
    for entry in work_dir.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()


class PipelineLauncher:
    """Brings up the buffering stage, waits for it, then starts both relays."""

    def __init__(
        self, supervisor: ProcessSupervisor, config: PipelineConfig | None = None
    ) -> None:
        """Initialize the launcher."""
        self._supervisor = supervisor
        self._config = config or PipelineConfig()

    @property
    def config(self) -> PipelineConfig:
        """Return the pipeline configuration."""
        return self._config

    async def launch(self, source_url: str, target: RtpTarget, work_dir: Path) -> PipelineHandles:
        """
        Start the full pipeline for source_url and return its process handles.

        If anything fails, or the launch is cancelled, every process this call
        started is killed before the exception propagates.

        Raises:
            SpawnError: One of the stages could not be started.
            ReadinessTimeoutError: The buffer did not fill up in time.
        """
        config = self._config
        playlist_path = work_dir / config.playlist_name
        started: list[ProcessHandle] = []
        try:
            prepare_work_dir(work_dir)

            logger.info("Starting HLS buffer for %s", work_dir)
            buffer = await self._supervisor.spawn(
                config.ffmpeg_path,
                build_buffer_args(
                    config, source_url, playlist_path, work_dir / config.segment_pattern
                ),
                stage=PipelineStage.BUFFER.value,
            )
            started.append(buffer)

            logger.info("Waiting for %d buffered segments", config.min_segments)
            await wait_until_ready(
                playlist_path,
                config.min_segments,
                config.ready_timeout_s,
                poll_interval_s=config.poll_interval_s,
                settle_delay_s=config.settle_delay_s,
            )
            logger.info("HLS buffer ready, starting RTP relays")

            video_relay, audio_relay = await self._spawn_relays(playlist_path, target, started)
        except BaseException:
            logger.debug("Pipeline launch failed, killing %d started processes", len(started))
            kill_all(started)
            raise

        return PipelineHandles(buffer=buffer, video_relay=video_relay, audio_relay=audio_relay)

    async def _spawn_relays(
        self, playlist_path: Path, target: RtpTarget, started: list[ProcessHandle]
    ) -> tuple[ProcessHandle, ProcessHandle]:
        """Spawn both relays concurrently, recording each one that came up in started."""
        config = self._config
        tasks = [
            asyncio.ensure_future(
                self._supervisor.spawn(
                    config.ffmpeg_path,
                    build_video_relay_args(config, playlist_path, target),
                    stage=PipelineStage.VIDEO_RELAY.value,
                )
            ),
            asyncio.ensure_future(
                self._supervisor.spawn(
                    config.ffmpeg_path,
                    build_audio_relay_args(config, playlist_path, target),
                    stage=PipelineStage.AUDIO_RELAY.value,
                )
            ),
        ]
        try:
            _ = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            for task in tasks:
                if task.done() and not task.cancelled() and task.exception() is None:
                    started.append(task.result())
        for task in tasks:
            if (err := task.exception()) is not None:
                raise err
        return tasks[0].result(), tasks[1].result()
