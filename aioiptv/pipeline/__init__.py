"""
External process pipeline that feeds RTP into the room.

The pipeline is made of:
- A readiness gate polling the HLS index written by the buffering stage
- A process supervisor spawning ffmpeg and draining its output
- A launcher composing both into buffer -> ready -> relays
"""

__all__ = [
    "OutputSink",
    "PipelineHandles",
    "PipelineLauncher",
    "ProcessHandle",
    "ProcessSupervisor",
    "RtpTarget",
    "build_audio_relay_args",
    "build_buffer_args",
    "build_video_relay_args",
    "count_segments",
    "kill_all",
    "log_output",
    "prepare_work_dir",
    "wait_until_ready",
]

from .launcher import (
    PipelineHandles,
    PipelineLauncher,
    RtpTarget,
    build_audio_relay_args,
    build_buffer_args,
    build_video_relay_args,
    prepare_work_dir,
)
from .process import OutputSink, ProcessHandle, ProcessSupervisor, kill_all, log_output
from .readiness import count_segments, wait_until_ready
