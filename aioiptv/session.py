"""Per-channel streaming session: from idle through buffering to live and back."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from aioiptv.config import StreamDefaults
from aioiptv.errors import (
    AlreadyActiveError,
    AlreadyStartingError,
    ResourceAcquisitionError,
    StartAbortedError,
)
from aioiptv.media import (
    PRODUCER_CLOSE_EVENT,
    ROUTER_CLOSE_EVENT,
    PlainTransport,
    Producer,
    RoomStream,
    VoiceActions,
    add_once_listener,
)
from aioiptv.models.rtp import (
    PlainTransportOptions,
    StreamOptions,
    audio_producer_options,
    video_producer_options,
)
from aioiptv.models.status import SessionStatus
from aioiptv.models.types import MediaKind, SessionPhase
from aioiptv.pipeline import PipelineHandles, PipelineLauncher, RtpTarget

# The cyclic import is not an issue during runtime, so hide it
if TYPE_CHECKING:
    from .registry import SessionRegistry

STREAM_KEY = "stream"

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


@dataclass
class MediaResources:
    """Objects obtained from the media host for one session."""

    video_transport: PlainTransport | None = None
    audio_transport: PlainTransport | None = None
    video_producer: Producer | None = None
    audio_producer: Producer | None = None
    stream: RoomStream | None = None

    @property
    def complete(self) -> bool:
        """Return True once every resource has been acquired."""
        return None not in (
            self.video_transport,
            self.audio_transport,
            self.video_producer,
            self.audio_producer,
            self.stream,
        )


class StreamSession:
    """
    Streaming state of one voice channel.

    Owns the pipeline processes and the media host resources while starting or
    active. Every way a stream can end (stop, forced clean, router or producer
    closing, a pipeline process exiting) funnels into cleanup(), which runs at
    most once at a time and unregisters the session when done.

    Do not construct directly, use SessionRegistry.get_or_create instead.
    """

    _phase: SessionPhase
    _cleaning: bool
    _pipeline: PipelineHandles | None
    _resources: MediaResources
    _start_task: asyncio.Task[None] | None
    _monitor_task: asyncio.Task[None] | None

    def __init__(
        self,
        registry: SessionRegistry,
        channel_id: int,
        *,
        voice: VoiceActions,
        launcher: PipelineLauncher,
        work_dir: Path,
        defaults: StreamDefaults,
    ) -> None:
        """Initialize an idle session for channel_id."""
        self._registry = registry
        self.channel_id = channel_id
        self._voice = voice
        self._launcher = launcher
        self._work_dir = work_dir
        self._defaults = defaults
        self._logger = logger.getChild(f"channel-{channel_id}")
        self._phase = SessionPhase.IDLE
        self._cleaning = False
        self._pipeline = None
        self._resources = MediaResources()
        self._start_task = None
        self._monitor_task = None
        self._title: str | None = None
        self._source_url: str | None = None
        self._started_at: float | None = None
        self._started_monotonic: float | None = None

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------
    @property
    def phase(self) -> SessionPhase:
        """Return the current lifecycle phase."""
        return self._phase

    @property
    def pipeline(self) -> PipelineHandles | None:
        """Return the running pipeline, if any."""
        return self._pipeline

    @property
    def resources(self) -> MediaResources:
        """Return the media host resources currently held."""
        return self._resources

    @property
    def title(self) -> str | None:
        """Return the title the stream is shown with in the room."""
        return self._title

    async def start(
        self,
        source_url: str,
        *,
        title: str | None = None,
        avatar_url: str | None = None,
    ) -> None:
        """
        Bring the stream for source_url live in this channel.

        On any failure the session is cleaned up before the error is raised.

        Raises:
            AlreadyActiveError: A stream is already live.
            AlreadyStartingError: A stream is still starting.
            StartAbortedError: The session was cleaned up while starting.
            ResourceAcquisitionError: The media host refused a resource.
            SpawnError: ffmpeg could not be started.
            ReadinessTimeoutError: The buffer did not fill up in time.
        """
        if self._phase is SessionPhase.ACTIVE:
            raise AlreadyActiveError(
                "A stream is already active. Stop it before starting a new one."
            )
        if self._phase is SessionPhase.STARTING:
            raise AlreadyStartingError("A stream is already starting. Please wait.")
        if self._registry.get(self.channel_id) is not self:
            raise RuntimeError(f"Session for channel {self.channel_id} is no longer registered")

        self._phase = SessionPhase.STARTING
        self._title = title or self._defaults.title
        self._source_url = source_url
        self._logger.info("Starting stream %r", self._title)

        loop = asyncio.get_running_loop()
        self._start_task = loop.create_task(
            self._bring_up(source_url, self._title, avatar_url or self._defaults.avatar_url)
        )
        try:
            await self._start_task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                self.cleanup()
                raise
            # Only cleanup() cancels the bring-up task on its own
            raise StartAbortedError("The stream was stopped while it was starting.") from None
        except BaseException as err:
            self._logger.warning("Failed to start stream: %s", err)
            self.cleanup()
            raise
        finally:
            self._start_task = None
            if self._phase is SessionPhase.STARTING:
                self._phase = SessionPhase.IDLE

    def stop(self) -> bool:
        """Stop the stream if it is live. Return False if there was nothing to stop."""
        if self._phase is not SessionPhase.ACTIVE:
            self._logger.info("No active stream to stop")
            return False
        self._logger.info("Stopping stream")
        self.cleanup()
        return True

    def force_clean(self) -> None:
        """Tear the session down whatever phase it is in."""
        self._logger.info("Force cleaning session in phase %s", self._phase.value)
        self.cleanup()

    def cleanup(self) -> None:
        """
        Release everything the session holds and unregister it.

        Calls made while a cleanup is already running return immediately. Each
        step is attempted even if an earlier one failed, and steps for
        resources that were never acquired are skipped.
        """
        if self._cleaning:
            self._logger.debug("Cleanup already in progress")
            return
        self._cleaning = True
        previous_phase = self._phase
        self._phase = SessionPhase.CLEANING
        try:
            pipeline, self._pipeline = self._pipeline, None
            resources, self._resources = self._resources, MediaResources()

            if pipeline is not None:
                for handle in pipeline:
                    self._best_effort(f"kill {handle.stage}", handle.kill)
            if resources.stream is not None:
                self._best_effort("close room stream", resources.stream.close)
            for producer in (resources.video_producer, resources.audio_producer):
                if producer is not None:
                    self._best_effort("close producer", producer.close)
            for transport in (resources.video_transport, resources.audio_transport):
                if transport is not None:
                    self._best_effort("close transport", transport.close)

            current = asyncio.current_task() if _loop_running() else None
            for task in (self._monitor_task, self._start_task):
                if task is not None and task is not current and not task.done():
                    _ = task.cancel()
            self._monitor_task = None

            self._title = None
            self._source_url = None
            self._started_at = None
            self._started_monotonic = None
        finally:
            self._phase = SessionPhase.IDLE
            self._registry._discard(self)  # noqa: SLF001
            self._cleaning = False
        if previous_phase is not SessionPhase.IDLE:
            self._logger.info("Session cleaned up")
        # Only sessions that announced a start announce an end
        if previous_phase is SessionPhase.ACTIVE:
            self._registry._on_session_ended(self)  # noqa: SLF001

    def status(self) -> SessionStatus:
        """Return a snapshot of this session."""
        pids = None
        if self._pipeline is not None:
            pids = {handle.stage: handle.pid for handle in self._pipeline if handle.running}
        uptime = None
        if self._started_monotonic is not None:
            uptime = round(time.monotonic() - self._started_monotonic, 1)
        return SessionStatus(
            channel_id=self.channel_id,
            phase=self._phase,
            title=self._title,
            source_url=self._source_url,
            pids=pids,
            started_at=self._started_at,
            uptime_s=uptime,
        )

    # ---------------------------------------------------------------------
    # Bring-up
    # ---------------------------------------------------------------------
    async def _bring_up(self, source_url: str, title: str, avatar_url: str) -> None:
        """Acquire the media host resources, launch the pipeline and go live."""
        router = self._voice.get_router(self.channel_id)
        if router is None:
            raise ResourceAcquisitionError(f"No voice router found for channel {self.channel_id}")

        listen_info = await self._acquire("listen info", self._voice.get_listen_info())
        self._logger.debug("Listen info: %s", listen_info)
        add_once_listener(router, ROUTER_CLOSE_EVENT, self._on_router_close)

        resources = self._resources
        resources.video_transport = await self._acquire(
            "video transport",
            router.create_plain_transport(
                PlainTransportOptions(listen_info=listen_info, rtcp_mux=False)
            ),
        )
        resources.audio_transport = await self._acquire(
            "audio transport",
            router.create_plain_transport(
                PlainTransportOptions(listen_info=listen_info, rtcp_mux=True)
            ),
        )
        self._logger.info(
            "RTP ingest on ports video=%s audio=%s",
            resources.video_transport.local_port,
            resources.audio_transport.local_port,
        )

        config = self._launcher.config
        video_producer = await self._acquire(
            "video producer", resources.video_transport.produce(video_producer_options(config))
        )
        resources.video_producer = video_producer
        audio_producer = await self._acquire(
            "audio producer", resources.audio_transport.produce(audio_producer_options(config))
        )
        resources.audio_producer = audio_producer

        try:
            resources.stream = self._voice.create_stream(
                StreamOptions(
                    key=STREAM_KEY,
                    channel_id=self.channel_id,
                    title=title,
                    avatar_url=avatar_url,
                ),
                video=video_producer,
                audio=audio_producer,
            )
        except Exception as err:
            raise ResourceAcquisitionError(f"Could not create room stream: {err}") from err

        add_once_listener(
            video_producer.observer,
            PRODUCER_CLOSE_EVENT,
            lambda: self._on_producer_close(MediaKind.VIDEO, video_producer),
        )
        add_once_listener(
            audio_producer.observer,
            PRODUCER_CLOSE_EVENT,
            lambda: self._on_producer_close(MediaKind.AUDIO, audio_producer),
        )

        target = RtpTarget(
            host=listen_info.ip,
            video_port=resources.video_transport.local_port,
            audio_port=resources.audio_transport.local_port,
        )
        pipeline = await self._launcher.launch(source_url, target, self._work_dir)
        if self._phase is not SessionPhase.STARTING:
            pipeline.kill()
            raise StartAbortedError("The stream was stopped while it was starting.")

        self._pipeline = pipeline
        self._started_at = time.time()
        self._started_monotonic = time.monotonic()
        self._monitor_task = asyncio.get_running_loop().create_task(
            self._watch_pipeline(pipeline)
        )
        self._phase = SessionPhase.ACTIVE
        self._logger.info("Stream %r is live", title)
        self._registry._on_session_started(self)  # noqa: SLF001

    async def _acquire(self, what: str, pending: Awaitable[_T]) -> _T:
        """Await a resource from the media host, dropping it if cleanup ran meanwhile."""
        try:
            resource = await pending
        except Exception as err:
            raise ResourceAcquisitionError(f"Could not create {what}: {err}") from err
        if self._phase is not SessionPhase.STARTING:
            close = getattr(resource, "close", None)
            if callable(close):
                self._best_effort(f"close {what}", close)
            raise StartAbortedError("The stream was stopped while it was starting.")
        return resource

    # ---------------------------------------------------------------------
    # Teardown triggers
    # ---------------------------------------------------------------------
    async def _watch_pipeline(self, pipeline: PipelineHandles) -> None:
        """Clean up as soon as any pipeline process exits on its own."""
        waiters = {asyncio.ensure_future(handle.wait()): handle for handle in pipeline}
        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                _ = waiter.cancel()
        handle = waiters[next(iter(done))]
        self._logger.warning(
            "%s process exited with code %s, ending stream", handle.stage, handle.returncode
        )
        self.cleanup()

    def _on_router_close(self) -> None:
        self._logger.info("Router closed, cleaning up")
        self.cleanup()

    def _on_producer_close(self, kind: MediaKind, producer: Producer) -> None:
        self._logger.info("%s producer %s closed, cleaning up", kind.value, producer.id)
        self.cleanup()

    def _best_effort(self, step: str, func: Callable[..., Any], *args: Any) -> None:
        try:
            func(*args)
        except Exception:
            self._logger.exception("Cleanup step failed: %s", step)


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
