"""Tests for the session lifecycle against the local media host."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from aioiptv.config import DEFAULT_AVATAR_URL
from aioiptv.errors import (
    AlreadyActiveError,
    AlreadyStartingError,
    ReadinessTimeoutError,
    ResourceAcquisitionError,
    SpawnError,
    StartAbortedError,
)
from aioiptv.models.types import SessionPhase
from aioiptv.registry import SessionEndedEvent, SessionStartedEvent

from .conftest import CHANNEL_ID, SOURCE_URL


async def _start_in_background(registry, launcher, wait_until, **kwargs):
    """Start a session whose launch blocks until launcher.gate is set."""
    launcher.gate = asyncio.Event()
    task = asyncio.create_task(registry.start(CHANNEL_ID, SOURCE_URL, **kwargs))
    await wait_until(lambda: len(launcher.calls) == 1)
    return task


class TestStart:
    """Tests for bringing a session live."""

    async def test_start_goes_active(self, registry, launcher, voice, tmp_path):
        """Test a successful start wires transports, producers, stream and pipeline."""
        session = await registry.start(CHANNEL_ID, SOURCE_URL, title="News")

        assert session.phase is SessionPhase.ACTIVE
        assert registry.get(CHANNEL_ID) is session
        resources = session.resources
        assert resources.complete
        assert resources.video_transport.options.rtcp_mux is False
        assert resources.audio_transport.options.rtcp_mux is True
        assert resources.video_transport.options.comedia is True

        source_url, target, work_dir = launcher.calls[0]
        assert source_url == SOURCE_URL
        assert target.host == "127.0.0.1"
        assert target.video_port == resources.video_transport.local_port
        assert target.audio_port == resources.audio_transport.local_port
        assert target.video_port != target.audio_port
        assert work_dir == tmp_path / "hls" / str(CHANNEL_ID)

        stream = voice.streams[-1]
        assert stream.options.title == "News"
        assert stream.options.avatar_url == DEFAULT_AVATAR_URL
        assert stream.options.key == "stream"
        assert stream.video is resources.video_producer
        assert stream.audio is resources.audio_producer

    async def test_producer_options(self, registry):
        """Test the producers carry the payload types and SSRCs the relays use."""
        session = await registry.start(CHANNEL_ID, SOURCE_URL)

        video = session.resources.video_producer.options
        audio = session.resources.audio_producer.options
        assert video.codecs[0].mime_type == "video/H264"
        assert video.codecs[0].payload_type == 102
        assert video.encodings[0].ssrc == 11111111
        assert audio.codecs[0].mime_type == "audio/opus"
        assert audio.codecs[0].payload_type == 111
        assert audio.encodings[0].ssrc == 22222222

    async def test_default_title(self, registry):
        """Test streams without a name get the default title."""
        session = await registry.start(CHANNEL_ID, SOURCE_URL)

        assert session.title == "IPTV"

    async def test_start_while_active(self, registry, launcher):
        """Test a second start on a live channel is refused without side effects."""
        session = await registry.start(CHANNEL_ID, SOURCE_URL)

        with pytest.raises(AlreadyActiveError):
            await registry.start(CHANNEL_ID, "http://example.com/other.ts")

        assert session.phase is SessionPhase.ACTIVE
        assert len(launcher.calls) == 1

    async def test_start_while_starting(self, registry, launcher, wait_until):
        """Test a concurrent start is refused while the first one is in progress."""
        task = await _start_in_background(registry, launcher, wait_until)

        with pytest.raises(AlreadyStartingError):
            await registry.start(CHANNEL_ID, SOURCE_URL)

        launcher.gate.set()
        session = await task
        assert session.phase is SessionPhase.ACTIVE
        assert len(launcher.calls) == 1

    async def test_missing_router(self, registry, launcher):
        """Test a channel without a router fails before anything is acquired."""
        with pytest.raises(ResourceAcquisitionError):
            await registry.start(99, SOURCE_URL)

        assert 99 not in registry
        assert launcher.calls == []

    @pytest.mark.parametrize(
        "error", [ReadinessTimeoutError("not ready"), SpawnError("no ffmpeg")]
    )
    async def test_launch_failure_releases_everything(self, registry, launcher, voice, error):
        """Test a failed launch closes all resources and unregisters the session."""
        launcher.error = error

        with pytest.raises(type(error)):
            await registry.start(CHANNEL_ID, SOURCE_URL)

        assert CHANNEL_ID not in registry
        router = voice.get_router(CHANNEL_ID)
        assert router.transports
        assert all(transport.closed for transport in router.transports)
        assert all(stream.closed for stream in voice.streams)

    async def test_transport_failure(self, registry, launcher, voice):
        """Test a refused transport surfaces as ResourceAcquisitionError."""
        router = voice.get_router(CHANNEL_ID)
        router.create_plain_transport = AsyncMock(side_effect=RuntimeError("no ports"))

        with pytest.raises(ResourceAcquisitionError, match="video transport"):
            await registry.start(CHANNEL_ID, SOURCE_URL)

        assert CHANNEL_ID not in registry
        assert launcher.calls == []

    async def test_stream_creation_failure(self, registry, voice, monkeypatch):
        """Test a failing room stream closes the transports already acquired."""

        def _fail(*_args, **_kwargs):
            raise RuntimeError("room is full")

        monkeypatch.setattr(voice, "create_stream", _fail)

        with pytest.raises(ResourceAcquisitionError, match="room stream"):
            await registry.start(CHANNEL_ID, SOURCE_URL)

        router = voice.get_router(CHANNEL_ID)
        assert all(transport.closed for transport in router.transports)
        assert all(
            producer.closed for transport in router.transports for producer in transport.producers
        )

    async def test_clean_during_start_aborts(self, registry, launcher, voice, wait_until):
        """Test a forced clean while starting aborts the start."""
        task = await _start_in_background(registry, launcher, wait_until)

        assert registry.force_clean(CHANNEL_ID)

        with pytest.raises(StartAbortedError):
            await task
        assert CHANNEL_ID not in registry
        assert all(transport.closed for transport in voice.get_router(CHANNEL_ID).transports)
        assert launcher.pipelines == []

    async def test_cancelled_start_cleans_up(self, registry, launcher, voice, wait_until):
        """Test cancelling the caller's task tears the session down."""
        task = await _start_in_background(registry, launcher, wait_until)

        _ = task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert CHANNEL_ID not in registry
        assert all(transport.closed for transport in voice.get_router(CHANNEL_ID).transports)

    async def test_restart_after_failure(self, registry, launcher):
        """Test a channel can be started again after a failed start."""
        launcher.error = ReadinessTimeoutError("not ready")
        with pytest.raises(ReadinessTimeoutError):
            await registry.start(CHANNEL_ID, SOURCE_URL)

        launcher.error = None
        session = await registry.start(CHANNEL_ID, SOURCE_URL)

        assert session.phase is SessionPhase.ACTIVE


class TestTeardown:
    """Tests for the ways a live session ends."""

    async def test_stop(self, registry, launcher, voice):
        """Test stop kills the pipeline and releases the media resources."""
        session = await registry.start(CHANNEL_ID, SOURCE_URL)
        resources = session.resources

        assert registry.stop(CHANNEL_ID)

        assert session.phase is SessionPhase.IDLE
        assert CHANNEL_ID not in registry
        assert all(handle.kill_calls == 1 for handle in launcher.pipelines[0])
        assert resources.stream.closed
        assert resources.video_producer.closed
        assert resources.audio_producer.closed
        assert resources.video_transport.closed
        assert resources.audio_transport.closed
        assert not session.resources.complete

    async def test_failing_kill_does_not_skip_other_processes(self, registry, launcher):
        """Test each process is killed even if killing an earlier one raises."""
        session = await registry.start(CHANNEL_ID, SOURCE_URL)
        pipeline = launcher.pipelines[0]
        resources = session.resources
        pipeline.buffer.kill = MagicMock(side_effect=OSError("denied"))

        assert registry.stop(CHANNEL_ID)

        pipeline.buffer.kill.assert_called_once_with()
        assert pipeline.video_relay.kill_calls == 1
        assert pipeline.audio_relay.kill_calls == 1
        assert resources.stream.closed
        assert resources.video_transport.closed
        assert session.phase is SessionPhase.IDLE
        assert CHANNEL_ID not in registry

    async def test_stop_without_stream(self, registry):
        """Test stop reports when there is nothing to stop."""
        assert not registry.stop(CHANNEL_ID)

    async def test_producer_close_cleans_up_once(self, registry, launcher):
        """Test a closing producer ends the session exactly once."""
        listener = AsyncMock()
        registry.add_event_listener(listener)
        session = await registry.start(CHANNEL_ID, SOURCE_URL)

        session.resources.video_producer.close()
        await asyncio.sleep(0)

        assert session.phase is SessionPhase.IDLE
        assert CHANNEL_ID not in registry
        assert not registry.stop(CHANNEL_ID)
        assert all(handle.kill_calls == 1 for handle in launcher.pipelines[0])
        ended = [
            call.args[0]
            for call in listener.await_args_list
            if isinstance(call.args[0], SessionEndedEvent)
        ]
        assert ended == [SessionEndedEvent(CHANNEL_ID)]

    async def test_router_close_cleans_up(self, registry, voice):
        """Test the router closing ends the session."""
        session = await registry.start(CHANNEL_ID, SOURCE_URL)

        voice.get_router(CHANNEL_ID).close()

        assert session.phase is SessionPhase.IDLE
        assert CHANNEL_ID not in registry

    async def test_pipeline_exit_cleans_up(self, registry, launcher, wait_until):
        """Test a pipeline process exiting on its own ends the session."""
        session = await registry.start(CHANNEL_ID, SOURCE_URL)
        pipeline = launcher.pipelines[0]

        pipeline.video_relay.exit(1)

        await wait_until(lambda: CHANNEL_ID not in registry)
        assert session.phase is SessionPhase.IDLE
        assert pipeline.buffer.kill_calls == 1
        assert pipeline.audio_relay.kill_calls == 1

    async def test_cleanup_is_idempotent(self, registry):
        """Test repeated cleanups do nothing after the first."""
        listener = AsyncMock()
        registry.add_event_listener(listener)
        session = await registry.start(CHANNEL_ID, SOURCE_URL)

        session.cleanup()
        session.cleanup()
        registry.force_clean(CHANNEL_ID)
        await asyncio.sleep(0)

        assert session.phase is SessionPhase.IDLE
        assert listener.await_count == 2

    async def test_stale_session_does_not_remove_successor(self, registry):
        """Test cleaning an old session leaves the channel's new session alone."""
        old = await registry.start(CHANNEL_ID, SOURCE_URL)
        registry.stop(CHANNEL_ID)
        new = await registry.start(CHANNEL_ID, SOURCE_URL)

        old.cleanup()

        assert new is not old
        assert registry.get(CHANNEL_ID) is new
        assert new.phase is SessionPhase.ACTIVE


class TestStatusAndEvents:
    """Tests for status snapshots and registry events."""

    async def test_status_of_active_session(self, registry):
        """Test the status of a live session."""
        session = await registry.start(CHANNEL_ID, SOURCE_URL, title="News")

        status = session.status()

        assert status.phase is SessionPhase.ACTIVE
        assert status.title == "News"
        assert status.source_url == SOURCE_URL
        assert status.pids == {"buffer": 1000, "video-relay": 1001, "audio-relay": 1002}
        assert status.uptime_s is not None

    async def test_registry_phase_defaults_to_idle(self, registry):
        """Test channels without a session report IDLE."""
        assert registry.phase(CHANNEL_ID) is SessionPhase.IDLE

    async def test_started_event(self, registry):
        """Test listeners hear about a stream going live."""
        listener = AsyncMock()
        remove = registry.add_event_listener(listener)

        await registry.start(CHANNEL_ID, SOURCE_URL, title="News")
        await asyncio.sleep(0)

        listener.assert_awaited_once_with(SessionStartedEvent(CHANNEL_ID, "News"))
        remove()

    async def test_failed_start_sends_no_ended_event(self, registry, launcher):
        """Test a session that never went live sends neither started nor ended."""
        listener = AsyncMock()
        registry.add_event_listener(listener)
        launcher.error = ReadinessTimeoutError("not ready")

        with pytest.raises(ReadinessTimeoutError):
            await registry.start(CHANNEL_ID, SOURCE_URL)
        await asyncio.sleep(0)

        listener.assert_not_awaited()

    async def test_clean_during_start_sends_no_ended_event(self, registry, launcher, wait_until):
        """Test aborting a start does not announce the end of a stream."""
        listener = AsyncMock()
        registry.add_event_listener(listener)
        task = await _start_in_background(registry, launcher, wait_until)

        registry.force_clean(CHANNEL_ID)
        with pytest.raises(StartAbortedError):
            await task
        await asyncio.sleep(0)

        listener.assert_not_awaited()

    async def test_clean_all(self, registry, voice):
        """Test clean_all ends every session and reports how many there were."""
        voice.open_router(2)
        await registry.start(CHANNEL_ID, SOURCE_URL)
        await registry.start(2, SOURCE_URL)

        assert registry.clean_all() == 2
        assert len(registry) == 0
