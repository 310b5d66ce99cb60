"""Process-wide mapping from voice channel to its streaming session."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from pathlib import Path

from aioiptv.config import StreamDefaults
from aioiptv.media import VoiceActions
from aioiptv.models.types import SessionPhase
from aioiptv.pipeline import PipelineLauncher

from .session import StreamSession

logger = logging.getLogger(__name__)


class SessionEvent:
    """Base event type used by SessionRegistry.add_event_listener()."""


@dataclass
class SessionStartedEvent(SessionEvent):
    """A stream went live."""

    channel_id: int
    title: str | None


@dataclass
class SessionEndedEvent(SessionEvent):
    """A session was cleaned up and removed."""

    channel_id: int


SessionEventCallback = Callable[[SessionEvent], Coroutine[None, None, None]]


class SessionRegistry:
    """
    Owns every channel session of the process.

    Sessions are created on the first start attempt for a channel and removed
    by their own cleanup. Call close() on shutdown to tear down all of them.
    """

    _sessions: dict[int, StreamSession]
    _event_cbs: list[SessionEventCallback]
    _background_tasks: set[asyncio.Task[None]]

    def __init__(
        self,
        voice: VoiceActions,
        launcher: PipelineLauncher,
        *,
        work_root: Path,
        defaults: StreamDefaults | None = None,
    ) -> None:
        """
        Initialize an empty registry.

        Args:
            voice: Voice capabilities of the media host.
            launcher: Launcher for the ffmpeg pipeline.
            work_root: Directory under which each channel gets its HLS buffer.
            defaults: Title and avatar for streams started without them.
        """
        self._voice = voice
        self._launcher = launcher
        self._work_root = work_root
        self._defaults = defaults or StreamDefaults()
        self._sessions = {}
        self._event_cbs = []
        self._background_tasks = set()

    # ---------------------------------------------------------------------
    # Lookup
    # ---------------------------------------------------------------------
    def get(self, channel_id: int) -> StreamSession | None:
        """Return the session of channel_id, if one exists."""
        return self._sessions.get(channel_id)

    def get_or_create(self, channel_id: int) -> StreamSession:
        """Return the session of channel_id, creating an idle one if needed."""
        session = self._sessions.get(channel_id)
        if session is None:
            logger.debug("Creating session for channel %s", channel_id)
            session = StreamSession(
                self,
                channel_id,
                voice=self._voice,
                launcher=self._launcher,
                work_dir=self._work_root / str(channel_id),
                defaults=self._defaults,
            )
            self._sessions[channel_id] = session
        return session

    def phase(self, channel_id: int) -> SessionPhase:
        """Return the phase of channel_id's session; IDLE when there is none."""
        session = self._sessions.get(channel_id)
        return session.phase if session is not None else SessionPhase.IDLE

    @property
    def sessions(self) -> list[StreamSession]:
        """Return a snapshot of all registered sessions."""
        return list(self._sessions.values())

    def __contains__(self, channel_id: object) -> bool:
        """Return True if channel_id has a registered session."""
        return channel_id in self._sessions

    def __len__(self) -> int:
        """Return the number of registered sessions."""
        return len(self._sessions)

    # ---------------------------------------------------------------------
    # Commands
    # ---------------------------------------------------------------------
    async def start(
        self,
        channel_id: int,
        source_url: str,
        *,
        title: str | None = None,
        avatar_url: str | None = None,
    ) -> StreamSession:
        """Start a stream of source_url in channel_id and return its session."""
        session = self.get_or_create(channel_id)
        await session.start(source_url, title=title, avatar_url=avatar_url)
        return session

    def stop(self, channel_id: int) -> bool:
        """Stop channel_id's stream if it is live. Return False if nothing was stopped."""
        session = self._sessions.get(channel_id)
        if session is None:
            logger.info("No active stream to stop in channel %s", channel_id)
            return False
        return session.stop()

    def force_clean(self, channel_id: int) -> bool:
        """Clean channel_id's session in whatever phase. Return False if there was none."""
        session = self._sessions.get(channel_id)
        if session is None:
            return False
        session.force_clean()
        return True

    def clean_all(self) -> int:
        """Force clean every session and return how many there were."""
        sessions = self.sessions
        for session in sessions:
            session.force_clean()
        return len(sessions)

    def close(self) -> None:
        """Tear down all sessions; used when the plugin unloads."""
        count = self.clean_all()
        logger.debug("Registry closed, cleaned %d sessions", count)

    # ---------------------------------------------------------------------
    # Events
    # ---------------------------------------------------------------------
    def add_event_listener(self, callback: SessionEventCallback) -> Callable[[], None]:
        """Register a callback for session start/end events.

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)
        return lambda: self._event_cbs.remove(callback)

    def _signal_event(self, event: SessionEvent) -> None:
        if not self._event_cbs:
            return
        loop = asyncio.get_running_loop()
        for cb in self._event_cbs:
            task = loop.create_task(cb(event))
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)

    # ---------------------------------------------------------------------
    # Called by StreamSession
    # ---------------------------------------------------------------------
    def _discard(self, session: StreamSession) -> None:
        """Unregister session unless a newer session took its channel."""
        if self._sessions.get(session.channel_id) is session:
            del self._sessions[session.channel_id]

    def _on_session_started(self, session: StreamSession) -> None:
        self._signal_event(SessionStartedEvent(session.channel_id, session.title))

    def _on_session_ended(self, session: StreamSession) -> None:
        self._signal_event(SessionEndedEvent(session.channel_id))
