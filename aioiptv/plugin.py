"""
IPTV plugin: the command surface registered with the host runtime.

Commands act on the voice channel the invoking user is currently in. Starting
can use a direct media URL or a channel name looked up in the ``playlist``
setting; the latter is just a different way to obtain the URL, the session
underneath is the same.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, TypeVar

import orjson
from mashumaro.config import BaseConfig
from mashumaro.exceptions import InvalidFieldValue, MissingField
from mashumaro.mixins.orjson import DataClassORJSONMixin
from yarl import URL

from aioiptv.config import PipelineConfig, StreamDefaults, resolve_ffmpeg
from aioiptv.errors import NoChannelError, UsageError
from aioiptv.media import VoiceActions
from aioiptv.models.status import SessionStatus
from aioiptv.pipeline import OutputSink, PipelineLauncher, ProcessSupervisor, log_output

from .playlist import PlaylistResolver, PlaylistSource
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

PLAYLIST_SETTING = "playlist"
WORK_DIR_NAME = "hls"

_InputT = TypeVar("_InputT", bound=DataClassORJSONMixin)


# ---------------------------------------------------------------------------
# Host runtime interfaces
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class Invoker:
    """The user a command was invoked by."""

    user_id: int
    current_voice_channel_id: int | None = None


CommandHandler = Callable[[Invoker, dict[str, Any]], Awaitable[str | None]]


@dataclass(slots=True)
class CommandArg:
    """Declared argument of a command."""

    name: str
    description: str
    type: str = "string"
    required: bool = False
    sensitive: bool = False


@dataclass(slots=True)
class CommandSpec:
    """A command offered to the host's command layer."""

    name: str
    description: str
    executes: CommandHandler
    args: list[CommandArg] = field(default_factory=list)


@dataclass(slots=True)
class SettingSpec:
    """A plugin setting stored by the host."""

    key: str
    name: str
    description: str
    type: str = "string"
    default: str = ""


class CommandRegistry(Protocol):
    """Command layer of the host runtime."""

    def register(self, command: CommandSpec) -> None:
        """Make command available to users."""


class SettingsStore(Protocol):
    """Settings layer of the host runtime."""

    def register(self, setting: SettingSpec) -> None:
        """Declare a setting."""

    def get(self, key: str) -> str | None:
        """Return the current value of a setting."""


class PluginContext(Protocol):
    """Everything the host runtime hands to the plugin on load."""

    @property
    def path(self) -> Path:
        """Return the plugin's data directory."""

    @property
    def commands(self) -> CommandRegistry:
        """Return the command layer."""

    @property
    def settings(self) -> SettingsStore:
        """Return the settings layer."""

    @property
    def voice(self) -> VoiceActions:
        """Return the voice capabilities of the media host."""


# ---------------------------------------------------------------------------
# Command inputs
# ---------------------------------------------------------------------------
@dataclass
class StartStreamInput(DataClassORJSONMixin):
    """Arguments of the direct start command."""

    source_url: str
    stream_name: str | None = None

    class Config(BaseConfig):
        """Accept the camelCase names the host passes."""

        aliases = {"source_url": "sourceUrl", "stream_name": "streamName"}  # noqa: RUF012

    def __post_init__(self) -> None:
        """Validate the source URL."""
        if not isinstance(self.source_url, str):
            raise ValueError("sourceUrl must be a string")
        url = URL(self.source_url.strip())
        if not url.is_absolute() or not url.scheme:
            raise ValueError("sourceUrl must be an absolute URL")
        self.source_url = str(url)
        if self.stream_name is not None:
            if not isinstance(self.stream_name, str):
                raise ValueError("streamName must be a string")
            self.stream_name = self.stream_name.strip() or None


@dataclass
class PlayChannelInput(DataClassORJSONMixin):
    """Arguments of the playlist start command."""

    channel_name: str

    class Config(BaseConfig):
        """Accept the camelCase names the host passes."""

        aliases = {"channel_name": "channelName"}  # noqa: RUF012

    def __post_init__(self) -> None:
        """Validate the channel name."""
        if not isinstance(self.channel_name, str):
            raise ValueError("channelName must be a string")
        self.channel_name = self.channel_name.strip()
        if not self.channel_name:
            raise ValueError("channelName must not be empty")


def _parse_input(model: type[_InputT], data: dict[str, Any]) -> _InputT:
    try:
        return model.from_dict(data)
    except (MissingField, InvalidFieldValue, ValueError) as err:
        raise UsageError(f"Invalid arguments: {err}") from err


def _require_channel(invoker: Invoker) -> int:
    if invoker.current_voice_channel_id is None:
        raise NoChannelError("You must be in a voice channel to use this command.")
    return invoker.current_voice_channel_id


# ---------------------------------------------------------------------------
# Plugin
# ---------------------------------------------------------------------------
class IptvPlugin:
    """Streams IPTV channels into voice channels."""

    registry: SessionRegistry | None

    def __init__(
        self,
        *,
        config: PipelineConfig | None = None,
        defaults: StreamDefaults | None = None,
        sink: OutputSink = log_output,
        playlist_source: PlaylistSource | None = None,
    ) -> None:
        """
        Initialize the plugin.

        When config is omitted, ffmpeg is looked up next to the plugin first.
        """
        self._config = config
        self._defaults = defaults or StreamDefaults()
        self._sink = sink
        self._resolver = PlaylistResolver()
        self._playlist_source = playlist_source or PlaylistSource()
        self._ctx: PluginContext | None = None
        self.registry = None

    def on_load(self, ctx: PluginContext) -> None:
        """Register the commands and the playlist setting with the host."""
        self._ctx = ctx
        config = self._config or PipelineConfig(ffmpeg_path=resolve_ffmpeg(ctx.path))
        launcher = PipelineLauncher(ProcessSupervisor(self._sink), config)
        self.registry = SessionRegistry(
            ctx.voice,
            launcher,
            work_root=ctx.path / WORK_DIR_NAME,
            defaults=self._defaults,
        )

        ctx.settings.register(
            SettingSpec(
                key=PLAYLIST_SETTING,
                name="Playlist",
                description="M3U playlist contents, or an http(s) URL to download it from.",
            )
        )
        for command in self._commands():
            ctx.commands.register(command)
        logger.info("IPTV plugin loaded (ffmpeg: %s)", config.ffmpeg_path)

    async def on_unload(self) -> None:
        """Tear down every session."""
        if self.registry is not None:
            self.registry.close()
        await self._playlist_source.close()
        logger.info("IPTV plugin unloaded")

    def _commands(self) -> list[CommandSpec]:
        return [
            CommandSpec(
                name="iptv_start",
                description="Start an IPTV stream in your voice channel",
                executes=self.start_direct,
                args=[
                    CommandArg(
                        name="sourceUrl",
                        description=(
                            "The source URL of the stream. This must be a direct link to a "
                            "media stream, not a playlist."
                        ),
                        required=True,
                        sensitive=True,
                    ),
                    CommandArg(name="streamName", description="The name of the stream"),
                ],
            ),
            CommandSpec(
                name="iptv_play",
                description="Start a channel from the configured playlist",
                executes=self.start_from_playlist,
                args=[
                    CommandArg(
                        name="channelName",
                        description="Name of the playlist channel; close matches are accepted",
                        required=True,
                    )
                ],
            ),
            CommandSpec(
                name="iptv_stop",
                description="Stop the IPTV stream in your voice channel",
                executes=self.stop,
            ),
            CommandSpec(
                name="iptv_clean",
                description="Forcefully clean up the stream in your voice channel",
                executes=self.clean,
            ),
            CommandSpec(
                name="iptv_cleanall",
                description="Forcefully clean up all streams and processes",
                executes=self.clean_all,
            ),
            CommandSpec(
                name="iptv_status",
                description="Show the state of the IPTV streams",
                executes=self.status,
            ),
        ]

    # ---------------------------------------------------------------------
    # Commands
    # ---------------------------------------------------------------------
    def _registry(self) -> SessionRegistry:
        if self.registry is None:
            raise RuntimeError("Plugin is not loaded")
        return self.registry

    async def start_direct(self, invoker: Invoker, params: dict[str, Any]) -> str:
        """Start a stream from a direct media URL."""
        args = _parse_input(StartStreamInput, params)
        channel_id = _require_channel(invoker)
        session = await self._registry().start(
            channel_id, args.source_url, title=args.stream_name
        )
        return f"Streaming {session.title} in this channel."

    async def start_from_playlist(self, invoker: Invoker, params: dict[str, Any]) -> str:
        """Start the playlist entry best matching the requested channel name."""
        args = _parse_input(PlayChannelInput, params)
        channel_id = _require_channel(invoker)
        assert self._ctx is not None
        raw = await self._playlist_source.load(self._ctx.settings.get(PLAYLIST_SETTING))
        entry = self._resolver.resolve(raw, args.channel_name)
        logger.info("Resolved %r to playlist entry %r", args.channel_name, entry.name)
        session = await self._registry().start(
            channel_id, entry.url, title=entry.name, avatar_url=entry.logo
        )
        return f"Streaming {session.title} in this channel."

    async def stop(self, invoker: Invoker, _params: dict[str, Any]) -> str:
        """Stop the stream in the invoker's channel."""
        channel_id = _require_channel(invoker)
        if not self._registry().stop(channel_id):
            return "No active stream to stop in this channel."
        return "IPTV stream stopped."

    async def clean(self, invoker: Invoker, _params: dict[str, Any]) -> str:
        """Force clean the invoker's channel."""
        channel_id = _require_channel(invoker)
        self._registry().force_clean(channel_id)
        return "Channel cleaned up."

    async def clean_all(self, _invoker: Invoker, _params: dict[str, Any]) -> str:
        """Force clean every channel."""
        count = self._registry().clean_all()
        return f"Cleaned up {count} session(s)."

    async def status(self, invoker: Invoker, _params: dict[str, Any]) -> str:
        """Report the invoker's session, or all sessions when not in a channel."""
        registry = self._registry()
        channel_id = invoker.current_voice_channel_id
        if channel_id is not None:
            session = registry.get(channel_id)
            status = (
                session.status()
                if session is not None
                else SessionStatus(channel_id=channel_id, phase=registry.phase(channel_id))
            )
            return status.to_json()
        statuses = [session.status().to_dict() for session in registry.sessions]
        return orjson.dumps(statuses).decode()
