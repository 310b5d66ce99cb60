"""Command-line interface for running the IPTV plugin against a local media host."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aioconsole

from aioiptv.config import PipelineConfig, resolve_ffmpeg
from aioiptv.errors import IptvError, UsageError
from aioiptv.local import LocalVoiceActions
from aioiptv.playlist import PlaylistSource
from aioiptv.plugin import (
    PLAYLIST_SETTING,
    CommandSpec,
    Invoker,
    IptvPlugin,
    SettingSpec,
)
from aioiptv.registry import SessionEndedEvent, SessionEvent, SessionStartedEvent

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = 1
CONSOLE_USER_ID = 0

_BACKGROUND_COMMANDS: set[asyncio.Task[None]] = set()


@dataclass
class ConsoleCommands:
    """Command layer of the console host."""

    commands: dict[str, CommandSpec] = field(default_factory=dict)

    def register(self, command: CommandSpec) -> None:
        """Make command available to the keyboard loop."""
        self.commands[command.name] = command


@dataclass
class ConsoleSettings:
    """Settings layer of the console host."""

    specs: dict[str, SettingSpec] = field(default_factory=dict)
    values: dict[str, str] = field(default_factory=dict)

    def register(self, setting: SettingSpec) -> None:
        """Declare a setting, keeping a value that was set beforehand."""
        self.specs[setting.key] = setting
        self.values.setdefault(setting.key, setting.default)

    def get(self, key: str) -> str | None:
        """Return the current value of a setting."""
        return self.values.get(key)


@dataclass
class ConsoleHost:
    """Plugin context backed by the local media host."""

    path: Path
    voice: LocalVoiceActions
    commands: ConsoleCommands = field(default_factory=ConsoleCommands)
    settings: ConsoleSettings = field(default_factory=ConsoleSettings)

    async def invoke(self, name: str, invoker: Invoker, params: dict[str, Any]) -> str | None:
        """Run a registered command."""
        command = self.commands.commands.get(name)
        if command is None:
            raise UsageError(f"Unknown command {name!r}")
        return await command.executes(invoker, params)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the console host."""
    parser = argparse.ArgumentParser(description="Run the IPTV plugin against a local media host")
    parser.add_argument(
        "--channel",
        type=int,
        default=DEFAULT_CHANNEL,
        help="Voice channel id the console user is in",
    )
    parser.add_argument(
        "--playlist",
        default=None,
        help="M3U playlist file, or an http(s) URL to download it from",
    )
    parser.add_argument(
        "--work-dir",
        type=Path,
        default=Path.cwd() / "iptv-data",
        help="Directory holding the HLS buffers",
    )
    parser.add_argument(
        "--ffmpeg",
        default=None,
        help="Path of the ffmpeg executable. Defaults to a bundled one, then PATH",
    )
    parser.add_argument(
        "--listen-ip",
        default="127.0.0.1",
        help="IP address the RTP sockets are bound to",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level to use",
    )
    return parser.parse_args(argv)


def _read_playlist_setting(value: str) -> str:
    """Return the playlist setting for a --playlist argument."""
    if PlaylistSource.is_url(value):
        return value
    return Path(value).expanduser().read_text(encoding="utf-8", errors="replace")


async def main_async(argv: Sequence[str] | None = None) -> int:
    """Entry point executing the asynchronous CLI workflow."""
    args = parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(level=getattr(logging, args.log_level))

    voice = LocalVoiceActions(listen_ip=args.listen_ip)
    voice.open_router(args.channel)
    host = ConsoleHost(path=args.work_dir, voice=voice)
    if args.playlist is not None:
        try:
            host.settings.values[PLAYLIST_SETTING] = _read_playlist_setting(args.playlist)
        except OSError as err:
            logger.error("Could not read playlist %s: %s", args.playlist, err)  # noqa: TRY400
            return 1

    config = PipelineConfig(ffmpeg_path=args.ffmpeg or resolve_ffmpeg(args.work_dir))
    plugin = IptvPlugin(config=config)
    plugin.on_load(host)
    assert plugin.registry is not None
    remove_listener = plugin.registry.add_event_listener(_print_session_event)
    invoker = Invoker(user_id=CONSOLE_USER_ID, current_voice_channel_id=args.channel)

    _print_instructions()
    keyboard_task = asyncio.create_task(_keyboard_loop(host, invoker))

    loop = asyncio.get_running_loop()

    def signal_handler() -> None:
        logger.debug("Received interrupt signal, shutting down...")
        keyboard_task.cancel()

    loop.add_signal_handler(signal.SIGINT, signal_handler)

    try:
        await keyboard_task
    except asyncio.CancelledError:  # pragma: no cover - cancellation path
        logger.debug("Keyboard loop cancelled")
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        remove_listener()
        await plugin.on_unload()

    return 0


async def _print_session_event(event: SessionEvent) -> None:
    if isinstance(event, SessionStartedEvent):
        _print_event(f"Channel {event.channel_id}: {event.title} is live")
    elif isinstance(event, SessionEndedEvent):
        _print_event(f"Channel {event.channel_id}: stream ended")


async def _keyboard_loop(host: ConsoleHost, invoker: Invoker) -> None:
    try:
        while True:
            try:
                line = await aioconsole.ainput()
            except EOFError:
                break
            raw_line = line.strip()
            if not raw_line:
                continue
            keyword, _, rest = raw_line.partition(" ")
            keyword = keyword.lower()
            rest = rest.strip()
            if keyword in {"quit", "exit", "q"}:
                break
            if keyword == "close-router":
                _close_router(host.voice, invoker)
                continue
            if keyword == "rtp":
                _print_rtp_counts(host.voice, invoker)
                continue
            request = _parse_command(keyword, rest)
            if request is None:
                _print_event("Unknown command")
                continue
            # Starting waits for the HLS buffer, keep accepting input meanwhile
            task = asyncio.create_task(_run_command(host, invoker, *request))
            _BACKGROUND_COMMANDS.add(task)
            task.add_done_callback(_BACKGROUND_COMMANDS.discard)
    except asyncio.CancelledError:
        # Graceful shutdown on Ctrl+C
        logger.debug("Keyboard loop cancelled, exiting gracefully")
        raise


def _parse_command(keyword: str, rest: str) -> tuple[str, dict[str, Any]] | None:
    """Map a console line onto a plugin command name and its parameters."""
    if keyword == "start":
        if not rest:
            return "iptv_start", {}
        url, _, name = rest.partition(" ")
        params: dict[str, Any] = {"sourceUrl": url}
        if name.strip():
            params["streamName"] = name.strip()
        return "iptv_start", params
    if keyword == "play":
        return "iptv_play", {"channelName": rest}
    if keyword in {"stop", "s"}:
        return "iptv_stop", {}
    if keyword == "clean":
        return "iptv_clean", {}
    if keyword == "cleanall":
        return "iptv_cleanall", {}
    if keyword == "status":
        return "iptv_status", {}
    return None


async def _run_command(
    host: ConsoleHost, invoker: Invoker, name: str, params: dict[str, Any]
) -> None:
    try:
        reply = await host.invoke(name, invoker, params)
    except UsageError as err:
        _print_event(str(err))
    except IptvError as err:
        _print_event(f"Failed: {err}")
    except Exception:
        logger.exception("Unexpected error running %s", name)
        _print_event("Unexpected error occurred")
    else:
        if reply:
            _print_event(reply)


def _close_router(voice: LocalVoiceActions, invoker: Invoker) -> None:
    channel_id = invoker.current_voice_channel_id
    assert channel_id is not None
    router = voice.get_router(channel_id)
    if router is None:
        _print_event("No router open")
        return
    router.close()
    voice.open_router(channel_id)
    _print_event("Router closed and reopened")


def _print_rtp_counts(voice: LocalVoiceActions, invoker: Invoker) -> None:
    channel_id = invoker.current_voice_channel_id
    assert channel_id is not None
    counts = voice.packet_counts(channel_id)
    if not counts:
        _print_event("No RTP packets received")
        return
    for key, count in counts.items():
        _print_event(f"pt/ssrc {key}: {count} packets")


def _print_event(message: str) -> None:
    print(message, flush=True)  # noqa: T201


def _print_instructions() -> None:
    print(  # noqa: T201
        (
            "Commands: start <url> [name], play <channel>, stop(s), clean, cleanall, status, "
            "rtp, close-router, quit(q)"
        ),
        flush=True,
    )


def main() -> int:
    """Run the console host."""
    return asyncio.run(main_async(sys.argv[1:]))


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
