"""
Interfaces of the media host that owns the room's real-time transport.

The host hands out routers per voice channel. On a router, plain RTP
transports are created for the pipeline to send into, producers are created on
those transports, and a room stream publishes both producers to the
participants. All of these objects belong to the host; aioiptv only holds
them while a session runs and closes them on teardown.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from aioiptv.models.rtp import (
    ListenInfo,
    PlainTransportOptions,
    ProducerOptions,
    StreamOptions,
)

ROUTER_CLOSE_EVENT = "@close"
PRODUCER_CLOSE_EVENT = "close"


@runtime_checkable
class EventSource(Protocol):
    """Object emitting named events to registered handlers."""

    def on(self, event: str, handler: Callable[..., Any]) -> Any:
        """Call handler every time event is emitted."""


@runtime_checkable
class OnceEventSource(EventSource, Protocol):
    """Event source that also supports one-shot handlers."""

    def once(self, event: str, handler: Callable[..., Any]) -> Any:
        """Call handler the first time event is emitted."""


class Producer(Protocol):
    """An RTP producer fed by one plain transport."""

    @property
    def id(self) -> str:
        """Return the host's identifier of this producer."""

    @property
    def observer(self) -> EventSource:
        """Return the event source emitting ``close``."""

    def close(self) -> None:
        """Close the producer."""


class PlainTransport(Protocol):
    """Plain RTP transport listening on a host allocated UDP port."""

    @property
    def local_port(self) -> int:
        """Return the negotiated local RTP port."""

    async def produce(self, options: ProducerOptions) -> Producer:
        """Create a producer for the RTP stream sent to this transport."""

    def close(self) -> None:
        """Close the transport and every producer on it."""


class Router(EventSource, Protocol):
    """Media router of one voice channel, emitting ``@close`` when it goes away."""

    async def create_plain_transport(self, options: PlainTransportOptions) -> PlainTransport:
        """Create a plain RTP transport."""


class RoomStream(Protocol):
    """The session's feed as presented to the room."""

    def close(self) -> None:
        """Remove the stream from the room."""


class VoiceActions(Protocol):
    """Voice capabilities the host exposes to plugins."""

    def get_router(self, channel_id: int) -> Router | None:
        """Return the router of the voice channel, or None if there is none."""

    async def get_listen_info(self) -> ListenInfo:
        """Return the local bind IP and the address announced to peers."""

    def create_stream(
        self, options: StreamOptions, *, video: Producer, audio: Producer
    ) -> RoomStream:
        """Publish both producers in the room as one stream."""


def add_once_listener(
    target: EventSource | None, event: str, handler: Callable[[], None]
) -> None:
    """
    Register handler for the next emission of event on target.

    Sources without one-shot support get a plain listener; the handlers used
    here are idempotent, so repeated emissions are harmless.
    """
    if target is None:
        return

    def _handle(*_args: Any) -> None:
        handler()

    if isinstance(target, OnceEventSource):
        target.once(event, _handle)
    else:
        target.on(event, _handle)
