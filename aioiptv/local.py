"""
Stand-alone media host for running the plugin outside a real room.

Plain transports are real UDP sockets on the local machine, so the ffmpeg
relays have somewhere to send to, and every received RTP packet is counted
per payload type and SSRC. Producers and room streams only keep their options
and emit ``close`` like the real ones do.
"""

from __future__ import annotations

import asyncio
import logging
import struct
import uuid
from collections import Counter
from collections.abc import Callable
from typing import Any

from aioiptv.media import PRODUCER_CLOSE_EVENT, ROUTER_CLOSE_EVENT
from aioiptv.models.rtp import (
    ListenInfo,
    PlainTransportOptions,
    ProducerOptions,
    StreamOptions,
)

logger = logging.getLogger(__name__)

RTP_HEADER_SIZE = 12
RTP_VERSION = 2


class EventEmitter:
    """Minimal named-event dispatcher with persistent and one-shot handlers."""

    def __init__(self) -> None:
        """Initialize without handlers."""
        self._handlers: dict[str, list[tuple[Callable[..., Any], bool]]] = {}

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        """Call handler every time event is emitted."""
        self._handlers.setdefault(event, []).append((handler, False))

    def once(self, event: str, handler: Callable[..., Any]) -> None:
        """Call handler the next time event is emitted."""
        self._handlers.setdefault(event, []).append((handler, True))

    def emit(self, event: str, *args: Any) -> None:
        """Call all handlers registered for event."""
        handlers = self._handlers.get(event, [])
        self._handlers[event] = [(h, once) for h, once in handlers if not once]
        for handler, _once in handlers:
            try:
                handler(*args)
            except Exception:
                logger.exception("Error in %r handler", event)


class _RtpCounter(asyncio.DatagramProtocol):
    """Counts RTP packets by (payload type, SSRC)."""

    def __init__(self) -> None:
        self.packets: Counter[tuple[int, int]] = Counter()
        self.bytes_received = 0
        self.malformed = 0

    def datagram_received(self, data: bytes, addr: tuple[str | Any, int]) -> None:
        self.bytes_received += len(data)
        if len(data) < RTP_HEADER_SIZE or data[0] >> 6 != RTP_VERSION:
            self.malformed += 1
            return
        payload_type = data[1] & 0x7F
        (ssrc,) = struct.unpack_from("!I", data, 8)
        self.packets[payload_type, ssrc] += 1


class LocalProducer:
    """Producer that records its options and emits ``close`` on close()."""

    def __init__(self, options: ProducerOptions) -> None:
        """Initialize the producer."""
        self.id = uuid.uuid4().hex
        self.options = options
        self.observer = EventEmitter()
        self.closed = False

    def close(self) -> None:
        """Close the producer."""
        if self.closed:
            return
        self.closed = True
        self.observer.emit(PRODUCER_CLOSE_EVENT)


class LocalPlainTransport:
    """Plain transport backed by a bound UDP socket."""

    def __init__(
        self,
        options: PlainTransportOptions,
        transport: asyncio.DatagramTransport,
        counter: _RtpCounter,
    ) -> None:
        """Do not call this constructor, use LocalRouter.create_plain_transport instead."""
        self.options = options
        self._transport = transport
        self.counter = counter
        self.producers: list[LocalProducer] = []
        self.closed = False

    @property
    def local_port(self) -> int:
        """Return the UDP port the socket is bound to."""
        return int(self._transport.get_extra_info("sockname")[1])

    async def produce(self, options: ProducerOptions) -> LocalProducer:
        """Create a producer on this transport."""
        if self.closed:
            raise RuntimeError("Transport is closed")
        producer = LocalProducer(options)
        self.producers.append(producer)
        return producer

    def close(self) -> None:
        """Close the socket and every producer on it."""
        if self.closed:
            return
        self.closed = True
        for producer in self.producers:
            producer.close()
        self._transport.close()


class LocalRouter(EventEmitter):
    """Router of one channel; closing it closes its transports and emits ``@close``."""

    def __init__(self, channel_id: int) -> None:
        """Initialize the router."""
        super().__init__()
        self.channel_id = channel_id
        self.transports: list[LocalPlainTransport] = []
        self.closed = False

    async def create_plain_transport(self, options: PlainTransportOptions) -> LocalPlainTransport:
        """Bind a UDP socket on the listen IP and wrap it as a plain transport."""
        if self.closed:
            raise RuntimeError("Router is closed")
        loop = asyncio.get_running_loop()
        transport, counter = await loop.create_datagram_endpoint(
            _RtpCounter, local_addr=(options.listen_info.ip, 0)
        )
        plain = LocalPlainTransport(options, transport, counter)
        self.transports.append(plain)
        logger.debug("Channel %s: plain transport on port %s", self.channel_id, plain.local_port)
        return plain

    def close(self) -> None:
        """Close the router."""
        if self.closed:
            return
        self.closed = True
        self.emit(ROUTER_CLOSE_EVENT)
        for transport in self.transports:
            transport.close()


class LocalRoomStream:
    """Room stream that only remembers how it was created."""

    def __init__(
        self, options: StreamOptions, video: LocalProducer, audio: LocalProducer
    ) -> None:
        """Initialize the stream."""
        self.options = options
        self.video = video
        self.audio = audio
        self.closed = False

    def close(self) -> None:
        """Remove the stream."""
        self.closed = True


class LocalVoiceActions:
    """Voice actions of the local media host."""

    def __init__(self, listen_ip: str = "127.0.0.1", announced_address: str | None = None) -> None:
        """Initialize the host; routers are opened per channel with open_router()."""
        self._listen_info = ListenInfo(ip=listen_ip, announced_address=announced_address)
        self.routers: dict[int, LocalRouter] = {}
        self.streams: list[LocalRoomStream] = []

    def open_router(self, channel_id: int) -> LocalRouter:
        """Return the router of channel_id, replacing a closed one."""
        router = self.routers.get(channel_id)
        if router is None or router.closed:
            router = self.routers[channel_id] = LocalRouter(channel_id)
        return router

    def get_router(self, channel_id: int) -> LocalRouter | None:
        """Return the open router of channel_id, if any."""
        router = self.routers.get(channel_id)
        return router if router is not None and not router.closed else None

    async def get_listen_info(self) -> ListenInfo:
        """Return the configured listen info."""
        return self._listen_info

    def create_stream(
        self, options: StreamOptions, *, video: LocalProducer, audio: LocalProducer
    ) -> LocalRoomStream:
        """Create a stream record."""
        stream = LocalRoomStream(options, video, audio)
        self.streams.append(stream)
        logger.info("Stream %r published in channel %s", options.title, options.channel_id)
        return stream

    def packet_counts(self, channel_id: int) -> dict[str, int]:
        """Return received RTP packets per ``pt/ssrc`` for channel_id."""
        router = self.routers.get(channel_id)
        if router is None:
            return {}
        counts: Counter[tuple[int, int]] = Counter()
        for transport in router.transports:
            counts.update(transport.counter.packets)
        return {f"{pt}/{ssrc}": count for (pt, ssrc), count in sorted(counts.items())}
