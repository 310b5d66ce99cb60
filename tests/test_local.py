"""Tests for the local media host used by the console."""

import asyncio
import struct
from unittest.mock import MagicMock

from aioiptv.config import PipelineConfig
from aioiptv.local import EventEmitter, LocalVoiceActions
from aioiptv.models.rtp import PlainTransportOptions, audio_producer_options


def _rtp_packet(payload_type: int, ssrc: int, seq: int = 0) -> bytes:
    header = struct.pack("!BBHII", 0x80, payload_type, seq, 0, ssrc)
    return header + b"\x00" * 20


class _Sender(asyncio.DatagramProtocol):
    pass


class TestEventEmitter:
    """Tests for EventEmitter."""

    def test_once_fires_once(self):
        """Test one-shot handlers are removed after firing."""
        emitter = EventEmitter()
        persistent = MagicMock()
        one_shot = MagicMock()
        emitter.on("close", persistent)
        emitter.once("close", one_shot)

        emitter.emit("close")
        emitter.emit("close")

        assert persistent.call_count == 2
        one_shot.assert_called_once_with()

    def test_failing_handler_does_not_stop_others(self):
        """Test an exception in one handler is logged and the next still runs."""
        emitter = EventEmitter()
        after = MagicMock()
        emitter.on("close", MagicMock(side_effect=RuntimeError("boom")))
        emitter.on("close", after)

        emitter.emit("close")

        after.assert_called_once_with()


class TestLocalVoiceActions:
    """Tests for routers, transports and packet counting."""

    async def test_counts_rtp_packets(self, wait_until):
        """Test packets sent to a transport are counted per payload type and SSRC."""
        voice = LocalVoiceActions()
        router = voice.open_router(1)
        listen_info = await voice.get_listen_info()
        transport = await router.create_plain_transport(
            PlainTransportOptions(listen_info=listen_info, rtcp_mux=True)
        )
        loop = asyncio.get_running_loop()
        sender, _ = await loop.create_datagram_endpoint(
            _Sender, remote_addr=("127.0.0.1", transport.local_port)
        )
        try:
            sender.sendto(_rtp_packet(111, 22222222, 1))
            sender.sendto(_rtp_packet(111, 22222222, 2))
            sender.sendto(b"junk")
            await wait_until(lambda: transport.counter.malformed == 1)
            await wait_until(lambda: voice.packet_counts(1) == {"111/22222222": 2})
        finally:
            sender.close()
            router.close()

    async def test_router_close(self):
        """Test closing a router emits @close and closes its transports and producers."""
        voice = LocalVoiceActions()
        router = voice.open_router(1)
        listener = MagicMock()
        router.once("@close", listener)
        transport = await router.create_plain_transport(
            PlainTransportOptions(listen_info=await voice.get_listen_info(), rtcp_mux=False)
        )
        producer = await transport.produce(audio_producer_options(PipelineConfig()))
        producer_closed = MagicMock()
        producer.observer.once("close", producer_closed)

        router.close()
        router.close()

        listener.assert_called_once_with()
        producer_closed.assert_called_once_with()
        assert transport.closed
        assert voice.get_router(1) is None
        assert voice.open_router(1) is not router

    async def test_unknown_channel(self):
        """Test channels without a router."""
        voice = LocalVoiceActions()

        assert voice.get_router(5) is None
        assert voice.packet_counts(5) == {}
