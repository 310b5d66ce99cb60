"""Shared fixtures and fakes for aioiptv tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path

import pytest

from aioiptv.config import PipelineConfig, StreamDefaults
from aioiptv.local import LocalVoiceActions
from aioiptv.pipeline import PipelineHandles, RtpTarget
from aioiptv.registry import SessionRegistry

CHANNEL_ID = 1
SOURCE_URL = "http://example.com/live/stream.ts"


class FakeHandle:
    """Stands in for a ProcessHandle without a real process."""

    def __init__(self, stage: str, pid: int) -> None:
        self.stage = stage
        self.pid = pid
        self.returncode: int | None = None
        self.kill_calls = 0
        self._exited = asyncio.Event()

    @property
    def running(self) -> bool:
        return self.returncode is None

    def kill(self) -> None:
        self.kill_calls += 1
        if self.returncode is None:
            self.exit(-9)

    def exit(self, code: int) -> None:
        self.returncode = code
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode


class FakeLauncher:
    """Records launches and returns fake pipelines."""

    def __init__(self, config: PipelineConfig | None = None) -> None:
        self.config = config or PipelineConfig()
        self.calls: list[tuple[str, RtpTarget, Path]] = []
        self.pipelines: list[PipelineHandles] = []
        self.error: BaseException | None = None
        self.gate: asyncio.Event | None = None

    async def launch(self, source_url: str, target: RtpTarget, work_dir: Path) -> PipelineHandles:
        self.calls.append((source_url, target, work_dir))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        base = 1000 + 10 * len(self.pipelines)
        pipeline = PipelineHandles(
            buffer=FakeHandle("buffer", base),  # type: ignore[arg-type]
            video_relay=FakeHandle("video-relay", base + 1),  # type: ignore[arg-type]
            audio_relay=FakeHandle("audio-relay", base + 2),  # type: ignore[arg-type]
        )
        self.pipelines.append(pipeline)
        return pipeline


@pytest.fixture
def voice() -> LocalVoiceActions:
    """Local media host with an open router for CHANNEL_ID."""
    actions = LocalVoiceActions()
    actions.open_router(CHANNEL_ID)
    return actions


@pytest.fixture
def launcher() -> FakeLauncher:
    """Fake pipeline launcher."""
    return FakeLauncher()


@pytest.fixture
async def registry(
    voice: LocalVoiceActions, launcher: FakeLauncher, tmp_path: Path
) -> AsyncIterator[SessionRegistry]:
    """Session registry over the local host and the fake launcher."""
    reg = SessionRegistry(
        voice,
        launcher,  # type: ignore[arg-type]
        work_root=tmp_path / "hls",
        defaults=StreamDefaults(),
    )
    yield reg
    reg.close()


@pytest.fixture
def wait_until() -> Callable[[Callable[[], bool]], Awaitable[None]]:
    """Return a helper waiting (briefly) for a condition to become true."""

    async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        async with asyncio.timeout(timeout):
            while not predicate():
                await asyncio.sleep(0.01)

    return _wait_until
