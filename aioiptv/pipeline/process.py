"""Spawn external processes and drain their output into a log sink."""

from __future__ import annotations

import asyncio
import codecs
import logging
from collections.abc import Callable, Iterable, Sequence
from contextlib import suppress

from aioiptv.errors import SpawnError

logger = logging.getLogger(__name__)
ffmpeg_logger = logging.getLogger("aioiptv.ffmpeg")

READ_CHUNK_SIZE = 4096

OutputSink = Callable[[str, str], None]
"""Receives (tag, text) for every decoded chunk of process output."""


def log_output(tag: str, text: str) -> None:
    """Log process output at debug level, the default output sink."""
    ffmpeg_logger.debug("[%s] %s", tag, text)


class ProcessHandle:
    """
    A running external process together with its output drain tasks.

    Do not construct directly, use ProcessSupervisor.spawn instead.
    """

    _process: asyncio.subprocess.Process
    _stage: str
    _drain_tasks: set[asyncio.Task[None]]

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        stage: str,
        sink: OutputSink,
    ) -> None:
        """Take ownership of process and start draining its output streams."""
        self._process = process
        self._stage = stage
        self._drain_tasks = set()
        loop = asyncio.get_running_loop()
        for stream_name, stream in (("stdout", process.stdout), ("stderr", process.stderr)):
            if stream is None:
                continue
            task = loop.create_task(_drain(stream, f"{stage} {stream_name}", sink))
            self._drain_tasks.add(task)
            task.add_done_callback(self._drain_tasks.discard)

    @property
    def stage(self) -> str:
        """Return the pipeline stage this process runs."""
        return self._stage

    @property
    def pid(self) -> int:
        """Return the OS process id."""
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        """Return the exit code, or None while the process runs."""
        return self._process.returncode

    @property
    def running(self) -> bool:
        """Return True if the process has not exited yet."""
        return self._process.returncode is None

    def kill(self) -> None:
        """
        Request the process to terminate immediately.

        Does not wait for the exit. Calling this on an exited process or more
        than once does nothing.
        """
        if self._process.returncode is not None:
            return
        logger.debug("Killing %s (pid %s)", self._stage, self._process.pid)
        with suppress(ProcessLookupError):
            self._process.kill()

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""
        return await self._process.wait()

    def __repr__(self) -> str:
        """Return a debug representation."""
        return f"<ProcessHandle {self._stage} pid={self.pid} returncode={self.returncode}>"


async def _drain(stream: asyncio.StreamReader, tag: str, sink: OutputSink) -> None:
    """Forward decoded output of stream to sink until it closes."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            text = decoder.decode(chunk).strip()
            if text:
                sink(tag, text)
        if tail := decoder.decode(b"", final=True).strip():
            sink(tag, tail)
    except Exception:
        logger.exception("Error reading %s", tag)


class ProcessSupervisor:
    """Starts external processes with piped output that is drained to a sink."""

    def __init__(self, sink: OutputSink = log_output) -> None:
        """Initialize the supervisor with the sink receiving all process output."""
        self._sink = sink

    async def spawn(self, executable: str, args: Sequence[str], *, stage: str) -> ProcessHandle:
        """
        Start executable with args and return its handle.

        Raises:
            SpawnError: The executable is missing or can not be executed.
        """
        logger.debug("Spawning %s: %s %s", stage, executable, " ".join(args))
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as err:
            raise SpawnError(f"Could not start {stage} process {executable!r}: {err}") from err
        logger.info("Started %s process (pid %s)", stage, process.pid)
        return ProcessHandle(process, stage, self._sink)


def kill_all(handles: Iterable[ProcessHandle | None]) -> None:
    """Kill every handle that is present, ignoring the missing ones."""
    for handle in handles:
        if handle is not None:
            handle.kill()
