"""Exceptions raised by aioiptv."""

from __future__ import annotations


class IptvError(Exception):
    """Base class for all aioiptv errors."""


class UsageError(IptvError):
    """The command can not be carried out as requested; shown to the user as is."""


class NoChannelError(UsageError):
    """The invoker is not in a voice channel."""


class AlreadyActiveError(UsageError):
    """A stream is already live in the channel."""


class AlreadyStartingError(UsageError):
    """A stream is still starting in the channel."""


class StartAbortedError(UsageError):
    """The session was cleaned up while its start was still in progress."""


class PlaylistEmptyError(UsageError):
    """No playlist has been configured."""


class NotFoundError(UsageError):
    """No playlist entry matched the query."""


class ParseError(UsageError):
    """The playlist document could not be parsed."""

    def __init__(self, message: str, line: int | None = None) -> None:
        """Initialize the error, optionally pointing at the offending line."""
        if line is not None:
            message = f"{message} (line {line})"
        super().__init__(message)
        self.line = line


class SpawnError(IptvError):
    """An external process could not be started."""


class ReadinessTimeoutError(IptvError, TimeoutError):
    """The buffering stage did not produce enough segments in time."""


class ResourceAcquisitionError(IptvError):
    """A transport, producer or stream could not be obtained from the media host."""
