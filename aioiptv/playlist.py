"""M3U playlist parsing and fuzzy channel lookup."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from types import TracebackType
from typing import Self

from aiohttp import ClientError, ClientSession, ClientTimeout
from rapidfuzz import fuzz, process, utils

from aioiptv.errors import NotFoundError, ParseError, PlaylistEmptyError, UsageError
from aioiptv.models.playlist import PlaylistEntry

logger = logging.getLogger(__name__)

NAME_WEIGHT = 1.0
ALTERNATE_WEIGHT = 0.85
GROUP_WEIGHT = 0.7
RELEVANCE_FLOOR = 60.0
"""Weighted scores (0-100) must be strictly above this to count as a match."""
MIN_QUERY_LENGTH = 2
"""Shorter queries (after normalization) match nothing."""

FETCH_TIMEOUT_S = 15

_ATTRIBUTE = re.compile(r'([A-Za-z0-9_-]+)="([^"]*)"')


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------
def _split_extinf(body: str) -> tuple[str, str]:
    """Split the part after ``#EXTINF:`` into its attribute section and title."""
    in_quotes = False
    split_at = -1
    for index, char in enumerate(body):
        if char == '"':
            in_quotes = not in_quotes
        elif char == "," and not in_quotes:
            split_at = index
            break
    if split_at < 0:
        return body, ""
    return body[:split_at], body[split_at + 1 :]


@dataclass
class _PendingEntry:
    line: int
    title: str
    attributes: dict[str, str]
    group: str | None = None


def parse_playlist(raw: str) -> list[PlaylistEntry]:
    """
    Parse an M3U document into its entries.

    Raises:
        ParseError: The document is not M3U, or an entry lacks its URL.
    """
    entries: list[PlaylistEntry] = []
    pending: _PendingEntry | None = None
    saw_marker = False

    for lineno, raw_line in enumerate(raw.splitlines(), start=1):
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith("#EXTM3U"):
            saw_marker = True
        elif line.startswith("#EXTINF:"):
            if pending is not None:
                raise ParseError("#EXTINF without a stream URL", pending.line)
            saw_marker = True
            attribute_part, title = _split_extinf(line[len("#EXTINF:") :])
            pending = _PendingEntry(
                line=lineno,
                title=title.strip(),
                attributes=dict(_ATTRIBUTE.findall(attribute_part)),
            )
        elif line.startswith("#EXTGRP:"):
            if pending is not None:
                pending.group = line[len("#EXTGRP:") :].strip() or None
        elif line.startswith("#"):
            continue
        else:
            if pending is None:
                raise ParseError("Stream URL without a preceding #EXTINF", lineno)
            entries.append(_build_entry(pending, line, len(entries) + 1))
            pending = None

    if pending is not None:
        raise ParseError("#EXTINF without a stream URL", pending.line)
    if not saw_marker:
        raise ParseError("Not an M3U playlist")
    return entries


def _build_entry(pending: _PendingEntry, url: str, position: int) -> PlaylistEntry:
    attributes = pending.attributes
    tvg_id = attributes.get("tvg-id") or None
    tvg_name = attributes.get("tvg-name") or None
    name = pending.title or tvg_name or tvg_id or f"Channel {position}"
    return PlaylistEntry(
        name=name,
        url=url,
        tvg_id=tvg_id,
        tvg_name=tvg_name,
        logo=attributes.get("tvg-logo") or None,
        group=attributes.get("group-title") or pending.group,
    )


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------
def _prepare(value: str | None) -> str | None:
    if not value:
        return None
    return utils.default_process(value) or None


class PlaylistIndex:
    """Fuzzy search over the name, alternate id and group of playlist entries."""

    def __init__(self, entries: list[PlaylistEntry]) -> None:
        """Build the index for entries."""
        self.entries = entries
        self._fields = (
            (NAME_WEIGHT, [_prepare(entry.name) for entry in entries]),
            (ALTERNATE_WEIGHT, [_prepare(entry.alternate_name) for entry in entries]),
            (GROUP_WEIGHT, [_prepare(entry.group) for entry in entries]),
        )

    def search(self, query: str, limit: int = 5) -> list[tuple[PlaylistEntry, float]]:
        """Return up to limit entries scoring above the relevance floor, best first."""
        processed = utils.default_process(query)
        if len(processed) < MIN_QUERY_LENGTH:
            return []
        best: dict[int, float] = {}
        for weight, choices in self._fields:
            cutoff = RELEVANCE_FLOOR / weight
            if cutoff > 100:
                continue
            for _choice, score, index in process.extract(
                processed,
                choices,
                scorer=fuzz.WRatio,
                processor=None,
                score_cutoff=cutoff,
                limit=None,
            ):
                weighted = score * weight
                # score_cutoff keeps scores equal to the floor
                if weighted <= RELEVANCE_FLOOR:
                    continue
                if weighted > best.get(index, 0.0):
                    best[index] = weighted
        ranked = sorted(best.items(), key=lambda item: (-item[1], item[0]))
        return [(self.entries[index], score) for index, score in ranked[:limit]]

    def best_match(self, query: str) -> PlaylistEntry:
        """
        Return the single best entry for query.

        Raises:
            NotFoundError: Nothing scores above the relevance floor.
        """
        results = self.search(query, limit=1)
        if not results:
            raise NotFoundError(f"No channel matching {query!r} found in the playlist.")
        entry, score = results[0]
        logger.debug("Matched %r to %r (score %.1f)", query, entry.name, score)
        return entry


class PlaylistResolver:
    """
    Resolves channel names against a raw playlist document.

    The parsed entries, their index and any parse error are cached until the
    raw document changes.
    """

    _raw: str | None
    _index: PlaylistIndex | None
    _error: ParseError | None

    def __init__(self) -> None:
        """Initialize an empty cache."""
        self._raw = None
        self._index = None
        self._error = None

    @property
    def entries(self) -> list[PlaylistEntry]:
        """Return the entries of the cached document."""
        return self._index.entries if self._index is not None else []

    def load(self, raw: str) -> PlaylistIndex:
        """
        Return the index for raw, parsing only if raw differs from the cached document.

        Raises:
            PlaylistEmptyError: raw is blank.
            ParseError: raw is malformed; raised again for every call until raw changes.
        """
        if not raw or not raw.strip():
            raise PlaylistEmptyError("The playlist is empty. Configure it in the plugin settings.")
        if raw != self._raw:
            self._raw = raw
            self._index = None
            self._error = None
            try:
                entries = parse_playlist(raw)
            except ParseError as err:
                logger.warning("Could not parse playlist: %s", err)
                self._error = err
            else:
                logger.debug("Parsed playlist with %d entries", len(entries))
                self._index = PlaylistIndex(entries)
        if self._error is not None:
            raise self._error.with_traceback(None)
        assert self._index is not None
        return self._index

    def resolve(self, raw: str, query: str) -> PlaylistEntry:
        """
        Return the entry of raw best matching query.

        Raises:
            PlaylistEmptyError: raw is blank.
            ParseError: raw is malformed.
            NotFoundError: No entry is a good enough match.
        """
        return self.load(raw).best_match(query)


class PlaylistSource:
    """
    Turns the playlist setting into document text.

    The setting holds either the M3U document itself or an http(s) URL that
    serves it.
    """

    def __init__(self, session: ClientSession | None = None) -> None:
        """Initialize the source, optionally with a shared aiohttp session."""
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> Self:
        """Enter the async context."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Close the owned HTTP session."""
        await self.close()

    @staticmethod
    def is_url(setting: str) -> bool:
        """Return True if setting points at a remote playlist."""
        value = setting.strip()
        return "\n" not in value and value.lower().startswith(("http://", "https://"))

    async def load(self, setting: str | None) -> str:
        """
        Return the playlist document described by setting.

        Raises:
            PlaylistEmptyError: The setting is blank.
            UsageError: The remote playlist could not be downloaded.
        """
        if not setting or not setting.strip():
            raise PlaylistEmptyError("The playlist is empty. Configure it in the plugin settings.")
        if not self.is_url(setting):
            return setting
        url = setting.strip()
        if self._session is None:
            self._session = ClientSession(timeout=ClientTimeout(total=FETCH_TIMEOUT_S))
        logger.debug("Downloading playlist from %s", url)
        try:
            async with self._session.get(url) as response:
                response.raise_for_status()
                return await response.text()
        except (ClientError, TimeoutError) as err:
            raise UsageError(f"Could not download the playlist: {err}") from err

    async def close(self) -> None:
        """Close the HTTP session if this source created it."""
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
