"""Playlist entry model."""

from __future__ import annotations

from dataclasses import dataclass

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin


@dataclass(frozen=True)
class PlaylistEntry(DataClassORJSONMixin):
    """A single playable channel listed in a playlist."""

    name: str
    """Display name, taken from the title after the comma of ``#EXTINF``."""
    url: str
    """Playable media URL."""
    tvg_id: str | None = None
    tvg_name: str | None = None
    logo: str | None = None
    """Logo URL (``tvg-logo``)."""
    group: str | None = None
    """Group label (``group-title`` or ``#EXTGRP``)."""

    class Config(BaseConfig):
        """Config for serializing entries."""

        omit_none = True

    @property
    def alternate_name(self) -> str | None:
        """Return the alternate identifier used for matching."""
        return self.tvg_name or self.tvg_id
