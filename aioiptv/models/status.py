"""Serializable session snapshots."""

from __future__ import annotations

from dataclasses import dataclass

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import SessionPhase


@dataclass
class SessionStatus(DataClassORJSONMixin):
    """Point-in-time view of one channel session."""

    channel_id: int
    phase: SessionPhase
    title: str | None = None
    source_url: str | None = None
    pids: dict[str, int] | None = None
    """Process ids keyed by pipeline stage, only while processes run."""
    started_at: float | None = None
    """Wall-clock time the session became active."""
    uptime_s: float | None = None

    class Config(BaseConfig):
        """Config for serializing status."""

        omit_none = True
