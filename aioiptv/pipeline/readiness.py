"""Wait for the rolling HLS buffer to hold enough segments to relay from."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from aioiptv.errors import ReadinessTimeoutError

logger = logging.getLogger(__name__)


def count_segments(playlist_text: str) -> int:
    """Count the media segment URIs listed in an HLS index."""
    return sum(
        1
        for line in playlist_text.splitlines()
        if (stripped := line.strip()) and not stripped.startswith("#")
    )


def _read_segment_count(artifact_path: Path) -> int:
    try:
        return count_segments(artifact_path.read_text(encoding="utf-8", errors="replace"))
    except FileNotFoundError:
        # The buffering stage has not written its index yet
        return 0
    except OSError as err:
        logger.debug("Could not read %s yet: %s", artifact_path, err)
        return 0


async def wait_until_ready(
    artifact_path: Path,
    min_units: int,
    timeout_s: float,
    *,
    poll_interval_s: float = 0.5,
    settle_delay_s: float = 2.0,
) -> None:
    """
    Block until the index at artifact_path lists at least min_units segments.

    Once the threshold is met, one more settle_delay_s is waited so the newest
    segment finishes being written; the count is not checked again afterwards.

    Raises:
        ReadinessTimeoutError: The threshold was not reached within timeout_s.
    """
    count = 0
    try:
        async with asyncio.timeout(timeout_s):
            while True:
                count = _read_segment_count(artifact_path)
                if count >= min_units:
                    break
                await asyncio.sleep(poll_interval_s)
    except TimeoutError as err:
        raise ReadinessTimeoutError(
            f"HLS playlist not ready within {timeout_s:.0f}s "
            f"({count}/{min_units} segments)"
        ) from err

    logger.debug("%s has %d segments, settling for %.1fs", artifact_path, count, settle_delay_s)
    await asyncio.sleep(settle_delay_s)
