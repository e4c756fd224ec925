"""Audible announcements.

The state machine announces detections, faults and pylon events through a
``Speaker``. Playback is fire-and-forget: a failing speaker is logged and
never affects control.
"""

import logging
import subprocess
from enum import Enum
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class Announcement(Enum):
    """Announcement names (one audio clip each)."""
    START_MOWING = "start_mowing"
    CLOSE_TO_CONE = "close_to_cone"
    CONE_NOT_FOUND = "cone_not_found"
    PERSON_DETECTING = "person_detecting_warn"
    ANIMAL_DETECTING = "animal_detecting"
    HIGH_TEMP = "high_temp"
    BUMPED = "bumped"


class Speaker:
    """Announcement backend."""

    def say(self, announcement: Announcement) -> None:
        raise NotImplementedError


class LoggingSpeaker(Speaker):
    """Backend that only logs announcements."""

    def say(self, announcement: Announcement) -> None:
        logger.info(f"speak: {announcement.value}")


class RecordingSpeaker(Speaker):
    """Backend keeping every announcement (simulation and tests)."""

    def __init__(self):
        self.spoken: list[Announcement] = []

    def say(self, announcement: Announcement) -> None:
        self.spoken.append(announcement)


class AudioFileSpeaker(Speaker):
    """
    Plays ``<asset_dir>/<name>.mp3`` with an external player.

    The player runs detached; ``say`` returns immediately.
    """

    def __init__(self, asset_dir: str = "asset/audio/en", player: str = "mpg123"):
        self.asset_dir = Path(asset_dir)
        self.player = player
        self._process: Optional[subprocess.Popen] = None

    def say(self, announcement: Announcement) -> None:
        path = self.asset_dir / f"{announcement.value}.mp3"
        if not path.exists():
            logger.warning(f"No audio clip for {announcement.value} at {path}")
            return
        # One clip at a time: a new announcement cuts the previous one
        if self._process is not None and self._process.poll() is None:
            self._process.terminate()
        self._process = subprocess.Popen(
            [self.player, "-q", str(path)],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
