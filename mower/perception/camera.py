"""Camera capture via OpenCV.

A capture thread reads frames from a V4L2/USB camera and pushes them into
the ``LatestFrameBuffer`` consumed by the inference worker. The most recent
frame is also kept so it can be written to disk as notification evidence.
"""

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import cv2
import numpy as np

from .frames import Frame, LatestFrameBuffer

logger = logging.getLogger(__name__)


@dataclass
class CameraConfig:
    """Camera configuration."""

    device: int = 0
    width: int = 320
    height: int = 240
    fps: float = 10.0
    evidence_dir: str = "/tmp/mower-evidence"


class CameraCapture:
    """Background frame grabber.

    Usage:
        buffer = LatestFrameBuffer()
        camera = CameraCapture(CameraConfig(device=0), buffer)
        if camera.start():
            ...
            path = camera.save_latest()  # evidence image for a notification
            camera.stop()
    """

    def __init__(
        self,
        config: Optional[CameraConfig] = None,
        buffer: Optional[LatestFrameBuffer] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CameraConfig()
        self.buffer = buffer or LatestFrameBuffer()
        self._clock = clock
        self._capture: Optional[cv2.VideoCapture] = None
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._latest: Optional[np.ndarray] = None
        self._sequence = 0
        self.read_errors = 0

    def start(self) -> bool:
        """Open the device and start capturing.

        Returns:
            True if the camera was opened
        """
        if self._running:
            logger.warning("Camera already running")
            return True

        capture = cv2.VideoCapture(self.config.device)
        if not capture.isOpened():
            logger.error(f"Could not open camera device {self.config.device}")
            return False
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.config.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.config.height)
        capture.set(cv2.CAP_PROP_FPS, self.config.fps)
        self._capture = capture

        self._running = True
        self._thread = threading.Thread(target=self._capture_loop, name="camera", daemon=True)
        self._thread.start()
        logger.info(f"Camera {self.config.device} started at {self.config.width}x{self.config.height}")
        return True

    def stop(self) -> None:
        """Stop capturing and release the device."""
        self._running = False
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        if self._capture is not None:
            self._capture.release()
            self._capture = None
        logger.info("Camera stopped")

    def _capture_loop(self) -> None:
        period = 1.0 / self.config.fps
        while self._running:
            ok, image = self._capture.read()
            if not ok:
                self.read_errors += 1
                if self._running:  # Only log if not shutting down
                    logger.warning("Camera read failed")
                time.sleep(period)
                continue

            self._sequence += 1
            with self._lock:
                self._latest = image
            self.buffer.put(Frame(image=image, timestamp=self._clock(), sequence=self._sequence))

    def save_latest(self) -> Optional[str]:
        """Write the most recent frame as JPEG.

        Returns:
            Path of the written image, None if no frame is available
        """
        with self._lock:
            image = None if self._latest is None else self._latest.copy()
        if image is None:
            return None

        directory = Path(self.config.evidence_dir)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"evidence_{self._sequence:06d}.jpg"
        if not cv2.imwrite(str(path), image):
            logger.warning(f"Could not write evidence image {path}")
            return None
        return str(path)
