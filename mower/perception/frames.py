"""Bounded frame handoff between camera capture and detector inference.

Inference runs on its own thread so it never blocks the control loop. When
inference falls behind, the newest frame replaces the oldest queued one:
freshness wins over completeness.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .detector import Detection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Frame:
    """Captured camera frame."""

    image: Any  # Usually a BGR numpy array; opaque to the core
    timestamp: float
    sequence: int = 0


class LatestFrameBuffer:
    """Thread-safe bounded buffer that drops the oldest frame when full."""

    def __init__(self, maxsize: int = 1):
        """Initialize buffer.

        Args:
            maxsize: Maximum number of frames waiting for inference
        """
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self._frames: deque[Frame] = deque(maxlen=maxsize)
        self._cond = threading.Condition()
        self._closed = False
        self.dropped = 0
        self.received = 0

    def put(self, frame: Frame) -> None:
        """Add a frame without blocking, evicting the oldest if full."""
        with self._cond:
            if len(self._frames) == self._frames.maxlen:
                self.dropped += 1
            self._frames.append(frame)
            self.received += 1
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[Frame]:
        """Take the oldest queued frame, or None on timeout/close."""
        with self._cond:
            if not self._frames and not self._closed:
                self._cond.wait(timeout)
            if not self._frames:
                return None
            return self._frames.popleft()

    def close(self) -> None:
        """Wake up any waiting consumer."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._frames)


class InferenceWorker:
    """Background thread running the external detector on buffered frames.

    Example:
        buffer = LatestFrameBuffer(maxsize=1)
        worker = InferenceWorker(
            buffer,
            detect_fn=lambda frame: detector.detect(frame.image, frame.timestamp),
            on_result=tracker.ingest_frame,
        )
        worker.start()
        # camera thread: buffer.put(Frame(image, timestamp))
    """

    def __init__(
        self,
        buffer: LatestFrameBuffer,
        detect_fn: Callable[[Frame], list[Detection]],
        on_result: Callable[[list[Detection], float], None],
    ):
        self._buffer = buffer
        self._detect_fn = detect_fn
        self._on_result = on_result
        self._running = False
        self._thread: Optional[threading.Thread] = None

        # Statistics
        self.processed = 0
        self.errors = 0

    def start(self) -> bool:
        """Start background inference thread."""
        if self._running:
            logger.warning("Inference worker already running")
            return True

        self._running = True
        self._thread = threading.Thread(target=self._run_loop, name="inference", daemon=True)
        self._thread.start()
        logger.info("Inference worker started")
        return True

    def stop(self, timeout: float = 2.0) -> None:
        """Stop inference thread."""
        self._running = False
        self._buffer.close()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Inference worker stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def _run_loop(self) -> None:
        """Background loop: take newest frame, detect, hand over."""
        while self._running:
            frame = self._buffer.get(timeout=0.1)
            if frame is None:
                if self._buffer.closed:
                    break
                continue
            self.process(frame)

    def process(self, frame: Frame) -> bool:
        """Run the detector on one frame and deliver the result.

        A detector error skips the frame; the missing report eventually
        shows up as stale perception in the aggregator.
        """
        try:
            detections = self._detect_fn(frame)
        except Exception as e:
            self.errors += 1
            logger.error(f"Detector failed on frame {frame.sequence}: {e}")
            return False

        self._on_result(detections, frame.timestamp)
        self.processed += 1
        return True
