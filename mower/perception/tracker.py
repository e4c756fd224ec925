"""
Perception aggregator: turns single-frame detections into tracked targets.

Detections are associated to existing tracks of the same class by nearest
bounding-box center within a gating distance, smoothed with an exponential
moving average, and pruned once they have not been seen for longer than
the staleness timeout. Once per control tick the aggregator publishes an
immutable ``PerceptionSnapshot``.

The aggregator also watches the detector itself: an empty frame means
"no objects", while no frame at all for longer than ``detector_timeout``
is reported as ``perception_stale``.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np

from ..core.config import PerceptionConfig
from ..core.errors import PerceptionStale
from .classes import ObjectClass
from .detector import Detection
from .geometry import bearing_from_pixel, center_distance_matrix, range_from_height

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrackedTarget:
    """Published, immutable view of a tracked object."""

    target_id: int
    label: ObjectClass
    bearing_deg: float  # 0 = straight ahead, positive = right
    distance_m: float
    age: int  # Number of matched detections
    first_seen: float
    last_seen: float
    center: tuple[float, float]  # Smoothed bbox center (pixels)
    size: tuple[float, float]  # Smoothed bbox width, height (pixels)
    confidence: float

    @property
    def is_pylon(self) -> bool:
        return self.label == ObjectClass.PYLON

    def since_seen(self, now: float) -> float:
        """Seconds since the last matched detection."""
        return now - self.last_seen


@dataclass(frozen=True)
class PerceptionSnapshot:
    """Targets published for one control tick, nearest first."""

    timestamp: float
    targets: tuple[TrackedTarget, ...] = ()
    perception_stale: bool = False
    stale_for: float = 0.0  # Seconds since the detector went stale

    def pylons(self) -> list[TrackedTarget]:
        return [t for t in self.targets if t.is_pylon]

    def of_class(self, *labels: ObjectClass) -> list[TrackedTarget]:
        wanted = set(labels)
        return [t for t in self.targets if t.label in wanted]

    def nearest(
        self,
        label: ObjectClass,
        max_bearing_deg: Optional[float] = None,
    ) -> Optional[TrackedTarget]:
        """Nearest target of a class, optionally only within a bearing cone."""
        for target in self.targets:
            if target.label != label:
                continue
            if max_bearing_deg is not None and abs(target.bearing_deg) > max_bearing_deg:
                continue
            return target
        return None

    def require_fresh(self) -> None:
        """Raise PerceptionStale if the detector has gone silent."""
        if self.perception_stale:
            raise PerceptionStale(f"Detector silent, stale for {self.stale_for:.1f}s")


@dataclass
class _Track:
    """Mutable track state, private to the aggregator."""

    target_id: int
    label: ObjectClass
    center: np.ndarray
    size: np.ndarray
    confidence: float
    first_seen: float
    last_seen: float
    hits: int = 1

    @property
    def gate_size(self) -> float:
        return float(max(self.size))


class TargetTracker:
    """
    Nearest-center multi-object tracker with staleness pruning.

    ``ingest``/``ingest_frame`` may be called from the inference thread;
    ``tick`` is called once per control cycle from the control loop.

    Usage:
        tracker = TargetTracker(config.perception)

        # Inference thread, every frame:
        tracker.ingest_frame(detections, timestamp)

        # Control loop, every tick:
        snapshot = tracker.tick(now)
        for target in snapshot.pylons():
            print(f"Pylon {target.target_id}: {target.distance_m:.2f} m")
    """

    def __init__(self, config: Optional[PerceptionConfig] = None, start_time: Optional[float] = None):
        self.config = config or PerceptionConfig()
        self._tracks: dict[int, _Track] = {}
        self._next_id = 1
        self._pending: list[Detection] = []
        self._last_report: Optional[float] = start_time
        self._lock = threading.Lock()
        self._was_stale = False
        self._latest: Optional[PerceptionSnapshot] = None

        # Statistics
        self._frames = 0
        self._discarded = 0

    def ingest(self, detection: Detection) -> None:
        """Queue a single detection for the next tick."""
        self.ingest_frame([detection], detection.timestamp)

    def ingest_frame(self, detections: Iterable[Detection], timestamp: float) -> None:
        """Record a detector report (possibly empty) and queue its detections."""
        accepted = []
        for det in detections:
            if det.confidence < det.label.policy.min_confidence:
                self._discarded += 1
                continue
            accepted.append(det)

        with self._lock:
            self._pending.extend(accepted)
            if self._last_report is None or timestamp > self._last_report:
                self._last_report = timestamp
            self._frames += 1

    def tick(self, now: float) -> PerceptionSnapshot:
        """
        Associate pending detections, prune stale tracks, publish a snapshot.

        Args:
            now: Control-loop time of this tick

        Returns:
            Immutable snapshot of the currently tracked targets
        """
        with self._lock:
            pending = self._pending
            self._pending = []
            if self._last_report is None:
                self._last_report = now
            last_report = self._last_report

        # Associate frame by frame so one frame never feeds a track twice
        frames: dict[float, list[Detection]] = {}
        for det in pending:
            frames.setdefault(det.timestamp, []).append(det)
        for timestamp in sorted(frames):
            self._associate(frames[timestamp])

        self._remove_stale_tracks(now)

        silent_for = now - last_report
        stale = silent_for > self.config.detector_timeout
        stale_for = silent_for - self.config.detector_timeout if stale else 0.0
        if stale and not self._was_stale:
            logger.warning(f"Perception stale: no detector report for {silent_for:.1f}s")
        elif self._was_stale and not stale:
            logger.info("Perception recovered")
        self._was_stale = stale

        self._latest = PerceptionSnapshot(
            timestamp=now,
            targets=tuple(self._publish()),
            perception_stale=stale,
            stale_for=stale_for,
        )
        return self._latest

    def _associate(self, detections: list[Detection]) -> None:
        """Greedy nearest-center matching of one frame's detections."""
        by_class: dict[ObjectClass, list[Detection]] = {}
        for det in detections:
            by_class.setdefault(det.label, []).append(det)

        for label, dets in by_class.items():
            track_ids = [tid for tid, t in self._tracks.items() if t.label == label]
            matches, unmatched = self._match(dets, track_ids)

            for det_idx, track_id in matches:
                self._update_track(self._tracks[track_id], dets[det_idx])

            for det_idx in unmatched:
                self._create_track(dets[det_idx])

    def _match(
        self,
        dets: list[Detection],
        track_ids: list[int],
    ) -> tuple[list[tuple[int, int]], list[int]]:
        """
        Greedy matching by smallest center distance inside the gate.

        Returns:
            Tuple of (matches, unmatched_detections) where matches is a
            list of (detection_idx, track_id) pairs
        """
        if not track_ids:
            return [], list(range(len(dets)))

        tracks = [self._tracks[tid] for tid in track_ids]
        matrix = center_distance_matrix(
            [d.center for d in dets],
            [tuple(t.center) for t in tracks],
        )

        # Gate grows with the apparent size of the tracked box
        gates = np.array(
            [self.config.gating_distance_px + self.config.gating_size_ratio * t.gate_size for t in tracks]
        )
        matrix = np.where(matrix <= gates[None, :], matrix, np.inf)

        matches: list[tuple[int, int]] = []
        while matrix.size > 0 and np.isfinite(matrix).any():
            det_idx, track_idx = np.unravel_index(np.argmin(matrix), matrix.shape)
            matches.append((int(det_idx), track_ids[track_idx]))
            matrix[det_idx, :] = np.inf
            matrix[:, track_idx] = np.inf

        matched = {d for d, _ in matches}
        unmatched = [i for i in range(len(dets)) if i not in matched]
        return matches, unmatched

    def _update_track(self, track: _Track, det: Detection) -> None:
        """Exponential smoothing toward the new measurement."""
        a = self.config.smoothing_alpha
        track.center = (1.0 - a) * track.center + a * np.asarray(det.center, dtype=np.float64)
        track.size = (1.0 - a) * track.size + a * np.asarray(det.size, dtype=np.float64)
        track.confidence = (1.0 - a) * track.confidence + a * det.confidence
        track.last_seen = max(track.last_seen, det.timestamp)
        track.hits += 1

    def _create_track(self, det: Detection) -> None:
        track = _Track(
            target_id=self._next_id,
            label=det.label,
            center=np.asarray(det.center, dtype=np.float64),
            size=np.asarray(det.size, dtype=np.float64),
            confidence=det.confidence,
            first_seen=det.timestamp,
            last_seen=det.timestamp,
        )
        self._tracks[self._next_id] = track
        logger.debug(f"New {det.label.value} target {self._next_id}")
        self._next_id += 1

    def _remove_stale_tracks(self, now: float) -> None:
        """Remove tracks that haven't been seen within the staleness timeout."""
        to_remove = [
            tid
            for tid, track in self._tracks.items()
            if now - track.last_seen > self.config.staleness_timeout
        ]
        for tid in to_remove:
            logger.debug(f"Pruned {self._tracks[tid].label.value} target {tid}")
            del self._tracks[tid]

    def _publish(self) -> list[TrackedTarget]:
        camera = self.config.camera
        targets = []
        for track in self._tracks.values():
            if track.hits < self.config.min_hits:
                continue
            targets.append(
                TrackedTarget(
                    target_id=track.target_id,
                    label=track.label,
                    bearing_deg=bearing_from_pixel(float(track.center[0]), camera),
                    distance_m=range_from_height(float(track.size[1]), track.label.policy.height_m, camera),
                    age=track.hits,
                    first_seen=track.first_seen,
                    last_seen=track.last_seen,
                    center=(float(track.center[0]), float(track.center[1])),
                    size=(float(track.size[0]), float(track.size[1])),
                    confidence=float(track.confidence),
                )
            )
        targets.sort(key=lambda t: t.distance_m)
        return targets

    @property
    def latest(self) -> Optional[PerceptionSnapshot]:
        """Most recently published snapshot."""
        return self._latest

    def reset(self) -> None:
        """Clear all tracks and reset ID counter."""
        with self._lock:
            self._pending.clear()
        self._tracks.clear()
        self._next_id = 1

    def get_stats(self) -> dict:
        """Get tracker statistics."""
        return {
            "total_tracks": len(self._tracks),
            "next_id": self._next_id,
            "frames": self._frames,
            "discarded": self._discarded,
        }
