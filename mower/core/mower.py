"""Mower runtime: wires perception, behavior, drive and coordination.

Example:
    from mower.core.mower import Mower
    from mower.core.config import MowerConfig
    from mower.control.drive import LoggingActuator

    mower = Mower(MowerConfig.for_mowing(unit_id=3), LoggingActuator())
    mower.attach_detector(lambda frame: detector.detect(frame.image, frame.timestamp))
    mower.run(read_sensors)  # blocks until stop_event is set
"""

import logging
import random
import threading
import time
from typing import Callable, Optional

import numpy as np

from ..control.behavior import BehaviorStateMachine
from ..control.drive import Actuator, ActuatorCommand, DriveController
from ..control.speaker import LoggingSpeaker, Speaker
from ..coordination.notifier import (
    HttpNotifyTransport,
    LoggingNotifyTransport,
    NotificationDispatcher,
    NotificationTransport,
)
from ..coordination.swarm import UNIT_ID_RANGE, AreaClaim, SwarmCoordinator, SwarmTransport
from ..perception.detector import Detection
from ..perception.frames import Frame, InferenceWorker, LatestFrameBuffer
from ..perception.tracker import TargetTracker
from .config import MowerConfig, OperatingMode
from .errors import ActuatorFailure
from .state import Behavior, OperatorCommand, SensorReadings

logger = logging.getLogger(__name__)


class Mower:
    """
    Single mower unit.

    One ``step`` is one control tick: publish the perception snapshot,
    route operator commands, run the state machine and broadcast the area
    claim when due. Inference, notification delivery and swarm messaging
    run on their own threads and never block ``step``.
    """

    def __init__(
        self,
        config: MowerConfig,
        actuator: Actuator,
        notification_transport: Optional[NotificationTransport] = None,
        swarm_transport: Optional[SwarmTransport] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        image_fn: Optional[Callable[[], Optional[str]]] = None,
        speaker: Optional[Speaker] = None,
    ):
        """
        Initialize the mower.

        Args:
            config: Immutable mower configuration
            actuator: Motor driver backend
            notification_transport: Push transport; defaults to HTTP when a
                token is configured. Monitor modes without a token log
                notifications; mowing without a token sends none
            swarm_transport: Gossip transport (swarm disabled if None)
            rng: Random source for identity, turns and wander
            clock: Monotonic clock for ``run`` and notification cooldowns
            wall_clock: Clock stamped on swarm messages
            image_fn: Evidence image source for notifications
            speaker: Announcement backend (logging only if None)
        """
        self.config = config
        self._rng = rng or random.Random()
        self._clock = clock
        self._unit_id = config.unit_id if config.unit_id is not None else self._rng.choice(UNIT_ID_RANGE)

        if notification_transport is None and config.notification.token:
            notification_transport = HttpNotifyTransport(
                config.notification.endpoint,
                config.notification.token,
                timeout=config.notification.request_timeout_s,
            )
        elif notification_transport is None and config.mode != OperatingMode.MOW:
            logger.warning("No notification token, detections are only logged")
            notification_transport = LoggingNotifyTransport()

        self.tracker = TargetTracker(config.perception)
        self.drive = DriveController(config.drive, actuator)
        self.notifier = (
            NotificationDispatcher(config.notification, notification_transport, clock=clock, image_fn=image_fn)
            if notification_transport is not None
            else None
        )
        self.swarm = (
            SwarmCoordinator(config.swarm, self._unit_id, swarm_transport, clock=wall_clock, rng=self._rng)
            if config.swarm.enabled and swarm_transport is not None
            else None
        )
        self.behavior = BehaviorStateMachine(
            config,
            self.drive,
            notifier=self.notifier,
            swarm=self.swarm,
            rng=self._rng,
            unit_id=self._unit_id,
            speaker=speaker or LoggingSpeaker(),
        )

        self._frames: Optional[LatestFrameBuffer] = None
        self._inference: Optional[InferenceWorker] = None
        self._frame_seq = 0

        self._config_lock = threading.Lock()
        self._pending_config: Optional[MowerConfig] = None
        self._next_claim = 0.0
        self._started = False
        self._shut_down = False

        logger.info(f"Mower unit {self.unit_id} initialized in {config.mode.value} mode")

    # ----- Lifecycle -----

    def attach_detector(self, detect_fn: Callable[[Frame], list[Detection]]) -> None:
        """Run ``detect_fn`` on a background thread fed by ``submit_frame``."""
        self._frames = LatestFrameBuffer(maxsize=1)
        self._inference = InferenceWorker(self._frames, detect_fn, self.tracker.ingest_frame)
        if self._started:
            self._inference.start()

    @property
    def frame_buffer(self) -> Optional[LatestFrameBuffer]:
        """Buffer feeding the inference worker (None until a detector is attached)."""
        return self._frames

    def submit_frame(self, image: np.ndarray, timestamp: float) -> None:
        """Hand a camera frame to inference. Replaces any unprocessed frame."""
        if self._frames is None:
            raise RuntimeError("No detector attached")
        self._frame_seq += 1
        self._frames.put(Frame(image=image, timestamp=timestamp, sequence=self._frame_seq))

    def start(self) -> None:
        """Start background workers."""
        if self._started:
            return
        self._started = True
        if self.notifier is not None:
            self.notifier.start()
        if self.swarm is not None:
            self.swarm.start()
        if self._inference is not None:
            self._inference.start()

    def shutdown(self) -> None:
        """Stop actuators immediately, then stop workers without waiting on sends."""
        if self._shut_down:
            return
        self._shut_down = True
        try:
            self.drive.emergency_stop()
        except ActuatorFailure as e:
            logger.critical(f"Could not stop actuators on shutdown: {e}")

        if self._inference is not None:
            self._inference.stop()
        if self.notifier is not None:
            self.notifier.stop(flush=False)
        if self.swarm is not None:
            self.swarm.stop()
        logger.info(f"Mower unit {self.unit_id} shut down")

    # ----- Control loop -----

    def step(self, readings: SensorReadings, now: float) -> ActuatorCommand:
        """Run one control tick.

        Args:
            readings: Latest non-vision sensor sample
            now: Control-loop time

        Returns:
            The actuator command written this tick
        """
        self._swap_config(now)
        snapshot = self.tracker.tick(now)

        if self.swarm is not None:
            for command in self.swarm.pop_commands():
                self.behavior.command(command, now)

        command = self.behavior.tick(snapshot, readings, now)

        if self.swarm is not None and now >= self._next_claim:
            self.swarm.broadcast_claim(
                AreaClaim(
                    sector=self.swarm.sector_for_heading(readings.heading_deg),
                    priority=self.config.swarm.claim_priority,
                ),
                behavior=self.behavior.behavior.value,
            )
            self._next_claim = now + self.config.swarm.claim_interval_s

        return command

    def run(
        self,
        readings_fn: Callable[[], SensorReadings],
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        """Tick at ``tick_rate_hz`` until ``stop_event`` is set, then shut down."""
        stop_event = stop_event or threading.Event()
        self.start()
        try:
            while not stop_event.is_set():
                started = self._clock()
                self.step(readings_fn(), started)
                elapsed = self._clock() - started
                stop_event.wait(max(0.0, self.config.tick_period - elapsed))
        finally:
            self.shutdown()

    def command(self, command: OperatorCommand, now: float) -> None:
        """Apply a local operator command."""
        self.behavior.command(command, now)

    def apply_config(self, config: MowerConfig) -> None:
        """Schedule a configuration swap at the next tick boundary."""
        with self._config_lock:
            self._pending_config = config

    def _swap_config(self, now: float) -> None:
        with self._config_lock:
            config, self._pending_config = self._pending_config, None
        if config is None:
            return
        self.config = config
        self.tracker.config = config.perception
        self.drive.config = config.drive
        self.behavior.apply_config(config, now)
        if self.notifier is not None:
            self.notifier.config = config.notification
        if self.swarm is not None:
            self.swarm.config = config.swarm
        logger.info("Configuration updated")

    @property
    def current_behavior(self) -> Behavior:
        return self.behavior.behavior

    @property
    def unit_id(self) -> int:
        """Current identity (re-drawn by the swarm coordinator on collision)."""
        return self.behavior.unit_id

    def get_status(self) -> dict:
        """Status summary for logging and the CLI."""
        state = self.behavior.state
        status = {
            "unit_id": self.unit_id,
            "behavior": state.behavior.value,
            "battery": state.battery_percent,
            "faults": sorted(f.value for f in state.faults),
            "tracks": self.tracker.get_stats()["total_tracks"],
        }
        if self.notifier is not None:
            status["notifications"] = self.notifier.stats()
        if self.swarm is not None:
            status["swarm"] = self.swarm.get_stats()
        return status
