"""
Behavior state machine for pylon-bounded mowing and stationary monitoring.

One ``tick`` per control cycle consumes the published perception snapshot
and a sensor sample and produces exactly one actuator command. Checks run
in strict priority order:

1. Sensor faults and actuator failures (emergency stop, then FAULT)
2. Battery (CHARGING with hysteresis)
3. The handler of the active behavior

The machine owns ``RobotState`` and is the only writer of it. Monitor modes
keep notifying while the unit charges.
"""

import logging
import math
import random
from collections import Counter
from typing import Callable, Optional

from ..core.config import MowerConfig, OperatingMode
from ..core.errors import LATCHED_FAULTS, ActuatorFailure, FaultEvent, FaultType, PerceptionStale, SensorFault
from ..core.state import Behavior, OperatorCommand, RobotState, SensorReadings
from ..coordination.notifier import Evidence, NotificationDispatcher
from ..coordination.swarm import SwarmCoordinator
from ..perception.classes import ObjectClass
from ..perception.geometry import normalize_angle
from ..perception.tracker import PerceptionSnapshot, TrackedTarget
from .drive import ActuatorCommand, DriveController
from .speaker import Announcement, Speaker

logger = logging.getLogger(__name__)

# Candidate wander offsets drawn per interval (first one wins without peers)
WANDER_CANDIDATES = 4

# Classes that make the mower turn away when close ahead
OBSTACLE_CLASSES = (ObjectClass.PYLON, ObjectClass.MOWER)

MONITOR_BEHAVIORS = (Behavior.MONITOR_PERSON, Behavior.MONITOR_ANIMAL)

MONITOR_ANNOUNCEMENTS = {
    OperatingMode.MONITOR_PERSON: Announcement.PERSON_DETECTING,
    OperatingMode.MONITOR_ANIMAL: Announcement.ANIMAL_DETECTING,
}

FAULT_ANNOUNCEMENTS = {
    FaultType.BUMPER: Announcement.BUMPED,
    FaultType.OVERHEAT: Announcement.HIGH_TEMP,
    FaultType.PERCEPTION_STALE: Announcement.CONE_NOT_FOUND,
}


class BehaviorStateMachine:
    """
    Priority-ordered behavior controller.

    Example:
        machine = BehaviorStateMachine(config, drive, notifier=dispatcher, swarm=swarm)
        machine.on_transition(lambda old, new, t: print(old, "->", new))

        # Control loop:
        command = machine.tick(tracker.tick(now), readings, now)
    """

    def __init__(
        self,
        config: MowerConfig,
        drive: DriveController,
        notifier: Optional[NotificationDispatcher] = None,
        swarm: Optional[SwarmCoordinator] = None,
        rng: Optional[random.Random] = None,
        unit_id: int = 0,
        speaker: Optional[Speaker] = None,
    ):
        """
        Initialize the state machine.

        Args:
            config: Mower configuration (mode and behavior thresholds)
            drive: Drive controller receiving every command
            notifier: Notification dispatcher used in monitor modes
            swarm: Swarm coordinator biasing turn and wander headings
            rng: Random source for turn angles and wander offsets
            unit_id: Identity reported in notification evidence (the swarm
                coordinator's identity takes precedence when present)
            speaker: Audible announcements for detections and faults
        """
        self.config = config.behavior
        self.drive = drive
        self.notifier = notifier
        self.swarm = swarm
        self.speaker = speaker
        self._unit_id = unit_id
        self._rng = rng or random.Random()
        self._announced: dict[Announcement, float] = {}

        self._state = RobotState(behavior=Behavior.for_mode(config.mode), base_mode=config.mode)
        self._operator_off = False
        self._last_readings: Optional[SensorReadings] = None

        # Turn bookkeeping
        self._turn_angle = 0.0
        self._turn_target = 0.0
        self._turn_started = 0.0
        self._triggers: dict[int, float] = {}

        # Wander bookkeeping
        self._wander_target: Optional[float] = None
        self._next_wander = 0.0

        # Escape bookkeeping
        self._escape_started = 0.0
        self._escape_direction = 1.0

        self._fault_history: list[FaultEvent] = []
        self._transitions: Counter = Counter()
        self._on_fault: Optional[Callable[[FaultEvent], None]] = None
        self._on_transition: Optional[Callable[[Behavior, Behavior, float], None]] = None

    # ----- Public API -----

    @property
    def behavior(self) -> Behavior:
        return self._state.behavior

    @property
    def unit_id(self) -> int:
        """Current identity; follows swarm re-draws after a collision."""
        return self.swarm.unit_id if self.swarm is not None else self._unit_id

    @property
    def state(self) -> RobotState:
        """Copy of the robot state."""
        return self._state.snapshot()

    @property
    def last_turn_angle(self) -> float:
        """Signed angle of the most recent pylon turn (positive = right)."""
        return self._turn_angle

    @property
    def fault_history(self) -> list[FaultEvent]:
        return list(self._fault_history)

    @property
    def transition_counts(self) -> Counter:
        """Number of transitions per (old, new) behavior pair."""
        return Counter(self._transitions)

    def on_fault(self, callback: Callable[[FaultEvent], None]) -> None:
        """Register fault callback.

        Args:
            callback: Function called with each new FaultEvent
        """
        self._on_fault = callback

    def on_transition(self, callback: Callable[[Behavior, Behavior, float], None]) -> None:
        """Register transition callback.

        Args:
            callback: Function called with (old, new, timestamp)
        """
        self._on_transition = callback

    def apply_config(self, config: MowerConfig, now: float) -> None:
        """Swap in a new configuration value between ticks."""
        old_base = self._state.base_behavior
        self.config = config.behavior
        self._state.base_mode = config.mode
        new_base = self._state.base_behavior
        if new_base != old_base and self._state.behavior in (old_base, Behavior.TURNING, Behavior.ESCAPING):
            self._transition(new_base, now, "mode changed")
        if self._state.resume_behavior == old_base:
            self._state.resume_behavior = new_base

    def command(self, command: OperatorCommand, now: float) -> None:
        """Apply an operator command."""
        state = self._state
        logger.info(f"Operator command: {command.value}")

        if command == OperatorCommand.OFF:
            self._operator_off = True
            if state.behavior == Behavior.CHARGING:
                state.resume_behavior = Behavior.IDLE
            elif state.behavior != Behavior.FAULT:
                self._enter_base(Behavior.IDLE, now, "operator off")

        elif command == OperatorCommand.ON:
            self._operator_off = False
            if state.behavior == Behavior.CHARGING:
                state.resume_behavior = state.base_behavior
            elif state.behavior == Behavior.IDLE:
                self._enter_base(state.base_behavior, now, "operator on")

        elif command == OperatorCommand.CLEAR_FAULT:
            self.clear_fault(now)

    def clear_fault(self, now: float) -> bool:
        """Clear latched faults whose originating condition is gone.

        Returns:
            True if the machine left FAULT
        """
        active = self.sensor_faults(self._last_readings) if self._last_readings else {}
        for fault_type in list(self._state.faults):
            if fault_type in LATCHED_FAULTS and fault_type not in active:
                self._clear(fault_type)
            elif fault_type in active:
                logger.warning(f"Cannot clear {fault_type.value}: condition still present")
        return self._leave_fault_if_clear(now)

    def sensor_faults(self, readings: SensorReadings) -> dict[FaultType, str]:
        """Sensor conditions currently outside safe limits."""
        cfg = self.config
        faults = {}
        if readings.bumper:
            faults[FaultType.BUMPER] = "bumper pressed"
        tilt = max(abs(readings.roll_deg), abs(readings.pitch_deg))
        if tilt > cfg.max_tilt_deg:
            faults[FaultType.TILT] = f"tilt {tilt:.1f} deg"
        # Overheat holds until the temperature drops below the resume threshold
        hot_limit = cfg.overheat_resume_c if FaultType.OVERHEAT in self._state.faults else cfg.overheat_c
        if readings.cpu_temp_c > hot_limit:
            faults[FaultType.OVERHEAT] = f"cpu {readings.cpu_temp_c:.1f} C"
        return faults

    def check_sensors(self, readings: SensorReadings) -> None:
        """Raise SensorFault listing every unsafe condition not yet faulted."""
        new_faults = {
            fault_type: details
            for fault_type, details in self.sensor_faults(readings).items()
            if fault_type not in self._state.faults
        }
        if new_faults:
            raise SensorFault(new_faults)

    def tick(self, snapshot: PerceptionSnapshot, readings: SensorReadings, now: float) -> ActuatorCommand:
        """
        Run one control cycle.

        Args:
            snapshot: Perception snapshot published for this tick
            readings: Latest non-vision sensor sample
            now: Control-loop time

        Returns:
            The actuator command written this tick
        """
        state = self._state
        state.tick += 1
        state.heading_deg = readings.heading_deg
        state.battery_percent = readings.battery_percent
        self._last_readings = readings

        try:
            command = self._step(snapshot, readings, now)
        except SensorFault as e:
            command = self._fault(e.faults, now)
        except PerceptionStale as e:
            command = self._fault({FaultType.PERCEPTION_STALE: str(e)}, now)
        except ActuatorFailure as e:
            command = self._fault({FaultType.ACTUATOR: str(e)}, now)

        state.velocity_mps = command.linear_mps
        state.blade_on = command.blade_on
        return command

    # ----- Tick internals -----

    def _step(self, snapshot: PerceptionSnapshot, readings: SensorReadings, now: float) -> ActuatorCommand:
        state = self._state
        self.check_sensors(readings)

        if state.behavior == Behavior.FAULT:
            return self._tick_fault(snapshot, readings, now)

        cfg = self.config
        if state.behavior != Behavior.CHARGING and readings.battery_percent < cfg.battery_low_percent:
            state.resume_behavior = self._resting_behavior()
            self._transition(Behavior.CHARGING, now, f"battery {readings.battery_percent:.0f}%")

        if state.behavior == Behavior.CHARGING:
            if readings.battery_percent < cfg.battery_resume_percent:
                # A monitoring appliance keeps watching while it charges
                if state.resume_behavior in MONITOR_BEHAVIORS:
                    return self._tick_monitor(snapshot, now)
                return self.drive.hold()
            resume = state.resume_behavior or self._resting_behavior()
            state.resume_behavior = None
            self._enter_base(resume, now, f"battery {readings.battery_percent:.0f}%")

        behavior = state.behavior
        if behavior == Behavior.MOWING:
            return self._tick_mowing(snapshot, readings, now)
        if behavior == Behavior.TURNING:
            return self._tick_turning(snapshot, readings, now)
        if behavior == Behavior.ESCAPING:
            return self._tick_escaping(snapshot, readings, now)
        if behavior in MONITOR_BEHAVIORS:
            return self._tick_monitor(snapshot, now)
        return self.drive.hold()

    def _tick_mowing(self, snapshot: PerceptionSnapshot, readings: SensorReadings, now: float) -> ActuatorCommand:
        cfg = self.config

        if snapshot.perception_stale and snapshot.stale_for > cfg.stale_grace:
            self._escape_started = now
            self._escape_direction = self._rng.choice((-1.0, 1.0))
            self._transition(Behavior.ESCAPING, now, f"perception stale {snapshot.stale_for:.1f}s")
            return self._tick_escaping(snapshot, readings, now)

        person = snapshot.nearest(ObjectClass.PERSON, max_bearing_deg=cfg.ahead_half_angle_deg)
        if person is not None and person.distance_m <= cfg.person_stop_distance_m:
            return self.drive.hold(blade_on=False)

        obstacle = self._turn_trigger(snapshot, now)
        if obstacle is not None:
            return self._start_turn(obstacle, readings.heading_deg, now)

        error = self._wander_error(readings.heading_deg, now)
        return self.drive.steer_toward(error, cfg.cruise_speed_mps, blade_on=True)

    def _tick_turning(self, snapshot: PerceptionSnapshot, readings: SensorReadings, now: float) -> ActuatorCommand:
        cfg = self.config
        remaining = normalize_angle(self._turn_target - readings.heading_deg)
        timed_out = now - self._turn_started >= cfg.turn_timeout
        if abs(remaining) <= cfg.turn_tolerance_deg or timed_out:
            if timed_out:
                logger.info(f"Turn timed out with {remaining:.0f} deg remaining")
            self._wander_target = None
            self._transition(Behavior.MOWING, now, "turn complete")
            return self._tick_mowing(snapshot, readings, now)
        return self.drive.spin(math.copysign(cfg.turn_rate_dps, self._turn_angle), blade_on=True)

    def _tick_escaping(self, snapshot: PerceptionSnapshot, readings: SensorReadings, now: float) -> ActuatorCommand:
        cfg = self.config
        if not snapshot.perception_stale:
            self._wander_target = None
            self._transition(Behavior.MOWING, now, "perception recovered")
            return self._tick_mowing(snapshot, readings, now)

        if snapshot.stale_for > cfg.stale_fault_timeout:
            snapshot.require_fresh()

        elapsed = now - self._escape_started
        if elapsed < cfg.escape_reverse_s:
            return self.drive.drive(-cfg.escape_speed_mps, 0.0, blade_on=False)
        if elapsed < cfg.escape_reverse_s + cfg.escape_turn_s:
            return self.drive.spin(self._escape_direction * cfg.turn_rate_dps)
        return self.drive.hold()

    def _tick_monitor(self, snapshot: PerceptionSnapshot, now: float) -> ActuatorCommand:
        mode = self._state.base_mode
        for target in snapshot.targets:
            if target.label.policy.monitor_mode != mode:
                continue
            self._announce(MONITOR_ANNOUNCEMENTS[mode], now)
            if self.notifier is not None:
                evidence = Evidence(target=target, timestamp=now, unit_id=self.unit_id, mode=mode.value)
                self.notifier.notify(target.label, evidence)
        return self.drive.hold(blade_on=False)

    def _tick_fault(self, snapshot: PerceptionSnapshot, readings: SensorReadings, now: float) -> ActuatorCommand:
        faults = self._state.faults
        if FaultType.OVERHEAT in faults and readings.cpu_temp_c < self.config.overheat_resume_c:
            self._clear(FaultType.OVERHEAT)
        if FaultType.PERCEPTION_STALE in faults and not snapshot.perception_stale:
            self._clear(FaultType.PERCEPTION_STALE)
        command = self.drive.hold()
        self._leave_fault_if_clear(now)
        return command

    # ----- Helpers -----

    def _turn_trigger(self, snapshot: PerceptionSnapshot, now: float) -> Optional[TrackedTarget]:
        """Nearest pylon or peer mower close ahead that may trigger a turn."""
        cfg = self.config
        self._triggers = {
            tid: t for tid, t in self._triggers.items() if now - t < cfg.retrigger_cooldown
        }
        for target in snapshot.of_class(*OBSTACLE_CLASSES):
            if abs(target.bearing_deg) > cfg.ahead_half_angle_deg:
                continue
            if target.distance_m > cfg.pylon_proximity_m:
                continue
            if target.target_id in self._triggers:
                continue
            return target
        return None

    def _start_turn(self, target: TrackedTarget, heading_deg: float, now: float) -> ActuatorCommand:
        cfg = self.config
        magnitude = self._rng.uniform(cfg.turn_min_deg, cfg.turn_max_deg)
        angle = self._rng.choice((-1.0, 1.0)) * magnitude
        if self.swarm is not None:
            angle = self.swarm.choose_heading(heading_deg, [angle, -angle])

        self._turn_angle = angle
        self._turn_target = (heading_deg + angle) % 360.0
        self._turn_started = now
        self._triggers[target.target_id] = now
        if target.label == ObjectClass.PYLON:
            self._announce(Announcement.CLOSE_TO_CONE, now)
        self._transition(
            Behavior.TURNING,
            now,
            f"{target.label.value} {target.target_id} at {target.distance_m:.2f} m, turning {angle:+.0f} deg",
        )
        return self.drive.spin(math.copysign(cfg.turn_rate_dps, angle), blade_on=True)

    def _wander_error(self, heading_deg: float, now: float) -> float:
        """Heading error toward the current random-walk target."""
        cfg = self.config
        if self._wander_target is None or now >= self._next_wander:
            offsets = [self._rng.uniform(-cfg.wander_deg, cfg.wander_deg) for _ in range(WANDER_CANDIDATES)]
            offset = self.swarm.choose_heading(heading_deg, offsets) if self.swarm is not None else offsets[0]
            self._wander_target = (heading_deg + offset) % 360.0
            self._next_wander = now + cfg.wander_interval
        return normalize_angle(self._wander_target - heading_deg)

    def _fault(self, faults: dict[FaultType, str], now: float) -> ActuatorCommand:
        """Emergency stop first, then record faults and enter FAULT."""
        try:
            command = self.drive.emergency_stop()
        except ActuatorFailure as e:
            faults = {**faults, FaultType.ACTUATOR: str(e)}
            command = ActuatorCommand.stop(emergency=True)

        state = self._state
        for fault_type, details in faults.items():
            if fault_type in state.faults:
                continue
            state.faults.add(fault_type)
            event = FaultEvent(fault_type=fault_type, timestamp=now, details=details)
            self._fault_history.append(event)
            logger.warning(f"FAULT: {fault_type.value}: {details}")
            if fault_type in FAULT_ANNOUNCEMENTS:
                self._announce(FAULT_ANNOUNCEMENTS[fault_type], now)
            if self._on_fault:
                try:
                    self._on_fault(event)
                except Exception as e:
                    logger.error(f"Fault callback error: {e}")

        self._transition(Behavior.FAULT, now, ", ".join(f.value for f in faults))
        return command

    def _clear(self, fault_type: FaultType) -> None:
        self._state.faults.discard(fault_type)
        for event in reversed(self._fault_history):
            if event.fault_type == fault_type and not event.cleared:
                event.cleared = True
                break
        logger.info(f"Fault cleared: {fault_type.value}")

    def _leave_fault_if_clear(self, now: float) -> bool:
        if self._state.behavior != Behavior.FAULT or self._state.faults:
            return False
        self.drive.release()
        self._enter_base(self._resting_behavior(), now, "faults cleared")
        return True

    def _resting_behavior(self) -> Behavior:
        return Behavior.IDLE if self._operator_off else self._state.base_behavior

    def _enter_base(self, behavior: Behavior, now: float, reason: str) -> None:
        if behavior == Behavior.MOWING and self._state.behavior != Behavior.MOWING:
            self._wander_target = None
            self._announce(Announcement.START_MOWING, now)
        self._transition(behavior, now, reason)

    def _announce(self, announcement: Announcement, now: float) -> None:
        """Play an announcement at most once per ``announce_cooldown_s``."""
        if self.speaker is None:
            return
        last = self._announced.get(announcement)
        if last is not None and now - last < self.config.announce_cooldown_s:
            return
        self._announced[announcement] = now
        try:
            self.speaker.say(announcement)
        except Exception as e:
            logger.error(f"Speaker error: {e}")

    def _transition(self, new: Behavior, now: float, reason: str = "") -> None:
        state = self._state
        old = state.behavior
        if old == new:
            return
        state.behavior = new
        state.last_transition = now
        self._transitions[(old, new)] += 1
        logger.info(f"{old.value} -> {new.value}" + (f" ({reason})" if reason else ""))
        if self._on_transition:
            try:
                self._on_transition(old, new, now)
            except Exception as e:
                logger.error(f"Transition callback error: {e}")
