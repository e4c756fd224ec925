"""Differential drive controller.

Converts a desired heading change and speed into clamped left/right wheel
commands. Every command leaving this module is inside the configured
speed and turn-rate envelope. An emergency stop latches: until the state
machine releases it, all steering requests are answered with a stop.
"""

import logging
import math
import threading
from dataclasses import dataclass
from typing import Optional

from ..core.config import DriveConfig
from ..core.errors import ActuatorFailure
from ..perception.geometry import normalize_angle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActuatorCommand:
    """Differential drive command.

    Attributes:
        left_mps: Left wheel speed (negative = backward)
        right_mps: Right wheel speed (negative = backward)
        linear_mps: Resulting forward speed
        turn_rate_dps: Resulting yaw rate (positive = clockwise/right)
        blade_on: Work (cutting) motor enabled
        emergency: Produced by an emergency stop
    """
    left_mps: float = 0.0
    right_mps: float = 0.0
    linear_mps: float = 0.0
    turn_rate_dps: float = 0.0
    blade_on: bool = False
    emergency: bool = False

    @classmethod
    def stop(cls, emergency: bool = False) -> "ActuatorCommand":
        """All motors off."""
        return cls(emergency=emergency)

    @property
    def is_stop(self) -> bool:
        return self.left_mps == 0.0 and self.right_mps == 0.0 and not self.blade_on

    def duty(self, max_speed_mps: float) -> tuple[float, float]:
        """Normalized signed duty cycles (-1..1) for the motor driver."""
        return (self.left_mps / max_speed_mps, self.right_mps / max_speed_mps)


class Actuator:
    """Motor driver backend. Implementations raise on write failure."""

    def write(self, command: ActuatorCommand) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        self.write(ActuatorCommand.stop(emergency=True))


class LoggingActuator(Actuator):
    """Dry-run backend that only logs commands."""

    def write(self, command: ActuatorCommand) -> None:
        logger.debug(
            f"drive L={command.left_mps:+.2f} R={command.right_mps:+.2f} "
            f"blade={'on' if command.blade_on else 'off'}"
        )


class RecordingActuator(Actuator):
    """Backend keeping every written command (simulation and tests)."""

    def __init__(self):
        self.commands: list[ActuatorCommand] = []

    def write(self, command: ActuatorCommand) -> None:
        self.commands.append(command)

    @property
    def last(self) -> Optional[ActuatorCommand]:
        return self.commands[-1] if self.commands else None


def _finite(value: float) -> float:
    return value if math.isfinite(value) else 0.0


class DriveController:
    """Clamped differential drive with latching emergency stop.

    Example:
        drive = DriveController(config.drive, actuator)
        drive.steer_toward(heading_error_deg=-15.0, speed_mps=0.3)
        drive.emergency_stop()
        drive.steer_toward(0.0, 0.3).is_stop  # True until release()
    """

    def __init__(self, config: DriveConfig, actuator: Actuator):
        self.config = config
        self.actuator = actuator
        self._lock = threading.Lock()
        self._estop = False
        self._last_command = ActuatorCommand.stop()

    @property
    def estopped(self) -> bool:
        """Whether the emergency stop latch is set."""
        return self._estop

    @property
    def last_command(self) -> ActuatorCommand:
        return self._last_command

    def steer_toward(
        self,
        heading_error_deg: float,
        speed_mps: float,
        blade_on: bool = True,
    ) -> ActuatorCommand:
        """Drive toward a relative heading at the requested speed.

        Args:
            heading_error_deg: Desired heading minus current heading
                (positive = turn right)
            speed_mps: Forward speed (negative = reverse)
            blade_on: Keep the cutting motor running

        Returns:
            The command actually written (a stop while e-stop is latched)

        Raises:
            ActuatorFailure: If the backend write fails
        """
        error = normalize_angle(_finite(heading_error_deg))
        turn_rate = self.config.turn_gain * error
        return self.drive(speed_mps, turn_rate, blade_on=blade_on)

    def spin(self, turn_rate_dps: float, blade_on: bool = False) -> ActuatorCommand:
        """Turn in place (positive = clockwise)."""
        return self.drive(0.0, turn_rate_dps, blade_on=blade_on)

    def hold(self, blade_on: bool = False) -> ActuatorCommand:
        """Stand still, optionally keeping the blade running."""
        return self.drive(0.0, 0.0, blade_on=blade_on)

    def drive(self, speed_mps: float, turn_rate_dps: float, blade_on: bool = False) -> ActuatorCommand:
        """Write a linear/turn-rate request after clamping to the envelope."""
        command = self._mix(_finite(speed_mps), _finite(turn_rate_dps), blade_on)
        with self._lock:
            if self._estop:
                command = ActuatorCommand.stop(emergency=True)
            self._write(command)
        return command

    def emergency_stop(self) -> ActuatorCommand:
        """Stop all motors now and latch until release().

        Raises:
            ActuatorFailure: If the backend cannot stop the motors
        """
        # Latch first so a concurrent steering request cannot land afterwards
        self._estop = True
        command = ActuatorCommand.stop(emergency=True)
        with self._lock:
            try:
                self.actuator.stop()
            except Exception as e:
                logger.critical(f"Emergency stop write failed: {e}")
                raise ActuatorFailure(f"Emergency stop failed: {e}") from e
            self._last_command = command
        logger.warning("Emergency stop")
        return command

    def release(self) -> None:
        """Clear the emergency stop latch."""
        if self._estop:
            logger.info("Emergency stop released")
        self._estop = False

    def _mix(self, speed_mps: float, turn_rate_dps: float, blade_on: bool) -> ActuatorCommand:
        """Clamp and convert linear/turn rate into wheel speeds."""
        cfg = self.config
        v = max(-cfg.max_speed_mps, min(cfg.max_speed_mps, speed_mps))
        w = max(-cfg.max_turn_rate_dps, min(cfg.max_turn_rate_dps, turn_rate_dps))

        half_track = cfg.track_width_m / 2.0
        omega = math.radians(w)
        left = v + omega * half_track
        right = v - omega * half_track

        # Scale both wheels together to keep the turn ratio
        peak = max(abs(left), abs(right))
        if peak > cfg.max_speed_mps:
            scale = cfg.max_speed_mps / peak
            left *= scale
            right *= scale

        return ActuatorCommand(
            left_mps=left,
            right_mps=right,
            linear_mps=(left + right) / 2.0,
            turn_rate_dps=math.degrees((left - right) / cfg.track_width_m),
            blade_on=blade_on,
        )

    def _write(self, command: ActuatorCommand) -> None:
        """Send to the backend. Never retried."""
        try:
            self.actuator.write(command)
        except Exception as e:
            logger.critical(f"Actuator write failed: {e}")
            raise ActuatorFailure(str(e)) from e
        self._last_command = command
