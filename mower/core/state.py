"""Robot state owned by the behavior state machine."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from .config import OperatingMode
from .errors import FaultType


class Behavior(Enum):
    """Active behavior of the state machine."""
    MOWING = "mowing"
    TURNING = "turning"
    ESCAPING = "escaping"
    MONITOR_PERSON = "monitor_person"
    MONITOR_ANIMAL = "monitor_animal"
    CHARGING = "charging"
    IDLE = "idle"
    FAULT = "fault"

    @classmethod
    def for_mode(cls, mode: OperatingMode) -> "Behavior":
        """Base behavior for an operating mode."""
        return {
            OperatingMode.MOW: cls.MOWING,
            OperatingMode.MONITOR_PERSON: cls.MONITOR_PERSON,
            OperatingMode.MONITOR_ANIMAL: cls.MONITOR_ANIMAL,
        }[mode]


class OperatorCommand(Enum):
    """Commands accepted from the commander (identity 0)."""
    OFF = "off"
    ON = "on"
    CLEAR_FAULT = "clear_fault"


@dataclass(frozen=True)
class SensorReadings:
    """One sample of the non-vision sensors.

    Attributes:
        timestamp: Control-loop time of the sample (seconds)
        heading_deg: IMU heading, 0-360, clockwise
        battery_percent: Charge level (0-100)
        bumper: Bumper switch closed
        roll_deg: IMU roll
        pitch_deg: IMU pitch
        cpu_temp_c: SoC temperature
    """
    timestamp: float
    heading_deg: float = 0.0
    battery_percent: float = 100.0
    bumper: bool = False
    roll_deg: float = 0.0
    pitch_deg: float = 0.0
    cpu_temp_c: float = 40.0


@dataclass
class RobotState:
    """Mutable robot state, written only inside the state machine tick."""

    behavior: Behavior
    base_mode: OperatingMode
    heading_deg: float = 0.0
    velocity_mps: float = 0.0
    battery_percent: float = 100.0
    faults: set[FaultType] = field(default_factory=set)
    blade_on: bool = False
    last_transition: float = 0.0
    tick: int = 0
    resume_behavior: Optional[Behavior] = None

    @property
    def base_behavior(self) -> Behavior:
        """Behavior implied by the configured operating mode."""
        return Behavior.for_mode(self.base_mode)

    def snapshot(self) -> "RobotState":
        """Copy safe to hand to other components."""
        return replace(self, faults=set(self.faults))
