"""Fault taxonomy and error types for the mower core.

Safety-relevant failures (sensor faults, actuator failures) force the
behavior state machine into FAULT. Auxiliary failures (notification
transport, malformed swarm messages) are isolated on their worker threads
and only logged.
"""

from dataclasses import dataclass
from enum import Enum


class FaultType(Enum):
    """Types of faults that stop the mower."""
    BUMPER = "bumper"
    TILT = "tilt"
    OVERHEAT = "overheat"
    ACTUATOR = "actuator"
    PERCEPTION_STALE = "perception_stale"


# Faults that stay set until an operator clears them, even after the
# originating sensor condition is gone.
LATCHED_FAULTS = frozenset({FaultType.BUMPER, FaultType.TILT, FaultType.ACTUATOR})


@dataclass
class FaultEvent:
    """Record of a fault.

    Attributes:
        fault_type: Type of fault detected
        timestamp: Control-loop time when the fault was detected
        details: Human-readable description
        cleared: Whether the fault has been cleared since
    """
    fault_type: FaultType
    timestamp: float
    details: str = ""
    cleared: bool = False


class MowerError(Exception):
    """Base class for mower core errors."""


class SensorFault(MowerError):
    """Bumper, tilt/IMU or thermal anomaly. Fatal to the current behavior.

    Attributes:
        faults: Fault type -> details for each unsafe condition found
    """

    def __init__(self, faults: dict[FaultType, str]):
        super().__init__(", ".join(f"{t.value}: {d}" if d else t.value for t, d in faults.items()))
        self.faults = dict(faults)


class PerceptionStale(MowerError):
    """The external detector has been silent beyond its timeout."""


class ActuatorFailure(MowerError):
    """Writing a drive command to the actuator backend failed."""


class NotificationTransportFailure(MowerError):
    """The push-notification transport rejected or failed a delivery."""


class SwarmMessageMalformed(MowerError):
    """A received swarm datagram could not be decoded."""
