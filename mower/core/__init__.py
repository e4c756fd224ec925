"""Core mower components: configuration, state and fault taxonomy."""

from .config import (
    BehaviorConfig,
    CameraModel,
    DriveConfig,
    MowerConfig,
    NotificationConfig,
    OperatingMode,
    PerceptionConfig,
    SwarmConfig,
)
from .errors import (
    ActuatorFailure,
    FaultEvent,
    FaultType,
    MowerError,
    NotificationTransportFailure,
    PerceptionStale,
    SensorFault,
    SwarmMessageMalformed,
)
from .state import Behavior, OperatorCommand, RobotState, SensorReadings

__all__ = [
    "BehaviorConfig",
    "CameraModel",
    "DriveConfig",
    "MowerConfig",
    "NotificationConfig",
    "OperatingMode",
    "PerceptionConfig",
    "SwarmConfig",
    "ActuatorFailure",
    "FaultEvent",
    "FaultType",
    "MowerError",
    "NotificationTransportFailure",
    "PerceptionStale",
    "SensorFault",
    "SwarmMessageMalformed",
    "Behavior",
    "OperatorCommand",
    "RobotState",
    "SensorReadings",
]
