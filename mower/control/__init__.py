"""Control modules: drive controller, behavior state machine and speaker."""

from .behavior import BehaviorStateMachine
from .drive import Actuator, ActuatorCommand, DriveController, LoggingActuator, RecordingActuator
from .speaker import Announcement, AudioFileSpeaker, LoggingSpeaker, RecordingSpeaker, Speaker

__all__ = [
    "BehaviorStateMachine",
    "Actuator",
    "ActuatorCommand",
    "DriveController",
    "LoggingActuator",
    "RecordingActuator",
    "Announcement",
    "AudioFileSpeaker",
    "LoggingSpeaker",
    "RecordingSpeaker",
    "Speaker",
]
