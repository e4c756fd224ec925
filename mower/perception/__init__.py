"""Perception modules: class taxonomy, detections and target aggregation."""

from .classes import ANIMAL_CLASSES, CLASS_POLICIES, ClassPolicy, ObjectClass, classes_for_mode
from .detector import Detection, DetectorConfig, YOLODetector
from .frames import Frame, InferenceWorker, LatestFrameBuffer
from .tracker import PerceptionSnapshot, TargetTracker, TrackedTarget

__all__ = [
    "ANIMAL_CLASSES",
    "CLASS_POLICIES",
    "ClassPolicy",
    "ObjectClass",
    "classes_for_mode",
    "Detection",
    "DetectorConfig",
    "YOLODetector",
    "Frame",
    "InferenceWorker",
    "LatestFrameBuffer",
    "PerceptionSnapshot",
    "TargetTracker",
    "TrackedTarget",
]
