"""Shared pytest configuration and fixtures for mower tests.

This module provides:
- Custom markers for test categorization
- Shared fixtures for configuration, drive and perception snapshots
- Helpers to build detections and readings at explicit times
"""

import logging
import random
from pathlib import Path

import pytest

from mower.control.drive import DriveController, RecordingActuator
from mower.core.config import MowerConfig, OperatingMode
from mower.core.state import SensorReadings
from mower.perception.classes import ObjectClass
from mower.perception.geometry import pixel_from_bearing, project_height
from mower.perception.detector import Detection
from mower.perception.tracker import PerceptionSnapshot, TrackedTarget

logger = logging.getLogger(__name__)

# Project root for imports
PROJECT_ROOT = Path(__file__).parent.parent


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Pure Python tests, no simulation required")
    config.addinivalue_line("markers", "sim: Kinematic simulation tests (SimWorld + SimRunner)")
    config.addinivalue_line("markers", "slow: Tests that take a long time")


def make_detection(
    label: ObjectClass,
    bearing_deg: float = 0.0,
    distance_m: float = 1.0,
    timestamp: float = 0.0,
    confidence: float = 0.9,
    camera=None,
) -> Detection:
    """Detection whose box ranges to ``distance_m`` at ``bearing_deg``."""
    camera = camera or MowerConfig().perception.camera
    h = project_height(distance_m, label.policy.height_m, camera)
    w = 0.7 * h
    u = pixel_from_bearing(bearing_deg, camera)
    return Detection(
        label=label,
        confidence=confidence,
        bbox=(u - w / 2.0, camera.cy - h / 2.0, w, h),
        timestamp=timestamp,
    )


def make_target(
    label: ObjectClass,
    target_id: int = 1,
    bearing_deg: float = 0.0,
    distance_m: float = 1.0,
    timestamp: float = 0.0,
) -> TrackedTarget:
    """Published target at an explicit bearing and distance."""
    return TrackedTarget(
        target_id=target_id,
        label=label,
        bearing_deg=bearing_deg,
        distance_m=distance_m,
        age=3,
        first_seen=timestamp,
        last_seen=timestamp,
        center=(160.0, 120.0),
        size=(20.0, 30.0),
        confidence=0.9,
    )


def make_snapshot(now: float, *targets: TrackedTarget, stale_for: float = 0.0) -> PerceptionSnapshot:
    """Snapshot, stale when ``stale_for`` is positive."""
    return PerceptionSnapshot(
        timestamp=now,
        targets=tuple(sorted(targets, key=lambda t: t.distance_m)),
        perception_stale=stale_for > 0,
        stale_for=stale_for,
    )


def readings(now: float, **kwargs) -> SensorReadings:
    return SensorReadings(timestamp=now, **kwargs)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def mowing_config() -> MowerConfig:
    """Mowing configuration with swarm gossip disabled."""
    return MowerConfig.for_simulation(unit_id=1)


@pytest.fixture
def person_config() -> MowerConfig:
    return MowerConfig.for_simulation(unit_id=1, mode=OperatingMode.MONITOR_PERSON)


@pytest.fixture
def animal_config() -> MowerConfig:
    return MowerConfig.for_simulation(unit_id=1, mode=OperatingMode.MONITOR_ANIMAL)


@pytest.fixture
def actuator() -> RecordingActuator:
    return RecordingActuator()


@pytest.fixture
def drive(mowing_config, actuator) -> DriveController:
    return DriveController(mowing_config.drive, actuator)


@pytest.fixture
def rng() -> random.Random:
    """Seeded random source for reproducible turns and wander."""
    return random.Random(42)


def pytest_collection_modifyitems(config, items):
    """Auto-add markers based on test location."""
    for item in items:
        # Auto-mark tests in tests/unit/ with @pytest.mark.unit
        if "tests/unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        # Auto-mark tests in tests/simulation/ with @pytest.mark.sim
        if "tests/simulation" in str(item.fspath):
            item.add_marker(pytest.mark.sim)
