"""2-D kinematic world for exercising the mower core without hardware.

Positions are (east, north) in meters; headings are degrees clockwise from
north, matching the IMU convention of ``SensorReadings``. Objects are
projected into the simulated camera through the same ``CameraModel`` the
perception aggregator uses to range them, so a simulated pylon at 0.5 m is
tracked at (approximately) 0.5 m.

Example:
    world = SimWorld(CameraModel(), pylons=[(0.0, 3.0), (2.0, 3.0)])
    world.add_unit(1, position=(0.0, 0.0), heading_deg=0.0)

    # Main loop
    mower.tracker.ingest_frame(world.detections(1, t), t)
    command = mower.step(world.readings(1, t), t)
    world.apply(1, command, dt)
"""

import logging
import math
import random
from dataclasses import dataclass, field
from typing import Iterable, Optional

from ..control.drive import ActuatorCommand
from ..core.config import CameraModel
from ..core.state import SensorReadings
from ..perception.classes import ObjectClass
from ..perception.detector import Detection
from ..perception.geometry import in_view, normalize_angle, pixel_from_bearing, project_height

logger = logging.getLogger(__name__)

Point = tuple[float, float]

# Box width relative to height per class (upright objects)
_ASPECT = {
    ObjectClass.PYLON: 0.7,
    ObjectClass.PERSON: 0.4,
    ObjectClass.MOWER: 1.4,
}


class SimObject:
    """Object in the world, optionally walking a waypoint route.

    Example:
        person = SimObject(ObjectClass.PERSON, (5.0, 5.0), waypoints=[(5.0, 0.0)], speed=1.0)
        person.update(0.1)
    """

    def __init__(
        self,
        label: ObjectClass,
        position: Point,
        waypoints: Optional[list[Point]] = None,
        speed: float = 0.0,
        loop: bool = False,
    ):
        self.label = label
        self._position = position
        self._waypoints = waypoints or []
        self._speed = speed
        self._loop = loop
        self._waypoint_idx = 0

    @property
    def position(self) -> Point:
        return self._position

    def update(self, dt: float) -> None:
        """Move toward the current waypoint."""
        if not self._waypoints or self._waypoint_idx >= len(self._waypoints):
            return

        target = self._waypoints[self._waypoint_idx]
        dx = target[0] - self._position[0]
        dy = target[1] - self._position[1]
        dist = math.hypot(dx, dy)
        step = self._speed * dt

        if dist <= step:
            self._position = target
            self._waypoint_idx += 1
            if self._loop and self._waypoint_idx >= len(self._waypoints):
                self._waypoint_idx = 0
            return

        self._position = (self._position[0] + dx / dist * step, self._position[1] + dy / dist * step)


@dataclass
class SimUnit:
    """Kinematic state of one simulated mower."""

    unit_id: int
    x: float
    y: float
    heading_deg: float = 0.0
    battery_percent: float = 100.0
    cpu_temp_c: float = 45.0
    bumper: bool = False
    distance_travelled: float = 0.0
    trail: list[Point] = field(default_factory=list)

    @property
    def position(self) -> Point:
        return (self.x, self.y)


class SimWorld:
    """
    Kinematic simulator for one or more units.

    Features:
    - Differential drive integration from ``ActuatorCommand``s
    - Battery drain while driving or cutting, charging while stopped
    - Bumper contact with pylons
    - Camera projection into ``Detection``s, optional dropout and jitter
    """

    def __init__(
        self,
        camera: Optional[CameraModel] = None,
        pylons: Iterable[Point] = (),
        objects: Iterable[SimObject] = (),
        rng: Optional[random.Random] = None,
        max_range_m: float = 8.0,
        bump_radius_m: float = 0.15,
        drain_percent_s: float = 0.05,
        blade_drain_percent_s: float = 0.05,
        charge_percent_s: float = 0.5,
        dropout: float = 0.0,
        jitter_px: float = 0.0,
    ):
        """
        Initialize the world.

        Args:
            camera: Camera model shared with the perception aggregator
            pylons: Pylon positions
            objects: Additional (possibly moving) objects
            rng: Random source for dropout and jitter
            max_range_m: Detector range limit
            bump_radius_m: Distance at which a pylon closes the bumper
            drain_percent_s: Battery drain per second at full drive speed
            blade_drain_percent_s: Battery drain per second with the blade on
            charge_percent_s: Battery charge per second while stopped
            dropout: Probability that an object is missed in a frame
            jitter_px: Standard deviation of box center noise
        """
        self.camera = camera or CameraModel()
        self.objects: list[SimObject] = [SimObject(ObjectClass.PYLON, p) for p in pylons]
        self.objects.extend(objects)
        self.units: dict[int, SimUnit] = {}
        self._rng = rng or random.Random()
        self.max_range_m = max_range_m
        self.bump_radius_m = bump_radius_m
        self.drain_percent_s = drain_percent_s
        self.blade_drain_percent_s = blade_drain_percent_s
        self.charge_percent_s = charge_percent_s
        self.dropout = dropout
        self.jitter_px = jitter_px
        self.time = 0.0

    def add_unit(self, unit_id: int, position: Point = (0.0, 0.0), heading_deg: float = 0.0) -> SimUnit:
        unit = SimUnit(unit_id=unit_id, x=position[0], y=position[1], heading_deg=heading_deg % 360.0)
        self.units[unit_id] = unit
        return unit

    def add_object(self, obj: SimObject) -> None:
        self.objects.append(obj)

    # ----- Sensing -----

    def readings(self, unit_id: int, timestamp: float) -> SensorReadings:
        """Non-vision sensor sample for a unit."""
        unit = self.units[unit_id]
        return SensorReadings(
            timestamp=timestamp,
            heading_deg=unit.heading_deg,
            battery_percent=unit.battery_percent,
            bumper=unit.bumper,
            cpu_temp_c=unit.cpu_temp_c,
        )

    def detections(self, unit_id: int, timestamp: float) -> list[Detection]:
        """Project visible objects (and other units) into the unit's camera."""
        unit = self.units[unit_id]
        visible = [(obj.label, obj.position) for obj in self.objects]
        visible.extend(
            (ObjectClass.MOWER, other.position) for uid, other in self.units.items() if uid != unit_id
        )

        detections = []
        for label, position in visible:
            det = self._project(unit, label, position, timestamp)
            if det is not None:
                detections.append(det)
        return detections

    def _project(self, unit: SimUnit, label: ObjectClass, position: Point, timestamp: float) -> Optional[Detection]:
        dx = position[0] - unit.x
        dy = position[1] - unit.y
        distance = math.hypot(dx, dy)
        if distance > self.max_range_m or distance < 1e-3:
            return None

        bearing = normalize_angle(math.degrees(math.atan2(dx, dy)) - unit.heading_deg)
        if not in_view(bearing, self.camera):
            return None
        if self.dropout > 0 and self._rng.random() < self.dropout:
            return None

        h = project_height(distance, label.policy.height_m, self.camera)
        w = h * _ASPECT.get(label, 1.0)
        u = pixel_from_bearing(bearing, self.camera)
        if self.jitter_px > 0:
            u += self._rng.gauss(0.0, self.jitter_px)
        v = self.camera.cy
        return Detection(
            label=label,
            confidence=0.9,
            bbox=(u - w / 2.0, v - h / 2.0, w, h),
            timestamp=timestamp,
        )

    # ----- Dynamics -----

    def apply(self, unit_id: int, command: ActuatorCommand, dt: float) -> None:
        """Integrate one actuator command over ``dt`` seconds."""
        unit = self.units[unit_id]

        unit.heading_deg = (unit.heading_deg + command.turn_rate_dps * dt) % 360.0
        heading = math.radians(unit.heading_deg)
        step = command.linear_mps * dt
        unit.x += step * math.sin(heading)
        unit.y += step * math.cos(heading)
        unit.distance_travelled += abs(step)
        unit.trail.append(unit.position)

        if command.is_stop:
            unit.battery_percent = min(100.0, unit.battery_percent + self.charge_percent_s * dt)
        else:
            drain = self.drain_percent_s * abs(command.linear_mps) / 0.5
            if command.blade_on:
                drain += self.blade_drain_percent_s
            unit.battery_percent = max(0.0, unit.battery_percent - drain * dt)

        unit.bumper = any(
            obj.label == ObjectClass.PYLON
            and math.hypot(obj.position[0] - unit.x, obj.position[1] - unit.y) < self.bump_radius_m
            for obj in self.objects
        )
        if unit.bumper:
            logger.debug(f"Unit {unit_id} bumped a pylon at ({unit.x:.2f}, {unit.y:.2f})")

    def update(self, dt: float) -> None:
        """Advance moving objects and the world clock."""
        for obj in self.objects:
            obj.update(dt)
        self.time += dt

    def nearest_pylon_distance(self, unit_id: int) -> float:
        unit = self.units[unit_id]
        distances = [
            math.hypot(obj.position[0] - unit.x, obj.position[1] - unit.y)
            for obj in self.objects
            if obj.label == ObjectClass.PYLON
        ]
        return min(distances) if distances else math.inf
