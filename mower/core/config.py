"""Configuration management for the mower core.

All sections are frozen dataclasses. A configuration value is built once at
startup and passed by reference into each component; a reload produces a
new value (see ``MowerConfig.with_overrides``) which the runtime swaps in at
a tick boundary. Nothing mutates a configuration in place.
"""

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional


class OperatingMode(Enum):
    """Operating mode selected at startup."""
    MOW = "mow"
    MONITOR_PERSON = "monitor_person"
    MONITOR_ANIMAL = "monitor_animal"


@dataclass(frozen=True)
class CameraModel:
    """Calibrated pinhole model used for bearing/distance estimation."""

    # Image dimensions (pixels)
    width: int = 320
    height: int = 240

    # Focal length (pixels) - approx. 62 deg horizontal FOV at 320 px
    fx: float = 266.0
    fy: float = 266.0

    # Principal point (image center)
    cx: float = 160.0
    cy: float = 120.0

    @classmethod
    def from_fov(cls, width: int, height: int, hfov_deg: float) -> "CameraModel":
        """Create a model with square pixels from the horizontal field of view."""
        f = (width / 2.0) / math.tan(math.radians(hfov_deg) / 2.0)
        return cls(width=width, height=height, fx=f, fy=f, cx=width / 2.0, cy=height / 2.0)

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Camera image size must be positive")
        if self.fx <= 0 or self.fy <= 0:
            raise ValueError("Camera focal length must be positive")


@dataclass(frozen=True)
class PerceptionConfig:
    """Perception aggregator configuration."""

    gating_distance_px: float = 60.0  # Max center distance for association
    gating_size_ratio: float = 0.5  # Gate grows with box size (x max(w, h))
    smoothing_alpha: float = 0.5  # Weight of the new measurement (EMA)
    staleness_timeout: float = 1.0  # seconds since last_seen before pruning
    detector_timeout: float = 2.0  # seconds of detector silence -> stale
    min_hits: int = 1  # Matched observations before a target is published
    camera: CameraModel = field(default_factory=CameraModel)

    def __post_init__(self):
        if not 0.0 < self.smoothing_alpha <= 1.0:
            raise ValueError("smoothing_alpha must be in (0, 1]")
        if self.staleness_timeout <= 0 or self.detector_timeout <= 0:
            raise ValueError("Timeouts must be positive")
        if self.min_hits < 1:
            raise ValueError("min_hits must be at least 1")


@dataclass(frozen=True)
class DriveConfig:
    """Differential drive limits."""

    max_speed_mps: float = 0.5  # Max wheel and linear speed
    max_turn_rate_dps: float = 90.0  # Max yaw rate (deg/s)
    track_width_m: float = 0.3  # Distance between drive wheels
    turn_gain: float = 2.0  # deg/s of turn rate per degree of heading error

    def __post_init__(self):
        if self.max_speed_mps <= 0 or self.max_turn_rate_dps <= 0:
            raise ValueError("Drive limits must be positive")
        if self.track_width_m <= 0:
            raise ValueError("track_width_m must be positive")


@dataclass(frozen=True)
class BehaviorConfig:
    """Behavior state machine thresholds."""

    # Pylon avoidance
    pylon_proximity_m: float = 0.6
    ahead_half_angle_deg: float = 30.0
    turn_min_deg: float = 90.0
    turn_max_deg: float = 180.0
    turn_tolerance_deg: float = 10.0
    turn_timeout: float = 6.0  # seconds
    turn_rate_dps: float = 60.0
    retrigger_cooldown: float = 3.0  # seconds per pylon

    # Mowing random walk
    cruise_speed_mps: float = 0.3
    wander_deg: float = 20.0
    wander_interval: float = 5.0  # seconds

    # Person safety while mowing
    person_stop_distance_m: float = 3.0

    # Perception loss handling
    stale_grace: float = 1.5  # seconds stale before escaping
    stale_fault_timeout: float = 10.0  # seconds stale before faulting
    escape_reverse_s: float = 2.0
    escape_turn_s: float = 1.0
    escape_speed_mps: float = 0.2

    # Battery hysteresis (percent)
    battery_low_percent: float = 20.0
    battery_resume_percent: float = 80.0

    # Sensor limits
    max_tilt_deg: float = 30.0
    overheat_c: float = 70.0
    overheat_resume_c: float = 65.0

    # Audible announcements
    announce_cooldown_s: float = 10.0  # per announcement

    def __post_init__(self):
        if self.battery_resume_percent <= self.battery_low_percent:
            raise ValueError("battery_resume_percent must exceed battery_low_percent")
        if not 0 < self.turn_min_deg <= self.turn_max_deg <= 180.0:
            raise ValueError("Turn angle range must satisfy 0 < min <= max <= 180")
        if self.stale_fault_timeout <= self.stale_grace:
            raise ValueError("stale_fault_timeout must exceed stale_grace")
        if self.announce_cooldown_s < 0:
            raise ValueError("announce_cooldown_s must not be negative")
        if self.overheat_resume_c >= self.overheat_c:
            raise ValueError("overheat_resume_c must be below overheat_c")


@dataclass(frozen=True)
class NotificationConfig:
    """Notification dispatcher configuration."""

    endpoint: str = "https://notify-api.line.me/api/notify"
    token: str = ""  # Transport credential
    cooldown_s: float = 60.0  # One notification per class per window
    queue_size: int = 8
    max_retries: int = 3
    backoff_s: float = 1.0  # Doubles after each failed attempt
    request_timeout_s: float = 10.0

    def __post_init__(self):
        if self.cooldown_s < 0:
            raise ValueError("cooldown_s must not be negative")
        if self.queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")


@dataclass(frozen=True)
class SwarmConfig:
    """Swarm gossip configuration."""

    enabled: bool = True
    port: int = 47800
    broadcast_address: str = "255.255.255.255"
    num_sectors: int = 8  # Heading sectors the work area is split into
    claim_interval_s: float = 1.0
    liveness_window_s: float = 5.0  # Older messages are ignored
    outbox_size: int = 4
    claim_priority: int = 0

    def __post_init__(self):
        if self.num_sectors < 1:
            raise ValueError("num_sectors must be at least 1")
        if self.liveness_window_s <= 0:
            raise ValueError("liveness_window_s must be positive")


@dataclass(frozen=True)
class MowerConfig:
    """Top-level mower configuration."""

    mode: OperatingMode = OperatingMode.MOW
    unit_id: Optional[int] = None  # Random in 1..249 if None
    tick_rate_hz: float = 10.0

    perception: PerceptionConfig = field(default_factory=PerceptionConfig)
    drive: DriveConfig = field(default_factory=DriveConfig)
    behavior: BehaviorConfig = field(default_factory=BehaviorConfig)
    notification: NotificationConfig = field(default_factory=NotificationConfig)
    swarm: SwarmConfig = field(default_factory=SwarmConfig)

    def __post_init__(self):
        if isinstance(self.mode, str):
            object.__setattr__(self, "mode", OperatingMode(self.mode))
        if self.unit_id is not None and not 1 <= self.unit_id <= 249:
            raise ValueError("unit_id must be in 1..249 (0 is the commander)")
        if self.tick_rate_hz <= 0:
            raise ValueError("tick_rate_hz must be positive")

    @property
    def tick_period(self) -> float:
        """Control loop period in seconds."""
        return 1.0 / self.tick_rate_hz

    def with_overrides(self, **changes) -> "MowerConfig":
        """Return a new configuration with the given fields replaced."""
        return replace(self, **changes)

    @classmethod
    def for_mowing(cls, unit_id: Optional[int] = None) -> "MowerConfig":
        """Create configuration for pylon-bounded mowing."""
        return cls(mode=OperatingMode.MOW, unit_id=unit_id)

    @classmethod
    def for_monitoring(
        cls, mode: OperatingMode = OperatingMode.MONITOR_ANIMAL, token: str = ""
    ) -> "MowerConfig":
        """Create configuration for a stationary monitoring appliance."""
        if mode == OperatingMode.MOW:
            raise ValueError("Monitoring configuration needs a monitor mode")
        return cls(
            mode=mode,
            notification=NotificationConfig(token=token),
            # Stationary units have no use for area claims
            swarm=SwarmConfig(enabled=False),
        )

    @classmethod
    def for_simulation(cls, unit_id: int = 1, mode: OperatingMode = OperatingMode.MOW) -> "MowerConfig":
        """Create configuration tuned for the kinematic simulator."""
        return cls(
            mode=mode,
            unit_id=unit_id,
            perception=PerceptionConfig(
                # Simulated detections have no jitter
                smoothing_alpha=0.8,
            ),
            swarm=SwarmConfig(enabled=False),
        )
