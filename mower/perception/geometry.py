"""
Bearing and range estimation from bounding-box geometry.

Uses the calibrated pinhole ``CameraModel``:

    bearing  = atan((u - cx) / fx)          (0 = straight ahead, + = right)
    range    = fy * H_real / h_px

where ``H_real`` is the physical height prior of the detected class. The
camera is assumed to look along the direction of travel, level with the
ground; tilt and lens distortion are ignored.
"""

import math

import numpy as np

from ..core.config import CameraModel


def bbox_center(bbox: tuple[float, float, float, float]) -> tuple[float, float]:
    """Center (u, v) of an (x, y, w, h) box."""
    x, y, w, h = bbox
    return (x + w / 2.0, y + h / 2.0)


def bearing_from_pixel(u: float, camera: CameraModel) -> float:
    """Horizontal bearing in degrees of an image column."""
    return math.degrees(math.atan2(u - camera.cx, camera.fx))


def range_from_height(h_px: float, height_m: float, camera: CameraModel) -> float:
    """Distance in meters to an object of known height spanning ``h_px`` rows."""
    h = max(1.0, h_px)  # prevent divide-by-zero
    return camera.fy * height_m / h


def project_height(distance_m: float, height_m: float, camera: CameraModel) -> float:
    """Apparent height in pixels of an object at ``distance_m`` (inverse of range)."""
    return camera.fy * height_m / max(distance_m, 1e-6)


def pixel_from_bearing(bearing_deg: float, camera: CameraModel) -> float:
    """Image column of a bearing (inverse of bearing_from_pixel)."""
    return camera.cx + camera.fx * math.tan(math.radians(bearing_deg))


def in_view(bearing_deg: float, camera: CameraModel) -> bool:
    """Whether a bearing falls inside the horizontal field of view."""
    half_fov = math.degrees(math.atan2(camera.width / 2.0, camera.fx))
    return abs(bearing_deg) <= half_fov


def center_distance_matrix(
    a: list[tuple[float, float]],
    b: list[tuple[float, float]],
) -> np.ndarray:
    """Pairwise Euclidean distances between two lists of pixel centers."""
    if not a or not b:
        return np.zeros((len(a), len(b)))
    pa = np.asarray(a, dtype=np.float64)[:, None, :]
    pb = np.asarray(b, dtype=np.float64)[None, :, :]
    return np.linalg.norm(pa - pb, axis=2)


def normalize_angle(angle_deg: float) -> float:
    """Wrap an angle to [-180, 180)."""
    return (angle_deg + 180.0) % 360.0 - 180.0
