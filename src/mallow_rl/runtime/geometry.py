"""3D geometry helpers for the Y-up world frame.

The horizontal plane is X/Z. Yaw 0 looks down +Z and grows towards +X.
"""

from __future__ import annotations

import math

from pyglet.math import Vec3

ORIGIN = Vec3(0.0, 0.0, 0.0)


def vector_components(vector: Vec3) -> list[float]:
    return [float(vector.x), float(vector.y), float(vector.z)]


def is_finite_vector(vector: Vec3) -> bool:
    return all(math.isfinite(component) for component in vector_components(vector))


def horizontal_distance(point_a: Vec3, point_b: Vec3) -> float:
    return math.hypot(point_b.x - point_a.x, point_b.z - point_a.z)


def horizontal_speed(velocity_x: float, velocity_z: float) -> float:
    return math.hypot(velocity_x, velocity_z)


def heading_to_vector(yaw: float, pitch: float = 0.0) -> Vec3:
    cos_pitch = math.cos(pitch)
    return Vec3(math.sin(yaw) * cos_pitch, math.sin(pitch), math.cos(yaw) * cos_pitch)


def wrap_angle(angle: float) -> float:
    """Wrap an angle in radians into [-pi, pi)."""
    return ((angle + math.pi) % (2.0 * math.pi)) - math.pi
