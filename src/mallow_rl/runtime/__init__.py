"""Runtime helpers for Mallow RL."""

from .geometry import (
    ORIGIN,
    Vec3,
    heading_to_vector,
    horizontal_distance,
    horizontal_speed,
    is_finite_vector,
    vector_components,
    wrap_angle,
)
from .helpers import get_torch_device, seeded_rng

__all__ = [
    "ORIGIN",
    "Vec3",
    "get_torch_device",
    "heading_to_vector",
    "horizontal_distance",
    "horizontal_speed",
    "is_finite_vector",
    "seeded_rng",
    "vector_components",
    "wrap_angle",
]
