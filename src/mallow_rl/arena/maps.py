"""Named map spawn and cover data for the headless arena."""

from __future__ import annotations

from dataclasses import dataclass, field
import random

from mallow_rl.config import FALLBACK_SPAWN_JITTER, FALLBACK_SPAWN_X, FALLBACK_SPAWN_Y, FALLBACK_SPAWN_Z_SPACING
from mallow_rl.runtime import Vec3

SPAWN_KEY_TASK_FORCE = "CT"
SPAWN_KEY_OPFOR = "T"


@dataclass(frozen=True)
class GameMap:
    name: str
    spawns: dict[str, tuple[Vec3, ...]] = field(default_factory=dict)
    cover_points: tuple[Vec3, ...] = ()


MAPS: dict[str, GameMap] = {
    "de_dust2_d": GameMap(
        name="de_dust2_d",
        spawns={
            SPAWN_KEY_TASK_FORCE: (Vec3(-24.0, 1.0, -6.0), Vec3(-24.0, 1.0, 0.0), Vec3(-24.0, 1.0, 6.0)),
            SPAWN_KEY_OPFOR: (Vec3(24.0, 1.0, -6.0), Vec3(24.0, 1.0, 0.0), Vec3(24.0, 1.0, 6.0)),
        },
        cover_points=(Vec3(-8.0, 1.0, 4.0), Vec3(0.0, 1.0, -10.0), Vec3(8.0, 1.0, 4.0)),
    ),
    "moba_lanes": GameMap(
        name="moba_lanes",
        spawns={
            SPAWN_KEY_TASK_FORCE: (Vec3(-50.0, 2.0, 20.0), Vec3(-50.0, 2.0, 0.0), Vec3(-50.0, 2.0, -20.0)),
            SPAWN_KEY_OPFOR: (Vec3(50.0, 2.0, 20.0), Vec3(50.0, 2.0, 0.0), Vec3(50.0, 2.0, -20.0)),
        },
        cover_points=(Vec3(0.0, 1.0, 20.0), Vec3(0.0, 1.0, 0.0), Vec3(0.0, 1.0, -20.0)),
    ),
    "open_field": GameMap(name="open_field"),
}


def load_map(name: str) -> GameMap:
    """Return map data; unknown names yield an empty map so callers fall back to generated spawns."""
    return MAPS.get(name, GameMap(name=name))


def generate_spawn_points(side: int, count: int, rng: random.Random | None = None) -> list[Vec3]:
    """Procedural spawn line at x = side * FALLBACK_SPAWN_X, spaced along +Z."""
    rng = rng or random.Random()
    base_x = FALLBACK_SPAWN_X if side > 0 else -FALLBACK_SPAWN_X
    return [
        Vec3(base_x + rng.random() * FALLBACK_SPAWN_JITTER, FALLBACK_SPAWN_Y, index * FALLBACK_SPAWN_Z_SPACING)
        for index in range(int(count))
    ]
