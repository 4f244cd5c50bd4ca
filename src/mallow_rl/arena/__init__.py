"""Headless combat arena used by the training drivers and tests."""

from .entities import Body, Combatant, Weapon
from .maps import MAPS, SPAWN_KEY_OPFOR, SPAWN_KEY_TASK_FORCE, GameMap, generate_spawn_points, load_map
from .world import Arena, Grenade

__all__ = [
    "Arena",
    "Body",
    "Combatant",
    "GameMap",
    "Grenade",
    "MAPS",
    "SPAWN_KEY_OPFOR",
    "SPAWN_KEY_TASK_FORCE",
    "Weapon",
    "generate_spawn_points",
    "load_map",
]
