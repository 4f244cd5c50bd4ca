"""Protocols for the live entities the RL core reads from and commands."""

from __future__ import annotations

from typing import Protocol

from mallow_rl.runtime import Vec3


class PhysicsBody(Protocol):
    position: Vec3
    velocity: Vec3


class CombatEntity(Protocol):
    """Query and command surface supplied by the game engine for one combatant."""

    name: str
    team: str
    body: PhysicsBody | None
    health: float
    armor: float
    grenades: int
    crouched: bool
    heading: float
    is_dead: bool
    external_control: bool
    enemy_damage_dealt: float
    friendly_damage_dealt: float

    @property
    def ammo(self) -> float: ...

    @property
    def weapon_id(self) -> int: ...

    @property
    def is_under_fire(self) -> bool: ...

    def jump(self) -> None: ...

    def set_look_angles(self, yaw: float, pitch: float) -> None: ...

    def fire_at_look_direction(self) -> bool: ...

    def throw_grenade(self) -> bool: ...

    def toggle_crouch(self) -> None: ...
