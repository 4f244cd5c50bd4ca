"""Combatant entity model for the headless arena."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from mallow_rl.config import ARENA, DEFAULT_AMMO, MAX_HEALTH, ArenaConfig
from mallow_rl.runtime import ORIGIN, Vec3

if TYPE_CHECKING:
    from mallow_rl.arena.world import Arena


@dataclass
class Body:
    position: Vec3
    velocity: Vec3 = ORIGIN


class Weapon:
    """Hitscan rifle with a magazine and a fire cooldown."""

    def __init__(self, magazine: int, damage: float, cooldown: float, weapon_id: int = 0) -> None:
        self.weapon_id = weapon_id
        self.magazine = int(magazine)
        self.current_ammo = int(magazine)
        self.damage = float(damage)
        self.cooldown = float(cooldown)
        self.cooldown_remaining = 0.0

    def pull_trigger(self) -> bool:
        """Consume one round if the weapon is ready."""
        if self.cooldown_remaining > 0.0 or self.current_ammo <= 0:
            return False
        self.current_ammo -= 1
        self.cooldown_remaining = self.cooldown
        return True

    def tick(self, dt: float) -> None:
        if self.cooldown_remaining > 0.0:
            self.cooldown_remaining = max(0.0, self.cooldown_remaining - dt)


class Combatant:
    """A team member that can move, look, shoot, crouch, and throw grenades."""

    def __init__(
        self,
        arena: Arena,
        position: Vec3,
        team: str,
        name: str,
        config: ArenaConfig = ARENA,
    ) -> None:
        self.arena = arena
        self.config = config
        self.name = name
        self.team = team
        self.body: Body | None = Body(position=position)
        self.health = MAX_HEALTH
        self.armor = 0.0
        self.weapon: Weapon | None = Weapon(config.weapon_magazine, config.weapon_damage, config.weapon_cooldown)
        self.grenades = int(config.grenades)
        self.crouched = False
        self.heading = 0.0
        self.look_yaw = 0.0
        self.look_pitch = 0.0
        self.external_control = False
        self.is_dead = False
        self.enemy_damage_dealt = 0.0
        self.friendly_damage_dealt = 0.0
        self.under_fire_timer = 0.0

    @property
    def damage_dealt(self) -> float:
        return self.enemy_damage_dealt + self.friendly_damage_dealt

    @property
    def ammo(self) -> float:
        if self.weapon is None:
            return DEFAULT_AMMO
        return float(self.weapon.current_ammo)

    @property
    def weapon_id(self) -> int:
        return self.weapon.weapon_id if self.weapon is not None else 0

    @property
    def is_under_fire(self) -> bool:
        return self.under_fire_timer > 0.0

    @property
    def on_ground(self) -> bool:
        return self.body is not None and self.body.position.y <= self.config.ground_height + 1e-6

    def jump(self) -> None:
        if self.is_dead or not self.on_ground:
            return
        velocity = self.body.velocity
        self.body.velocity = Vec3(velocity.x, self.config.jump_velocity, velocity.z)

    def set_look_angles(self, yaw: float, pitch: float) -> None:
        self.look_yaw = float(yaw)
        self.look_pitch = float(pitch)

    def fire_at_look_direction(self) -> bool:
        if self.is_dead or self.weapon is None or not self.weapon.pull_trigger():
            return False
        return self.arena.resolve_shot(self) is not None

    def throw_grenade(self) -> bool:
        if self.is_dead or self.grenades <= 0 or self.body is None:
            return False
        self.grenades -= 1
        self.arena.spawn_grenade(self)
        return True

    def toggle_crouch(self) -> None:
        if not self.is_dead:
            self.crouched = not self.crouched

    def take_damage(self, amount: float, source: Combatant | None = None) -> bool:
        """Apply damage and credit the source; return True if this hit was lethal."""
        if self.is_dead or amount <= 0.0:
            return False
        applied = min(float(amount), self.health)
        self.health -= applied
        self.under_fire_timer = self.config.under_fire_seconds
        if source is not None and source is not self:
            if source.team == self.team:
                source.friendly_damage_dealt += applied
            else:
                source.enemy_damage_dealt += applied
        if self.health <= 0.0:
            self.health = 0.0
            self.is_dead = True
            if self.body is not None:
                self.body.velocity = ORIGIN
            self.arena.notify_death(self, source)
            return True
        return False

    def tick(self, dt: float) -> None:
        if self.weapon is not None:
            self.weapon.tick(dt)
        if self.under_fire_timer > 0.0:
            self.under_fire_timer = max(0.0, self.under_fire_timer - dt)

    def dispose(self) -> None:
        self.body = None
        self.weapon = None
