"""Headless arena standing in for the game and physics engine."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import Callable

from mallow_rl.arena.entities import Combatant
from mallow_rl.arena.maps import load_map
from mallow_rl.config import ARENA, COVER_SEARCH_RADIUS, ArenaConfig
from mallow_rl.runtime import Vec3, heading_to_vector, horizontal_distance, wrap_angle

LOGGER = logging.getLogger("mallow_rl.arena")

DeathListener = Callable[[Combatant, "Combatant | None"], None]


@dataclass
class Grenade:
    thrower: Combatant
    position: Vec3
    fuse_remaining: float


class Arena:
    """Owns combatants, integrates their bodies, and resolves weapon effects."""

    def __init__(self, map_name: str | None = None, config: ArenaConfig = ARENA) -> None:
        self.config = config
        self.map_name = map_name
        self.combatants: list[Combatant] = []
        self.grenades: list[Grenade] = []
        self.available_spawns: dict[str, list[Vec3]] = {}
        self.cover_points: list[Vec3] = []
        self.elapsed = 0.0
        self._death_listeners: list[DeathListener] = []
        if map_name is not None:
            game_map = load_map(map_name)
            self.available_spawns = {key: list(points) for key, points in game_map.spawns.items()}
            self.cover_points = list(game_map.cover_points)

    def add_death_listener(self, listener: DeathListener) -> None:
        self._death_listeners.append(listener)

    def remove_death_listener(self, listener: DeathListener) -> None:
        if listener in self._death_listeners:
            self._death_listeners.remove(listener)

    def spawn_combatant(self, position: Vec3, team: str, name: str) -> Combatant:
        combatant = Combatant(self, position, team, name, config=self.config)
        self.combatants.append(combatant)
        return combatant

    def remove_combatant(self, combatant: Combatant) -> None:
        if combatant in self.combatants:
            self.combatants.remove(combatant)
        self.grenades = [grenade for grenade in self.grenades if grenade.thrower is not combatant]
        combatant.dispose()

    def clear(self) -> None:
        for combatant in list(self.combatants):
            self.remove_combatant(combatant)
        self.grenades = []

    def alive_combatants(self, team: str | None = None) -> list[Combatant]:
        return [
            combatant
            for combatant in self.combatants
            if not combatant.is_dead and (team is None or combatant.team == team)
        ]

    def notify_death(self, victim: Combatant, killer: Combatant | None) -> None:
        LOGGER.debug("%s killed by %s", victim.name, killer.name if killer else "world")
        for listener in list(self._death_listeners):
            listener(victim, killer)

    def step(self, dt: float) -> None:
        self.elapsed += dt
        for combatant in self.combatants:
            combatant.tick(dt)
            if combatant.is_dead or combatant.body is None:
                continue
            self._integrate(combatant, dt)
        self._step_grenades(dt)

    def _integrate(self, combatant: Combatant, dt: float) -> None:
        body = combatant.body
        velocity_y = body.velocity.y
        if not combatant.on_ground or velocity_y > 0.0:
            velocity_y += self.config.gravity * dt
        position = body.position + Vec3(body.velocity.x, velocity_y, body.velocity.z) * dt
        if position.y <= self.config.ground_height:
            position = Vec3(position.x, self.config.ground_height, position.z)
            velocity_y = 0.0
        body.position = position
        body.velocity = Vec3(body.velocity.x, velocity_y, body.velocity.z)

    def resolve_shot(self, shooter: Combatant) -> Combatant | None:
        """Hit the nearest combatant within range inside the shooter's aim cone."""
        if shooter.body is None:
            return None
        origin = shooter.body.position
        best_target = None
        best_distance = math.inf
        for target in self.combatants:
            if target is shooter or target.is_dead or target.body is None:
                continue
            distance = horizontal_distance(origin, target.body.position)
            if distance > self.config.weapon_range or distance >= best_distance:
                continue
            bearing = math.atan2(target.body.position.x - origin.x, target.body.position.z - origin.z)
            if abs(wrap_angle(bearing - shooter.look_yaw)) > self.config.aim_tolerance:
                continue
            best_target = target
            best_distance = distance
        if best_target is not None:
            best_target.take_damage(shooter.weapon.damage if shooter.weapon else 0.0, source=shooter)
        return best_target

    def spawn_grenade(self, thrower: Combatant) -> Grenade:
        direction = heading_to_vector(thrower.look_yaw)
        landing = thrower.body.position + Vec3(direction.x, 0.0, direction.z) * self.config.grenade_throw_distance
        grenade = Grenade(thrower=thrower, position=landing, fuse_remaining=self.config.grenade_fuse)
        self.grenades.append(grenade)
        return grenade

    def _step_grenades(self, dt: float) -> None:
        pending: list[Grenade] = []
        for grenade in self.grenades:
            grenade.fuse_remaining -= dt
            if grenade.fuse_remaining > 0.0:
                pending.append(grenade)
                continue
            self._explode(grenade)
        self.grenades = pending

    def _explode(self, grenade: Grenade) -> None:
        for target in self.alive_combatants():
            if target.body is None:
                continue
            distance = horizontal_distance(grenade.position, target.body.position)
            if distance > self.config.grenade_radius:
                continue
            falloff = 1.0 - distance / self.config.grenade_radius
            target.take_damage(self.config.grenade_damage * falloff, source=grenade.thrower)

    def cover_distance(self, combatant: Combatant) -> float:
        """Distance to the nearest cover point as a fraction of the search radius."""
        if combatant.body is None or not self.cover_points:
            return 1.0
        nearest = min(horizontal_distance(combatant.body.position, point) for point in self.cover_points)
        return min(1.0, nearest / COVER_SEARCH_RADIUS)

