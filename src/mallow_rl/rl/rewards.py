"""Reward shaping for trained combatants."""

from __future__ import annotations

from dataclasses import dataclass

from mallow_rl.config import REWARDS, RewardConfig
from mallow_rl.rl.entity import CombatEntity
from mallow_rl.rl.types import Observation, clamp, finite_or
from mallow_rl.runtime import Vec3, horizontal_distance, horizontal_speed

REWARD_COMPONENT_KEYS = (
    "enemy_damage",
    "friendly_fire",
    "health_lost",
    "death",
    "exploration",
    "movement",
    "stuck",
)


@dataclass
class RewardTracker:
    """Per-agent counters carried between steps to compute incremental rewards."""

    spawn_position: Vec3
    last_enemy_damage: float = 0.0
    last_friendly_damage: float = 0.0
    stuck_steps: int = 0

    def reset(self, spawn_position: Vec3) -> None:
        self.spawn_position = spawn_position
        self.last_enemy_damage = 0.0
        self.last_friendly_damage = 0.0
        self.stuck_steps = 0


class RewardShaper:
    def __init__(self, config: RewardConfig = REWARDS) -> None:
        self.config = config

    def clamp(self, reward: float) -> float:
        return clamp(finite_or(reward), -self.config.clamp, self.config.clamp)

    def compute_components(
        self,
        entity: CombatEntity,
        tracker: RewardTracker,
        previous: Observation,
        current: Observation,
    ) -> dict[str, float]:
        """Score one step and roll the tracker's damage and stuck counters forward."""
        config = self.config
        components = {key: 0.0 for key in REWARD_COMPONENT_KEYS}

        new_enemy_damage = entity.enemy_damage_dealt - tracker.last_enemy_damage
        if new_enemy_damage > 0:
            components["enemy_damage"] = new_enemy_damage * config.enemy_damage
        new_friendly_damage = entity.friendly_damage_dealt - tracker.last_friendly_damage
        if new_friendly_damage > 0:
            components["friendly_fire"] = -new_friendly_damage * config.friendly_damage
        tracker.last_enemy_damage = entity.enemy_damage_dealt
        tracker.last_friendly_damage = entity.friendly_damage_dealt

        health_lost = previous.health - current.health
        if health_lost > 0:
            components["health_lost"] = -health_lost * config.health_lost

        if entity.is_dead:
            components["death"] = -config.death

        body = entity.body
        if body is not None:
            components["exploration"] = horizontal_distance(tracker.spawn_position, body.position) * config.spawn_distance

        speed = horizontal_speed(current.velocity[0], current.velocity[2])
        if speed > config.moving_speed_threshold:
            components["movement"] = config.moving
            tracker.stuck_steps = 0
        else:
            tracker.stuck_steps += 1
        if tracker.stuck_steps > config.stuck_steps_threshold:
            components["stuck"] = -config.stuck

        return {key: finite_or(value) for key, value in components.items()}

    def compute(
        self,
        entity: CombatEntity,
        tracker: RewardTracker,
        previous: Observation,
        current: Observation,
    ) -> tuple[float, dict[str, float]]:
        components = self.compute_components(entity, tracker, previous, current)
        return self.clamp(sum(components.values())), components

    def terminal_bonus(self, team: str, winner: str | None) -> float:
        """Round-end bonus for a team; a draw (winner None) scores nothing."""
        if winner is None:
            return 0.0
        return self.config.round_win if team == winner else self.config.round_loss
