"""Translation between live combatants and observation/action records.

`observation_from_entity` and `apply_action` are the only functions that
touch entity state; `EnvWrapper` strings them together into a gym-like
reset/step loop over a headless arena for data collection.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import math
import random
from typing import Any, Iterable

from mallow_rl.arena import (
    SPAWN_KEY_OPFOR,
    SPAWN_KEY_TASK_FORCE,
    Arena,
    Combatant,
    generate_spawn_points,
)
from mallow_rl.config import (
    ARENA,
    BASE_MOVE_SPEED,
    DEFAULT_AMMO,
    MAX_ARMOR,
    MAX_HEALTH,
    PITCH_LIMIT,
    REWARDS,
    SIM_MAP,
    SIM_MAX_STEPS,
    SIM_OPPONENTS,
    SIMULATION_DT,
    SPRINT_MULTIPLIER,
    TEAM_INDEX,
    TEAM_OPFOR,
    TEAM_TASK_FORCE,
    TRIGGER_THRESHOLD,
    VISION_ALLY,
    VISION_CELL_UNITS,
    VISION_EMPTY,
    VISION_ENEMY,
    VISION_GRID_CELLS,
    VISION_GRID_OFFSET,
    VISION_GRID_SIZE,
    VISION_RADIUS,
    YAW_LIMIT,
    ArenaConfig,
    RewardConfig,
)
from mallow_rl.rl.entity import CombatEntity
from mallow_rl.rl.policy import Policy, ScriptedPolicy
from mallow_rl.rl.rewards import RewardShaper, RewardTracker
from mallow_rl.rl.types import Action, Observation, ObservationExtras, clamp, finite_or
from mallow_rl.runtime import Vec3, is_finite_vector

LOGGER = logging.getLogger("mallow_rl.env")


def build_vision_grid(entity: CombatEntity, others: Iterable[CombatEntity]) -> tuple[int, ...]:
    """Project nearby live combatants into a 32x32 ally/enemy occupancy grid.

    Cells are 2 units wide and centred on the entity; when two combatants
    land in the same cell the later one in iteration order wins.
    """
    grid = [VISION_EMPTY] * VISION_GRID_CELLS
    body = entity.body
    if body is None:
        return tuple(grid)

    origin = body.position
    if not is_finite_vector(origin):
        return tuple(grid)
    for other in others:
        if other is entity or other.is_dead or other.body is None:
            continue
        if not is_finite_vector(other.body.position):
            continue
        dx = other.body.position.x - origin.x
        dz = other.body.position.z - origin.z
        if math.hypot(dx, dz) > VISION_RADIUS:
            continue
        grid_x = math.floor((dx + VISION_GRID_OFFSET) / VISION_CELL_UNITS)
        grid_z = math.floor((dz + VISION_GRID_OFFSET) / VISION_CELL_UNITS)
        if not (0 <= grid_x < VISION_GRID_SIZE and 0 <= grid_z < VISION_GRID_SIZE):
            continue
        grid[grid_z * VISION_GRID_SIZE + grid_x] = VISION_ALLY if other.team == entity.team else VISION_ENEMY
    return tuple(grid)


def _finite_triplet(vector: Vec3 | None) -> tuple[float, float, float]:
    if vector is None:
        return (0.0, 0.0, 0.0)
    return (finite_or(vector.x), finite_or(vector.y), finite_or(vector.z))


def observation_from_entity(
    entity: CombatEntity,
    others: Iterable[CombatEntity] = (),
    *,
    extras: ObservationExtras | None = None,
) -> Observation:
    """Sample one entity; a missing physics body reads as the origin at rest."""
    body = entity.body
    return Observation(
        position=_finite_triplet(body.position if body is not None else None),
        velocity=_finite_triplet(body.velocity if body is not None else None),
        health=clamp(finite_or(entity.health), 0.0, MAX_HEALTH),
        armor=clamp(finite_or(entity.armor), 0.0, MAX_ARMOR),
        weapon_id=int(entity.weapon_id),
        ammo=max(0.0, finite_or(entity.ammo, DEFAULT_AMMO)),
        crouch=1 if entity.crouched else 0,
        grenades=max(0.0, finite_or(entity.grenades)),
        team=TEAM_INDEX.get(entity.team, 1),
        vision_grid=build_vision_grid(entity, others),
        extras=extras,
    )


def observation_extras(entity: CombatEntity, cover_distance: float) -> ObservationExtras:
    return ObservationExtras(
        cover_distance=clamp(finite_or(cover_distance, 1.0), 0.0, 1.0),
        is_under_fire=1 if entity.is_under_fire else 0,
    )


def apply_action(entity: CombatEntity, action: Action, base_speed: float = BASE_MOVE_SPEED) -> None:
    """Overwrite the entity's horizontal velocity and fire its triggered side effects."""
    speed = base_speed * (SPRINT_MULTIPLIER if action.sprint > TRIGGER_THRESHOLD else 1.0)
    move_x = clamp(finite_or(action.move_x), -1.0, 1.0)
    move_z = clamp(finite_or(action.move_z), -1.0, 1.0)

    body = entity.body
    if body is not None:
        body.velocity = Vec3(move_x * speed, body.velocity.y, move_z * speed)
        if action.jump > TRIGGER_THRESHOLD:
            entity.jump()

    yaw = finite_or(action.yaw)
    entity.heading = yaw
    entity.set_look_angles(yaw, clamp(finite_or(action.pitch), -PITCH_LIMIT, PITCH_LIMIT))

    if action.fire > TRIGGER_THRESHOLD:
        entity.fire_at_look_direction()
    if action.throw_grenade > TRIGGER_THRESHOLD:
        entity.throw_grenade()
    if action.crouch_toggle > TRIGGER_THRESHOLD:
        entity.toggle_crouch()


def sample_random_action(rng: random.Random | None = None) -> Action:
    """Uniform exploratory action used for bootstrap data collection."""
    rng = rng or random
    return Action(
        move_x=rng.random() * 2.0 - 1.0,
        move_z=rng.random() * 2.0 - 1.0,
        yaw=rng.random() * 2.0 * YAW_LIMIT - YAW_LIMIT,
        pitch=rng.random() * 2.0 * PITCH_LIMIT - PITCH_LIMIT,
        fire=1.0 if rng.random() > 0.8 else 0.0,
        crouch_toggle=1.0 if rng.random() > 0.95 else 0.0,
        throw_grenade=1.0 if rng.random() > 0.99 else 0.0,
    )


@dataclass
class StepResult:
    observation: Observation
    reward: float
    done: bool
    info: dict[str, Any] = field(default_factory=dict)


class EnvWrapper:
    """One externally controlled TaskForce agent against scripted OpFor opponents."""

    def __init__(
        self,
        map_name: str = SIM_MAP,
        opponents: int = SIM_OPPONENTS,
        max_steps: int = SIM_MAX_STEPS,
        dt: float = SIMULATION_DT,
        opponent_policy: Policy | None = None,
        reward_config: RewardConfig = REWARDS,
        arena_config: ArenaConfig = ARENA,
        rng: random.Random | None = None,
    ) -> None:
        if opponents <= 0:
            raise ValueError(f"opponents must be positive, got {opponents}")
        if max_steps <= 0:
            raise ValueError(f"max_steps must be positive, got {max_steps}")
        self.rng = rng or random.Random()
        self.arena = Arena(map_name, config=arena_config)
        self.num_opponents = int(opponents)
        self.max_steps = int(max_steps)
        self.dt = float(dt)
        self.opponent_policy = opponent_policy or ScriptedPolicy(rng=self.rng)
        if not self.opponent_policy.is_loaded():
            self.opponent_policy.load(None)
        self.shaper = RewardShaper(reward_config)

        self.agent: Combatant | None = None
        self.opponents: list[Combatant] = []
        self.tracker: RewardTracker | None = None
        self.last_observation: Observation | None = None
        self.steps = 0
        self.done = False

    def _spawn_points(self, key: str, side: int, count: int) -> list[Vec3]:
        points = list(self.arena.available_spawns.get(key, ()))
        if len(points) < count:
            LOGGER.debug("map %s lacks %s spawns; generating %d", self.arena.map_name, key, count)
            points = generate_spawn_points(side, count, self.rng)
        return points[:count]

    def _observe(self, combatant: Combatant) -> Observation:
        return observation_from_entity(combatant, self.arena.combatants)

    def reset(self) -> Observation:
        self.arena.clear()
        self.steps = 0
        self.done = False

        spawn = self._spawn_points(SPAWN_KEY_TASK_FORCE, 0, 1)[0]
        self.agent = self.arena.spawn_combatant(spawn, TEAM_TASK_FORCE, "agent")
        self.agent.external_control = True
        self.opponents = [
            self.arena.spawn_combatant(point, TEAM_OPFOR, f"opfor-{index}")
            for index, point in enumerate(self._spawn_points(SPAWN_KEY_OPFOR, 1, self.num_opponents))
        ]
        self.tracker = RewardTracker(spawn_position=spawn)
        self.last_observation = self._observe(self.agent)
        return self.last_observation

    def step(self, action: Action) -> StepResult:
        if self.agent is None or self.tracker is None or self.last_observation is None:
            raise RuntimeError("EnvWrapper.step() called before reset()")
        if self.done:
            raise RuntimeError("Episode is done; call reset() before stepping again")

        previous = self.last_observation
        apply_action(self.agent, action)
        for opponent in self.opponents:
            if not opponent.is_dead:
                apply_action(opponent, self.opponent_policy.predict(self._observe(opponent)))
        self.arena.step(self.dt)
        self.steps += 1

        current = self._observe(self.agent)
        reward, components = self.shaper.compute(self.agent, self.tracker, previous, current)

        winner = None
        if not any(not opponent.is_dead for opponent in self.opponents):
            winner = TEAM_TASK_FORCE
        elif self.agent.is_dead:
            winner = TEAM_OPFOR
        if winner is not None:
            reward = self.shaper.clamp(reward + self.shaper.terminal_bonus(TEAM_TASK_FORCE, winner))

        self.done = winner is not None or self.steps >= self.max_steps
        self.last_observation = current
        return StepResult(
            observation=current,
            reward=reward,
            done=self.done,
            info={"step": self.steps, "winner": winner, "components": components},
        )
