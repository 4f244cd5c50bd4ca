from __future__ import annotations

import math
import random

import pytest

from mallow_rl.arena import Arena
from mallow_rl.config import DEFAULT_AMMO, TEAM_OPFOR, TEAM_TASK_FORCE, VISION_GRID_CELLS
from mallow_rl.rl.env import (
    EnvWrapper,
    apply_action,
    build_vision_grid,
    observation_extras,
    observation_from_entity,
    sample_random_action,
)
from mallow_rl.rl.types import Action
from mallow_rl.runtime import Vec3


def grid_index(dx, dz):
    return math.floor((dz + 32) / 2) * 32 + math.floor((dx + 32) / 2)


def test_vision_grid_marks_allies_and_enemies():
    arena = Arena()
    agent = arena.spawn_combatant(Vec3(0.0, 1.0, 0.0), TEAM_TASK_FORCE, "agent")
    arena.spawn_combatant(Vec3(4.0, 1.0, 0.0), TEAM_TASK_FORCE, "ally")
    arena.spawn_combatant(Vec3(0.0, 1.0, -6.0), TEAM_OPFOR, "enemy")
    arena.spawn_combatant(Vec3(60.0, 1.0, 0.0), TEAM_OPFOR, "far")
    arena.spawn_combatant(Vec3(40.0, 1.0, 0.0), TEAM_OPFOR, "off-grid")

    grid = build_vision_grid(agent, arena.combatants)

    assert len(grid) == VISION_GRID_CELLS
    assert grid[grid_index(4.0, 0.0)] == 1
    assert grid[grid_index(0.0, -6.0)] == 2
    assert sum(1 for cell in grid if cell) == 2


def test_vision_grid_last_writer_wins_and_skips_dead():
    arena = Arena()
    agent = arena.spawn_combatant(Vec3(0.0, 1.0, 0.0), TEAM_TASK_FORCE, "agent")
    arena.spawn_combatant(Vec3(2.2, 1.0, 2.2), TEAM_OPFOR, "enemy")
    ally = arena.spawn_combatant(Vec3(2.6, 1.0, 2.6), TEAM_TASK_FORCE, "ally")

    assert build_vision_grid(agent, arena.combatants)[grid_index(2.2, 2.2)] == 1

    ally.is_dead = True
    assert build_vision_grid(agent, arena.combatants)[grid_index(2.2, 2.2)] == 2


def test_vision_grid_skips_non_finite_positions():
    arena = Arena()
    agent = arena.spawn_combatant(Vec3(0.0, 1.0, 0.0), TEAM_TASK_FORCE, "agent")
    broken = arena.spawn_combatant(Vec3(2.0, 1.0, 0.0), TEAM_OPFOR, "broken")
    arena.spawn_combatant(Vec3(-4.0, 1.0, 0.0), TEAM_OPFOR, "enemy")
    broken.body.position = Vec3(float("nan"), 1.0, 0.0)

    grid = build_vision_grid(agent, arena.combatants)
    assert grid[grid_index(-4.0, 0.0)] == 2
    assert sum(1 for cell in grid if cell) == 1

    agent.body.position = Vec3(0.0, 1.0, float("inf"))
    assert not any(build_vision_grid(agent, arena.combatants))


def test_observation_is_finite_and_bounded():
    arena = Arena()
    agent = arena.spawn_combatant(Vec3(3.0, 1.0, -2.0), TEAM_OPFOR, "agent")
    arena.spawn_combatant(Vec3(5.0, 1.0, -2.0), TEAM_TASK_FORCE, "enemy")
    agent.health = float("nan")
    agent.armor = 250.0

    observation = observation_from_entity(agent, arena.combatants)
    vector = observation.to_vector(include_extras=True)

    assert all(math.isfinite(value) for value in vector)
    assert observation.health == 0.0
    assert observation.armor == 100.0
    assert observation.team == 1
    assert set(observation.vision_grid) <= {0, 1, 2}
    assert len(vector) == 79


def test_observation_without_body_defaults_to_origin():
    arena = Arena()
    agent = arena.spawn_combatant(Vec3(3.0, 1.0, -2.0), TEAM_TASK_FORCE, "agent")
    arena.spawn_combatant(Vec3(4.0, 1.0, -2.0), TEAM_OPFOR, "enemy")
    agent.dispose()

    observation = observation_from_entity(agent, arena.combatants)

    assert observation.position == (0.0, 0.0, 0.0)
    assert observation.velocity == (0.0, 0.0, 0.0)
    assert observation.ammo == DEFAULT_AMMO
    assert not any(observation.vision_grid)


def test_observation_extras_reflect_cover_and_fire():
    arena = Arena("de_dust2_d")
    agent = arena.spawn_combatant(Vec3(-8.0, 1.0, 4.0), TEAM_TASK_FORCE, "agent")
    agent.under_fire_timer = 0.5

    extras = observation_extras(agent, arena.cover_distance(agent))

    assert extras.cover_distance == pytest.approx(0.0)
    assert extras.is_under_fire == 1


def test_apply_action_overwrites_velocity_and_triggers():
    arena = Arena()
    agent = arena.spawn_combatant(Vec3(0.0, 1.0, 0.0), TEAM_TASK_FORCE, "agent")
    agent.body.velocity = Vec3(9.0, -2.0, 9.0)

    apply_action(
        agent,
        Action(move_x=0.5, move_z=-1.0, yaw=1.25, pitch=0.3, fire=1.0, crouch_toggle=1.0, throw_grenade=1.0, sprint=1.0),
    )

    assert agent.body.velocity.x == pytest.approx(3.75)
    assert agent.body.velocity.y == pytest.approx(-2.0)
    assert agent.body.velocity.z == pytest.approx(-7.5)
    assert agent.heading == pytest.approx(1.25)
    assert agent.look_pitch == pytest.approx(0.3)
    assert agent.crouched is True
    assert agent.ammo == 29.0
    assert agent.grenades == 1


def test_apply_action_below_threshold_only_moves():
    arena = Arena()
    agent = arena.spawn_combatant(Vec3(0.0, 1.0, 0.0), TEAM_TASK_FORCE, "agent")

    apply_action(agent, Action(move_x=-0.2, move_z=0.4, fire=0.5, jump=0.5, crouch_toggle=0.4))

    assert agent.body.velocity.x == pytest.approx(-1.0)
    assert agent.body.velocity.y == pytest.approx(0.0)
    assert agent.body.velocity.z == pytest.approx(2.0)
    assert agent.ammo == 30.0
    assert agent.crouched is False


def test_apply_action_tolerates_missing_body():
    arena = Arena()
    agent = arena.spawn_combatant(Vec3(0.0, 1.0, 0.0), TEAM_TASK_FORCE, "agent")
    agent.dispose()

    apply_action(agent, Action(move_x=1.0, yaw=0.5, jump=1.0, fire=1.0, throw_grenade=1.0))

    assert agent.heading == pytest.approx(0.5)
    assert agent.grenades == 2


def test_random_actions_are_in_range():
    rng = random.Random(0)
    for _ in range(50):
        action = sample_random_action(rng)
        assert -1.0 <= action.move_x <= 1.0
        assert -math.pi <= action.yaw <= math.pi
        assert -math.pi / 2 <= action.pitch <= math.pi / 2


def test_env_wrapper_runs_to_step_limit():
    env = EnvWrapper(map_name="open_field", opponents=2, max_steps=5, rng=random.Random(1))
    observation = env.reset()

    assert env.agent.external_control is True
    assert len(env.opponents) == 2
    assert observation.team == 0
    assert env.agent.body.position.x < 0.0

    result = None
    for _ in range(5):
        result = env.step(Action())
        assert -50.0 <= result.reward <= 50.0
        if result.done:
            break

    assert result.done
    assert result.info["step"] == 5
    with pytest.raises(RuntimeError):
        env.step(Action())


def test_env_wrapper_rewards_elimination():
    env = EnvWrapper(map_name="de_dust2_d", opponents=1, max_steps=100, rng=random.Random(2))
    env.reset()
    env.opponents[0].take_damage(500.0, source=env.agent)

    result = env.step(Action())

    assert result.done
    assert result.info["winner"] == TEAM_TASK_FORCE
    assert result.reward == 50.0


def test_env_wrapper_requires_reset():
    with pytest.raises(RuntimeError):
        EnvWrapper(max_steps=3).step(Action())
