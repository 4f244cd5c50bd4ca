from __future__ import annotations

import pytest

from mallow_rl.arena import Arena
from mallow_rl.config import TEAM_OPFOR, TEAM_TASK_FORCE, RewardConfig
from mallow_rl.rl.rewards import REWARD_COMPONENT_KEYS, RewardShaper, RewardTracker
from mallow_rl.runtime import Vec3

SPAWN = Vec3(0.0, 1.0, 0.0)


@pytest.fixture
def duel():
    arena = Arena()
    agent = arena.spawn_combatant(SPAWN, TEAM_TASK_FORCE, "agent")
    ally = arena.spawn_combatant(Vec3(2.0, 1.0, 0.0), TEAM_TASK_FORCE, "ally")
    enemy = arena.spawn_combatant(Vec3(10.0, 1.0, 0.0), TEAM_OPFOR, "enemy")
    return agent, ally, enemy


def test_damage_components_are_incremental(duel, observation_factory):
    agent, ally, enemy = duel
    shaper = RewardShaper()
    tracker = RewardTracker(spawn_position=SPAWN)
    observation = observation_factory(velocity=(1.0, 0.0, 0.0))

    enemy.take_damage(10.0, source=agent)
    ally.take_damage(5.0, source=agent)
    components = shaper.compute_components(agent, tracker, observation, observation)

    assert set(components) == set(REWARD_COMPONENT_KEYS)
    assert components["enemy_damage"] == pytest.approx(10.0)
    assert components["friendly_fire"] == pytest.approx(-10.0)
    assert components["movement"] == pytest.approx(0.05)

    repeat = shaper.compute_components(agent, tracker, observation, observation)
    assert repeat["enemy_damage"] == 0.0
    assert repeat["friendly_fire"] == 0.0


def test_total_reward_is_clamped(duel, observation_factory):
    agent, _, enemy = duel
    shaper = RewardShaper(RewardConfig(enemy_damage=5.0))
    observation = observation_factory()

    enemy.take_damage(40.0, source=agent)
    reward, components = shaper.compute(agent, RewardTracker(spawn_position=SPAWN), observation, observation)

    assert components["enemy_damage"] == pytest.approx(200.0)
    assert reward == 50.0


def test_health_loss_and_death_penalties(duel, observation_factory):
    agent, _, enemy = duel
    shaper = RewardShaper()
    previous = observation_factory(health=30.0)
    current = observation_factory(health=0.0)

    agent.take_damage(100.0, source=enemy)
    components = shaper.compute_components(agent, RewardTracker(spawn_position=SPAWN), previous, current)

    assert components["health_lost"] == pytest.approx(-15.0)
    assert components["death"] == -20.0


def test_stuck_penalty_after_threshold(duel, observation_factory):
    agent, _, _ = duel
    shaper = RewardShaper()
    tracker = RewardTracker(spawn_position=SPAWN)
    still = observation_factory(velocity=(0.0, 0.0, 0.0))

    for _ in range(180):
        assert shaper.compute_components(agent, tracker, still, still)["stuck"] == 0.0
    assert shaper.compute_components(agent, tracker, still, still)["stuck"] == pytest.approx(-0.1)

    moving = observation_factory(velocity=(0.0, 0.0, 2.0))
    assert shaper.compute_components(agent, tracker, still, moving)["stuck"] == 0.0
    assert tracker.stuck_steps == 0


def test_exploration_scales_with_distance_from_spawn(duel, observation_factory):
    agent, _, _ = duel
    agent.body.position = Vec3(3.0, 1.0, 4.0)
    observation = observation_factory()

    components = RewardShaper().compute_components(agent, RewardTracker(spawn_position=SPAWN), observation, observation)

    assert components["exploration"] == pytest.approx(0.05)


def test_exploration_is_zero_without_body(duel, observation_factory):
    agent, _, _ = duel
    agent.dispose()
    observation = observation_factory()

    components = RewardShaper().compute_components(agent, RewardTracker(spawn_position=SPAWN), observation, observation)

    assert components["exploration"] == 0.0


def test_terminal_bonus():
    shaper = RewardShaper()

    assert shaper.terminal_bonus(TEAM_TASK_FORCE, TEAM_TASK_FORCE) == 50.0
    assert shaper.terminal_bonus(TEAM_OPFOR, TEAM_TASK_FORCE) == -10.0
    assert shaper.terminal_bonus(TEAM_OPFOR, None) == 0.0


def test_tracker_reset_clears_counters():
    tracker = RewardTracker(spawn_position=SPAWN, last_enemy_damage=3.0, last_friendly_damage=1.0, stuck_steps=9)
    tracker.reset(Vec3(5.0, 1.0, 5.0))

    assert tracker.last_enemy_damage == 0.0
    assert tracker.last_friendly_damage == 0.0
    assert tracker.stuck_steps == 0
    assert tracker.spawn_position.x == 5.0
