from __future__ import annotations

from dataclasses import replace
import random

import pytest

from mallow_rl.arena import Arena
from mallow_rl.config import TEAM_OPFOR, TEAM_TASK_FORCE, ArenaConfig, RoundConfig
from mallow_rl.modes import RLTrainingGameMode, RoundPhase, RoundState
from mallow_rl.modes import rl_training
from mallow_rl.rl.trainer import RLTrainer

DT = 0.02


@pytest.fixture
def mode_factory(small_config, store):
    created = []

    def make(arena, **round_overrides):
        trainer = RLTrainer(replace(small_config, buffer_size=4096), store=store, seed=5)
        fields = {"bots_per_team": 2, "round_time_limit": 60.0, "max_rounds": 5, "restart_delay": 0.0}
        fields.update(round_overrides)
        mode = RLTrainingGameMode(arena, trainer, RoundConfig(**fields), rng=random.Random(2))
        created.append(mode)
        return mode

    yield make
    for mode in created:
        mode.dispose()


def team_bots(mode, team):
    return [trained.bot for trained in mode.trained_bots if trained.bot.team == team]


def last_experience_by_agent(trainer):
    latest = {}
    for experience in trainer.buffer:
        latest[experience.agent_id] = experience
    return latest


def eliminate(team_members, killer):
    for bot in list(team_members):
        bot.take_damage(1000.0, source=killer)


def test_init_spawns_both_teams(training_mode, harmless_arena):
    training_mode.init()

    assert training_mode.state.phase is RoundPhase.ROUND_ACTIVE
    assert training_mode.state.round_number == 1
    assert len(harmless_arena.combatants) == 6
    assert [bot.name for bot in team_bots(training_mode, TEAM_TASK_FORCE)] == ["TF-1", "TF-2", "TF-3"]
    assert all(bot.external_control for bot in harmless_arena.combatants)
    assert len(training_mode.state.op_for_alive) == 3


def test_elimination_ends_round_with_one_episode(training_mode, monkeypatch):
    trainer = training_mode.trainer
    calls = []
    original_end_episode = trainer.end_episode

    def spy():
        calls.append(trainer.experience_count)
        original_end_episode()

    monkeypatch.setattr(trainer, "end_episode", spy)
    training_mode.init()
    training_mode.update(DT)
    eliminate(team_bots(training_mode, TEAM_OPFOR), team_bots(training_mode, TEAM_TASK_FORCE)[0])
    training_mode.update(DT)

    assert len(calls) == 1
    assert trainer.get_stats().episode_count == 1
    assert training_mode.state.phase is RoundPhase.ROUND_ENDING
    assert training_mode.state.winner() == TEAM_TASK_FORCE


def test_round_end_stores_terminal_bonuses(training_mode):
    training_mode.init()
    training_mode.update(DT)
    eliminate(team_bots(training_mode, TEAM_OPFOR), team_bots(training_mode, TEAM_TASK_FORCE)[0])
    training_mode.update(DT)

    latest = last_experience_by_agent(training_mode.trainer)
    assert set(latest) == {"TF-1", "TF-2", "TF-3", "OF-1", "OF-2", "OF-3"}
    for agent_id, experience in latest.items():
        assert experience.done
        assert experience.reward == (50.0 if agent_id.startswith("TF") else -10.0)

    death_steps = [
        experience
        for experience in training_mode.trainer.buffer
        if experience.agent_id == "OF-1" and experience.done
    ]
    assert len(death_steps) == 2


def test_dead_bots_stop_acting(training_mode):
    training_mode.init()
    training_mode.update(DT)
    victim = team_bots(training_mode, TEAM_OPFOR)[0]
    victim.take_damage(1000.0)
    training_mode.update(DT)
    stored = sum(1 for experience in training_mode.trainer.buffer if experience.agent_id == victim.name)

    training_mode.update(DT)

    assert training_mode.state.phase is RoundPhase.ROUND_ACTIVE
    assert sum(1 for experience in training_mode.trainer.buffer if experience.agent_id == victim.name) == stored


def test_time_limit_is_a_draw(mode_factory, harmless_arena):
    mode = mode_factory(harmless_arena, round_time_limit=0.05)
    mode.init()

    for _ in range(3):
        mode.update(DT)

    assert mode.state.phase is RoundPhase.ROUND_ENDING
    assert mode.state.winner() is None
    latest = last_experience_by_agent(mode.trainer)
    assert len(latest) == 4
    assert all(experience.done and experience.reward >= 0.0 for experience in latest.values())
    assert all(trained.reward_breakdown["round_bonus"] == 0.0 for trained in mode.trained_bots)


def test_next_round_replaces_combatants(training_mode, harmless_arena):
    training_mode.init()
    training_mode.update(DT)
    eliminate(team_bots(training_mode, TEAM_TASK_FORCE), team_bots(training_mode, TEAM_OPFOR)[0])
    training_mode.update(DT)
    training_mode.update(DT)

    assert training_mode.state.round_number == 2
    assert training_mode.state.phase is RoundPhase.ROUND_ACTIVE
    assert len(harmless_arena.combatants) == 6
    assert all(not bot.is_dead for bot in harmless_arena.combatants)


def test_missing_spawns_fall_back_to_generated_lines(mode_factory):
    arena = Arena("open_field", config=ArenaConfig(weapon_damage=0.0, grenade_damage=0.0))
    mode = mode_factory(arena)
    mode.init()

    assert len(mode.task_force_spawns) == 2 and len(mode.op_for_spawns) == 2
    assert all(bot.body.position.x < 0.0 for bot in team_bots(mode, TEAM_TASK_FORCE))
    assert all(bot.body.position.x > 0.0 for bot in team_bots(mode, TEAM_OPFOR))


def test_abort_round_cleans_up(training_mode, harmless_arena):
    training_mode.init()
    training_mode.update(DT)
    training_mode.update(DT)
    assert training_mode.trainer.experience_count > 0

    training_mode.abort_round()

    assert harmless_arena.combatants == []
    assert training_mode.trained_bots == []
    assert training_mode.trainer.experience_count == 0
    assert training_mode.state.phase is RoundPhase.IDLE


def test_scoreboard_and_status(training_mode):
    training_mode.init()
    bot = team_bots(training_mode, TEAM_OPFOR)[1]
    bot.take_damage(1000.0)

    rows = training_mode.get_scoreboard_data()
    status = training_mode.get_training_status()

    assert len(rows) == 7
    assert (rows[0].name, rows[0].team) == ("Training", "RL")
    assert [row.team for row in rows[1:]] == [TEAM_TASK_FORCE] * 3 + [TEAM_OPFOR] * 3
    assert rows[1].status == "HP: 100"
    assert rows[5].status == "Dead"
    assert set(status) == {
        "round",
        "max_rounds",
        "phase",
        "time_remaining",
        "avg_reward",
        "training_steps",
        "experience_count",
        "buffer_size",
    }
    assert status["phase"] == "round_active"
    assert status["buffer_size"] == 4096


def test_last_round_saves_and_finishes(mode_factory, harmless_arena, store):
    mode = mode_factory(harmless_arena, max_rounds=1)
    mode.init()
    mode.update(DT)
    eliminate(team_bots(mode, TEAM_OPFOR), team_bots(mode, TEAM_TASK_FORCE)[0])
    mode.update(DT)

    assert mode.state.phase is RoundPhase.FINISHED
    assert not mode.training_active
    assert store.exists("trained-bot-policy") and store.exists("trained-bot-value")
    assert mode.load_trained_model() is True

    mode.update(DT)
    assert mode.state.round_number == 1


def test_autosave_interval(mode_factory, harmless_arena, store):
    mode = mode_factory(harmless_arena, autosave_interval=1, model_name="autosaved")
    mode.init()
    mode.update(DT)
    eliminate(team_bots(mode, TEAM_OPFOR), team_bots(mode, TEAM_TASK_FORCE)[0])
    mode.update(DT)
    mode.wait_for_model_io(timeout=60)

    assert mode.state.phase is RoundPhase.ROUND_ENDING
    assert store.exists("autosaved-policy")


def test_download_and_reload_from_file(training_mode, tmp_path):
    assert training_mode.download_model("bundle", directory=tmp_path)
    assert (tmp_path / "bundle.json").is_file()
    assert training_mode.load_model_from_file(tmp_path / "bundle.json")
    assert training_mode.load_model_from_file(tmp_path / "absent.json") is False


def test_round_state_transitions():
    state = RoundState()
    with pytest.raises(RuntimeError):
        state.end_round(1.0)

    state.begin_round(10.0)
    with pytest.raises(RuntimeError):
        state.begin_round(10.0)

    state.tick(4.0)
    assert state.elapsed == pytest.approx(4.0)
    assert state.should_end()

    state.end_round(2.0)
    assert state.phase is RoundPhase.ROUND_ENDING
    assert state.restart_timer == 2.0


def test_team_reward_breakdown_includes_round_bonus(training_mode):
    training_mode.init()
    training_mode.update(DT)
    eliminate(team_bots(training_mode, TEAM_OPFOR), team_bots(training_mode, TEAM_TASK_FORCE)[0])
    training_mode.update(DT)

    task_force = training_mode.team_reward_breakdown(TEAM_TASK_FORCE)
    op_for = training_mode.team_reward_breakdown(TEAM_OPFOR)

    assert task_force["round_bonus"] == pytest.approx(150.0)
    assert task_force["enemy_damage"] == pytest.approx(300.0)
    assert op_for["round_bonus"] == pytest.approx(-30.0)
    assert op_for["death"] == pytest.approx(-60.0)


@pytest.fixture
def kill_on_action(monkeypatch):
    """Make ``killer_name`` kill ``victim`` from inside its next action once armed."""
    armed = {}
    original_apply_action = rl_training.apply_action

    def apply_then_kill(bot, action, *args, **kwargs):
        original_apply_action(bot, action, *args, **kwargs)
        victim = armed.get(bot.name)
        if victim is not None:
            victim.take_damage(1000.0, source=bot)

    monkeypatch.setattr(rl_training, "apply_action", apply_then_kill)

    def arm(killer_name, victim):
        armed[killer_name] = victim

    return arm


def test_final_kill_during_update_credits_killer(mode_factory, harmless_arena, kill_on_action):
    mode = mode_factory(harmless_arena, bots_per_team=1)
    mode.init()
    mode.update(DT)
    task_force, op_for = team_bots(mode, TEAM_TASK_FORCE)[0], team_bots(mode, TEAM_OPFOR)[0]

    kill_on_action("TF-1", op_for)
    mode.update(DT)

    assert mode.state.phase is RoundPhase.ROUND_ENDING
    assert mode.state.winner() == TEAM_TASK_FORCE
    killer = next(trained for trained in mode.trained_bots if trained.bot is task_force)
    assert killer.reward_breakdown["enemy_damage"] == pytest.approx(100.0)
    assert killer.reward_breakdown["round_bonus"] == pytest.approx(50.0)
    final = last_experience_by_agent(mode.trainer)["TF-1"]
    assert final.done
    assert final.reward == pytest.approx(50.0)


def test_final_kill_during_update_penalises_earlier_victim(mode_factory, harmless_arena, kill_on_action):
    mode = mode_factory(harmless_arena, bots_per_team=1)
    mode.init()
    mode.update(DT)
    task_force = team_bots(mode, TEAM_TASK_FORCE)[0]

    # TF-1 has already acted this tick when OF-1 kills it.
    kill_on_action("OF-1", task_force)
    mode.update(DT)

    assert mode.state.phase is RoundPhase.ROUND_ENDING
    assert mode.state.winner() == TEAM_OPFOR
    victim = next(trained for trained in mode.trained_bots if trained.bot is task_force)
    assert victim.reward_breakdown["death"] == pytest.approx(-20.0)
    assert victim.reward_breakdown["health_lost"] == pytest.approx(-50.0)
    assert victim.reward_breakdown["round_bonus"] == pytest.approx(-10.0)
    final = last_experience_by_agent(mode.trainer)["TF-1"]
    assert final.done
    assert final.reward == pytest.approx(-50.0)
    assert sum(1 for experience in mode.trainer.buffer if experience.agent_id == "TF-1" and experience.done) == 1
