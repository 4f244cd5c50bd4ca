from __future__ import annotations

from dataclasses import replace
import random

import pytest

from mallow_rl.arena import Arena
from mallow_rl.config import ArenaConfig, RoundConfig, TrainerConfig, VISION_GRID_CELLS
from mallow_rl.modes import RLTrainingGameMode
from mallow_rl.rl.model import ModelStore
from mallow_rl.rl.trainer import RLTrainer
from mallow_rl.rl.types import Observation


@pytest.fixture
def small_config():
    return TrainerConfig(
        batch_size=4,
        buffer_size=8,
        epochs=2,
        exploration_noise=0.0,
        policy_hidden_sizes=(16, 16),
        value_hidden_sizes=(16,),
    )


@pytest.fixture
def store(tmp_path):
    return ModelStore(tmp_path / "models")


@pytest.fixture
def trainer(small_config, store):
    instance = RLTrainer(small_config, store=store, seed=7)
    yield instance
    instance.dispose()


@pytest.fixture
def observation_factory():
    def make(**overrides):
        fields = {
            "position": (1.0, 1.0, 2.0),
            "velocity": (0.5, 0.0, -0.5),
            "health": 80.0,
            "armor": 0.0,
            "weapon_id": 0,
            "ammo": 30.0,
            "crouch": 0,
            "grenades": 2.0,
            "team": 0,
            "vision_grid": tuple([0] * VISION_GRID_CELLS),
        }
        fields.update(overrides)
        return Observation(**fields)

    return make


@pytest.fixture
def harmless_arena():
    # Weapons deal no damage so only explicit take_damage calls decide a round.
    return Arena("de_dust2_d", config=ArenaConfig(weapon_damage=0.0, grenade_damage=0.0))


@pytest.fixture
def training_mode(harmless_arena, small_config, store):
    trainer = RLTrainer(replace(small_config, buffer_size=4096), store=store, seed=3)
    config = RoundConfig(bots_per_team=3, round_time_limit=60.0, max_rounds=5, restart_delay=0.0)
    mode = RLTrainingGameMode(harmless_arena, trainer, config, rng=random.Random(11))
    yield mode
    mode.dispose()
