"""Central configuration for Mallow RL."""

from __future__ import annotations

from dataclasses import dataclass, field
import math
import os
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class RuntimeFlags:
    use_gpu: bool
    log_level: str


FLAGS = RuntimeFlags(
    use_gpu=_env_flag("MALLOW_USE_GPU", False),
    log_level=os.getenv("MALLOW_LOG_LEVEL", "INFO"),
)

USE_GPU = FLAGS.use_gpu

# Teams
TEAM_TASK_FORCE = "TaskForce"
TEAM_OPFOR = "OpFor"
TEAM_INDEX = {TEAM_TASK_FORCE: 0, TEAM_OPFOR: 1}

# Observation space
VISION_GRID_SIZE = 32
VISION_GRID_CELLS = VISION_GRID_SIZE * VISION_GRID_SIZE
VISION_CELL_UNITS = 2.0
VISION_GRID_OFFSET = 32.0
VISION_RADIUS = 50.0
VISION_EMPTY = 0
VISION_ALLY = 1
VISION_ENEMY = 2
VISION_DOWNSAMPLED_SIZE = 8
VISION_DOWNSAMPLED_CELLS = VISION_DOWNSAMPLED_SIZE * VISION_DOWNSAMPLED_SIZE

OBS_POSITION_SCALE = 100.0
OBS_VELOCITY_SCALE = 10.0
OBS_HEALTH_SCALE = 100.0
OBS_ARMOR_SCALE = 100.0
OBS_WEAPON_SCALE = 10.0
OBS_AMMO_SCALE = 100.0
OBS_GRENADE_SCALE = 4.0
DEFAULT_AMMO = 30.0
MAX_HEALTH = 100.0
MAX_ARMOR = 100.0

SCALAR_FEATURE_NAMES = [
    "position_x",
    "position_y",
    "position_z",
    "velocity_x",
    "velocity_y",
    "velocity_z",
    "health",
    "armor",
    "weapon_id",
    "ammo",
    "crouch",
    "grenades",
    "team",
]
EXTRA_FEATURE_NAMES = ["cover_distance", "is_under_fire"]
NUM_SCALAR_FEATURES = len(SCALAR_FEATURE_NAMES)
MODEL_INPUT_SIZE = NUM_SCALAR_FEATURES + VISION_DOWNSAMPLED_CELLS
EXTENDED_MODEL_INPUT_SIZE = MODEL_INPUT_SIZE + len(EXTRA_FEATURE_NAMES)

# Action space
ACTION_OUTPUT_NAMES = [
    "move_x",
    "move_z",
    "yaw",
    "pitch",
    "fire",
    "crouch_toggle",
    "throw_grenade",
]
MODEL_OUTPUT_SIZE = len(ACTION_OUTPUT_NAMES)
YAW_LIMIT = math.pi
PITCH_LIMIT = math.pi / 2

# Neural policy output thresholds
FIRE_THRESHOLD = 0.0
CROUCH_THRESHOLD = 0.5
GRENADE_THRESHOLD = 0.8

# Environment adapter
BASE_MOVE_SPEED = 5.0
SPRINT_MULTIPLIER = 1.5
TRIGGER_THRESHOLD = 0.5

# Scripted policy
SCRIPTED_LOW_HEALTH = 30.0
SCRIPTED_CROUCH_CHANCE = 0.1
SCRIPTED_GRENADE_CHANCE = 0.05

# Model and training
POLICY_HIDDEN_SIZES = [128, 128, 64]
VALUE_HIDDEN_SIZES = [128, 64]
LEARNING_RATE = 3e-4
GAMMA = 0.99
GAE_LAMBDA = 0.95
CLIP_EPSILON = 0.2
ENTROPY_COEF = 0.01
BATCH_SIZE = 64
BUFFER_SIZE = 2048
TRAIN_EPOCHS = 4
EXPLORATION_NOISE = 0.3
REWARD_EMA_DECAY = 0.9
ADVANTAGE_CLIP = 10.0
NORMALIZATION_EPS = 1e-8
ENTROPY_LOG_EPS = 1e-8
GAE_GROUPING = "buffer"  # "buffer" or "agent"

MODEL_DIR = PROJECT_ROOT / "model"
MODEL_NAME = "trained-bot"
MODEL_FORMAT_VERSION = 1
MODEL_SAVE_RETRIES = 5
MODEL_SAVE_RETRY_DELAY_SECONDS = 0.2

# Reward shaping
REWARD_ENEMY_DAMAGE = 1.0
PENALTY_FRIENDLY_DAMAGE = 2.0
PENALTY_HEALTH_LOST = 0.5
PENALTY_DEATH = 20.0
REWARD_SPAWN_DISTANCE = 0.01
REWARD_MOVING = 0.05
MOVING_SPEED_THRESHOLD = 0.5
STUCK_STEPS_THRESHOLD = 180
PENALTY_STUCK = 0.1
REWARD_CLAMP = 50.0
ROUND_WIN_BONUS = 50.0
ROUND_LOSS_PENALTY = -10.0

# Rounds
BOTS_PER_TEAM = 3
MAX_ROUNDS = 1000
ROUND_TIME_LIMIT_SECONDS = 60.0
AUTOSAVE_INTERVAL_ROUNDS = 10
ROUND_RESTART_DELAY_SECONDS = 1.0
FALLBACK_SPAWN_X = 20.0
FALLBACK_SPAWN_JITTER = 5.0
FALLBACK_SPAWN_Y = 1.0
FALLBACK_SPAWN_Z_SPACING = 3.0

# Headless arena
SIMULATION_DT = 1.0 / 60.0
GRAVITY = -9.82
JUMP_VELOCITY = 4.5
GROUND_HEIGHT = 1.0
WEAPON_DAMAGE = 25.0
WEAPON_MAGAZINE = 30
WEAPON_COOLDOWN_SECONDS = 0.12
WEAPON_RANGE = 60.0
WEAPON_AIM_TOLERANCE_RADIANS = math.radians(8.0)
GRENADE_COUNT = 2
GRENADE_DAMAGE = 60.0
GRENADE_RADIUS = 6.0
GRENADE_THROW_DISTANCE = 12.0
GRENADE_FUSE_SECONDS = 1.5
UNDER_FIRE_SECONDS = 1.0
COVER_SEARCH_RADIUS = 50.0

# Simulation driver
SIM_EPISODES = 10
SIM_MAP = "de_dust2_d"
SIM_MAX_STEPS = 3000
SIM_OPPONENTS = 1
EPISODE_LOG_DIR = PROJECT_ROOT / "data" / "rl" / "episodes"
EPISODE_LOG_FLUSH_EVERY = 1000
EPISODE_LOG_KEEP = 100


@dataclass(frozen=True)
class TrainerConfig:
    learning_rate: float = LEARNING_RATE
    gamma: float = GAMMA
    gae_lambda: float = GAE_LAMBDA
    clip_epsilon: float = CLIP_EPSILON
    entropy_coef: float = ENTROPY_COEF
    batch_size: int = BATCH_SIZE
    buffer_size: int = BUFFER_SIZE
    epochs: int = TRAIN_EPOCHS
    exploration_noise: float = EXPLORATION_NOISE
    reward_ema_decay: float = REWARD_EMA_DECAY
    advantage_clip: float = ADVANTAGE_CLIP
    gae_grouping: str = GAE_GROUPING
    extended_observation: bool = False
    policy_hidden_sizes: tuple[int, ...] = tuple(POLICY_HIDDEN_SIZES)
    value_hidden_sizes: tuple[int, ...] = tuple(VALUE_HIDDEN_SIZES)

    def __post_init__(self) -> None:
        if self.batch_size <= 0 or self.buffer_size <= 0:
            raise ValueError("batch_size and buffer_size must be positive")
        if self.buffer_size < self.batch_size:
            raise ValueError("buffer_size must be at least batch_size")
        if self.gae_grouping not in {"buffer", "agent"}:
            raise ValueError(f"gae_grouping must be 'buffer' or 'agent', got {self.gae_grouping!r}")

    @property
    def input_size(self) -> int:
        return EXTENDED_MODEL_INPUT_SIZE if self.extended_observation else MODEL_INPUT_SIZE


@dataclass(frozen=True)
class RewardConfig:
    enemy_damage: float = REWARD_ENEMY_DAMAGE
    friendly_damage: float = PENALTY_FRIENDLY_DAMAGE
    health_lost: float = PENALTY_HEALTH_LOST
    death: float = PENALTY_DEATH
    spawn_distance: float = REWARD_SPAWN_DISTANCE
    moving: float = REWARD_MOVING
    moving_speed_threshold: float = MOVING_SPEED_THRESHOLD
    stuck_steps_threshold: int = STUCK_STEPS_THRESHOLD
    stuck: float = PENALTY_STUCK
    clamp: float = REWARD_CLAMP
    round_win: float = ROUND_WIN_BONUS
    round_loss: float = ROUND_LOSS_PENALTY


@dataclass(frozen=True)
class RoundConfig:
    bots_per_team: int = BOTS_PER_TEAM
    max_rounds: int = MAX_ROUNDS
    round_time_limit: float = ROUND_TIME_LIMIT_SECONDS
    autosave_interval: int = AUTOSAVE_INTERVAL_ROUNDS
    restart_delay: float = ROUND_RESTART_DELAY_SECONDS
    model_name: str = MODEL_NAME
    rewards: RewardConfig = field(default_factory=RewardConfig)

    def __post_init__(self) -> None:
        if self.bots_per_team <= 0:
            raise ValueError(f"bots_per_team must be positive, got {self.bots_per_team}")
        if self.max_rounds <= 0:
            raise ValueError(f"max_rounds must be positive, got {self.max_rounds}")
        if self.round_time_limit <= 0:
            raise ValueError(f"round_time_limit must be positive, got {self.round_time_limit}")
        if self.autosave_interval <= 0:
            raise ValueError(f"autosave_interval must be positive, got {self.autosave_interval}")


@dataclass(frozen=True)
class ArenaConfig:
    gravity: float = GRAVITY
    jump_velocity: float = JUMP_VELOCITY
    ground_height: float = GROUND_HEIGHT
    weapon_damage: float = WEAPON_DAMAGE
    weapon_magazine: int = WEAPON_MAGAZINE
    weapon_cooldown: float = WEAPON_COOLDOWN_SECONDS
    weapon_range: float = WEAPON_RANGE
    aim_tolerance: float = WEAPON_AIM_TOLERANCE_RADIANS
    grenades: int = GRENADE_COUNT
    grenade_damage: float = GRENADE_DAMAGE
    grenade_radius: float = GRENADE_RADIUS
    grenade_throw_distance: float = GRENADE_THROW_DISTANCE
    grenade_fuse: float = GRENADE_FUSE_SECONDS
    under_fire_seconds: float = UNDER_FIRE_SECONDS


TRAINER = TrainerConfig()
REWARDS = RewardConfig()
ROUNDS = RoundConfig()
ARENA = ArenaConfig()
