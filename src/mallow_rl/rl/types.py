"""Observation, action, and experience records exchanged with the policy."""

from __future__ import annotations

from dataclasses import dataclass, field
import math

from mallow_rl.config import (
    OBS_AMMO_SCALE,
    OBS_ARMOR_SCALE,
    OBS_GRENADE_SCALE,
    OBS_HEALTH_SCALE,
    OBS_POSITION_SCALE,
    OBS_VELOCITY_SCALE,
    OBS_WEAPON_SCALE,
    PITCH_LIMIT,
    VISION_DOWNSAMPLED_CELLS,
    VISION_GRID_CELLS,
    YAW_LIMIT,
)


def finite_or(value: float, default: float = 0.0) -> float:
    value = float(value)
    return value if math.isfinite(value) else float(default)


def clamp(value: float, min_value: float, max_value: float) -> float:
    return max(min_value, min(max_value, value))


@dataclass(frozen=True)
class ObservationExtras:
    """Optional observation fields; absent extras flatten to their defaults."""

    cover_distance: float = 1.0
    is_under_fire: int = 0

    def as_list(self) -> list[float]:
        return [clamp(finite_or(self.cover_distance, 1.0), 0.0, 1.0), float(self.is_under_fire)]


@dataclass(frozen=True)
class Observation:
    position: tuple[float, float, float]
    velocity: tuple[float, float, float]
    health: float
    armor: float
    weapon_id: int
    ammo: float
    crouch: int
    grenades: float
    team: int
    vision_grid: tuple[int, ...]
    extras: ObservationExtras | None = None

    def __post_init__(self) -> None:
        if len(self.vision_grid) != VISION_GRID_CELLS:
            raise ValueError(f"vision_grid must have {VISION_GRID_CELLS} cells, got {len(self.vision_grid)}")

    def downsampled_vision(self) -> list[float]:
        """Collapse the 32x32 grid into 64 occupied/empty flags of 16 consecutive cells."""
        chunk = VISION_GRID_CELLS // VISION_DOWNSAMPLED_CELLS
        return [
            1.0 if any(self.vision_grid[start : start + chunk]) else 0.0
            for start in range(0, VISION_GRID_CELLS, chunk)
        ]

    def to_vector(self, include_extras: bool = False) -> list[float]:
        values = [
            self.position[0] / OBS_POSITION_SCALE,
            self.position[1] / OBS_POSITION_SCALE,
            self.position[2] / OBS_POSITION_SCALE,
            self.velocity[0] / OBS_VELOCITY_SCALE,
            self.velocity[1] / OBS_VELOCITY_SCALE,
            self.velocity[2] / OBS_VELOCITY_SCALE,
            self.health / OBS_HEALTH_SCALE,
            self.armor / OBS_ARMOR_SCALE,
            self.weapon_id / OBS_WEAPON_SCALE,
            self.ammo / OBS_AMMO_SCALE,
            float(self.crouch),
            self.grenades / OBS_GRENADE_SCALE,
            float(self.team),
        ]
        values.extend(self.downsampled_vision())
        if include_extras:
            values.extend((self.extras or ObservationExtras()).as_list())
        return [finite_or(value) for value in values]

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {
            "position": list(self.position),
            "velocity": list(self.velocity),
            "health": self.health,
            "armor": self.armor,
            "weaponId": self.weapon_id,
            "ammo": self.ammo,
            "crouch": self.crouch,
            "grenades": self.grenades,
            "team": self.team,
            "visionGrid": list(self.vision_grid),
        }
        if self.extras is not None:
            data["coverDistance"] = self.extras.cover_distance
            data["isUnderFire"] = self.extras.is_under_fire
        return data


@dataclass(frozen=True)
class Action:
    move_x: float = 0.0
    move_z: float = 0.0
    yaw: float = 0.0
    pitch: float = 0.0
    fire: float = 0.0
    crouch_toggle: float = 0.0
    throw_grenade: float = 0.0
    jump: float = 0.0
    sprint: float = 0.0
    lean: float = 0.0

    def to_vector(self) -> list[float]:
        """Seven-component training target, angles rescaled to [-1, 1]."""
        return [
            self.move_x,
            self.move_z,
            self.yaw / YAW_LIMIT,
            self.pitch / PITCH_LIMIT,
            float(self.fire),
            float(self.crouch_toggle),
            float(self.throw_grenade),
        ]

    def to_dict(self) -> dict[str, float]:
        return {
            "moveX": self.move_x,
            "moveZ": self.move_z,
            "yaw": self.yaw,
            "pitch": self.pitch,
            "fire": self.fire,
            "crouchToggle": self.crouch_toggle,
            "throwGrenade": self.throw_grenade,
            "jump": self.jump,
            "sprint": self.sprint,
            "lean": self.lean,
        }


@dataclass(frozen=True)
class Prediction:
    action: Action
    log_prob: float
    value: float


@dataclass
class Experience:
    obs: list[float]
    action: list[float]
    reward: float
    next_obs: list[float]
    done: bool
    log_prob: float
    value: float
    agent_id: str | None = None


@dataclass(frozen=True)
class TrainingStats:
    episode_count: int = 0
    avg_reward: float = 0.0
    training_steps: int = 0
    experience_count: int = 0
    training_in_flight: bool = False
    last_policy_loss: float | None = None
    last_value_loss: float | None = None


@dataclass
class TrainingResult:
    samples: int
    policy_losses: list[float] = field(default_factory=list)
    value_losses: list[float] = field(default_factory=list)
    skipped_steps: int = 0

    @property
    def mean_policy_loss(self) -> float:
        return sum(self.policy_losses) / len(self.policy_losses) if self.policy_losses else 0.0

    @property
    def mean_value_loss(self) -> float:
        return sum(self.value_losses) / len(self.value_losses) if self.value_losses else 0.0
