"""Inference policies behind a single predict/load contract."""

from __future__ import annotations

from enum import Enum
import logging
from pathlib import Path
import random
from typing import Any, Protocol, Sequence

import torch

from mallow_rl.config import (
    CROUCH_THRESHOLD,
    EXTENDED_MODEL_INPUT_SIZE,
    FIRE_THRESHOLD,
    GRENADE_THRESHOLD,
    MODEL_OUTPUT_SIZE,
    PITCH_LIMIT,
    SCRIPTED_CROUCH_CHANCE,
    SCRIPTED_GRENADE_CHANCE,
    SCRIPTED_LOW_HEALTH,
    YAW_LIMIT,
)
from mallow_rl.errors import ModelIOError, PolicyNotLoadedError
from mallow_rl.logging_utils import format_display_path
from mallow_rl.rl.model import PolicyNetwork, network_from_blob, read_json
from mallow_rl.rl.types import Action, Observation, clamp, finite_or

LOGGER = logging.getLogger("mallow_rl.policy")


class Policy(Protocol):
    def load(self, path: str | Path) -> None: ...

    def predict(self, observation: Observation) -> Action: ...

    def is_loaded(self) -> bool: ...


class PolicyKind(str, Enum):
    SCRIPTED = "scripted"
    NEURAL = "neural"


def quadratic_log_prob(outputs: Sequence[float]) -> float:
    """Log-probability surrogate: a quadratic penalty on the raw network outputs."""
    return -0.5 * sum(float(value) * float(value) for value in outputs)


def action_from_outputs(
    outputs: Sequence[float],
    noise: float = 0.0,
    rng: random.Random | None = None,
) -> Action:
    """Map seven raw outputs in [-1, 1] onto an Action, with optional movement noise."""
    if len(outputs) < MODEL_OUTPUT_SIZE:
        raise ValueError(f"Expected {MODEL_OUTPUT_SIZE} outputs, got {len(outputs)}")
    raw = [clamp(finite_or(value), -1.0, 1.0) for value in outputs[:MODEL_OUTPUT_SIZE]]

    move_x, move_z = raw[0], raw[1]
    if noise > 0.0:
        rng = rng or random
        move_x += (rng.random() - 0.5) * noise
        move_z += (rng.random() - 0.5) * noise

    return Action(
        move_x=clamp(move_x, -1.0, 1.0),
        move_z=clamp(move_z, -1.0, 1.0),
        yaw=raw[2] * YAW_LIMIT,
        pitch=raw[3] * PITCH_LIMIT,
        fire=1.0 if raw[4] > FIRE_THRESHOLD else 0.0,
        crouch_toggle=1.0 if raw[5] > CROUCH_THRESHOLD else 0.0,
        throw_grenade=1.0 if raw[6] > GRENADE_THRESHOLD else 0.0,
    )


class ScriptedPolicy:
    """Hand-written tactical baseline; needs no weights."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self.rng = rng or random.Random()
        self._loaded = False

    def load(self, path: str | Path | None = None) -> None:
        self._loaded = True
        LOGGER.debug("scripted policy ready")

    def is_loaded(self) -> bool:
        return self._loaded

    def predict(self, observation: Observation) -> Action:
        rng = self.rng
        low_health = observation.health < SCRIPTED_LOW_HEALTH
        enemy_in_sight = any(cell > 0 for cell in observation.vision_grid)

        return Action(
            move_x=0.0 if low_health else rng.random() * 0.5 - 0.25,
            move_z=-0.5 if low_health else rng.random() * 0.8,
            yaw=rng.random() * 0.2 - 0.1,
            pitch=0.0,
            fire=1.0 if enemy_in_sight else 0.0,
            crouch_toggle=1.0 if low_health and rng.random() < SCRIPTED_CROUCH_CHANCE else 0.0,
            throw_grenade=(
                1.0
                if enemy_in_sight and observation.grenades > 0 and rng.random() < SCRIPTED_GRENADE_CHANCE
                else 0.0
            ),
        )


class NeuralPolicy:
    """Deterministic inference over a trained PolicyNetwork."""

    def __init__(self, network: PolicyNetwork | None = None, include_extras: bool = False) -> None:
        self.network = network
        self.include_extras = include_extras
        if network is not None:
            network.eval()

    def load(self, path: str | Path) -> None:
        """Load a combined document or a bare policy blob; errors propagate."""
        document = read_json(path)
        blob: Any = document.get("policy", document) if isinstance(document, dict) else document
        network = network_from_blob(blob)
        if not isinstance(network, PolicyNetwork):
            raise ModelIOError(f"'{format_display_path(path)}' does not contain a policy network")
        network.eval()
        self.network = network
        self.include_extras = network.input_size == EXTENDED_MODEL_INPUT_SIZE
        LOGGER.info("loaded policy from %s", format_display_path(path))

    def is_loaded(self) -> bool:
        return self.network is not None

    def predict(self, observation: Observation) -> Action:
        if self.network is None:
            raise PolicyNotLoadedError("NeuralPolicy.predict called before load()")
        vector = observation.to_vector(include_extras=self.include_extras)
        param = next(self.network.parameters())
        with torch.no_grad():
            outputs = self.network(torch.tensor(vector, dtype=param.dtype, device=param.device))
        return action_from_outputs(outputs[0].tolist())


def create_policy(kind: PolicyKind | str = PolicyKind.SCRIPTED, **kwargs: Any) -> Policy:
    kind = PolicyKind(kind)
    if kind is PolicyKind.NEURAL:
        return NeuralPolicy(**kwargs)
    return ScriptedPolicy(**kwargs)
