"""Reinforcement-learning core: observations, policies, trainer, and persistence."""

from .env import (
    EnvWrapper,
    StepResult,
    apply_action,
    build_vision_grid,
    observation_extras,
    observation_from_entity,
    sample_random_action,
)
from .episode_logger import EpisodeLogger
from .model import ModelStore, PolicyNetwork, ValueNetwork
from .policy import NeuralPolicy, Policy, PolicyKind, ScriptedPolicy, create_policy
from .rewards import RewardShaper, RewardTracker
from .trainer import RLTrainer, compute_gae, normalize_advantages
from .types import Action, Experience, Observation, ObservationExtras, Prediction, TrainingStats

__all__ = [
    "Action",
    "EnvWrapper",
    "EpisodeLogger",
    "Experience",
    "ModelStore",
    "NeuralPolicy",
    "Observation",
    "ObservationExtras",
    "Policy",
    "PolicyKind",
    "PolicyNetwork",
    "Prediction",
    "RLTrainer",
    "RewardShaper",
    "RewardTracker",
    "ScriptedPolicy",
    "StepResult",
    "TrainingStats",
    "ValueNetwork",
    "apply_action",
    "build_vision_grid",
    "compute_gae",
    "create_policy",
    "normalize_advantages",
    "observation_extras",
    "observation_from_entity",
    "sample_random_action",
]
