"""Game modes that drive the arena."""

from .base import GameMode, ScoreData
from .rl_training import RLTrainingGameMode, RoundPhase, RoundState, TrainedBot

__all__ = ["GameMode", "RLTrainingGameMode", "RoundPhase", "RoundState", "ScoreData", "TrainedBot"]
