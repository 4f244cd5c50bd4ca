"""Mallow RL: in-game reinforcement learning for team shooter bots."""

__version__ = "0.1.0"
