"""Error types raised by the RL core."""

from __future__ import annotations


class MallowRLError(RuntimeError):
    """Base class for Mallow RL errors."""


class ModelIOError(MallowRLError):
    """Model blob could not be read, parsed, or written."""


class TopologyMismatchError(ModelIOError):
    """Stored network topology does not match the expected network shape."""


class PolicyNotLoadedError(MallowRLError):
    """A neural policy was asked to predict before a model was loaded."""
