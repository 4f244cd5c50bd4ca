"""Torch device selection and seeding."""

from __future__ import annotations

import logging
import random

LOGGER = logging.getLogger("mallow_rl.runtime")


def get_torch_device(prefer_gpu: bool = False):
    import torch

    if prefer_gpu and not torch.cuda.is_available():
        LOGGER.warning("GPU requested but CUDA is unavailable, training on CPU")
    return torch.device("cuda" if prefer_gpu and torch.cuda.is_available() else "cpu")


def seeded_rng(seed: int | None = None) -> random.Random:
    """Python RNG for action sampling; a fixed seed also pins torch weight init."""
    if seed is not None:
        import torch

        torch.manual_seed(seed)
    return random.Random(seed)
