"""Log formatting for training runs, round summaries and model I/O."""

from __future__ import annotations

from enum import Enum
import logging
from pathlib import Path
from typing import Any, Mapping

from mallow_rl.config import PROJECT_ROOT

MISSING_PREFIX = "missing:"
_UPPERCASE_WORDS = {"rl", "ai", "gpu", "ppo"}


def configure_logging(level: str = "INFO") -> None:
    """Install the root handler unless the host application already did."""
    if logging.getLogger().handlers:
        return
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def format_display_path(path_value: str | Path) -> str:
    path_obj = Path(path_value)
    if not path_obj.is_absolute():
        return str(path_obj)
    for base in (Path.cwd(), PROJECT_ROOT):
        if path_obj.is_relative_to(base):
            return str(path_obj.relative_to(base))
    return str(path_obj)


def format_reward_breakdown(components: Mapping[str, float]) -> str:
    """Signed non-zero reward components, e.g. ``enemy_damage=+12.00 death=-20.00``."""
    parts = [f"{key}={value:+.2f}" for key, value in components.items() if value]
    return " ".join(parts) or "none"


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "on" if value else "off"
    if isinstance(value, float):
        return f"{value:.3f}"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, Path):
        return format_display_path(value)
    if isinstance(value, str) and value.startswith(MISSING_PREFIX):
        return MISSING_PREFIX + format_display_path(value[len(MISSING_PREFIX) :])
    if isinstance(value, Mapping):
        return format_reward_breakdown(value)
    return str(value)


def _format_mode_label(mode: str) -> str:
    words = mode.replace("-", " ").split()
    return " ".join(word.upper() if word.lower() in _UPPERCASE_WORDS else word.title() for word in words)


def log_key_values(
    logger_name: str,
    values: Mapping[str, Any],
    *,
    prefix: str | None = None,
    separator: str = "=",
    level: int = logging.INFO,
) -> None:
    """Log ``values`` as one tab-separated line; ``None`` entries are dropped."""
    logger = logging.getLogger(logger_name)
    if not logger.isEnabledFor(level):
        return
    segments = [prefix] if prefix else []
    joiner = ": " if separator == ":" else separator
    segments.extend(f"{key}{joiner}{_format_value(value)}" for key, value in values.items() if value is not None)
    logger.log(level, "\t".join(segments))


def log_run_context(mode: str, context: Mapping[str, Any]) -> None:
    """Header line for a CLI run: ``Train RL\tModel: scratch\tMap: de_dust2_d ...``."""
    titled = {key.replace("_", " ").title(): value for key, value in context.items()}
    log_key_values("mallow_rl.run", titled, prefix=_format_mode_label(mode), separator=":")
