"""Per-episode JSON-lines log of experience tuples."""

from __future__ import annotations

import json
import logging
from pathlib import Path
import time
from typing import IO, Any
import uuid

from mallow_rl.config import EPISODE_LOG_DIR, EPISODE_LOG_FLUSH_EVERY, EPISODE_LOG_KEEP
from mallow_rl.logging_utils import format_display_path
from mallow_rl.rl.types import Action, Observation

LOGGER = logging.getLogger("mallow_rl.episodes")


class EpisodeLogger:
    """Buffers step records in memory and appends them to ``<episode_id>.jsonl``."""

    def __init__(self, log_dir: str | Path = EPISODE_LOG_DIR, flush_every: int = EPISODE_LOG_FLUSH_EVERY) -> None:
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.flush_every = max(1, int(flush_every))
        self.episode_id = ""
        self.step_index = 0
        self.buffer: list[dict[str, Any]] = []
        self._stream: IO[str] | None = None

    def start_episode(self) -> str:
        if self._stream is not None:
            self.end_episode()
        self.episode_id = f"ep_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        self.step_index = 0
        self.buffer = []
        self._stream = (self.log_dir / f"{self.episode_id}.jsonl").open("a", encoding="utf-8")
        LOGGER.debug("started episode %s", self.episode_id)
        return self.episode_id

    def log_step(
        self,
        observation: Observation,
        action: Action,
        reward: float,
        next_observation: Observation,
        done: bool,
    ) -> None:
        self.buffer.append(
            {
                "observation": observation.to_dict(),
                "action": action.to_dict(),
                "reward": float(reward),
                "nextObservation": next_observation.to_dict(),
                "done": bool(done),
                "timestamp": int(time.time() * 1000),
                "episodeId": self.episode_id,
                "stepIndex": self.step_index,
            }
        )
        self.step_index += 1
        if len(self.buffer) >= self.flush_every:
            self.flush()

    def flush(self) -> None:
        if self._stream is None or not self.buffer:
            return
        self._stream.writelines(json.dumps(record) + "\n" for record in self.buffer)
        self._stream.flush()
        self.buffer = []

    def end_episode(self) -> None:
        self.flush()
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        LOGGER.debug("ended episode %s (%d steps)", self.episode_id, self.step_index)

    def get_stats(self) -> dict[str, int]:
        episode_count = 0
        total_steps = 0
        for path in self.log_dir.glob("*.jsonl"):
            episode_count += 1
            with path.open("r", encoding="utf-8") as handle:
                total_steps += sum(1 for line in handle if line.strip())
        return {"episode_count": episode_count, "total_steps": total_steps}

    def prune_old_episodes(self, keep_count: int = EPISODE_LOG_KEEP) -> int:
        files = sorted(self.log_dir.glob("*.jsonl"))
        stale = files[: max(0, len(files) - keep_count)]
        for path in stale:
            path.unlink()
        if stale:
            LOGGER.info("Pruned %d old episodes from %s", len(stale), format_display_path(self.log_dir))
        return len(stale)
