"""PPO-style trainer: policy/value networks, experience buffer, and GAE."""

from __future__ import annotations

from concurrent.futures import Executor, Future
import copy
import json
import logging
import math
from pathlib import Path
import threading
import time
from typing import Any, Sequence

import torch
import torch.nn.functional as F
import torch.optim as optim

from mallow_rl.config import (
    ENTROPY_LOG_EPS,
    MODEL_FORMAT_VERSION,
    MODEL_NAME,
    NORMALIZATION_EPS,
    TRAINER,
    TrainerConfig,
)
from mallow_rl.errors import ModelIOError
from mallow_rl.logging_utils import format_display_path, log_key_values
from mallow_rl.rl.env import sample_random_action
from mallow_rl.rl.model import (
    ModelStore,
    PolicyNetwork,
    ValueNetwork,
    device,
    network_from_blob,
    read_json,
    write_json_atomic,
)
from mallow_rl.rl.policy import action_from_outputs, quadratic_log_prob
from mallow_rl.rl.types import (
    Action,
    Experience,
    Observation,
    Prediction,
    TrainingResult,
    TrainingStats,
    clamp,
    finite_or,
)
from mallow_rl.runtime import seeded_rng

LOGGER = logging.getLogger("mallow_rl.trainer")


def compute_gae(
    rewards: Sequence[float],
    values: Sequence[float],
    dones: Sequence[bool],
    gamma: float,
    lam: float,
) -> list[float]:
    """Generalized advantage estimates for one trajectory in collection order.

    The value after the final element is taken as 0, and a done flag stops
    both bootstrapping and the advantage carry from later steps.
    """
    count = len(rewards)
    if len(values) != count or len(dones) != count:
        raise ValueError("rewards, values, and dones must have the same length")

    advantages = [0.0] * count
    last_advantage = 0.0
    for index in reversed(range(count)):
        next_value = values[index + 1] if index + 1 < count else 0.0
        not_done = 0.0 if dones[index] else 1.0
        delta = rewards[index] + gamma * next_value * not_done - values[index]
        last_advantage = delta + gamma * lam * not_done * last_advantage
        advantages[index] = last_advantage
    return advantages


def normalize_advantages(
    advantages: Sequence[float],
    eps: float = NORMALIZATION_EPS,
    clip: float | None = None,
) -> list[float]:
    """Standardize to zero mean and unit variance, then clamp to +-clip."""
    if not advantages:
        return []
    values = [finite_or(value) for value in advantages]
    mean = sum(values) / len(values)
    std = math.sqrt(sum((value - mean) ** 2 for value in values) / len(values)) + eps
    normalized = [finite_or((value - mean) / std) for value in values]
    if clip is None:
        return normalized
    return [clamp(value, -clip, clip) for value in normalized]


def _as_vector(value: Observation | Sequence[float], include_extras: bool) -> list[float]:
    if isinstance(value, Observation):
        return value.to_vector(include_extras=include_extras)
    return [finite_or(item) for item in value]


def _as_action_vector(value: Action | Sequence[float]) -> list[float]:
    if isinstance(value, Action):
        return value.to_vector()
    return [finite_or(item) for item in value]


class RLTrainer:
    """Owns both networks, the on-policy buffer, and the clipped update.

    Learner networks are only written under ``_train_lock``; predictions read
    a separate inference copy that is republished under ``_snapshot_lock``
    after every training pass or successful load.
    """

    def __init__(
        self,
        config: TrainerConfig = TRAINER,
        *,
        executor: Executor | None = None,
        store: ModelStore | None = None,
        seed: int | None = None,
    ) -> None:
        self.config = config
        self.executor = executor
        self.store = store or ModelStore()
        self.rng = seeded_rng(seed)

        self.policy_network = PolicyNetwork(config.input_size, config.policy_hidden_sizes).to(device)
        self.value_network = ValueNetwork(config.input_size, config.value_hidden_sizes).to(device)
        self.policy_optimizer = optim.Adam(self.policy_network.parameters(), lr=config.learning_rate)
        self.value_optimizer = optim.Adam(self.value_network.parameters(), lr=config.learning_rate)
        self._inference_policy = copy.deepcopy(self.policy_network).eval()
        self._inference_value = copy.deepcopy(self.value_network).eval()

        self.buffer: list[Experience] = []
        self.episode_reward = 0.0
        self.episode_count = 0
        self.avg_reward = 0.0
        self.training_steps = 0
        self.total_training_seconds = 0.0
        self.last_result: TrainingResult | None = None

        self._train_lock = threading.Lock()
        self._snapshot_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._pending: Future | None = None
        self._disposed = False

    # Inference

    def predict(self, observation: Observation | Sequence[float]) -> Prediction:
        vector = _as_vector(observation, self.config.extended_observation)
        with self._snapshot_lock, torch.no_grad():
            inputs = torch.tensor(vector, dtype=torch.float32, device=device)
            raw = self._inference_policy(inputs)[0].cpu().tolist()
            value = float(self._inference_value(inputs)[0, 0].item())

        action = action_from_outputs(raw, noise=self.config.exploration_noise, rng=self.rng)
        return Prediction(action=action, log_prob=quadratic_log_prob(raw), value=finite_or(value))

    def random_action(self) -> Action:
        return sample_random_action(self.rng)

    def _publish_snapshot(self) -> None:
        with self._snapshot_lock:
            self._inference_policy.load_state_dict(self.policy_network.state_dict())
            self._inference_value.load_state_dict(self.value_network.state_dict())

    # Experience collection

    @property
    def experience_count(self) -> int:
        return len(self.buffer)

    @property
    def training_in_flight(self) -> bool:
        pending = self._pending
        return pending is not None and not pending.done()

    def store_experience(
        self,
        obs: Observation | Sequence[float],
        action: Action | Sequence[float],
        reward: float,
        next_obs: Observation | Sequence[float],
        done: bool,
        log_prob: float,
        value: float,
        agent_id: str | None = None,
    ) -> None:
        include_extras = self.config.extended_observation
        experience = Experience(
            obs=_as_vector(obs, include_extras),
            action=_as_action_vector(action),
            reward=finite_or(reward),
            next_obs=_as_vector(next_obs, include_extras),
            done=bool(done),
            log_prob=finite_or(log_prob),
            value=finite_or(value),
            agent_id=agent_id,
        )
        with self._state_lock:
            self.buffer.append(experience)
            self.episode_reward += experience.reward
            full = len(self.buffer) >= self.config.buffer_size

        if not full:
            return
        if self.executor is None:
            self.train()
        else:
            self._schedule_training()

    def _schedule_training(self) -> None:
        with self._state_lock:
            if self._disposed or self.training_in_flight:
                return
            if len(self.buffer) < self.config.batch_size:
                return
            batch, self.buffer = self.buffer, []
            self._pending = self.executor.submit(self._train_on, batch)
            self._pending.add_done_callback(self._report_training_failure)
        LOGGER.debug("scheduled training pass on %d experiences", len(batch))

    @staticmethod
    def _report_training_failure(future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            LOGGER.error("Background training pass failed: %s", error)

    def wait_for_training(self, timeout: float | None = None) -> TrainingResult | None:
        pending = self._pending
        if pending is None:
            return None
        return pending.result(timeout=timeout)

    # Optimization

    def train(self) -> TrainingResult | None:
        """Run one training pass over the whole buffer.

        Does nothing below batch size or while a background pass is in flight.
        """
        with self._state_lock:
            if self.training_in_flight or len(self.buffer) < self.config.batch_size:
                return None
            batch, self.buffer = self.buffer, []
        return self._train_on(batch)

    def _train_on(self, batch: list[Experience]) -> TrainingResult:
        started_at = time.perf_counter()
        with self._train_lock:
            result = self._optimize(batch)
            self._publish_snapshot()
        elapsed = time.perf_counter() - started_at

        with self._state_lock:
            self.training_steps += 1
            self.total_training_seconds += elapsed
            self.last_result = result

        log_key_values(
            "mallow_rl.trainer",
            {
                "step": self.training_steps,
                "samples": result.samples,
                "policy_loss": result.mean_policy_loss,
                "value_loss": result.mean_value_loss,
                "skipped": result.skipped_steps or None,
                "seconds": elapsed,
            },
            prefix="Training pass",
        )
        return result

    def _raw_advantages(self, batch: Sequence[Experience]) -> list[float]:
        if self.config.gae_grouping == "agent":
            groups: dict[Any, list[int]] = {}
            for index, experience in enumerate(batch):
                groups.setdefault(experience.agent_id, []).append(index)
            trajectories = list(groups.values())
        else:
            trajectories = [list(range(len(batch)))]

        advantages = [0.0] * len(batch)
        for indices in trajectories:
            estimates = compute_gae(
                [batch[index].reward for index in indices],
                [batch[index].value for index in indices],
                [batch[index].done for index in indices],
                self.config.gamma,
                self.config.gae_lambda,
            )
            for index, estimate in zip(indices, estimates):
                advantages[index] = estimate
        return advantages

    def _optimize(self, batch: list[Experience]) -> TrainingResult:
        config = self.config
        advantages = normalize_advantages(self._raw_advantages(batch), clip=config.advantage_clip)
        returns = [advantage + experience.value for advantage, experience in zip(advantages, batch)]

        states = torch.tensor([experience.obs for experience in batch], dtype=torch.float32, device=device)
        actions = torch.tensor([experience.action for experience in batch], dtype=torch.float32, device=device)
        old_log_probs = torch.tensor([experience.log_prob for experience in batch], dtype=torch.float32, device=device)
        advantage_tensor = torch.tensor(advantages, dtype=torch.float32, device=device)
        return_tensor = torch.tensor(returns, dtype=torch.float32, device=device)

        result = TrainingResult(samples=len(batch))
        self.policy_network.train()
        self.value_network.train()
        for _ in range(config.epochs):
            predictions = self.policy_network(states)
            new_log_probs = -0.5 * (predictions * actions).sum(dim=1)
            ratio = torch.exp(new_log_probs - old_log_probs)
            clipped_ratio = torch.clamp(ratio, 1.0 - config.clip_epsilon, 1.0 + config.clip_epsilon)
            surrogate = torch.min(ratio * advantage_tensor, clipped_ratio * advantage_tensor)
            entropy = (predictions * torch.log(predictions.abs() + ENTROPY_LOG_EPS)).sum(dim=1).mean()
            policy_loss = -surrogate.mean() - entropy * config.entropy_coef
            if self._apply_step(self.policy_optimizer, policy_loss, "policy"):
                result.policy_losses.append(float(policy_loss.item()))
            else:
                result.skipped_steps += 1

            value_predictions = self.value_network(states).squeeze(1)
            value_loss = F.mse_loss(value_predictions, return_tensor)
            if self._apply_step(self.value_optimizer, value_loss, "value"):
                result.value_losses.append(float(value_loss.item()))
            else:
                result.skipped_steps += 1
        self.policy_network.eval()
        self.value_network.eval()
        return result

    @staticmethod
    def _apply_step(optimizer: optim.Optimizer, loss: torch.Tensor, label: str) -> bool:
        if not torch.isfinite(loss):
            LOGGER.warning("Skipping %s update: non-finite loss %s", label, loss.item())
            return False
        optimizer.zero_grad()
        loss.backward()
        optimizer.step()
        return True

    # Episodes and statistics

    def end_episode(self) -> None:
        decay = self.config.reward_ema_decay
        with self._state_lock:
            episode_reward = self.episode_reward
            self.avg_reward = self.avg_reward * decay + episode_reward * (1.0 - decay)
            self.episode_count += 1
            self.episode_reward = 0.0
        LOGGER.debug(
            "episode %d ended: reward=%.2f avg=%.2f", self.episode_count, episode_reward, self.avg_reward
        )

    def reset_episode(self) -> None:
        """Drop the running episode reward without counting an episode."""
        with self._state_lock:
            self.episode_reward = 0.0

    def abort_pending(self) -> None:
        """Forget buffered experience and any training pass that has not started."""
        with self._state_lock:
            self.buffer = []
            self.episode_reward = 0.0
            pending = self._pending
        if pending is not None and pending.cancel():
            LOGGER.info("Cancelled queued training pass")

    def get_stats(self) -> TrainingStats:
        last = self.last_result
        return TrainingStats(
            episode_count=self.episode_count,
            avg_reward=self.avg_reward,
            training_steps=self.training_steps,
            experience_count=len(self.buffer),
            training_in_flight=self.training_in_flight,
            last_policy_loss=last.mean_policy_loss if last and last.policy_losses else None,
            last_value_loss=last.mean_value_loss if last and last.value_losses else None,
        )

    # Persistence

    def _blobs(self) -> tuple[dict[str, Any], dict[str, Any]]:
        with self._train_lock:
            return self.policy_network.to_blob(), self.value_network.to_blob()

    def model_document(self) -> dict[str, Any]:
        policy_blob, value_blob = self._blobs()
        return {"format_version": MODEL_FORMAT_VERSION, "policy": policy_blob, "value": value_blob}

    def export_model_json(self) -> str:
        return json.dumps(self.model_document())

    def save_model(self, name: str = MODEL_NAME) -> bool:
        policy_blob, value_blob = self._blobs()
        try:
            self.store.write(f"{name}-policy", policy_blob)
            self.store.write(f"{name}-value", value_blob)
        except (ModelIOError, OSError) as error:
            LOGGER.error("Failed to save model '%s': %s", name, error)
            return False
        LOGGER.info("Saved model '%s' to %s", name, format_display_path(self.store.root))
        return True

    def save_model_to_path(self, base_path: str | Path) -> bool:
        path = Path(f"{base_path}.json")
        try:
            write_json_atomic(path, self.model_document())
        except (ModelIOError, OSError) as error:
            LOGGER.error("Failed to save model to %s: %s", format_display_path(path), error)
            return False
        LOGGER.info("Saved model to %s", format_display_path(path))
        return True

    def download_model(self, filename: str = MODEL_NAME, directory: str | Path | None = None) -> list[Path]:
        """Write the policy and value blobs as two standalone JSON files."""
        target = ModelStore(directory if directory is not None else Path.cwd())
        policy_blob, value_blob = self._blobs()
        try:
            paths = [
                target.write(f"{filename}-policy", policy_blob),
                target.write(f"{filename}-value", value_blob),
            ]
        except (ModelIOError, OSError) as error:
            LOGGER.error("Failed to download model '%s': %s", filename, error)
            return []
        LOGGER.info("Downloaded model '%s' to %s", filename, format_display_path(target.root))
        return paths

    def load_model(self, name: str = MODEL_NAME) -> bool:
        try:
            policy_blob = self.store.read(f"{name}-policy")
            value_blob = self.store.read(f"{name}-value")
        except (ModelIOError, OSError) as error:
            LOGGER.warning("No usable model '%s': %s", name, error)
            return False
        return self._install(policy_blob, value_blob, source=f"store:{name}")

    def load_model_from_file(self, path: str | Path) -> bool:
        try:
            document = read_json(path)
        except (ModelIOError, OSError) as error:
            LOGGER.error("Failed to read model file %s: %s", format_display_path(path), error)
            return False
        return self._load_document(document, source=format_display_path(path))

    def load_model_from_json(self, text: str) -> bool:
        try:
            document = json.loads(text)
        except (TypeError, ValueError) as error:
            LOGGER.error("Failed to parse model JSON: %s", error)
            return False
        return self._load_document(document, source="json")

    def _load_document(self, document: Any, source: str) -> bool:
        if not isinstance(document, dict) or "policy" not in document or "value" not in document:
            LOGGER.error("Model document from %s must contain 'policy' and 'value'", source)
            return False
        return self._install(document["policy"], document["value"], source=source)

    def _install(self, policy_blob: Any, value_blob: Any, source: str) -> bool:
        """Validate both networks off to the side, then swap their weights in together."""
        try:
            policy = network_from_blob(policy_blob, expected_topology=self.policy_network.topology())
            value = network_from_blob(value_blob, expected_topology=self.value_network.topology())
        except (ModelIOError, ValueError) as error:
            LOGGER.error("Failed to load model from %s: %s", source, error)
            return False

        with self._train_lock:
            self.policy_network.load_state_dict(policy.state_dict())
            self.value_network.load_state_dict(value.state_dict())
            self._publish_snapshot()
        LOGGER.info("Loaded model from %s", source)
        return True

    def dispose(self) -> None:
        with self._state_lock:
            self._disposed = True
            pending = self._pending
        if pending is not None and not pending.cancel():
            try:
                pending.result()
            except Exception:
                LOGGER.exception("Training pass failed during dispose")
        with self._state_lock:
            self.buffer = []
            self._pending = None
