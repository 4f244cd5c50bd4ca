"""Round-based training mode: both teams are driven and trained by one RLTrainer."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
import logging
from pathlib import Path
import random
import time
from typing import Any

from mallow_rl.arena import SPAWN_KEY_OPFOR, SPAWN_KEY_TASK_FORCE, Arena, Combatant, generate_spawn_points
from mallow_rl.config import ROUNDS, TEAM_INDEX, TEAM_OPFOR, TEAM_TASK_FORCE, RoundConfig
from mallow_rl.logging_utils import format_display_path, log_key_values
from mallow_rl.modes.base import GameMode, ScoreData
from mallow_rl.rl.env import apply_action, observation_extras, observation_from_entity
from mallow_rl.rl.rewards import RewardShaper, RewardTracker
from mallow_rl.rl.trainer import RLTrainer
from mallow_rl.rl.types import Action, Observation, Prediction, TrainingStats
from mallow_rl.runtime import Vec3

LOGGER = logging.getLogger("mallow_rl.training")


class RoundPhase(str, Enum):
    IDLE = "idle"
    ROUND_ACTIVE = "round_active"
    ROUND_ENDING = "round_ending"
    FINISHED = "finished"


@dataclass
class RoundState:
    """Round counters and alive sets, changed only through the transition methods."""

    phase: RoundPhase = RoundPhase.IDLE
    round_number: int = 0
    time_limit: float = 0.0
    time_remaining: float = 0.0
    restart_timer: float = 0.0
    started_at: float = 0.0
    task_force_alive: set[Combatant] = field(default_factory=set)
    op_for_alive: set[Combatant] = field(default_factory=set)

    def begin_round(self, time_limit: float) -> None:
        if self.phase not in (RoundPhase.IDLE, RoundPhase.ROUND_ENDING):
            raise RuntimeError(f"Cannot start a round while {self.phase.value}")
        self.round_number += 1
        self.time_limit = float(time_limit)
        self.time_remaining = float(time_limit)
        self.restart_timer = 0.0
        self.started_at = time.perf_counter()
        self.phase = RoundPhase.ROUND_ACTIVE

    def add_alive(self, combatant: Combatant) -> None:
        if combatant.team == TEAM_TASK_FORCE:
            self.task_force_alive.add(combatant)
        else:
            self.op_for_alive.add(combatant)

    def mark_dead(self, combatant: Combatant) -> None:
        self.task_force_alive.discard(combatant)
        self.op_for_alive.discard(combatant)

    def clear_alive(self) -> None:
        self.task_force_alive.clear()
        self.op_for_alive.clear()

    def tick(self, dt: float) -> None:
        self.time_remaining -= dt

    @property
    def elapsed(self) -> float:
        return self.time_limit - max(0.0, self.time_remaining)

    def should_end(self) -> bool:
        return not self.task_force_alive or not self.op_for_alive or self.time_remaining <= 0.0

    def winner(self) -> str | None:
        """The side with survivors when the other has none; None on a draw."""
        if self.task_force_alive and not self.op_for_alive:
            return TEAM_TASK_FORCE
        if self.op_for_alive and not self.task_force_alive:
            return TEAM_OPFOR
        return None

    def end_round(self, restart_delay: float) -> None:
        if self.phase is not RoundPhase.ROUND_ACTIVE:
            raise RuntimeError(f"Cannot end a round while {self.phase.value}")
        self.phase = RoundPhase.ROUND_ENDING
        self.restart_timer = float(restart_delay)

    def finish(self) -> None:
        self.phase = RoundPhase.FINISHED

    def abort(self) -> None:
        self.phase = RoundPhase.IDLE
        self.time_remaining = 0.0
        self.restart_timer = 0.0
        self.clear_alive()


@dataclass
class TrainedBot:
    bot: Combatant
    tracker: RewardTracker
    last_obs: Observation | None = None
    last_action: Action | None = None
    last_log_prob: float = 0.0
    last_value: float = 0.0
    done: bool = False
    total_reward: float = 0.0
    reward_breakdown: dict[str, float] = field(default_factory=dict)

    @property
    def agent_id(self) -> str:
        return self.bot.name

    def remember(self, observation: Observation, prediction: Prediction) -> None:
        self.last_obs = observation
        self.last_action = prediction.action
        self.last_log_prob = prediction.log_prob
        self.last_value = prediction.value

    def add_reward(self, reward: float, components: dict[str, float] | None = None) -> None:
        self.total_reward += reward
        for key, value in (components or {}).items():
            self.reward_breakdown[key] = self.reward_breakdown.get(key, 0.0) + value


class RLTrainingGameMode(GameMode):
    """Spawns both teams each round, feeds every step to the trainer, and persists the model."""

    def __init__(
        self,
        arena: Arena,
        trainer: RLTrainer | None = None,
        config: RoundConfig = ROUNDS,
        *,
        rng: random.Random | None = None,
    ) -> None:
        super().__init__(arena)
        self.config = config
        self.trainer = trainer or RLTrainer()
        self.shaper = RewardShaper(config.rewards)
        self.rng = rng or random.Random()
        self.state = RoundState()
        self.trained_bots: list[TrainedBot] = []
        self.task_force_spawns: list[Vec3] = []
        self.op_for_spawns: list[Vec3] = []
        self.training_active = False
        self.round_rewards: list[float] = []
        self.total_training_time = 0.0
        self._model_io = ThreadPoolExecutor(max_workers=1, thread_name_prefix="model-io")
        self._pending_save: Future | None = None
        self._listening = False

    # Lifecycle

    def init(self) -> None:
        LOGGER.info("Initializing RL training mode")
        self.state = RoundState()
        self.round_rewards = []
        self.total_training_time = 0.0
        self.training_active = True
        self._setup_spawn_points()
        if not self._listening:
            self.arena.add_death_listener(self.on_entity_death)
            self._listening = True
        self.start_new_round()

    def _setup_spawn_points(self) -> None:
        self.task_force_spawns = self._spawns_for(SPAWN_KEY_TASK_FORCE, TEAM_TASK_FORCE)
        self.op_for_spawns = self._spawns_for(SPAWN_KEY_OPFOR, TEAM_OPFOR)

    def _spawns_for(self, key: str, team: str) -> list[Vec3]:
        points = list(self.arena.available_spawns.get(key, ()))
        if points:
            LOGGER.info("Using %d %s spawn points for %s", len(points), key, team)
            return points
        LOGGER.warning("No %s spawns found, using generated positions for %s", key, team)
        return generate_spawn_points(TEAM_INDEX[team], self.config.bots_per_team, self.rng)

    def update(self, dt: float) -> None:
        if not self.training_active:
            return

        if self.state.phase is RoundPhase.ROUND_ACTIVE:
            self._update_training()
            self.state.tick(dt)
            if self.state.should_end():
                self.end_round()
        elif self.state.phase is RoundPhase.ROUND_ENDING:
            self.state.restart_timer -= dt
            if self.state.restart_timer <= 0.0:
                self.start_new_round()

    def start_new_round(self) -> None:
        if self.state.phase is RoundPhase.FINISHED:
            return
        LOGGER.info("Starting round %d/%d", self.state.round_number + 1, self.config.max_rounds)
        self.cleanup_round()
        self.state.begin_round(self.config.round_time_limit)
        self._spawn_bots()

    def _spawn_bots(self) -> None:
        for team, spawns, prefix in (
            (TEAM_TASK_FORCE, self.task_force_spawns, "TF"),
            (TEAM_OPFOR, self.op_for_spawns, "OF"),
        ):
            for index in range(self.config.bots_per_team):
                position = spawns[index % len(spawns)]
                bot = self.arena.spawn_combatant(position, team, f"{prefix}-{index + 1}")
                bot.external_control = True
                self.register_entity(bot)
                self.trained_bots.append(TrainedBot(bot=bot, tracker=RewardTracker(spawn_position=position)))

    def register_entity(self, entity: Combatant) -> None:
        self.state.add_alive(entity)

    def on_entity_death(self, victim: Combatant, killer: Combatant | None = None) -> None:
        self.state.mark_dead(victim)

    # Per-step training

    def _observe(self, bot: Combatant, roster: list[Combatant]) -> Observation:
        extras = None
        if self.trainer.config.extended_observation:
            extras = observation_extras(bot, self.arena.cover_distance(bot))
        return observation_from_entity(bot, roster, extras=extras)

    def _update_training(self) -> None:
        roster = [trained.bot for trained in self.trained_bots]
        for trained in self.trained_bots:
            if trained.done:
                continue
            bot = trained.bot
            observation = self._observe(bot, roster)

            if trained.last_obs is not None and trained.last_action is not None:
                reward, components = self.shaper.compute(bot, trained.tracker, trained.last_obs, observation)
                trained.add_reward(reward, components)
                self._store(trained, reward, observation, done=bot.is_dead)

            if bot.is_dead:
                trained.done = True
                continue

            prediction = self.trainer.predict(observation)
            apply_action(bot, prediction.action)
            trained.remember(observation, prediction)

    def _store(self, trained: TrainedBot, reward: float, next_obs: Observation, done: bool) -> None:
        try:
            self.trainer.store_experience(
                trained.last_obs,
                trained.last_action,
                reward,
                next_obs,
                done,
                trained.last_log_prob,
                trained.last_value,
                agent_id=trained.agent_id,
            )
        except (RuntimeError, ValueError) as error:
            LOGGER.error("Training pass failed in round %d, skipping it: %s", self.state.round_number, error)

    # Round boundaries

    def end_round(self) -> None:
        if self.state.phase is not RoundPhase.ROUND_ACTIVE:
            return
        winner = self.state.winner()
        roster = [trained.bot for trained in self.trained_bots]

        for trained in self.trained_bots:
            if trained.last_obs is None or trained.last_action is None:
                continue
            bonus = self.shaper.terminal_bonus(trained.bot.team, winner)
            if trained.done:
                # Death step already stored; only the bonus is left.
                trained.add_reward(bonus, {"round_bonus": bonus})
                self._store(trained, bonus, trained.last_obs, done=True)
                continue

            # Kills resolved later in the final tick are only visible from here.
            observation = self._observe(trained.bot, roster)
            step_reward, components = self.shaper.compute(trained.bot, trained.tracker, trained.last_obs, observation)
            reward = self.shaper.clamp(step_reward + bonus)
            trained.add_reward(reward, {**components, "round_bonus": bonus})
            self._store(trained, reward, observation, done=True)
            trained.done = True

        self.trainer.end_episode()
        stats = self.trainer.get_stats()
        wall_seconds = time.perf_counter() - self.state.started_at
        self.total_training_time += wall_seconds
        self.round_rewards.append(stats.avg_reward)

        round_number = self.state.round_number
        log_key_values(
            "mallow_rl.training",
            {
                "round": f"{round_number}/{self.config.max_rounds}",
                "winner": winner or "Draw",
                "round_time": self.state.elapsed,
                "avg_reward": stats.avg_reward,
                "training_steps": stats.training_steps,
                "buffer": stats.experience_count,
                "total_training_min": self.total_training_time / 60.0,
                "tf_rewards": self.team_reward_breakdown(TEAM_TASK_FORCE),
                "of_rewards": self.team_reward_breakdown(TEAM_OPFOR),
            },
            prefix="Round complete",
        )

        self.state.end_round(self.config.restart_delay)
        if round_number % self.config.autosave_interval == 0:
            LOGGER.info("Auto-saving model at round %d", round_number)
            self._schedule_save()

        if round_number >= self.config.max_rounds:
            self.finish_training()

    def finish_training(self) -> bool:
        """Stop scheduling rounds and block until the final save has completed."""
        LOGGER.info("Training complete after %d rounds", self.state.round_number)
        self.training_active = False
        self.state.finish()
        return bool(self._schedule_save().result())

    def cleanup_round(self) -> None:
        for trained in self.trained_bots:
            self.arena.remove_combatant(trained.bot)
        self.trained_bots = []
        self.state.clear_alive()

    def abort_round(self) -> None:
        """Tear down a round in progress without scoring it."""
        if self.state.phase is RoundPhase.ROUND_ACTIVE:
            LOGGER.warning("Aborting round %d", self.state.round_number)
        self.cleanup_round()
        self.trainer.abort_pending()
        self.state.abort()

    def dispose(self) -> None:
        if self._listening:
            self.arena.remove_death_listener(self.on_entity_death)
            self._listening = False
        self.training_active = False
        self.cleanup_round()
        self._model_io.shutdown(wait=True, cancel_futures=True)
        self.trainer.dispose()

    # Persistence

    def _schedule_save(self, name: str | None = None) -> Future:
        name = name or self.config.model_name
        future = self._model_io.submit(self.trainer.save_model, name)
        future.add_done_callback(self._report_save)
        self._pending_save = future
        return future

    @staticmethod
    def _report_save(future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            LOGGER.error("Model save failed: %s", error)
        elif not future.result():
            LOGGER.warning("Model save reported failure")

    def wait_for_model_io(self, timeout: float | None = None) -> None:
        pending = self._pending_save
        if pending is not None:
            pending.result(timeout=timeout)

    def load_trained_model(self, name: str | None = None) -> bool:
        return self._model_io.submit(self.trainer.load_model, name or self.config.model_name).result()

    def download_model(self, filename: str = "trained-bot-model", directory: str | Path | None = None) -> bool:
        base_path = Path(directory if directory is not None else Path.cwd()) / filename
        return self._model_io.submit(self.trainer.save_model_to_path, base_path).result()

    def load_model_from_file(self, path: str | Path) -> bool:
        loaded = self._model_io.submit(self.trainer.load_model_from_file, path).result()
        if loaded:
            LOGGER.info("Model loaded from %s", format_display_path(path))
        return loaded

    # Reporting

    def get_stats(self) -> TrainingStats:
        return self.trainer.get_stats()

    def team_reward_breakdown(self, team: str) -> dict[str, float]:
        """Summed shaped-reward components of this round's bots on ``team``."""
        totals: dict[str, float] = {}
        for trained in self.trained_bots:
            if trained.bot.team != team:
                continue
            for key, value in trained.reward_breakdown.items():
                totals[key] = totals.get(key, 0.0) + value
        return totals

    def get_training_status(self) -> dict[str, Any]:
        stats = self.trainer.get_stats()
        return {
            "round": self.state.round_number,
            "max_rounds": self.config.max_rounds,
            "phase": self.state.phase.value,
            "time_remaining": max(0.0, self.state.time_remaining),
            "avg_reward": stats.avg_reward,
            "training_steps": stats.training_steps,
            "experience_count": stats.experience_count,
            "buffer_size": self.trainer.config.buffer_size,
        }

    def get_scoreboard_data(self) -> list[ScoreData]:
        stats = self.trainer.get_stats()
        rows = [
            ScoreData(
                name="Training",
                team="RL",
                score=stats.training_steps,
                status=f"Ep {self.state.round_number}/{self.config.max_rounds} | Avg: {stats.avg_reward:.1f}",
            )
        ]
        for team in (TEAM_TASK_FORCE, TEAM_OPFOR):
            for trained in self.trained_bots:
                bot = trained.bot
                if bot.team != team:
                    continue
                rows.append(
                    ScoreData(
                        name=bot.name,
                        team=team,
                        score=round(bot.damage_dealt),
                        status="Dead" if bot.is_dead else f"HP: {round(bot.health)}",
                    )
                )
        return rows
