"""Experience-collection driver: runs EnvWrapper episodes and logs every transition."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
import random
from typing import Sequence

from mallow_rl.config import EPISODE_LOG_DIR, FLAGS, SIM_EPISODES, SIM_MAP, SIM_MAX_STEPS, SIM_OPPONENTS
from mallow_rl.logging_utils import configure_logging, log_key_values, log_run_context
from mallow_rl.rl.env import EnvWrapper, sample_random_action
from mallow_rl.rl.episode_logger import EpisodeLogger
from mallow_rl.rl.policy import NeuralPolicy

LOGGER = logging.getLogger("mallow_rl.sim")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mallow-sim", description="Collect RL experience in a headless arena.")
    parser.add_argument("--episodes", type=int, default=SIM_EPISODES)
    parser.add_argument("--map", default=SIM_MAP)
    parser.add_argument("--max-steps", type=int, default=SIM_MAX_STEPS)
    parser.add_argument("--opponents", type=int, default=SIM_OPPONENTS)
    parser.add_argument("--log-dir", type=Path, default=EPISODE_LOG_DIR)
    parser.add_argument("--policy-file", type=Path, help="act with a trained policy instead of random actions")
    parser.add_argument("--seed", type=int)
    return parser


def run_simulation(
    episodes: int = SIM_EPISODES,
    map_name: str = SIM_MAP,
    max_steps: int = SIM_MAX_STEPS,
    *,
    opponents: int = SIM_OPPONENTS,
    log_dir: str | Path = EPISODE_LOG_DIR,
    policy_file: str | Path | None = None,
    seed: int | None = None,
) -> dict[str, float]:
    rng = random.Random(seed)
    env = EnvWrapper(map_name=map_name, opponents=opponents, max_steps=max_steps, rng=rng)
    logger = EpisodeLogger(log_dir)
    policy = None
    if policy_file is not None:
        policy = NeuralPolicy()
        policy.load(policy_file)

    total_steps = 0
    total_reward = 0.0
    for episode in range(1, episodes + 1):
        logger.start_episode()
        observation = env.reset()
        episode_reward = 0.0
        steps = 0

        while steps < max_steps:
            action = policy.predict(observation) if policy is not None else sample_random_action(rng)
            result = env.step(action)
            logger.log_step(observation, action, result.reward, result.observation, result.done)
            episode_reward += result.reward
            observation = result.observation
            steps += 1
            if result.done:
                break

        logger.end_episode()
        total_steps += steps
        total_reward += episode_reward
        log_key_values(
            LOGGER.name,
            {"Episode": f"{episode}/{episodes}", "Steps": steps, "Reward": episode_reward},
        )

    logged = logger.get_stats()
    summary = {
        "episodes": episodes,
        "total_steps": total_steps,
        "average_reward": total_reward / episodes if episodes else 0.0,
        "logged_episodes": logged["episode_count"],
        "logged_steps": logged["total_steps"],
    }
    log_key_values(LOGGER.name, dict(summary), prefix="Simulation Complete")
    return summary


def main(argv: Sequence[str] | None = None) -> int:
    configure_logging(FLAGS.log_level)
    args = build_parser().parse_args(argv)
    log_run_context(
        "rl-sim",
        {
            "episodes": args.episodes,
            "map": args.map,
            "max_steps": args.max_steps,
            "opponents": args.opponents,
            "log_dir": args.log_dir,
            "policy": args.policy_file or "random",
        },
    )
    run_simulation(
        args.episodes,
        args.map,
        args.max_steps,
        opponents=args.opponents,
        log_dir=args.log_dir,
        policy_file=args.policy_file,
        seed=args.seed,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
