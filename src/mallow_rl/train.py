"""Headless training driver for the round-based RL training mode."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Sequence

from mallow_rl.arena import Arena
from mallow_rl.config import (
    FLAGS,
    MODEL_DIR,
    MODEL_NAME,
    ROUNDS,
    SIM_MAP,
    SIMULATION_DT,
    RoundConfig,
)
from mallow_rl.logging_utils import configure_logging, format_display_path, log_key_values, log_run_context
from mallow_rl.modes import RLTrainingGameMode
from mallow_rl.rl.model import ModelStore
from mallow_rl.rl.trainer import RLTrainer

LOGGER = logging.getLogger("mallow_rl.training")


def plot_training(avg_rewards: Sequence[float], path: str | Path) -> Path:
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    output = Path(path)
    output.parent.mkdir(parents=True, exist_ok=True)
    figure, axis = plt.subplots()
    axis.set_title("Training Progress")
    axis.set_xlabel("Rounds")
    axis.set_ylabel("Avg Reward (EMA)")
    axis.plot(list(avg_rewards), label="Avg Reward")
    axis.legend()
    figure.savefig(output)
    plt.close(figure)
    return output


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mallow-train", description="Train bots with round-based PPO.")
    parser.add_argument("--rounds", type=int, default=ROUNDS.max_rounds)
    parser.add_argument("--bots-per-team", type=int, default=ROUNDS.bots_per_team)
    parser.add_argument("--round-time", type=float, default=ROUNDS.round_time_limit, help="seconds per round")
    parser.add_argument("--autosave", type=int, default=ROUNDS.autosave_interval, help="save every N rounds")
    parser.add_argument("--map", default=SIM_MAP)
    parser.add_argument("--model-dir", type=Path, default=MODEL_DIR)
    parser.add_argument("--model-name", default=MODEL_NAME)
    parser.add_argument("--load", action="store_true", help="resume from the named model in --model-dir")
    parser.add_argument("--load-file", type=Path, help="resume from a combined model JSON file")
    parser.add_argument("--plot", type=Path, help="write the average-reward curve to this image")
    parser.add_argument("--dt", type=float, default=SIMULATION_DT)
    parser.add_argument("--seed", type=int)
    return parser


def train(args: argparse.Namespace) -> RLTrainingGameMode:
    config = RoundConfig(
        bots_per_team=args.bots_per_team,
        max_rounds=args.rounds,
        round_time_limit=args.round_time,
        autosave_interval=args.autosave,
        restart_delay=0.0,
        model_name=args.model_name,
    )
    arena = Arena(args.map)
    trainer = RLTrainer(store=ModelStore(args.model_dir), seed=args.seed)
    mode = RLTrainingGameMode(arena, trainer, config)

    model_status = "scratch"
    if args.load_file is not None:
        model_status = format_display_path(args.load_file)
        if not mode.load_model_from_file(args.load_file):
            model_status = f"missing:{args.load_file}"
    elif args.load:
        model_status = args.model_name if mode.load_trained_model() else f"missing:{args.model_dir / args.model_name}"

    log_run_context(
        "train-rl",
        {
            "model": model_status,
            "map": args.map,
            "rounds": config.max_rounds,
            "bots_per_team": config.bots_per_team,
            "round_time": config.round_time_limit,
            "buffer": trainer.config.buffer_size,
            "batch": trainer.config.batch_size,
            "gpu": FLAGS.use_gpu,
        },
    )

    mode.init()
    try:
        while mode.training_active:
            mode.update(args.dt)
            arena.step(args.dt)
    except KeyboardInterrupt:
        LOGGER.warning("Interrupted; saving current model")
        mode.abort_round()
        trainer.save_model(config.model_name)

    stats = trainer.get_stats()
    log_key_values(
        "mallow_rl.training",
        {
            "Event": "Training Finished",
            "Rounds": mode.state.round_number,
            "Episodes": stats.episode_count,
            "AvgReward": stats.avg_reward,
            "TrainingSteps": stats.training_steps,
            "TrainingMinutes": mode.total_training_time / 60.0,
        },
    )

    if args.plot is not None and mode.round_rewards:
        LOGGER.info("Saved reward plot to %s", format_display_path(plot_training(mode.round_rewards, args.plot)))
    return mode


def main(argv: Sequence[str] | None = None) -> int:
    configure_logging(FLAGS.log_level)
    args = build_parser().parse_args(argv)
    mode = train(args)
    mode.dispose()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
