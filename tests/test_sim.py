from __future__ import annotations

from mallow_rl.sim import build_parser, main, run_simulation


def test_random_simulation_logs_every_step(tmp_path):
    summary = run_simulation(2, "open_field", 5, opponents=1, log_dir=tmp_path, seed=4)

    assert summary["episodes"] == 2
    assert summary["logged_episodes"] == 2
    assert summary["logged_steps"] == summary["total_steps"]
    assert 2 <= summary["total_steps"] <= 10


def test_simulation_with_trained_policy(tmp_path, trainer):
    assert trainer.save_model_to_path(tmp_path / "policy")

    summary = run_simulation(
        1,
        "de_dust2_d",
        4,
        opponents=2,
        log_dir=tmp_path / "episodes",
        policy_file=tmp_path / "policy.json",
        seed=1,
    )

    assert summary["logged_episodes"] == 1
    assert summary["logged_steps"] == summary["total_steps"]


def test_cli_defaults_and_main(tmp_path):
    args = build_parser().parse_args([])
    assert args.policy_file is None
    assert args.opponents == 1

    assert main(["--episodes", "1", "--map", "open_field", "--max-steps", "3", "--log-dir", str(tmp_path)]) == 0
    assert len(list(tmp_path.glob("*.jsonl"))) == 1
