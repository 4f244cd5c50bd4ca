"""Module entrypoint for `python -m mallow_rl`."""

from mallow_rl.train import main


if __name__ == "__main__":
    raise SystemExit(main())
