# src/pgephemeral/__main__.py
from __future__ import annotations

import argparse

from pgephemeral.cli.argparse_model import add_model_to_parser
from pgephemeral.cli.run import RunInstanceCommand, handle_run
from pgephemeral.cli.sweep import SweepCommand, handle_sweep


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="pgephemeral")
    sub = parser.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run", help="Start a temporary PostgreSQL server and print its DSN.")
    add_model_to_parser(run_p, RunInstanceCommand)

    sweep_p = sub.add_parser("sweep", help="Remove workspaces left behind by dead processes.")
    add_model_to_parser(sweep_p, SweepCommand)

    ns = parser.parse_args(argv)
    data = vars(ns)
    command = data.pop("command", None)

    if command == "run":
        handle_run(RunInstanceCommand.model_validate(data))
        return

    if command == "sweep":
        handle_sweep(SweepCommand.model_validate(data))
        return

    raise RuntimeError(f"Unknown command: {command}")


if __name__ == "__main__":
    main()
