from __future__ import annotations

import argparse
import signal
import sys
import threading
from pathlib import Path
from typing import Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from pgephemeral.cli.argparse_model import add_model_to_parser

LogLevel = Literal[
    "CRITICAL",
    "ERROR",
    "WARNING",
    "INFO",
    "DEBUG",
    "critical",
    "error",
    "warning",
    "info",
    "debug",
]


class RunInstanceCommand(BaseModel):
    endpoint_kind: Optional[Literal["tcp", "unix"]] = Field(None, description="Listen on a TCP port or a unix socket.")
    database: Optional[str] = Field(None, description="Database to create and hand out.")
    user: Optional[str] = Field(None, description="Role to create and hand out.")
    temp_root: Optional[Path] = Field(None, description="Parent directory for the workspace.")
    bin_dir: Optional[Path] = Field(None, description="Directory holding initdb/postgres.")
    readiness_timeout_s: Optional[float] = Field(None, description="Maximum wait for the server to come up.")
    server_setting: List[str] = Field(
        default_factory=list, description="Extra server setting as NAME=VALUE; repeatable."
    )
    print_env: bool = Field(False, description="Also print PGHOST/PGPORT/PGUSER/PGDATABASE lines.")
    config_file: Optional[Path] = Field(None, description="Optional pgephemeral config file (toml/yaml).")
    loglevel: Optional[LogLevel] = Field(None, description="Logging level override.")

    @field_validator("server_setting")
    @classmethod
    def _check_pairs(cls, v: List[str]) -> List[str]:
        for item in v:
            name, sep, _ = item.partition("=")
            if not sep or not name:
                raise ValueError(f"expected NAME=VALUE, got {item!r}")
        return v

    def server_settings(self) -> Dict[str, str]:
        return dict(item.split("=", 1) for item in self.server_setting)


def _wait_for_termination() -> None:
    stop = threading.Event()

    def _handler(signum: int, frame: object) -> None:
        stop.set()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        stop.wait()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def handle_run(
    command: RunInstanceCommand,
    *,
    wait: Callable[[], None] = _wait_for_termination,
) -> None:
    from pgephemeral.config import configure_logging, get_settings

    overrides: dict[str, object] = {}
    for name in ("endpoint_kind", "database", "user", "temp_root", "readiness_timeout_s"):
        value = getattr(command, name)
        if value is not None:
            overrides[name] = value
    if command.bin_dir is not None:
        overrides["binaries"] = {"bin_dir": command.bin_dir}
    if command.loglevel is not None:
        overrides["logging"] = {"level": command.loglevel.upper()}

    settings = get_settings(config_file=command.config_file, **overrides)
    if command.server_setting:
        settings = settings.model_copy(
            update={"server_settings": {**settings.server_settings, **command.server_settings()}}
        )
    configure_logging(settings.logging)

    from pgephemeral.exceptions import ProvisionFailed
    from pgephemeral.factory import PostgresFactory

    with PostgresFactory(settings) as factory:
        try:
            instance = factory.provision()
        except ProvisionFailed as exc:
            print(f"pgephemeral: {exc}", file=sys.stderr)
            raise SystemExit(1) from exc

        with instance:
            print(instance.dsn, flush=True)
            if command.print_env:
                p = instance.params
                print(f"PGHOST={p.host}\nPGPORT={p.port}\nPGUSER={p.user}\nPGDATABASE={p.database}", flush=True)
            wait()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="pgephemeral-run")
    add_model_to_parser(parser, RunInstanceCommand)
    ns = parser.parse_args(argv)
    cmd = RunInstanceCommand.model_validate(vars(ns))
    handle_run(cmd)
