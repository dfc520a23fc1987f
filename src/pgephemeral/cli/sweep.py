from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field

from pgephemeral.cli.run import LogLevel


class SweepCommand(BaseModel):
    temp_root: Optional[Path] = Field(None, description="Directory to scan (default: configured temp root).")
    config_file: Optional[Path] = Field(None, description="Optional pgephemeral config file (toml/yaml).")
    loglevel: Optional[LogLevel] = Field(None, description="Logging level override.")


def handle_sweep(command: SweepCommand) -> List[str]:
    from pgephemeral.config import configure_logging, get_settings
    from pgephemeral.workspace import resolve_temp_root, sweep_orphans

    overrides: dict[str, object] = {}
    if command.temp_root is not None:
        overrides["temp_root"] = command.temp_root
    if command.loglevel is not None:
        overrides["logging"] = {"level": command.loglevel.upper()}

    settings = get_settings(config_file=command.config_file, **overrides)
    configure_logging(settings.logging)

    removed = [str(p) for p in sweep_orphans(resolve_temp_root(settings.temp_root))]
    for path in removed:
        print(path)
    return removed
