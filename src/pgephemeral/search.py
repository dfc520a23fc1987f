# src/pgephemeral/search.py
from __future__ import annotations

import glob
import logging
import os
import re
import shutil
import subprocess
from functools import lru_cache
from pathlib import Path
from typing import Iterable, List, Optional

from pgephemeral.config import BinarySettings
from pgephemeral.exceptions import CommandNotFound

logger = logging.getLogger(__name__)

BIN_DIR_ENV_VARS = ("PGEPHEMERAL_BIN_DIR", "PG_BIN")

# Newest version wins when several are installed side by side.
_INSTALL_GLOBS = (
    "/usr/lib/postgresql/*/bin",
    "/usr/pgsql-*/bin",
    "/usr/local/pgsql/bin",
    "/usr/local/pgsql-*/bin",
    "/usr/local/opt/postgresql*/bin",
    "/opt/homebrew/opt/postgresql*/bin",
    "/opt/local/lib/postgresql*/bin",
    "/Applications/Postgres.app/Contents/Versions/*/bin",
)

_VERSION_RE = re.compile(r"(\d+)(?:\.(\d+))?")


def _version_key(path: str) -> tuple[int, int]:
    nums = _VERSION_RE.findall(path)
    if not nums:
        return (0, 0)
    major, minor = nums[-1]
    return (int(major), int(minor or 0))


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


@lru_cache(maxsize=1)
def _pg_config_bindir() -> Optional[Path]:
    pg_config = shutil.which("pg_config")
    if pg_config is None:
        return None
    try:
        out = subprocess.run([pg_config, "--bindir"], capture_output=True, text=True, check=False, timeout=10)
    except (OSError, subprocess.TimeoutExpired):
        return None
    if out.returncode != 0 or not out.stdout.strip():
        return None
    return Path(out.stdout.strip())


def _well_known_dirs() -> List[Path]:
    found: List[str] = []
    for pattern in _INSTALL_GLOBS:
        found.extend(glob.glob(pattern))
    found.sort(key=_version_key, reverse=True)
    return [Path(p) for p in found]


def candidate_dirs(bin_dir: Path | None = None) -> Iterable[Path]:
    if bin_dir is not None:
        yield Path(bin_dir)
    for var in BIN_DIR_ENV_VARS:
        value = os.environ.get(var)
        if value:
            yield Path(value)


def find_postgresql_command(name: str, *, bin_dir: Path | None = None) -> Path:
    """
    Locate a PostgreSQL executable (initdb, postgres, createdb, createuser).

    Search order: `bin_dir`, $PGEPHEMERAL_BIN_DIR / $PG_BIN, $PATH,
    `pg_config --bindir`, then well-known install locations, newest first.
    Distribution packages often keep initdb/postgres out of $PATH, hence the
    later steps.
    """
    for d in candidate_dirs(bin_dir):
        p = d / name
        if _is_executable(p):
            return p

    on_path = shutil.which(name)
    if on_path is not None:
        return Path(on_path)

    pg_bindir = _pg_config_bindir()
    if pg_bindir is not None and _is_executable(pg_bindir / name):
        return pg_bindir / name

    for d in _well_known_dirs():
        p = d / name
        if _is_executable(p):
            return p

    raise CommandNotFound(
        f"could not find PostgreSQL command {name!r}; install PostgreSQL or set "
        "PGEPHEMERAL_BIN_DIR / binaries.bin_dir"
    )


def resolve_command(name: str, binaries: BinarySettings) -> List[str]:
    """argv prefix for `name`, honouring explicit `<name>_command` overrides."""
    override = getattr(binaries, f"{name}_command", None)
    if override:
        return [str(part) for part in override]
    path = find_postgresql_command(name, bin_dir=binaries.bin_dir)
    logger.debug("using %s at %s", name, path)
    return [str(path)]


def postgres_available(binaries: BinarySettings | None = None) -> bool:
    b = binaries or BinarySettings()
    try:
        resolve_command("initdb", b)
        resolve_command("postgres", b)
    except CommandNotFound:
        return False
    return True
