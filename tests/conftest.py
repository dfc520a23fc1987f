"""
Shared fixtures.

Most tests run the full lifecycle against `stub_server.py`, which plays
initdb/postgres/createdb/createuser, so PostgreSQL does not need to be
installed. Workspaces go under a short directory in /tmp because unix socket
paths are limited to about a hundred bytes and pytest's tmp_path is long.
"""
from __future__ import annotations

import shutil
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest

from pgephemeral.config import Settings, clear_settings_cache
from pgephemeral.registry import InstanceRegistry

STUB = Path(__file__).with_name("stub_server.py")


def stub_binaries() -> dict[str, list[str]]:
    return {
        f"{tool}_command": [sys.executable, str(STUB), tool]
        for tool in ("initdb", "postgres", "createdb", "createuser")
    }


@pytest.fixture(autouse=True)
def _fresh_settings_cache(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    for var in ("PGEPHEMERAL_ENDPOINT_KIND", "PGEPHEMERAL_TEMP_ROOT", "PGEPHEMERAL_BIN_DIR"):
        monkeypatch.delenv(var, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def short_tmp() -> Iterator[Path]:
    path = Path(tempfile.mkdtemp(prefix="pge", dir="/tmp"))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def registry() -> InstanceRegistry:
    # Not installed: tests must not leave atexit hooks behind.
    return InstanceRegistry()


@pytest.fixture
def make_settings(short_tmp: Path) -> Callable[..., Settings]:
    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "temp_root": short_tmp,
            "sweep_orphans": False,
            "readiness_timeout_s": 15.0,
            "shutdown_timeout_s": 5.0,
            "kill_timeout_s": 5.0,
            "poll_interval_s": 0.02,
            "binaries": stub_binaries(),
        }
        values.update(overrides)
        return Settings(**values)

    return _make


def workspaces_under(root: Path) -> list[Path]:
    return sorted(p for p in root.iterdir() if p.name.startswith("pgephemeral-"))
