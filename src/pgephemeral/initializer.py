# src/pgephemeral/initializer.py
from __future__ import annotations

import logging
import os
import shutil
import threading
from pathlib import Path
from typing import Dict, List, Optional

from pgephemeral.config import Settings
from pgephemeral.endpoint import Endpoint
from pgephemeral.exceptions import BootstrapFailed, CommandNotFound, InitFailed, ProcessCapture
from pgephemeral.scheduling import CommandResult, Offload, RunCommand, Steps, run_blocking
from pgephemeral.search import resolve_command
from pgephemeral.workspace import Workspace, create_workspace, destroy_workspace

logger = logging.getLogger(__name__)

# Variables that would point libpq tools or the server at some other cluster.
_SCRUBBED_ENV = ("PGDATA", "PGHOST", "PGHOSTADDR", "PGPORT", "PGUSER", "PGDATABASE", "PGSERVICE", "PGOPTIONS")


def command_env() -> Dict[str, str]:
    env = {k: v for k, v in os.environ.items() if k not in _SCRUBBED_ENV}
    # Log scanning matches untranslated server messages.
    env["LC_MESSAGES"] = "C"
    return env


def _capture(result: CommandResult) -> ProcessCapture:
    return ProcessCapture(stdout=result.stdout, stderr=result.stderr)


# ─────────────────────────────────────────────────────────────
# initdb
# ─────────────────────────────────────────────────────────────


def initdb_argv(data_dir: Path, settings: Settings) -> List[str]:
    return [
        *resolve_command("initdb", settings.binaries),
        "-D", str(data_dir),
        f"--username={settings.superuser}",
        "--auth=trust",
        "--encoding=UTF8",
        "--no-sync",
        "--lc-messages=C",
        *settings.initdb_args,
    ]


def initialize(data_dir: Path, settings: Settings) -> Steps[ProcessCapture]:
    """
    Populate `data_dir` with a fresh cluster. A failed initdb is not retried.

    Raises CommandNotFound when initdb cannot be located and InitFailed for
    everything else (non-zero exit, nothing written).
    """
    argv = initdb_argv(data_dir, settings)
    try:
        result = yield RunCommand(argv, env=command_env())
    except FileNotFoundError as exc:
        raise CommandNotFound(f"cannot execute {argv[0]}: {exc}") from exc
    except OSError as exc:
        raise InitFailed(f"cannot execute {argv[0]}: {exc}") from exc

    capture = _capture(result)
    if result.returncode != 0:
        raise InitFailed(
            f"initdb exited with status {result.returncode} for {data_dir}",
            exit_code=result.returncode,
            capture=capture,
        )
    if not (data_dir / "PG_VERSION").is_file():
        raise InitFailed(
            f"initdb reported success but {data_dir} holds no cluster (PG_VERSION missing)",
            exit_code=result.returncode,
            capture=capture,
        )
    logger.debug("initialized cluster in %s", data_dir)
    return capture


def copy_cluster(source: Path, data_dir: Path) -> None:
    shutil.copytree(source, data_dir, symlinks=True, dirs_exist_ok=True)
    os.chmod(data_dir, 0o700)


class ClusterTemplate:
    """
    A cluster initialized once and copied into each new instance's data dir.

    initdb dominates provisioning time; copying a finished data directory is
    an order of magnitude faster. The template lives in a workspace of its own
    (same naming scheme, so an abandoned one is swept like any other) and is
    built lazily on first use, under a lock, by exactly one caller. A failed
    build is not remembered: the next caller tries again.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._lock = threading.Lock()
        self._workspace: Optional[Workspace] = None
        self._closed = False

    @property
    def data_dir(self) -> Optional[Path]:
        return self._workspace.data_dir if self._workspace is not None else None

    def build(self) -> Path:
        """Blocking; returns the template data directory."""
        with self._lock:
            if self._closed:
                raise InitFailed("cluster template has been closed")
            if self._workspace is not None:
                return self._workspace.data_dir

            ws = create_workspace(self.settings.temp_root, attempts=self.settings.workspace_attempts)
            try:
                run_blocking(initialize(ws.data_dir, self.settings))
            except BaseException:
                destroy_workspace(ws)
                raise
            logger.info("built cluster template in %s", ws.data_dir)
            self._workspace = ws
            return ws.data_dir

    def populate(self, data_dir: Path) -> Steps[None]:
        # Both calls go through Offload: async callers build and copy in a
        # worker thread while the lock serializes concurrent builders.
        source = yield Offload(self.build)
        yield Offload(copy_cluster, (source, data_dir))
        if not (data_dir / "PG_VERSION").is_file():
            raise InitFailed(f"copy of cluster template into {data_dir} is incomplete")

    def close(self) -> None:
        with self._lock:
            self._closed = True
            ws, self._workspace = self._workspace, None
        if ws is not None:
            destroy_workspace(ws)


# ─────────────────────────────────────────────────────────────
# Server command line
# ─────────────────────────────────────────────────────────────


def build_server_argv(settings: Settings, endpoint: Endpoint, data_dir: Path) -> List[str]:
    """postgres argv bound to exactly one endpoint: loopback TCP or the workspace socket dir."""
    if endpoint.kind == "unix":
        listen, socket_dirs = "", str(endpoint.socket_dir)
    else:
        listen, socket_dirs = endpoint.host, ""

    argv = [
        *resolve_command("postgres", settings.binaries),
        "-D", str(data_dir),
        "-p", str(endpoint.port),
        "-c", f"listen_addresses={listen}",
        "-c", f"unix_socket_directories={socket_dirs}",
        "-c", "logging_collector=off",
        "-c", "lc_messages=C",
    ]
    for name, value in settings.server_settings.items():
        argv += ["-c", f"{name}={value}"]
    argv += settings.server_args
    return argv


# ─────────────────────────────────────────────────────────────
# Role / database bootstrap
# ─────────────────────────────────────────────────────────────


def _client_args(settings: Settings, endpoint: Endpoint) -> List[str]:
    return ["-h", endpoint.host, "-p", str(endpoint.port), "-U", settings.superuser]


def _run_bootstrap_command(name: str, argv: List[str]) -> Steps[None]:
    try:
        result = yield RunCommand(argv, env=command_env())
    except FileNotFoundError as exc:
        raise CommandNotFound(f"cannot execute {argv[0]}: {exc}") from exc
    except OSError as exc:
        raise BootstrapFailed(f"cannot execute {argv[0]}: {exc}") from exc
    if result.returncode != 0:
        raise BootstrapFailed(
            f"{name} exited with status {result.returncode}",
            exit_code=result.returncode,
            capture=_capture(result),
        )


def bootstrap(settings: Settings, endpoint: Endpoint) -> Steps[None]:
    """
    Create the caller's role and database on a ready server when they differ
    from what initdb already provides (the superuser and `postgres`).
    """
    user = settings.effective_user
    if user != settings.superuser:
        argv = [
            *resolve_command("createuser", settings.binaries),
            *_client_args(settings, endpoint),
            "--superuser",
            user,
        ]
        yield from _run_bootstrap_command("createuser", argv)
        logger.debug("created role %s", user)

    if settings.database not in ("postgres", "template0", "template1"):
        argv = [
            *resolve_command("createdb", settings.binaries),
            *_client_args(settings, endpoint),
            "-O", user,
            settings.database,
        ]
        yield from _run_bootstrap_command("createdb", argv)
        logger.debug("created database %s owned by %s", settings.database, user)
