# src/pgephemeral/workspace.py
from __future__ import annotations

import logging
import os
import re
import secrets
import shutil
import signal
import tempfile
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, List, Optional

import psutil

from pgephemeral.exceptions import TeardownIncomplete, WorkspaceCreationFailed

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "pgephemeral-"
_NAME_RE = re.compile(r"^pgephemeral-(?P<pid>\d+)-(?P<token>[0-9a-f]{16})$")

DATA_DIR = "data"
SOCKET_DIR = "sockets"
LOG_FILE = "postgres.log"


@dataclass(frozen=True, slots=True)
class Workspace:
    """
    One instance's private area under the temp root.

    Layout::

        <temp_root>/pgephemeral-<pid>-<16 hex>/
            data/          PGDATA, mode 0700
            sockets/       unix socket directory
            postgres.log   server stdout + stderr

    The owning pid is part of the name so a later run can tell whether the
    owner is still alive.
    """

    root_path: Path

    @property
    def data_dir(self) -> Path:
        return self.root_path / DATA_DIR

    @property
    def socket_dir(self) -> Path:
        return self.root_path / SOCKET_DIR

    @property
    def log_path(self) -> Path:
        return self.root_path / LOG_FILE

    @property
    def owner_pid(self) -> Optional[int]:
        return parse_owner_pid(self.root_path.name)

    def exists(self) -> bool:
        return self.root_path.exists()


def parse_owner_pid(name: str) -> Optional[int]:
    m = _NAME_RE.match(name)
    if m is None:
        return None
    return int(m.group("pid"))


def workspace_name(pid: Optional[int] = None) -> str:
    return f"{WORKSPACE_PREFIX}{os.getpid() if pid is None else pid}-{secrets.token_hex(8)}"


def resolve_temp_root(temp_root: str | Path | None = None) -> Path:
    return Path(temp_root) if temp_root is not None else Path(tempfile.gettempdir())


def create_workspace(temp_root: str | Path | None = None, *, attempts: int = 8) -> Workspace:
    """
    Create a fresh, uniquely named workspace.

    Names come from the pid plus 64 random bits, so concurrent callers (threads,
    tasks, other processes) need no coordination. A collision is retried up to
    `attempts` times; anything else the filesystem refuses is fatal.
    """
    root = resolve_temp_root(temp_root)

    for _ in range(attempts):
        path = root / workspace_name()
        try:
            path.mkdir(mode=0o700)
        except FileExistsError:
            logger.debug("workspace name collision at %s; retrying", path)
            continue
        except OSError as exc:
            raise WorkspaceCreationFailed(f"cannot create workspace under {root}: {exc}") from exc

        ws = Workspace(path)
        try:
            ws.data_dir.mkdir(mode=0o700)
            ws.socket_dir.mkdir(mode=0o700)
            ws.log_path.touch()
        except OSError as exc:
            shutil.rmtree(path, ignore_errors=True)
            raise WorkspaceCreationFailed(f"cannot populate workspace {path}: {exc}") from exc

        logger.debug("created workspace %s", path)
        return ws

    raise WorkspaceCreationFailed(
        f"could not find a unique workspace name under {root} after {attempts} attempts"
    )


def _remove_tree(path: Path) -> bool:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        # Files can still appear while a dying server flushes; one more pass.
        logger.debug("first removal of %s failed (%r); retrying", path, exc)
        shutil.rmtree(path, ignore_errors=True)
    return not path.exists()


def destroy_workspace(workspace: Workspace) -> bool:
    """
    Remove the workspace tree. Idempotent: a missing directory counts as success.

    Never raises. A tree that cannot be removed is logged and reported as a
    TeardownIncomplete warning, and False is returned so the caller can carry on
    with the rest of its teardown.
    """
    if _remove_tree(workspace.root_path):
        logger.debug("removed workspace %s", workspace.root_path)
        return True

    msg = f"workspace {workspace.root_path} could not be removed; manual cleanup needed"
    logger.warning(msg)
    warnings.warn(msg, TeardownIncomplete, stacklevel=2)
    return False


# ---------------------------------------------------------------------------
# Orphan recovery
# ---------------------------------------------------------------------------

def pid_alive(pid: int) -> bool:
    """True when `pid` names a running process. Zombies count as gone."""
    if pid <= 0 or not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Someone else's process: it exists, which is all we can tell.
        return True


def iter_workspaces(temp_root: str | Path | None = None) -> Iterator[Workspace]:
    root = resolve_temp_root(temp_root)
    try:
        entries = list(root.iterdir())
    except OSError as exc:
        logger.warning("cannot scan %s for workspaces: %r", root, exc)
        return
    for entry in entries:
        if parse_owner_pid(entry.name) is not None and entry.is_dir() and not entry.is_symlink():
            yield Workspace(entry)


def _postmaster_pid(workspace: Workspace) -> Optional[int]:
    try:
        first = (workspace.data_dir / "postmaster.pid").read_text().splitlines()[0]
        return int(first.strip())
    except (OSError, IndexError, ValueError):
        return None


def _leftover_postmaster(workspace: Workspace) -> Optional[psutil.Process]:
    """The process named by postmaster.pid, if it still runs on this data dir."""
    pid = _postmaster_pid(workspace)
    if pid is None or not pid_alive(pid):
        return None
    try:
        proc = psutil.Process(pid)
        cmdline = proc.cmdline()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None
    data_dir = str(workspace.data_dir)
    if not any(data_dir in arg for arg in cmdline):
        # Pid reused by an unrelated process.
        return None
    return proc


def _stop_leftover_server(workspace: Workspace, *, wait_s: float = 2.0) -> bool:
    """Stop a server still running on `workspace`. False when it survives SIGKILL."""
    proc = _leftover_postmaster(workspace)
    if proc is None:
        return True

    logger.warning("stopping leftover server pid=%d in %s", proc.pid, workspace.root_path)
    for sig in (signal.SIGQUIT, signal.SIGKILL):
        try:
            proc.send_signal(sig)
        except psutil.NoSuchProcess:
            return True
        except psutil.AccessDenied:
            return False
        _, alive = psutil.wait_procs([proc], timeout=wait_s)
        if not alive or not pid_alive(proc.pid):
            return True
    return False


def sweep_orphans(
    temp_root: str | Path | None = None,
    *,
    is_alive: Callable[[int], bool] = pid_alive,
) -> List[Path]:
    """
    Remove workspaces left behind by processes that no longer exist.

    A leftover server still running on such a workspace (its owner was killed
    before it could stop it) is stopped first.
    """
    removed: List[Path] = []
    me = os.getpid()
    for ws in iter_workspaces(temp_root):
        pid = ws.owner_pid
        if pid is None or pid == me or is_alive(pid):
            continue
        if not _stop_leftover_server(ws):
            logger.warning("leftover server in %s would not stop; leaving the workspace", ws.root_path)
            continue
        if _remove_tree(ws.root_path):
            logger.info("swept orphaned workspace %s (owner pid %d gone)", ws.root_path, pid)
            removed.append(ws.root_path)
        else:
            logger.warning("could not sweep orphaned workspace %s", ws.root_path)
    return removed


def sweep_own(temp_root: str | Path | None = None) -> List[Path]:
    """Remove every workspace carrying this process's pid (emergency cleanup only)."""
    removed: List[Path] = []
    me = os.getpid()
    for ws in iter_workspaces(temp_root):
        if ws.owner_pid != me:
            continue
        _stop_leftover_server(ws, wait_s=0.5)
        if _remove_tree(ws.root_path):
            removed.append(ws.root_path)
    return removed
