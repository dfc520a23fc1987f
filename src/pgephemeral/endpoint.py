# src/pgephemeral/endpoint.py
from __future__ import annotations

import logging
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Hashable, Optional

from pgephemeral.config import EndpointKind
from pgephemeral.exceptions import NoEndpointAvailable
from pgephemeral.scheduling import Sleep, Steps
from pgephemeral.workspace import Workspace

logger = logging.getLogger(__name__)

# sun_path is 104 bytes on macOS/BSD and 108 on Linux, including the NUL.
UNIX_SOCKET_PATH_MAX = 103


@dataclass(frozen=True, slots=True)
class Endpoint:
    """
    Where a server listens.

    For "tcp" the value is `port` on loopback `host`. For "unix" the value is
    the socket file `<socket_dir>/.s.PGSQL.<port>`; `host` then holds the
    socket directory, which is what libpq expects as its host.
    """

    kind: EndpointKind
    host: str
    port: int
    socket_dir: Optional[Path] = None

    @property
    def socket_path(self) -> Optional[Path]:
        if self.socket_dir is None:
            return None
        return self.socket_dir / f".s.PGSQL.{self.port}"

    @property
    def value(self) -> int | Path:
        if self.kind == "unix":
            assert self.socket_path is not None
            return self.socket_path
        return self.port

    @property
    def key(self) -> Hashable:
        if self.kind == "unix":
            return ("unix", str(self.socket_path))
        return ("tcp", self.host, self.port)

    def __str__(self) -> str:
        if self.kind == "unix":
            return f"unix:{self.socket_path}"
        return f"tcp:{self.host}:{self.port}"


def pick_free_port(host: str) -> int:
    """Ask the OS for a currently-free TCP port on `host`."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        s.bind((host, 0))
        s.listen(1)
        return int(s.getsockname()[1])
    finally:
        s.close()


def port_is_free(host: str, port: int) -> bool:
    """Plain bind without SO_REUSEADDR: the same check the server's own bind will face."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        s.bind((host, port))
        return True
    except OSError:
        return False
    finally:
        s.close()


def _always(_key: Hashable) -> bool:
    return True


def _never(_key: Hashable) -> None:
    return None


class EndpointAllocator:
    """
    Hands out listening endpoints.

    TCP endpoints come from the OS ephemeral range (bind to port 0, read the
    port back), are reserved against other live instances of this process via
    `reserve`, and are re-verified with a plain bind just before being returned.
    Each failed round sleeps `backoff_s * attempt` before the next, up to
    `retries` rounds; then NoEndpointAvailable.

    unix endpoints live inside the instance's own workspace, so they are unique
    by construction.
    """

    def __init__(
        self,
        *,
        host: str = "127.0.0.1",
        retries: int = 5,
        backoff_s: float = 0.05,
        unix_port: int = 5432,
        reserve: Callable[[Hashable], bool] = _always,
        release: Callable[[Hashable], None] = _never,
    ) -> None:
        if retries < 1:
            raise ValueError("retries must be >= 1")
        self.host = host
        self.retries = retries
        self.backoff_s = backoff_s
        self.unix_port = unix_port
        self._reserve = reserve
        self._release = release

    def allocate(self, kind: EndpointKind, workspace: Workspace) -> Steps[Endpoint]:
        if kind == "unix":
            return self._allocate_unix(workspace)
        if kind == "tcp":
            return self._allocate_tcp()
        raise ValueError(f"unknown endpoint kind: {kind!r}")

    def release(self, endpoint: Endpoint) -> None:
        self._release(endpoint.key)

    def _allocate_unix(self, workspace: Workspace) -> Steps[Endpoint]:
        ep = Endpoint("unix", host=str(workspace.socket_dir), port=self.unix_port, socket_dir=workspace.socket_dir)
        if len(str(ep.socket_path).encode()) > UNIX_SOCKET_PATH_MAX:
            raise NoEndpointAvailable(
                f"unix socket path {ep.socket_path} exceeds {UNIX_SOCKET_PATH_MAX} bytes; "
                "use a shorter temp_root"
            )
        if not self._reserve(ep.key):
            raise NoEndpointAvailable(f"socket path {ep.socket_path} is already in use")
        return ep
        yield  # pragma: no cover  (makes this a generator)

    def _allocate_tcp(self) -> Steps[Endpoint]:
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.retries + 1):
            try:
                port = pick_free_port(self.host)
            except OSError as exc:
                last_error = exc
                logger.debug("bind to %s:0 failed (attempt %d/%d): %r", self.host, attempt, self.retries, exc)
            else:
                ep = Endpoint("tcp", host=self.host, port=port)
                if not self._reserve(ep.key):
                    logger.debug("port %d already held by a live instance (attempt %d)", port, attempt)
                elif not port_is_free(self.host, port):
                    self._release(ep.key)
                    logger.debug("port %d was taken before use (attempt %d)", port, attempt)
                else:
                    logger.debug("allocated %s", ep)
                    return ep

            if attempt < self.retries:
                yield Sleep(self.backoff_s * attempt)

        msg = f"no free TCP port on {self.host} after {self.retries} attempts"
        if last_error is not None:
            raise NoEndpointAvailable(f"{msg}: {last_error}") from last_error
        raise NoEndpointAvailable(msg)
