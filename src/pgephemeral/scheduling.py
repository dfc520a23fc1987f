# src/pgephemeral/scheduling.py
from __future__ import annotations

"""Suspension points and the two schedulers that drive them.

Provisioning and teardown are written once, as generator functions that
`yield` operation objects wherever they would block: sleeping, running a
command, spawning the server, probing a socket, touching the filesystem.
The generator receives each operation's result via `send()` and sees its
failure via `throw()`, so ordinary `try/finally` blocks inside the generator
own the cleanup.

Two schedulers satisfy the same contract:

- `run_blocking(gen)` runs every operation on the calling thread.
- `await run_async(gen)` awaits every operation on the running event loop.

In async mode a cancellation is thrown into the generator like any other
error; whatever cleanup operations the generator yields afterwards are run
to completion (blocking, each bounded by its own timeout) before the
cancellation is re-raised.
"""

import asyncio
import logging
import os
import socket
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Generator, Mapping, Optional, Protocol, Sequence, TypeVar

if TYPE_CHECKING:
    from pgephemeral.endpoint import Endpoint

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Op(Protocol):
    def run(self) -> Any: ...

    async def arun(self) -> Any: ...


Steps = Generator[Op, Any, T]


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Sleep:
    seconds: float

    def run(self) -> None:
        time.sleep(self.seconds)

    async def arun(self) -> None:
        await asyncio.sleep(self.seconds)


@dataclass(frozen=True, slots=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


def _decode(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace")


@dataclass(frozen=True, slots=True)
class RunCommand:
    """Run a one-shot command to completion, capturing both streams."""

    argv: Sequence[str]
    env: Optional[Mapping[str, str]] = None

    def run(self) -> CommandResult:
        logger.debug("running command: %s", list(self.argv))
        proc = subprocess.run(
            list(self.argv),
            env=dict(self.env) if self.env is not None else None,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            check=False,
        )
        return CommandResult(proc.returncode, _decode(proc.stdout), _decode(proc.stderr))

    async def arun(self) -> CommandResult:
        logger.debug("running command: %s", list(self.argv))
        proc = await asyncio.create_subprocess_exec(
            *self.argv,
            env=dict(self.env) if self.env is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            out, err = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await asyncio.shield(proc.wait())
            raise
        assert proc.returncode is not None
        return CommandResult(proc.returncode, _decode(out), _decode(err))


class PopenController:
    """`ProcessController` backed by `subprocess.Popen` (used by both schedulers)."""

    def __init__(self, popen: subprocess.Popen[bytes]) -> None:
        self._popen = popen

    @property
    def pid(self) -> int:
        return self._popen.pid

    def poll(self) -> Optional[int]:
        return self._popen.poll()

    def send_signal(self, sig: int, *, group: bool = False) -> None:
        if not group:
            self._popen.send_signal(sig)
            return
        # Spawned with start_new_session, so the pid is also the process group id.
        try:
            os.killpg(self._popen.pid, sig)
        except ProcessLookupError:
            pass


@dataclass(frozen=True, slots=True)
class Spawn:
    """
    Start a long-running process with stdout and stderr appended to `log_path`.

    The child gets its own session so a Ctrl-C aimed at the test runner does
    not reach it behind the supervisor's back.
    """

    argv: Sequence[str]
    log_path: Path
    env: Optional[Mapping[str, str]] = None

    def run(self) -> PopenController:
        logger.debug("spawning: %s", list(self.argv))
        with open(self.log_path, "ab") as log:
            popen = subprocess.Popen(
                list(self.argv),
                env=dict(self.env) if self.env is not None else None,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
                close_fds=True,
            )
        return PopenController(popen)

    async def arun(self) -> PopenController:
        # Popen returns as soon as the child has exec'd. Running it inline means a
        # cancellation can never separate the caller from the process it started.
        return self.run()


@dataclass(frozen=True, slots=True)
class ProbeEndpoint:
    """Try a bare connect to the endpoint; True when something accepted it."""

    endpoint: "Endpoint"
    timeout_s: float = 0.5

    def run(self) -> bool:
        ep = self.endpoint
        family = socket.AF_UNIX if ep.kind == "unix" else socket.AF_INET
        address: Any = str(ep.socket_path) if ep.kind == "unix" else (ep.host, ep.port)
        s = socket.socket(family, socket.SOCK_STREAM)
        s.settimeout(self.timeout_s)
        try:
            s.connect(address)
            return True
        except OSError:
            return False
        finally:
            s.close()

    async def arun(self) -> bool:
        ep = self.endpoint
        try:
            if ep.kind == "unix":
                conn = asyncio.open_unix_connection(str(ep.socket_path))
            else:
                conn = asyncio.open_connection(ep.host, ep.port)
            _, writer = await asyncio.wait_for(conn, timeout=self.timeout_s)
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True


@dataclass(frozen=True, slots=True)
class ReadLogTail:
    """Read whatever was appended to `path` since byte `offset`."""

    path: Path
    offset: int = 0

    def run(self) -> tuple[str, int]:
        try:
            with open(self.path, "rb") as fh:
                fh.seek(self.offset)
                data = fh.read()
        except FileNotFoundError:
            return "", self.offset
        return _decode(data), self.offset + len(data)

    async def arun(self) -> tuple[str, int]:
        return await asyncio.to_thread(self.run)


@dataclass(frozen=True, slots=True)
class Inline:
    """Short blocking call whose result must never be lost (e.g. creating a workspace)."""

    func: Callable[..., Any]
    args: tuple[Any, ...] = ()
    kwargs: Mapping[str, Any] = field(default_factory=dict)

    def run(self) -> Any:
        return self.func(*self.args, **self.kwargs)

    async def arun(self) -> Any:
        return self.func(*self.args, **self.kwargs)


async def _drain(fut: "asyncio.Future[Any]") -> None:
    while not fut.done():
        try:
            await asyncio.shield(fut)
        except asyncio.CancelledError:
            continue
        except BaseException:
            return


@dataclass(frozen=True, slots=True)
class Offload:
    """Long blocking filesystem work (rmtree, copytree); a worker thread in async mode."""

    func: Callable[..., Any]
    args: tuple[Any, ...] = ()
    kwargs: Mapping[str, Any] = field(default_factory=dict)

    def run(self) -> Any:
        return self.func(*self.args, **self.kwargs)

    async def arun(self) -> Any:
        fut = asyncio.ensure_future(asyncio.to_thread(self.func, *self.args, **self.kwargs))
        try:
            return await asyncio.shield(fut)
        except asyncio.CancelledError:
            # The thread cannot be interrupted; let it finish before cleanup touches the same files.
            await _drain(fut)
            raise


# ---------------------------------------------------------------------------
# Schedulers
# ---------------------------------------------------------------------------

def run_blocking(steps: Steps[T]) -> T:
    """Drive `steps` to completion on the calling thread."""
    try:
        op = next(steps)
    except StopIteration as stop:
        return stop.value

    while True:
        try:
            result = op.run()
        except BaseException as exc:
            try:
                op = steps.throw(exc)
            except StopIteration as stop:
                return stop.value
            continue

        try:
            op = steps.send(result)
        except StopIteration as stop:
            return stop.value


async def run_async(steps: Steps[T]) -> T:
    """Drive `steps` to completion on the running event loop."""
    cancelled: Optional[BaseException] = None

    try:
        op = next(steps)
    except StopIteration as stop:
        return stop.value

    while True:
        try:
            if cancelled is None:
                result = await op.arun()
            else:
                # Cleanup after cancellation must not be interrupted again.
                result = op.run()
        except asyncio.CancelledError as exc:
            if cancelled is None:
                logger.debug("cancelled; running remaining cleanup steps to completion")
                cancelled = exc
            try:
                op = steps.throw(exc)
            except StopIteration:
                raise cancelled
            continue
        except BaseException as exc:
            try:
                op = steps.throw(exc)
            except StopIteration as stop:
                if cancelled is not None:
                    raise cancelled
                return stop.value
            continue

        try:
            op = steps.send(result)
        except StopIteration as stop:
            if cancelled is not None:
                raise cancelled
            return stop.value

