# src/pgephemeral/supervisor.py
from __future__ import annotations

import logging
import signal
import time
import warnings
from enum import IntEnum
from pathlib import Path
from typing import Callable, Mapping, Optional, Protocol, Sequence

from pgephemeral.exceptions import SpawnFailed, TeardownIncomplete
from pgephemeral.scheduling import Sleep, Spawn, Steps

logger = logging.getLogger(__name__)


class ProcessController(Protocol):
    """What the supervisor needs from a child process; tests supply fakes."""

    @property
    def pid(self) -> int: ...

    def poll(self) -> Optional[int]: ...

    def send_signal(self, sig: int, *, group: bool = False) -> None: ...


class SupervisionPhase(IntEnum):
    NOT_STARTED = 0
    RUNNING = 1
    SIGNALED = 2
    FORCE_SIGNALED = 3
    REAPED = 4


class ProcessSupervisor:
    """
    Sole owner of one server process.

    Shutdown is a small phase machine rather than nested timeouts::

        RUNNING --graceful signal--> SIGNALED --SIGKILL (process group)--> FORCE_SIGNALED
           \\                            \\                                    \\
            +---------- exit observed ----+------------------------------------+--> REAPED

    - The exit status is recorded the first time it is observed and never
      changes afterwards; there is no second reap.
    - A process that already died (killed from outside) is noticed on the
      first poll and is not signalled at all.
    - If the process outlives SIGKILL plus `kill_timeout_s`, stop() emits a
      TeardownIncomplete warning and returns instead of hanging.

    `clock` is injectable so tests can drive the timeouts without real waiting.
    """

    def __init__(
        self,
        name: str,
        *,
        graceful_signal: int = signal.SIGINT,
        poll_interval_s: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.graceful_signal = graceful_signal
        self.poll_interval_s = poll_interval_s
        self._clock = clock
        self._controller: Optional[ProcessController] = None
        self._phase = SupervisionPhase.NOT_STARTED
        self._returncode: Optional[int] = None

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    @property
    def phase(self) -> SupervisionPhase:
        return self._phase

    @property
    def pid(self) -> Optional[int]:
        return self._controller.pid if self._controller is not None else None

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    def poll(self) -> Optional[int]:
        if self._returncode is not None or self._controller is None:
            return self._returncode
        rc = self._controller.poll()
        if rc is not None:
            self._record_exit(rc)
        return self._returncode

    def is_running(self) -> bool:
        return self._controller is not None and self.poll() is None

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(
        self,
        argv: Sequence[str],
        log_path: Path,
        env: Optional[Mapping[str, str]] = None,
    ) -> Steps[None]:
        if self._controller is not None:
            raise RuntimeError(f"{self.name}: process already started")
        try:
            controller = yield Spawn(argv=tuple(argv), log_path=log_path, env=env)
        except OSError as exc:
            raise SpawnFailed(f"cannot start {argv[0]}: {exc}") from exc
        self.attach(controller)

    def attach(self, controller: ProcessController) -> None:
        if self._controller is not None:
            raise RuntimeError(f"{self.name}: process already attached")
        self._controller = controller
        self._phase = SupervisionPhase.RUNNING
        logger.info("%s started pid=%d", self.name, controller.pid)

    def stop(self, timeout_s: float, kill_timeout_s: float) -> Steps[Optional[int]]:
        """
        Stop the process; returns its exit status, or None if it could not be reaped.
        Safe to call repeatedly.
        """
        if self._controller is None:
            return None
        if self.poll() is not None:
            return self._returncode

        if self._phase == SupervisionPhase.RUNNING:
            self._signal(self.graceful_signal, group=False)
            self._phase = SupervisionPhase.SIGNALED
            if (yield from self._wait(timeout_s)):
                return self._returncode

        if self._phase == SupervisionPhase.SIGNALED:
            logger.warning(
                "%s pid=%s did not exit within %.1fs of %s; sending SIGKILL",
                self.name, self.pid, timeout_s, signal.Signals(self.graceful_signal).name,
            )
            self._signal(signal.SIGKILL, group=True)
            self._phase = SupervisionPhase.FORCE_SIGNALED

        if (yield from self._wait(kill_timeout_s)):
            return self._returncode

        msg = f"{self.name} pid={self.pid} still alive {kill_timeout_s:.1f}s after SIGKILL; giving up"
        logger.warning(msg)
        warnings.warn(msg, TeardownIncomplete, stacklevel=2)
        return None

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _record_exit(self, rc: int) -> None:
        if self._returncode is not None:
            return
        self._returncode = rc
        self._phase = SupervisionPhase.REAPED
        logger.info("%s pid=%s exited with status %d", self.name, self.pid, rc)

    def _signal(self, sig: int, *, group: bool) -> None:
        assert self._controller is not None
        logger.debug("%s: sending %s to pid=%s", self.name, signal.Signals(sig).name, self.pid)
        try:
            self._controller.send_signal(sig, group=group)
        except ProcessLookupError:
            # Exited between poll and signal; the next poll records it.
            pass

    def _wait(self, timeout_s: float) -> Steps[bool]:
        deadline = self._clock() + timeout_s
        while True:
            if self.poll() is not None:
                return True
            remaining = deadline - self._clock()
            if remaining <= 0:
                return False
            yield Sleep(min(self.poll_interval_s, remaining))
