# src/pgephemeral/readiness.py
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from pgephemeral.endpoint import Endpoint
from pgephemeral.exceptions import ProcessCapture, ReadinessTimeout, StartupFailed
from pgephemeral.scheduling import ProbeEndpoint, ReadLogTail, Sleep, Steps
from pgephemeral.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

DEFAULT_READY_MARKER = "database system is ready to accept connections"
DEFAULT_FAILURE_MARKERS = ("FATAL:", "PANIC:")


class _LogScanner:
    """Accumulates log output and inspects it line by line as lines complete."""

    def __init__(self, ready_marker: Optional[str], failure_markers: Sequence[str]) -> None:
        self.ready_marker = ready_marker
        self.failure_markers = tuple(failure_markers)
        self.ready_seen = ready_marker is None
        self.offset = 0
        self._chunks: List[str] = []
        self._partial = ""

    def feed(self, chunk: str) -> Optional[str]:
        """Returns the first failure line found in `chunk`, if any."""
        if not chunk:
            return None
        self._chunks.append(chunk)
        lines = (self._partial + chunk).split("\n")
        self._partial = lines.pop()
        for line in lines:
            if any(marker in line for marker in self.failure_markers):
                return line.strip()
            if self.ready_marker is not None and self.ready_marker in line:
                self.ready_seen = True
        return None

    def capture(self) -> ProcessCapture:
        return ProcessCapture(stderr="".join(self._chunks))


def wait_ready(
    endpoint: Endpoint,
    log_path: Path,
    supervisor: ProcessSupervisor,
    *,
    timeout_s: float,
    poll_interval_s: float = 0.05,
    ready_marker: Optional[str] = DEFAULT_READY_MARKER,
    failure_markers: Sequence[str] = DEFAULT_FAILURE_MARKERS,
    clock: Callable[[], float] = time.monotonic,
) -> Steps[ProcessCapture]:
    """
    Block (as steps) until the server accepts connections on `endpoint`.

    Every round:
      1. read new log output; a failure marker fails fast with StartupFailed
      2. an exited process fails fast with StartupFailed
      3. once `ready_marker` has been logged (or when it is None), try a bare
         connect to the endpoint; success means ready
    The log marker alone is not trusted: servers can announce themselves
    before they listen. The connect alone is not trusted either when a marker
    is configured: postgres accepts sockets while still refusing sessions.

    Returns the startup log captured so far. Raises ReadinessTimeout when
    `timeout_s` elapses first.
    """
    deadline = clock() + timeout_s
    scanner = _LogScanner(ready_marker, failure_markers)

    while True:
        chunk, scanner.offset = yield ReadLogTail(log_path, scanner.offset)
        failure = scanner.feed(chunk)
        if failure is not None:
            raise StartupFailed(
                f"server reported a fatal error during startup: {failure}",
                capture=scanner.capture(),
            )

        rc = supervisor.poll()
        if rc is not None:
            rest, scanner.offset = yield ReadLogTail(log_path, scanner.offset)
            scanner.feed(rest)
            raise StartupFailed(
                f"server exited with status {rc} during startup",
                exit_code=rc,
                capture=scanner.capture(),
            )

        remaining = deadline - clock()
        if scanner.ready_seen:
            accepted = yield ProbeEndpoint(endpoint, timeout_s=max(0.01, min(0.5, remaining)))
            if accepted:
                logger.debug("%s accepts connections", endpoint)
                return scanner.capture()

        if clock() >= deadline:
            raise ReadinessTimeout(
                f"server did not accept connections on {endpoint} within {timeout_s:.1f}s",
                capture=scanner.capture(),
            )
        yield Sleep(min(poll_interval_s, max(0.0, deadline - clock())) or poll_interval_s)
