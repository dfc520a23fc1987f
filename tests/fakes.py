"""Hand-rolled fakes shared by the supervisor and readiness tests."""
from __future__ import annotations

import signal
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from pgephemeral.scheduling import Sleep


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class FakeController:
    """
    A process that exits `delay` seconds (fake time) after receiving one of
    the signals in `exits_on`, with status `-signum`.
    """

    clock: FakeClock
    pid: int = 4321
    exits_on: Dict[int, float] = field(default_factory=lambda: {signal.SIGINT: 0.2, signal.SIGKILL: 0.0})
    sent: List[Tuple[int, bool]] = field(default_factory=list)
    exit_at: Optional[float] = None
    exit_status: Optional[int] = None
    polls: int = 0

    def poll(self) -> Optional[int]:
        self.polls += 1
        if self.exit_at is not None and self.clock() >= self.exit_at:
            return self.exit_status
        return None

    def send_signal(self, sig: int, *, group: bool = False) -> None:
        self.sent.append((sig, group))
        if sig in self.exits_on and self.exit_at is None:
            self.exit_at = self.clock() + self.exits_on[sig]
            self.exit_status = -sig

    def die_now(self, status: int) -> None:
        self.exit_at = self.clock()
        self.exit_status = status


def drive(steps: Any, clock: FakeClock, handler: Optional[Callable[[Any], Any]] = None) -> Any:
    """
    Run steps against fake time: Sleep advances `clock`, any other op goes to
    `handler`. Exceptions raised by `handler` are thrown into the steps.
    """
    try:
        op = next(steps)
        while True:
            if isinstance(op, Sleep):
                clock.advance(op.seconds)
                op = steps.send(None)
                continue
            assert handler is not None, f"unexpected op {op!r}"
            try:
                result = handler(op)
            except Exception as exc:
                op = steps.throw(exc)
                continue
            op = steps.send(result)
    except StopIteration as stop:
        return stop.value
