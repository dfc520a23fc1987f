# src/pgephemeral/state.py
from __future__ import annotations

import logging
from enum import IntEnum
from threading import RLock
from typing import Optional

from pgephemeral.exceptions import InvalidStateTransition

logger = logging.getLogger(__name__)


class ClusterState(IntEnum):
    UNINITIALIZED = 0
    INITIALIZED = 1
    STARTING = 2
    READY = 3
    STOPPING = 4
    STOPPED = 5
    FAILED = 9


TERMINAL_STATES = frozenset({ClusterState.STOPPED, ClusterState.FAILED})


class InstanceState:
    """
    The single ClusterState of one instance.

    Transitions only move forward (skipping is allowed). FAILED is terminal and
    reachable from every non-terminal state; the first failure reason sticks.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._lock = RLock()
        self._state = ClusterState.UNINITIALIZED
        self._reason: Optional[str] = None

    @property
    def state(self) -> ClusterState:
        return self._state

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def advance(self, new_state: ClusterState) -> None:
        if new_state == ClusterState.FAILED:
            raise InvalidStateTransition("use fail() to enter FAILED")
        with self._lock:
            if self._state in TERMINAL_STATES or new_state <= self._state:
                raise InvalidStateTransition(
                    f"{self._name}: cannot go from {self._state.name} to {new_state.name}"
                )
            logger.info("Instance %s state transition: %s -> %s", self._name, self._state.name, new_state.name)
            self._state = new_state

    def fail(self, reason: str) -> None:
        with self._lock:
            if self._state == ClusterState.FAILED:
                return
            if self._state == ClusterState.STOPPED:
                raise InvalidStateTransition(f"{self._name}: cannot fail a STOPPED instance")
            logger.info("Instance %s state transition: %s -> FAILED (%s)", self._name, self._state.name, reason)
            self._state = ClusterState.FAILED
            self._reason = reason

    def __repr__(self) -> str:
        if self._reason:
            return f"<InstanceState {self._name} {self._state.name}: {self._reason}>"
        return f"<InstanceState {self._name} {self._state.name}>"
