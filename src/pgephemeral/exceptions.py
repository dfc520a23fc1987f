from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class PgEphemeralError(Exception):
    pass


@dataclass(frozen=True, slots=True)
class ProcessCapture:
    """
    Output captured from an external command (initdb, createdb, ...) or from the
    server log during startup.

    Both streams are decoded text; server logs end up entirely in `stderr`
    because postgres writes its log there.
    """

    stdout: str = ""
    stderr: str = ""

    def tail(self, max_chars: int = 4000) -> str:
        """Combined output, trimmed from the front to at most `max_chars`."""
        parts = [p for p in (self.stdout.strip(), self.stderr.strip()) if p]
        text = "\n".join(parts)
        if len(text) > max_chars:
            return "..." + text[-max_chars:]
        return text

    def __str__(self) -> str:
        return self.tail()


class WorkspaceCreationFailed(PgEphemeralError):
    pass


class CommandNotFound(PgEphemeralError):
    pass


class InitFailed(PgEphemeralError):
    def __init__(self, message: str, *, exit_code: Optional[int] = None, capture: ProcessCapture | None = None):
        super().__init__(message)
        self.exit_code = exit_code
        self.capture = capture or ProcessCapture()

    def __str__(self) -> str:
        base = super().__str__()
        output = self.capture.tail()
        return f"{base}\n{output}" if output else base


class NoEndpointAvailable(PgEphemeralError):
    pass


class SpawnFailed(PgEphemeralError):
    pass


class ReadinessTimeout(PgEphemeralError):
    def __init__(self, message: str, *, capture: ProcessCapture | None = None):
        super().__init__(message)
        self.capture = capture or ProcessCapture()


class StartupFailed(PgEphemeralError):
    def __init__(self, message: str, *, exit_code: Optional[int] = None, capture: ProcessCapture | None = None):
        super().__init__(message)
        self.exit_code = exit_code
        self.capture = capture or ProcessCapture()

    def __str__(self) -> str:
        base = super().__str__()
        output = self.capture.tail()
        return f"{base}\n{output}" if output else base


class BootstrapFailed(PgEphemeralError):
    def __init__(self, message: str, *, exit_code: Optional[int] = None, capture: ProcessCapture | None = None):
        super().__init__(message)
        self.exit_code = exit_code
        self.capture = capture or ProcessCapture()


class InvalidStateTransition(PgEphemeralError):
    pass


class Stage(Enum):
    """Provisioning stage at which a failure occurred."""

    WORKSPACE = "workspace"
    INIT = "init"
    ENDPOINT = "endpoint"
    SPAWN = "spawn"
    READINESS = "readiness"
    BOOTSTRAP = "bootstrap"


class ProvisionFailed(PgEphemeralError):
    """
    Provisioning aborted at `stage`; `cause` is the stage's own error.

    By the time this is raised every resource allocated in earlier stages has
    already been torn down.
    """

    def __init__(self, stage: Stage, cause: BaseException):
        super().__init__(f"provisioning failed at stage {stage.value!r}: {cause}")
        self.stage = stage
        self.cause = cause


class TeardownIncomplete(RuntimeWarning):
    """
    Teardown could not fully complete (process survived SIGKILL, workspace could
    not be removed). Emitted via `warnings.warn`, never raised by teardown paths.
    """
    pass
