from __future__ import annotations

import pytest

from pgephemeral.exceptions import (
    BootstrapFailed,
    CommandNotFound,
    InitFailed,
    InvalidStateTransition,
    NoEndpointAvailable,
    PgEphemeralError,
    ProcessCapture,
    ProvisionFailed,
    ReadinessTimeout,
    SpawnFailed,
    Stage,
    StartupFailed,
    TeardownIncomplete,
    WorkspaceCreationFailed,
)


@pytest.mark.parametrize(
    "cls",
    [
        WorkspaceCreationFailed,
        CommandNotFound,
        InitFailed,
        NoEndpointAvailable,
        SpawnFailed,
        ReadinessTimeout,
        StartupFailed,
        BootstrapFailed,
        InvalidStateTransition,
    ],
)
def test_all_errors_share_one_root(cls: type) -> None:
    assert issubclass(cls, PgEphemeralError)


def test_teardown_incomplete_is_a_warning_not_an_error() -> None:
    assert issubclass(TeardownIncomplete, RuntimeWarning)
    assert not issubclass(TeardownIncomplete, PgEphemeralError)


def test_capture_tail_combines_streams_and_trims_from_the_front() -> None:
    cap = ProcessCapture(stdout="out line\n", stderr="x" * 50 + "END")

    assert cap.tail().startswith("out line\n")
    trimmed = cap.tail(max_chars=10)
    assert trimmed == "..." + ("x" * 7 + "END")
    assert str(ProcessCapture()) == ""


def test_init_failed_message_carries_captured_output() -> None:
    exc = InitFailed("initdb exited with status 1", exit_code=1, capture=ProcessCapture(stderr="disk full"))

    assert exc.exit_code == 1
    assert "initdb exited with status 1" in str(exc)
    assert "disk full" in str(exc)


def test_startup_failed_defaults_to_empty_capture() -> None:
    exc = StartupFailed("boom")

    assert exc.exit_code is None
    assert exc.capture == ProcessCapture()
    assert str(exc) == "boom"


def test_provision_failed_names_stage_and_keeps_cause() -> None:
    cause = ReadinessTimeout("slow", capture=ProcessCapture(stderr="LOG: starting"))
    exc = ProvisionFailed(Stage.READINESS, cause)

    assert exc.stage is Stage.READINESS
    assert exc.cause is cause
    assert "readiness" in str(exc)
    assert "slow" in str(exc)
