from __future__ import annotations

import asyncio
import socket
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List

import pytest

from pgephemeral.endpoint import Endpoint
from pgephemeral.scheduling import (
    Inline,
    Offload,
    ProbeEndpoint,
    ReadLogTail,
    RunCommand,
    Sleep,
    Steps,
    run_async,
    run_blocking,
)


@dataclass
class Record:
    """Op that appends to a shared list in both modes."""

    log: List[str]
    item: str

    def run(self) -> str:
        self.log.append(self.item)
        return self.item

    async def arun(self) -> str:
        return self.run()


@dataclass
class Fail:
    exc: BaseException

    def run(self) -> Any:
        raise self.exc

    async def arun(self) -> Any:
        raise self.exc


@dataclass
class Hang:
    started: asyncio.Event = field(default_factory=asyncio.Event)

    def run(self) -> Any:
        raise AssertionError("blocking mode never hangs in these tests")

    async def arun(self) -> Any:
        self.started.set()
        await asyncio.sleep(3600)


def _steps(log: List[str]) -> Steps[str]:
    a = yield Record(log, "a")
    b = yield Record(log, "b")
    return a + b


def _recovering(log: List[str]) -> Steps[str]:
    try:
        yield Fail(ValueError("boom"))
    except ValueError as exc:
        yield Record(log, f"caught {exc}")
    return "recovered"


def _with_cleanup(log: List[str], hang: Hang) -> Steps[None]:
    try:
        yield Record(log, "start")
        yield hang
    finally:
        yield Record(log, "cleanup-1")
        yield Record(log, "cleanup-2")


def test_run_blocking_sends_results_back() -> None:
    log: List[str] = []
    assert run_blocking(_steps(log)) == "ab"
    assert log == ["a", "b"]


def test_run_async_sends_results_back() -> None:
    log: List[str] = []
    assert asyncio.run(run_async(_steps(log))) == "ab"
    assert log == ["a", "b"]


def test_generator_without_ops_returns_value() -> None:
    def nothing() -> Steps[int]:
        return 7
        yield  # pragma: no cover

    assert run_blocking(nothing()) == 7
    assert asyncio.run(run_async(nothing())) == 7


@pytest.mark.parametrize("mode", ["blocking", "async"])
def test_op_errors_are_thrown_into_the_generator(mode: str) -> None:
    log: List[str] = []
    if mode == "blocking":
        result = run_blocking(_recovering(log))
    else:
        result = asyncio.run(run_async(_recovering(log)))
    assert result == "recovered"
    assert log == ["caught boom"]


def test_unhandled_op_error_propagates() -> None:
    def steps() -> Steps[None]:
        yield Fail(KeyError("k"))

    with pytest.raises(KeyError):
        run_blocking(steps())


def test_cancellation_still_runs_cleanup_steps() -> None:
    log: List[str] = []

    async def main() -> None:
        hang = Hang()
        task = asyncio.create_task(run_async(_with_cleanup(log, hang)))
        await hang.started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(main())
    assert log == ["start", "cleanup-1", "cleanup-2"]


def test_cancellation_is_reraised_even_if_generator_swallows_it() -> None:
    log: List[str] = []

    def swallowing(hang: Hang) -> Steps[str]:
        try:
            yield hang
        except asyncio.CancelledError:
            yield Record(log, "cleanup")
        return "done"

    async def main() -> None:
        hang = Hang()
        task = asyncio.create_task(run_async(swallowing(hang)))
        await hang.started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(main())
    assert log == ["cleanup"]


def test_sleep_op_in_both_modes() -> None:
    def nap() -> Steps[str]:
        yield Sleep(0.001)
        return "rested"

    assert run_blocking(nap()) == "rested"
    assert asyncio.run(run_async(nap())) == "rested"


@pytest.mark.parametrize("mode", ["blocking", "async"])
def test_run_command_captures_output_and_status(mode: str) -> None:
    op = RunCommand([sys.executable, "-c", "import sys; print('hi'); sys.stderr.write('err'); sys.exit(3)"])
    result = op.run() if mode == "blocking" else asyncio.run(op.arun())

    assert result.returncode == 3
    assert result.stdout.strip() == "hi"
    assert result.stderr == "err"


def test_run_command_missing_executable_raises_oserror() -> None:
    with pytest.raises(FileNotFoundError):
        RunCommand(["/nonexistent/initdb"]).run()


@pytest.mark.parametrize("mode", ["blocking", "async"])
def test_probe_endpoint_tcp(mode: str) -> None:
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(4)
    ep = Endpoint("tcp", "127.0.0.1", server.getsockname()[1])
    try:
        op = ProbeEndpoint(ep, timeout_s=1.0)
        assert (op.run() if mode == "blocking" else asyncio.run(op.arun())) is True
    finally:
        server.close()

    op = ProbeEndpoint(ep, timeout_s=0.2)
    assert (op.run() if mode == "blocking" else asyncio.run(op.arun())) is False


@pytest.mark.parametrize("mode", ["blocking", "async"])
def test_probe_endpoint_unix(short_tmp: Path, mode: str) -> None:
    ep = Endpoint("unix", str(short_tmp), 5432, socket_dir=short_tmp)
    op = ProbeEndpoint(ep, timeout_s=0.2)
    assert (op.run() if mode == "blocking" else asyncio.run(op.arun())) is False

    server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    server.bind(str(ep.socket_path))
    server.listen(4)
    try:
        assert (op.run() if mode == "blocking" else asyncio.run(op.arun())) is True
    finally:
        server.close()


def test_read_log_tail_tracks_offsets(tmp_path: Path) -> None:
    log = tmp_path / "postgres.log"
    assert ReadLogTail(log, 0).run() == ("", 0)

    log.write_text("LOG:  one\n")
    text, offset = ReadLogTail(log, 0).run()
    assert text == "LOG:  one\n"

    with open(log, "a") as fh:
        fh.write("LOG:  two\n")
    text, offset2 = asyncio.run(ReadLogTail(log, offset).arun())
    assert text == "LOG:  two\n"
    assert offset2 == offset + len("LOG:  two\n")


def test_inline_and_offload_call_through() -> None:
    assert Inline(divmod, (7, 2)).run() == (3, 1)
    assert asyncio.run(Inline(divmod, (7, 2)).arun()) == (3, 1)
    assert Offload(sorted, ([3, 1, 2],), {"reverse": True}).run() == [3, 2, 1]
    assert asyncio.run(Offload(sorted, ([3, 1, 2],)).arun()) == [1, 2, 3]
