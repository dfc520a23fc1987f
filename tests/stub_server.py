"""
Stand-in for the PostgreSQL executables, used as an argv prefix:

    [sys.executable, "stub_server.py", "initdb" | "postgres" | "createdb" | "createuser", ...]

Behaviour is steered through environment variables so tests can provoke the
failure modes of the real thing:

    STUB_INIT_FAIL=1        initdb prints an error and exits 1
    STUB_INIT_EMPTY=1       initdb exits 0 without writing anything
    STUB_START_DELAY=<s>    postgres waits before listening
    STUB_NO_READY=1         postgres listens but never logs the ready line
    STUB_CRASH=1            postgres logs a FATAL line and exits 1
    STUB_EXIT_SILENTLY=<n>  postgres exits with status n without logging
    STUB_IGNORE_SIGINT=1    postgres ignores the graceful signal
    STUB_BOOTSTRAP_FAIL=1   createdb / createuser exit 1
    STUB_RECORD=<path>      every invocation appends its argv to <path>
"""
from __future__ import annotations

import json
import os
import signal
import socket
import sys
import time
from pathlib import Path


def _record(argv: list[str]) -> None:
    path = os.environ.get("STUB_RECORD")
    if path:
        with open(path, "a", encoding="utf-8") as fh:
            fh.write(json.dumps(argv) + "\n")


def _option(argv: list[str], flag: str) -> str | None:
    for i, arg in enumerate(argv):
        if arg == flag and i + 1 < len(argv):
            return argv[i + 1]
    return None


def _settings(argv: list[str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for i, arg in enumerate(argv):
        if arg == "-c" and i + 1 < len(argv):
            name, _, value = argv[i + 1].partition("=")
            out[name] = value
    return out


def initdb(argv: list[str]) -> int:
    data_dir = _option(argv, "-D")
    if data_dir is None:
        print("initdb: no data directory specified", file=sys.stderr)
        return 1
    if os.environ.get("STUB_INIT_FAIL"):
        print("initdb: error: could not create directory: Permission denied", file=sys.stderr)
        return 1
    if os.environ.get("STUB_INIT_EMPTY"):
        return 0
    d = Path(data_dir)
    (d / "base" / "1").mkdir(parents=True, exist_ok=True)
    (d / "base" / "1" / "PG_VERSION").write_text("16\n")
    (d / "PG_VERSION").write_text("16\n")
    (d / "postgresql.conf").write_text("# stub\n")
    print("Success. You can now start the database server.")
    return 0


def postgres(argv: list[str]) -> int:
    data_dir = Path(_option(argv, "-D") or ".")
    port = int(_option(argv, "-p") or "5432")
    settings = _settings(argv)

    def log(line: str) -> None:
        sys.stderr.write(line + "\n")
        sys.stderr.flush()

    if not (data_dir / "PG_VERSION").is_file():
        log(f'FATAL:  "{data_dir}" is not a valid data directory')
        return 1

    exit_silently = os.environ.get("STUB_EXIT_SILENTLY")
    if exit_silently:
        return int(exit_silently)

    if os.environ.get("STUB_CRASH"):
        log("LOG:  starting PostgreSQL 16.0 (stub)")
        log('FATAL:  could not create shared memory segment: No space left on device')
        return 1

    stopping = False

    def _stop(signum: int, frame: object) -> None:
        nonlocal stopping
        stopping = True

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGQUIT, _stop)
    if os.environ.get("STUB_IGNORE_SIGINT"):
        signal.signal(signal.SIGINT, signal.SIG_IGN)
    else:
        signal.signal(signal.SIGINT, _stop)

    log("LOG:  starting PostgreSQL 16.0 (stub)")
    ready_at = time.monotonic() + float(os.environ.get("STUB_START_DELAY", "0"))
    while time.monotonic() < ready_at and not stopping:
        time.sleep(0.02)
    if stopping:
        log("LOG:  aborting startup")
        return 0

    socket_dir = settings.get("unix_socket_directories", "")
    listen = settings.get("listen_addresses", "")
    socket_path: Path | None = None
    if socket_dir:
        socket_path = Path(socket_dir) / f".s.PGSQL.{port}"
        server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        server.bind(str(socket_path))
    else:
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.bind((listen or "127.0.0.1", port))
    server.listen(16)
    server.settimeout(0.05)

    pid_file = data_dir / "postmaster.pid"
    pid_file.write_text(f"{os.getpid()}\n{data_dir}\n")

    if not os.environ.get("STUB_NO_READY"):
        log("LOG:  database system is ready to accept connections")

    try:
        while not stopping:
            try:
                conn, _ = server.accept()
            except socket.timeout:
                continue
            except InterruptedError:
                continue
            conn.close()
    finally:
        server.close()
        if socket_path is not None:
            socket_path.unlink(missing_ok=True)
        pid_file.unlink(missing_ok=True)
        log("LOG:  database system is shut down")
    return 0


def client_tool(name: str, argv: list[str]) -> int:
    if os.environ.get("STUB_BOOTSTRAP_FAIL"):
        print(f'{name}: error: role "postgres" does not exist', file=sys.stderr)
        return 1
    return 0


def main(argv: list[str]) -> int:
    if not argv:
        print("usage: stub_server.py <tool> [args...]", file=sys.stderr)
        return 2
    tool, rest = argv[0], argv[1:]
    _record(argv)
    if tool == "initdb":
        return initdb(rest)
    if tool == "postgres":
        return postgres(rest)
    if tool in ("createdb", "createuser"):
        return client_tool(tool, rest)
    print(f"stub_server.py: unknown tool {tool}", file=sys.stderr)
    return 2


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
