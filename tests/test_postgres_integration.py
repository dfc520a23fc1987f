"""Round trips against a real PostgreSQL installation; skipped when none is found."""
from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
from pathlib import Path
from typing import Iterator

import pytest

from pgephemeral.config import Settings
from pgephemeral.factory import PostgresFactory
from pgephemeral.registry import InstanceRegistry
from pgephemeral.search import postgres_available

pytestmark = [
    pytest.mark.postgres,
    pytest.mark.skipif(not postgres_available(), reason="PostgreSQL binaries not found"),
    pytest.mark.skipif(hasattr(os, "geteuid") and os.geteuid() == 0, reason="initdb refuses to run as root"),
]

psycopg = pytest.importorskip("psycopg")
sqlalchemy = pytest.importorskip("sqlalchemy")


@pytest.fixture(scope="module")
def factory() -> Iterator[PostgresFactory]:
    root = Path(tempfile.mkdtemp(prefix="pgi", dir="/tmp"))
    f = PostgresFactory(Settings(temp_root=root, sweep_orphans=False), registry=InstanceRegistry())
    try:
        yield f
    finally:
        f.close()
        shutil.rmtree(root, ignore_errors=True)


@pytest.mark.parametrize("kind", ["tcp", "unix"])
def test_select_one_with_psycopg(factory: PostgresFactory, kind: str) -> None:
    f = PostgresFactory(factory.settings, registry=factory.registry, endpoint_kind=kind)
    with f, f.provision() as pg:
        with psycopg.connect(**pg.params.connect_kwargs()) as conn:
            assert conn.execute("SELECT 1").fetchone() == (1,)
        with psycopg.connect(pg.dsn) as conn:
            assert conn.execute("SELECT current_database()").fetchone() == ("postgres",)

    with pytest.raises(psycopg.OperationalError):
        psycopg.connect(**pg.params.connect_kwargs(), connect_timeout=2)


def test_select_one_with_sqlalchemy(factory: PostgresFactory) -> None:
    with factory.provision() as pg:
        engine = sqlalchemy.create_engine(pg.params.sqlalchemy_url())
        try:
            with engine.connect() as conn:
                assert conn.execute(sqlalchemy.text("SELECT 1")).scalar() == 1
        finally:
            engine.dispose()


def test_bootstrapped_role_and_database(factory: PostgresFactory) -> None:
    f = PostgresFactory(factory.settings, registry=factory.registry, user="app", database="appdb")
    with f, f.provision() as pg:
        with psycopg.connect(**pg.params.connect_kwargs()) as conn:
            row = conn.execute("SELECT current_user, current_database()").fetchone()
    assert row == ("app", "appdb")


def test_async_instance(factory: PostgresFactory) -> None:
    async def main() -> None:
        async with await factory.aprovision() as pg:
            conn = await psycopg.AsyncConnection.connect(**pg.params.connect_kwargs())
            async with conn:
                cur = await conn.execute("SELECT 1")
                assert await cur.fetchone() == (1,)

    asyncio.run(main())
