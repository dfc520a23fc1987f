# src/pgephemeral/instance.py
from __future__ import annotations

import logging
import threading
import time
import weakref
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote, urlencode

from sqlalchemy.engine import URL

from pgephemeral.config import Settings
from pgephemeral.endpoint import Endpoint
from pgephemeral.registry import InstanceRegistry
from pgephemeral.scheduling import Offload, ReadLogTail, Sleep, Steps, run_async, run_blocking
from pgephemeral.state import ClusterState, InstanceState
from pgephemeral.supervisor import ProcessSupervisor
from pgephemeral.workspace import Workspace, destroy_workspace

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ConnectionParams:
    """
    How to reach a provisioned server.

    For unix endpoints `host` is the socket directory, which libpq and psycopg
    accept as a host; `socket_dir` carries the same value as a Path.
    """

    host: str
    port: int
    user: str
    database: str
    password: Optional[str] = None
    socket_dir: Optional[Path] = None

    @classmethod
    def for_endpoint(cls, endpoint: Endpoint, settings: Settings) -> "ConnectionParams":
        return cls(
            host=endpoint.host,
            port=endpoint.port,
            user=settings.effective_user,
            database=settings.database,
            socket_dir=endpoint.socket_dir,
        )

    @property
    def dsn(self) -> str:
        """libpq connection URI."""
        auth = quote(self.user, safe="")
        if self.password is not None:
            auth += ":" + quote(self.password, safe="")
        db = quote(self.database, safe="")
        if self.socket_dir is not None:
            query = urlencode({"host": str(self.socket_dir), "port": self.port})
            return f"postgresql://{auth}@/{db}?{query}"
        return f"postgresql://{auth}@{self.host}:{self.port}/{db}"

    def connect_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for psycopg.connect()."""
        kwargs: Dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "dbname": self.database,
        }
        if self.password is not None:
            kwargs["password"] = self.password
        return kwargs

    def sqlalchemy_url(self, driver: str = "psycopg") -> URL:
        drivername = f"postgresql+{driver}" if driver else "postgresql"
        if self.socket_dir is not None:
            return URL.create(
                drivername,
                username=self.user,
                password=self.password,
                database=self.database,
                query={"host": str(self.socket_dir), "port": str(self.port)},
            )
        return URL.create(
            drivername,
            username=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.database,
        )


class InstanceResources:
    """
    Everything one instance owns, and the single teardown that releases it.

    Teardown order: stop the process, remove the workspace, release the
    endpoint, deregister. It runs at most once; a later call waits for the
    one in progress to finish, bounded by the stop timeouts. It never
    raises: problems end up as TeardownIncomplete warnings.
    """

    def __init__(
        self,
        instance_id: str,
        settings: Settings,
        workspace: Workspace,
        state: InstanceState,
        registry: InstanceRegistry,
    ) -> None:
        self.instance_id = instance_id
        self.settings = settings
        self.workspace = workspace
        self.state = state
        self.registry = registry
        self.endpoint: Optional[Endpoint] = None
        self.supervisor: Optional[ProcessSupervisor] = None
        self._claim = threading.Lock()
        self._torn_down = False
        self._done = threading.Event()

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    def _claim_teardown(self) -> bool:
        with self._claim:
            if self._torn_down:
                return False
            self._torn_down = True
            return True

    def teardown(self) -> Steps[None]:
        if not self._claim_teardown():
            yield from self._await_teardown()
            return
        logger.info("Instance %s shutting down", self.instance_id)
        try:
            if self.state.state not in (ClusterState.FAILED, ClusterState.STOPPED):
                self.state.advance(ClusterState.STOPPING)
            try:
                if self.supervisor is not None:
                    yield from self.supervisor.stop(self.settings.shutdown_timeout_s, self.settings.kill_timeout_s)
            finally:
                try:
                    yield Offload(destroy_workspace, (self.workspace,))
                finally:
                    if self.endpoint is not None:
                        self.registry.release_endpoint(self.endpoint.key)
                    self.registry.remove(self.instance_id)
                    if self.state.state == ClusterState.STOPPING:
                        self.state.advance(ClusterState.STOPPED)
        finally:
            self._done.set()

    def _await_teardown(self) -> Steps[None]:
        """Poll until the teardown running in another thread or task has finished."""
        limit = self.settings.shutdown_timeout_s + self.settings.kill_timeout_s
        deadline = time.monotonic() + limit
        while not self._done.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("Instance %s: teardown still running after %.1fs", self.instance_id, limit)
                return
            yield Sleep(min(self.settings.poll_interval_s, remaining))

    def teardown_now(self) -> None:
        run_blocking(self.teardown())


class _InstanceBase:
    def __init__(self, resources: InstanceResources, params: ConnectionParams) -> None:
        self._resources = resources
        self._params = params
        # Runs the teardown when the handle becomes unreachable or at interpreter exit.
        self._finalizer = weakref.finalize(self, resources.teardown_now)

    @property
    def id(self) -> str:
        return self._resources.instance_id

    @property
    def params(self) -> ConnectionParams:
        return self._params

    @property
    def dsn(self) -> str:
        return self._params.dsn

    @property
    def endpoint(self) -> Endpoint:
        assert self._resources.endpoint is not None
        return self._resources.endpoint

    @property
    def workspace(self) -> Workspace:
        return self._resources.workspace

    @property
    def log_path(self) -> Path:
        return self._resources.workspace.log_path

    @property
    def state(self) -> ClusterState:
        return self._resources.state.state

    @property
    def pid(self) -> Optional[int]:
        sup = self._resources.supervisor
        return sup.pid if sup is not None else None

    @property
    def returncode(self) -> Optional[int]:
        sup = self._resources.supervisor
        return sup.returncode if sup is not None else None

    def read_log(self) -> str:
        """Server log so far; empty once the workspace is gone."""
        text, _ = ReadLogTail(self.log_path).run()
        return text

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id} {self.state.name} {self.endpoint}>"


class PostgresInstance(_InstanceBase):
    """A running server handed out by a blocking provision call."""

    def shutdown(self) -> None:
        """Stop the server and remove its workspace. Idempotent."""
        self._finalizer()
        # The finalizer returns at once when another thread already fired it.
        run_blocking(self._resources.teardown())

    def __enter__(self) -> "PostgresInstance":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()


class AsyncPostgresInstance(_InstanceBase):
    """A running server handed out by `provision_async`; shuts down without blocking the loop."""

    async def shutdown(self) -> None:
        """Stop the server and remove its workspace. Idempotent."""
        try:
            await run_async(self._resources.teardown())
        finally:
            if self._resources.torn_down:
                self._finalizer.detach()

    async def __aenter__(self) -> "AsyncPostgresInstance":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
