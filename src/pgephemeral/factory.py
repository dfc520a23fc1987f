# src/pgephemeral/factory.py
from __future__ import annotations

"""Provisioning: the state machine that composes workspace, cluster, endpoint,
process and readiness into a running instance, and the factories that drive it.

The same generator serves both modes; `PostgresFactory.provision()` runs it on
the calling thread and `PostgresFactory.aprovision()` on the event loop.
"""

import atexit
import itertools
import logging
import signal
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from pgephemeral.config import Settings, get_settings
from pgephemeral.endpoint import EndpointAllocator
from pgephemeral.exceptions import PgEphemeralError, ProvisionFailed, Stage
from pgephemeral.initializer import ClusterTemplate, bootstrap, build_server_argv, command_env, initialize
from pgephemeral.instance import AsyncPostgresInstance, ConnectionParams, InstanceResources, PostgresInstance
from pgephemeral.readiness import wait_ready
from pgephemeral.registry import InstanceRegistry, get_registry
from pgephemeral.scheduling import Inline, Steps, run_async, run_blocking
from pgephemeral.state import ClusterState, InstanceState
from pgephemeral.supervisor import ProcessSupervisor
from pgephemeral.workspace import create_workspace, resolve_temp_root, sweep_orphans

logger = logging.getLogger(__name__)

_instance_ids = itertools.count(1)

# Temp roots already swept for orphans by this process.
_swept_roots: set[Path] = set()
_swept_lock = threading.Lock()


def _sweep_once(temp_root: Path | None) -> List[Path]:
    root = resolve_temp_root(temp_root)
    with _swept_lock:
        if root in _swept_roots:
            return []
        _swept_roots.add(root)
    removed = sweep_orphans(root)
    if removed:
        logger.info("removed %d orphaned workspace(s) under %s", len(removed), root)
    return removed


def resolve_settings(settings: Optional[Settings] = None, **overrides: Any) -> Settings:
    """`settings` (or the cached process settings) with `overrides` applied and validated."""
    if settings is None:
        return get_settings(**overrides)
    if not overrides:
        return settings
    return Settings.model_validate({**settings.model_dump(), **overrides})


class PostgresFactory:
    """
    Provisions instances sharing one configuration.

    The factory holds what instances can share: the cluster template (when
    `template_cache` is on), the endpoint allocator and the registry. Instances
    own everything else and outlive `close()`, which only drops the template.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        registry: Optional[InstanceRegistry] = None,
        **overrides: Any,
    ) -> None:
        self.settings = resolve_settings(settings, **overrides)
        self.registry = registry if registry is not None else get_registry()
        self._allocator = EndpointAllocator(
            host=self.settings.host,
            retries=self.settings.bind_retries,
            backoff_s=self.settings.bind_backoff_s,
            unix_port=self.settings.unix_port,
            reserve=self.registry.reserve_endpoint,
            release=self.registry.release_endpoint,
        )
        self._template = ClusterTemplate(self.settings) if self.settings.template_cache else None
        if self._template is not None:
            self.registry.add_template(self._template, self.settings.temp_root)
        self._closed = False
        if self.settings.sweep_orphans:
            _sweep_once(self.settings.temp_root)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def provision(self) -> PostgresInstance:
        resources = run_blocking(self._provision_steps())
        return PostgresInstance(resources, self._params(resources))

    async def aprovision(self) -> AsyncPostgresInstance:
        resources = await run_async(self._provision_steps())
        return AsyncPostgresInstance(resources, self._params(resources))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._template is not None:
            self._template.close()
            self.registry.discard_template(self._template)

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "PostgresFactory":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------ #
    # State machine
    # ------------------------------------------------------------------ #

    def _params(self, resources: InstanceResources) -> ConnectionParams:
        assert resources.endpoint is not None
        return ConnectionParams.for_endpoint(resources.endpoint, self.settings)

    def _provision_steps(self) -> Steps[InstanceResources]:
        if self._closed:
            raise PgEphemeralError("factory is closed")

        s = self.settings
        instance_id = f"pg-{next(_instance_ids)}"
        state = InstanceState(instance_id)
        resources: Optional[InstanceResources] = None
        stage = Stage.WORKSPACE

        try:
            workspace = yield Inline(create_workspace, (s.temp_root,), {"attempts": s.workspace_attempts})
            resources = InstanceResources(instance_id, s, workspace, state, self.registry)
            self.registry.add(instance_id, resources, s.temp_root)

            stage = Stage.INIT
            if self._template is not None:
                yield from self._template.populate(workspace.data_dir)
            else:
                yield from initialize(workspace.data_dir, s)
            state.advance(ClusterState.INITIALIZED)

            stage = Stage.ENDPOINT
            endpoint = yield from self._allocator.allocate(s.endpoint_kind, workspace)
            resources.endpoint = endpoint

            stage = Stage.SPAWN
            argv = build_server_argv(s, endpoint, workspace.data_dir)
            supervisor = ProcessSupervisor(
                instance_id,
                graceful_signal=signal.Signals[s.graceful_signal],
                poll_interval_s=s.poll_interval_s,
            )
            resources.supervisor = supervisor
            state.advance(ClusterState.STARTING)
            yield from supervisor.start(argv, workspace.log_path, env=command_env())

            stage = Stage.READINESS
            yield from wait_ready(
                endpoint,
                workspace.log_path,
                supervisor,
                timeout_s=s.readiness_timeout_s,
                poll_interval_s=s.poll_interval_s,
                ready_marker=s.ready_marker,
                failure_markers=s.failure_markers,
            )

            stage = Stage.BOOTSTRAP
            yield from bootstrap(s, endpoint)

            state.advance(ClusterState.READY)
            logger.info("Instance %s ready on %s (pid=%s)", instance_id, endpoint, supervisor.pid)
            return resources

        except (PgEphemeralError, OSError) as exc:
            state.fail(f"{stage.value}: {exc}")
            if resources is not None:
                yield from resources.teardown()
            if isinstance(exc, ProvisionFailed):
                raise
            raise ProvisionFailed(stage, exc) from exc

        except BaseException as exc:
            # Cancellation, KeyboardInterrupt or a bug: release everything, then let it through.
            state.fail(f"{stage.value}: interrupted by {type(exc).__name__}")
            if resources is not None:
                if isinstance(exc, GeneratorExit):
                    # Closed generators may not yield again.
                    resources.teardown_now()
                else:
                    yield from resources.teardown()
            raise


# ─────────────────────────────────────────────────────────────
# Module-level entry points
# ─────────────────────────────────────────────────────────────

_factories: Dict[str, PostgresFactory] = {}
_factories_lock = threading.Lock()


def get_factory(settings: Optional[Settings] = None, **overrides: Any) -> PostgresFactory:
    """Shared factory for a configuration, built on first use and closed at exit."""
    resolved = resolve_settings(settings, **overrides)
    key = resolved.model_dump_json()
    with _factories_lock:
        factory = _factories.get(key)
        if factory is None:
            first = not _factories
            factory = _factories[key] = PostgresFactory(resolved)
            if first:
                # After the registry hook, so atexit runs it first.
                atexit.register(close_factories)
        return factory


def close_factories() -> None:
    with _factories_lock:
        factories = list(_factories.values())
        _factories.clear()
    for factory in factories:
        factory.close()


def provision(settings: Optional[Settings] = None, **overrides: Any) -> PostgresInstance:
    """
    Start a temporary PostgreSQL server and return a handle to it.

    Usage::

        with provision() as pg:
            conn = psycopg.connect(pg.dsn)

    Raises ProvisionFailed; nothing is left behind when it does.
    """
    return get_factory(settings, **overrides).provision()


async def provision_async(settings: Optional[Settings] = None, **overrides: Any) -> AsyncPostgresInstance:
    """Async counterpart of `provision`; cancellation still tears everything down."""
    return await get_factory(settings, **overrides).aprovision()
