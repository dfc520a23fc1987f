# src/pgephemeral/registry.py
from __future__ import annotations

import atexit
import logging
import os
import threading
import weakref
from pathlib import Path
from typing import Dict, Hashable, List, Optional, Protocol, Set

from pgephemeral.workspace import resolve_temp_root, sweep_own

logger = logging.getLogger(__name__)


class EmergencyTeardown(Protocol):
    """What the registry needs from a live instance: a blocking, never-raising teardown."""

    def teardown_now(self) -> None: ...


class SharedTemplate(Protocol):
    """A factory-owned resource (the cluster template) closed before the exit sweep."""

    def close(self) -> None: ...


class InstanceRegistry:
    """
    Process-scoped bookkeeping of live instances.

    The registry never owns an instance: entries are weak references to each
    instance's teardown resources, used for two things only:

    - refusing to hand out a TCP endpoint another live instance already holds;
    - the emergency pass at interpreter exit, which tears down whatever is
      still registered, closes open cluster templates and then sweeps every
      workspace carrying this pid that is still left.

    One lock guards all of it and is never held while a process is stopped or
    a directory is removed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, weakref.ref[EmergencyTeardown]] = {}
        self._endpoints: Set[Hashable] = set()
        self._templates: "weakref.WeakSet[SharedTemplate]" = weakref.WeakSet()
        self._temp_roots: Set[Path] = set()
        self._installed_pid: Optional[int] = None

    # ------------------------------------------------------------------ #
    # Instances
    # ------------------------------------------------------------------ #

    def add(self, instance_id: str, resources: EmergencyTeardown, temp_root: Path | None = None) -> None:
        with self._lock:
            if instance_id in self._entries:
                raise KeyError(f"instance {instance_id} already registered")
            self._entries[instance_id] = weakref.ref(resources)
            self._temp_roots.add(resolve_temp_root(temp_root))

    def remove(self, instance_id: str) -> bool:
        with self._lock:
            return self._entries.pop(instance_id, None) is not None

    def snapshot(self) -> Dict[str, EmergencyTeardown]:
        """Live entries only; dead weak references are pruned on the way."""
        live: Dict[str, EmergencyTeardown] = {}
        with self._lock:
            for instance_id, ref in list(self._entries.items()):
                obj = ref()
                if obj is None:
                    del self._entries[instance_id]
                else:
                    live[instance_id] = obj
        return live

    def add_template(self, template: SharedTemplate, temp_root: Path | None = None) -> None:
        with self._lock:
            self._templates.add(template)
            self._temp_roots.add(resolve_temp_root(temp_root))

    def discard_template(self, template: SharedTemplate) -> None:
        with self._lock:
            self._templates.discard(template)

    def __len__(self) -> int:
        return len(self.snapshot())

    def __contains__(self, instance_id: object) -> bool:
        with self._lock:
            return instance_id in self._entries

    # ------------------------------------------------------------------ #
    # Endpoint reservations
    # ------------------------------------------------------------------ #

    def reserve_endpoint(self, key: Hashable) -> bool:
        with self._lock:
            if key in self._endpoints:
                return False
            self._endpoints.add(key)
            return True

    def release_endpoint(self, key: Hashable) -> None:
        with self._lock:
            self._endpoints.discard(key)

    def reserved_endpoints(self) -> Set[Hashable]:
        with self._lock:
            return set(self._endpoints)

    # ------------------------------------------------------------------ #
    # Emergency pass
    # ------------------------------------------------------------------ #

    @property
    def installed(self) -> bool:
        return self._installed_pid is not None

    def install(self) -> None:
        if self._installed_pid is not None:
            return
        self._installed_pid = os.getpid()
        atexit.register(self._at_exit)

    def uninstall(self) -> None:
        if self._installed_pid is None:
            return
        atexit.unregister(self._at_exit)
        self._installed_pid = None

    def _at_exit(self) -> None:
        # A forked child inherits the hook but not the processes it names.
        if self._installed_pid != os.getpid():
            return
        self.emergency_teardown()

    def emergency_teardown(self) -> List[Path]:
        entries = self.snapshot()
        if entries:
            logger.warning("tearing down %d instance(s) still alive at exit", len(entries))
        for instance_id, resources in entries.items():
            try:
                resources.teardown_now()
            except Exception:
                logger.exception("emergency teardown of instance %s failed", instance_id)

        with self._lock:
            templates = list(self._templates)
            roots = list(self._temp_roots)
        # Open templates belong to live factories and are not leftovers.
        for template in templates:
            try:
                template.close()
            except Exception:
                logger.exception("closing cluster template at exit failed")

        removed: List[Path] = []
        for root in roots:
            removed.extend(sweep_own(root))
        for path in removed:
            logger.warning("removed leftover workspace %s", path)
        return removed


_default_registry: Optional[InstanceRegistry] = None
_default_lock = threading.Lock()


def get_registry() -> InstanceRegistry:
    """The process's registry, created and installed on first use."""
    global _default_registry
    with _default_lock:
        if _default_registry is None:
            _default_registry = InstanceRegistry()
            _default_registry.install()
        return _default_registry
