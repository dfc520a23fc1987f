try:
    from ._version import version as __version__  # populated by setuptools-scm
except ModuleNotFoundError:
    __version__ = "0.0.0"

from .config import Settings, get_settings
from .exceptions import (
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
from .factory import PostgresFactory, provision, provision_async
from .instance import AsyncPostgresInstance, ConnectionParams, PostgresInstance
from .state import ClusterState

__all__ = [
    "__version__",
    "AsyncPostgresInstance",
    "BootstrapFailed",
    "ClusterState",
    "CommandNotFound",
    "ConnectionParams",
    "InitFailed",
    "InvalidStateTransition",
    "NoEndpointAvailable",
    "PgEphemeralError",
    "PostgresFactory",
    "PostgresInstance",
    "ProcessCapture",
    "ProvisionFailed",
    "ReadinessTimeout",
    "Settings",
    "SpawnFailed",
    "Stage",
    "StartupFailed",
    "TeardownIncomplete",
    "WorkspaceCreationFailed",
    "get_settings",
    "provision",
    "provision_async",
]
