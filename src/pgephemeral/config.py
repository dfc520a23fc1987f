# src/pgephemeral/config.py
from __future__ import annotations

import logging
import pickle
from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, cast
import contextvars

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import PydanticBaseSettingsSource


class ConfigError(RuntimeError):
    """Configuration-related error."""
    pass


# ---------------------------------------------------------------------------
# Config file support (context + loader)
# ---------------------------------------------------------------------------

_CONFIG_FILE_CTX: contextvars.ContextVar[Path | None] = contextvars.ContextVar(
    "PGEPHEMERAL_CONFIG_FILE_CTX",
    default=None,
)

_DEFAULT_CONFIG_NAMES = ("pgephemeral.toml", "pgephemeral.yaml", "pgephemeral.yml")


def _find_default_config_file() -> Path | None:
    """Look for config file in current working directory."""
    cwd = Path.cwd()
    for name in _DEFAULT_CONFIG_NAMES:
        p = cwd / name
        if p.is_file():
            return p
    return None


def _load_toml(path: Path) -> dict[str, Any]:
    import tomllib  # Python 3.11 stdlib

    data = tomllib.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} did not parse into a dict")
    return cast(dict[str, Any], data)


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        import yaml  # type: ignore[import-not-found]
    except Exception as e:
        raise ConfigError(
            f"YAML config file selected ({path}), but PyYAML is not installed. "
            "Install PyYAML or use pgephemeral.toml."
        ) from e

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} did not parse into a dict")
    return cast(dict[str, Any], data)


def _load_config_file(path: Path) -> dict[str, Any]:
    suffix = path.suffix.lower()
    if suffix == ".toml":
        return _load_toml(path)
    if suffix in {".yaml", ".yml"}:
        return _load_yaml(path)
    raise ConfigError(f"Unsupported config file type: {path} (expected .toml/.yaml/.yml)")


class _ConfigFileSettingsSource(PydanticBaseSettingsSource):
    """Settings source that loads from an optional config file.

    This source is inserted BELOW dotenv and ABOVE defaults.
    """

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        # Not used; we provide a full dict in __call__.
        raise NotImplementedError

    def __call__(self) -> dict[str, Any]:
        path = _CONFIG_FILE_CTX.get()
        if path is None:
            return {}

        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")

        data = _load_config_file(path)
        # Allow the settings to live under a [pgephemeral] table in a shared file.
        section = data.get("pgephemeral")
        if isinstance(section, dict):
            return cast(dict[str, Any], section)
        return data


@contextmanager
def _config_file_context(path: Path | None) -> Any:
    token = _CONFIG_FILE_CTX.set(path)
    try:
        yield
    finally:
        _CONFIG_FILE_CTX.reset(token)


# ─────────────────────────────────────────────────────────────
# Section configs
# ─────────────────────────────────────────────────────────────


class LoggingSettings(BaseModel):
    level: Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"] = "WARNING"
    format: str = (
        "%(asctime)-20s %(processName)-20s %(name)-32s "
        "%(levelname)-8s: %(message)s"
    )


class BinarySettings(BaseModel):
    """
    Where the PostgreSQL executables come from.

    Each `*_command` is a full argv prefix (e.g. ["/opt/pg16/bin/initdb"] or
    ["python", "stub.py", "initdb"]). When unset, the executable is located by
    `pgephemeral.search.find_postgresql_command`, preferring `bin_dir`.
    """

    bin_dir: Path | None = Field(default=None, description="Directory holding initdb/postgres.")
    initdb_command: list[str] | None = Field(default=None, description="argv prefix for initdb.")
    postgres_command: list[str] | None = Field(default=None, description="argv prefix for postgres.")
    createdb_command: list[str] | None = Field(default=None, description="argv prefix for createdb.")
    createuser_command: list[str] | None = Field(default=None, description="argv prefix for createuser.")


EndpointKind = Literal["tcp", "unix"]
GracefulSignal = Literal["SIGINT", "SIGTERM", "SIGQUIT"]


def _default_server_settings() -> dict[str, str]:
    # Keep per-instance footprint small; durability is irrelevant for throwaway clusters.
    return {
        "shared_buffers": "12MB",
        "fsync": "off",
        "synchronous_commit": "off",
        "full_page_writes": "off",
    }


# ─────────────────────────────────────────────────────────────
# Top-level settings
# ─────────────────────────────────────────────────────────────


class Settings(BaseSettings):
    """
    Provisioning configuration for temporary PostgreSQL instances.

    Precedence (highest → lowest):

    1. Init kwargs (tests/overrides)
    2. Environment variables (PGEPHEMERAL_*, nested with "__")
    3. .env and .env.local
    4. Config file (pgephemeral.toml / .yaml / .yml)
    5. Defaults in this class
    """

    model_config = SettingsConfigDict(
        env_prefix="PGEPHEMERAL_",
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        validate_default=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Earlier sources override later sources.
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            _ConfigFileSettingsSource(settings_cls),
        )

    # Endpoint
    endpoint_kind: EndpointKind = Field("tcp", description="Listen on a loopback TCP port or a unix socket.")
    host: str = Field("127.0.0.1", description="Loopback address for TCP endpoints.")
    unix_port: int = Field(5432, description="Port number used to name the unix socket file.", gt=0, lt=65536)
    bind_retries: int = Field(5, description="Bounded attempts to find a free TCP port.", ge=1)
    bind_backoff_s: float = Field(0.05, description="Linear backoff step between bind attempts.", ge=0)

    # Workspace
    temp_root: Path | None = Field(default=None, description="Parent directory for workspaces (default: OS temp).")
    workspace_attempts: int = Field(8, description="Bounded attempts to create a unique workspace.", ge=1)
    sweep_orphans: bool = Field(True, description="Remove workspaces of dead processes on first use.")

    # Cluster
    template_cache: bool = Field(True, description="Run initdb once per factory and copy the result.")
    superuser: str = Field("postgres", description="Bootstrap superuser created by initdb.")
    user: str | None = Field(default=None, description="Role handed to callers (default: superuser).")
    database: str = Field("postgres", description="Database handed to callers; created when missing.")
    initdb_args: list[str] = Field(default_factory=list, description="Extra initdb arguments.")

    # Server
    server_args: list[str] = Field(default_factory=list, description="Extra postgres arguments.")
    server_settings: dict[str, str] = Field(
        default_factory=_default_server_settings,
        description="postgres -c name=value settings.",
    )

    # Timing
    readiness_timeout_s: float = Field(30.0, description="Maximum wait for the server to accept connections.", gt=0)
    poll_interval_s: float = Field(0.05, description="Readiness polling interval.", gt=0)
    shutdown_timeout_s: float = Field(10.0, description="Wait after the graceful signal before escalating.", gt=0)
    kill_timeout_s: float = Field(5.0, description="Wait after SIGKILL before giving up.", gt=0)
    graceful_signal: GracefulSignal = Field("SIGINT", description="Graceful shutdown signal (SIGINT = fast shutdown).")

    # Readiness log scanning
    ready_marker: str | None = Field(
        "database system is ready to accept connections",
        description="Log line that must appear before the instance counts as ready (None disables).",
    )
    failure_markers: list[str] = Field(
        default_factory=lambda: ["FATAL:", "PANIC:"],
        description="Log fragments that abort startup immediately.",
    )

    logging: LoggingSettings = LoggingSettings()
    binaries: BinarySettings = BinarySettings()

    @model_validator(mode="after")
    def _validate_names(self) -> "Settings":
        for label, value in (("superuser", self.superuser), ("database", self.database)):
            if not value or not value.strip():
                raise ValueError(f"{label} must not be empty")
        if self.user is not None and not self.user.strip():
            raise ValueError("user must not be empty when given")
        return self

    @property
    def effective_user(self) -> str:
        return self.user or self.superuser


@lru_cache(maxsize=16)
def _get_settings_cached(config_file_str: str | None, overrides_blob: bytes) -> Settings:
    overrides = pickle.loads(overrides_blob)
    config_path = Path(config_file_str) if config_file_str is not None else None
    with _config_file_context(config_path):
        return Settings(**overrides)


def get_settings(*, config_file: str | Path | None = None, **overrides: Any) -> Settings:
    """
    Cached accessor for process-wide settings.

    `overrides` are init kwargs → highest precedence (handy in tests).

    If `config_file` is None, we look in CWD for: pgephemeral.toml, pgephemeral.yaml,
    pgephemeral.yml. If none found, config-file source is disabled and defaults apply.
    """
    resolved: Path | None
    if config_file is None:
        resolved = _find_default_config_file()
    else:
        resolved = Path(config_file)

    # Cache key includes config file and overrides.
    overrides_blob = pickle.dumps(overrides, protocol=pickle.HIGHEST_PROTOCOL)
    return _get_settings_cached(str(resolved) if resolved is not None else None, overrides_blob)


def clear_settings_cache() -> None:
    _get_settings_cached.cache_clear()


def configure_logging(settings: LoggingSettings) -> None:
    """Apply level/format to the root logger (CLI use; libraries should not call this)."""
    logging.basicConfig(level=settings.level, format=settings.format, force=True)
