"""Orchestrator settings.

Settings live in ``.pipeline/config.toml`` at the project root. Every
section is optional; missing sections keep their defaults and unknown
keys are ignored. Two environment variables override the file:
``PIPELINE_LOCK_BACKEND`` and ``PIPELINE_DB_PATH``.

Example::

    [lock]
    backend = "sqlite"
    ttl_ms = 30000

    [circuit_breaker]
    failure_threshold = 5
    reset_timeout_ms = 30000

    [retry]
    max_attempts = 3
    initial_delay_ms = 1000

    [dry_run]
    sample_limit = 5

    [database]
    path = ".pipeline/pipeline.db"
"""

from __future__ import annotations

import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .backoff import RetryPolicy
from .circuit_breaker_config import CircuitBreakerConfig

logger = logging.getLogger(__name__)

_PIPELINE_DIR = ".pipeline"
_CONFIG_FILE = "config.toml"
_DB_FILE = "pipeline.db"

LOCK_BACKENDS = ("memory", "sqlite")

ENV_LOCK_BACKEND = "PIPELINE_LOCK_BACKEND"
ENV_DB_PATH = "PIPELINE_DB_PATH"


@dataclass(frozen=True)
class LockSettings:
    """Distributed lock configuration."""

    backend: str = "memory"
    ttl_ms: int = 30_000
    wait_timeout_ms: int = 10_000
    retry_interval_ms: int = 100
    refresh_fraction: float = 1 / 3
    max_memory_locks: int = 1000


@dataclass(frozen=True)
class DryRunSettings:
    """Dry-run configuration."""

    sample_limit: int = 5


@dataclass(frozen=True)
class DatabaseSettings:
    """Database location. None means the project default."""

    path: str | None = None


@dataclass(frozen=True)
class OrchestratorSettings:
    """Complete orchestrator configuration.

    Loaded from .pipeline/config.toml via load_settings().
    """

    lock: LockSettings = field(default_factory=LockSettings)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    dry_run: DryRunSettings = field(default_factory=DryRunSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)

    def resolve_db_path(self, project_root: Path | None = None) -> Path:
        """Resolve the database path against *project_root* (default cwd)."""
        root = (project_root or Path.cwd()).resolve()
        if self.database.path:
            path = Path(self.database.path)
            return path if path.is_absolute() else root / path
        return root / _PIPELINE_DIR / _DB_FILE


def load_settings_file(config_file: Path) -> OrchestratorSettings:
    """Load settings from a TOML file.

    Args:
        config_file: Path to the TOML file.

    Returns:
        Parsed OrchestratorSettings.

    Raises:
        FileNotFoundError: If the file is missing.
        ValueError: On invalid TOML or invalid values.
    """
    if not config_file.exists():
        msg = f"Settings file not found: {config_file}"
        raise FileNotFoundError(msg)

    content = config_file.read_text(encoding="utf-8")
    try:
        data = tomllib.loads(content)
    except tomllib.TOMLDecodeError as exc:
        msg = f"Invalid TOML in {config_file}: {exc}"
        raise ValueError(msg) from exc

    return parse_settings(data)


def parse_settings(data: Mapping[str, Any]) -> OrchestratorSettings:
    """Parse raw TOML data into OrchestratorSettings.

    Unknown fields are silently ignored for forward compatibility.

    Raises:
        ValueError: If a section is not a table or a value is invalid.
    """
    lock_data = _section(data, "lock")
    breaker_data = _section(data, "circuit_breaker")
    retry_data = _section(data, "retry")
    dry_run_data = _section(data, "dry_run")
    database_data = _section(data, "database")

    defaults = LockSettings()
    lock = LockSettings(
        backend=str(lock_data.get("backend", defaults.backend)),
        ttl_ms=int(lock_data.get("ttl_ms", defaults.ttl_ms)),
        wait_timeout_ms=int(lock_data.get("wait_timeout_ms", defaults.wait_timeout_ms)),
        retry_interval_ms=int(lock_data.get("retry_interval_ms", defaults.retry_interval_ms)),
        refresh_fraction=float(lock_data.get("refresh_fraction", defaults.refresh_fraction)),
        max_memory_locks=int(lock_data.get("max_memory_locks", defaults.max_memory_locks)),
    )

    breaker_defaults = CircuitBreakerConfig()
    circuit_breaker = CircuitBreakerConfig(
        failure_threshold=int(
            breaker_data.get("failure_threshold", breaker_defaults.failure_threshold)
        ),
        reset_timeout_ms=int(
            breaker_data.get("reset_timeout_ms", breaker_defaults.reset_timeout_ms)
        ),
        success_threshold=int(
            breaker_data.get("success_threshold", breaker_defaults.success_threshold)
        ),
        window_ms=int(breaker_data.get("window_ms", breaker_defaults.window_ms)),
        max_circuits=int(breaker_data.get("max_circuits", breaker_defaults.max_circuits)),
    )

    retry_defaults = RetryPolicy()
    retry = RetryPolicy(
        max_attempts=int(retry_data.get("max_attempts", retry_defaults.max_attempts)),
        initial_delay_ms=float(
            retry_data.get("initial_delay_ms", retry_defaults.initial_delay_ms)
        ),
        max_delay_ms=float(retry_data.get("max_delay_ms", retry_defaults.max_delay_ms)),
        backoff_multiplier=float(
            retry_data.get("backoff_multiplier", retry_defaults.backoff_multiplier)
        ),
        jitter_factor=float(retry_data.get("jitter_factor", retry_defaults.jitter_factor)),
    )

    db_path = database_data.get("path")
    settings = OrchestratorSettings(
        lock=lock,
        circuit_breaker=circuit_breaker,
        retry=retry,
        dry_run=DryRunSettings(sample_limit=int(dry_run_data.get("sample_limit", 5))),
        database=DatabaseSettings(path=str(db_path) if db_path else None),
    )
    _validate_settings(settings)
    return settings


def apply_env_overrides(
    settings: OrchestratorSettings,
    environ: Mapping[str, str] | None = None,
) -> OrchestratorSettings:
    """Return *settings* with PIPELINE_* environment overrides applied."""
    env = os.environ if environ is None else environ
    lock = settings.lock
    database = settings.database

    backend = env.get(ENV_LOCK_BACKEND)
    if backend:
        lock = LockSettings(
            backend=backend.strip().lower(),
            ttl_ms=lock.ttl_ms,
            wait_timeout_ms=lock.wait_timeout_ms,
            retry_interval_ms=lock.retry_interval_ms,
            refresh_fraction=lock.refresh_fraction,
            max_memory_locks=lock.max_memory_locks,
        )

    db_path = env.get(ENV_DB_PATH)
    if db_path:
        database = DatabaseSettings(path=db_path)

    result = OrchestratorSettings(
        lock=lock,
        circuit_breaker=settings.circuit_breaker,
        retry=settings.retry,
        dry_run=settings.dry_run,
        database=database,
    )
    _validate_settings(result)
    return result


def find_project_root(start: Path | None = None) -> Path | None:
    """Walk up from start to find nearest .pipeline/ directory.

    Args:
        start: Starting directory. Defaults to cwd.

    Returns:
        The directory containing .pipeline/, or None if not found.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        if (current / _PIPELINE_DIR).is_dir():
            return current
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_settings(
    project_root: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> OrchestratorSettings:
    """Load settings for a project, falling back to defaults.

    Args:
        project_root: Directory containing .pipeline/. Discovered from the
            cwd when None.
        environ: Environment mapping. Defaults to os.environ.

    Returns:
        Settings with environment overrides applied.

    Raises:
        ValueError: If the config file exists but is invalid.
    """
    root = project_root or find_project_root()
    settings = OrchestratorSettings()
    if root is not None:
        config_file = root / _PIPELINE_DIR / _CONFIG_FILE
        if config_file.exists():
            settings = load_settings_file(config_file)
            logger.debug("Loaded settings from %s", config_file)
    return apply_env_overrides(settings, environ)


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        msg = f"[{name}] section must be a table"
        raise ValueError(msg)
    return section


def _validate_settings(settings: OrchestratorSettings) -> None:
    """Validate settings values.

    Raises:
        ValueError: If any field is invalid.
    """
    lock = settings.lock
    if lock.backend not in LOCK_BACKENDS:
        msg = f"lock.backend must be one of {LOCK_BACKENDS}, got {lock.backend!r}"
        raise ValueError(msg)
    if lock.ttl_ms < 1:
        msg = f"lock.ttl_ms must be >= 1, got {lock.ttl_ms}"
        raise ValueError(msg)
    if lock.retry_interval_ms < 1:
        msg = f"lock.retry_interval_ms must be >= 1, got {lock.retry_interval_ms}"
        raise ValueError(msg)
    if not 0 < lock.refresh_fraction < 1:
        msg = f"lock.refresh_fraction must be between 0 and 1, got {lock.refresh_fraction}"
        raise ValueError(msg)
    if settings.retry.max_attempts < 1:
        msg = f"retry.max_attempts must be >= 1, got {settings.retry.max_attempts}"
        raise ValueError(msg)
    if settings.dry_run.sample_limit < 0:
        msg = f"dry_run.sample_limit must be >= 0, got {settings.dry_run.sample_limit}"
        raise ValueError(msg)


def resolve_db_for_cli(
    db_override: str | None = None,
) -> tuple[Path, OrchestratorSettings]:
    """Resolve database path and settings for CLI commands.

    Args:
        db_override: Explicit --db path. Takes precedence over config and
            environment.

    Returns:
        (db_path, settings).

    Raises:
        FileNotFoundError: If no override, no PIPELINE_DB_PATH and no
            .pipeline/ directory is found.
        ValueError: If .pipeline/config.toml is invalid.
    """
    project_root = find_project_root()
    settings = load_settings(project_root)
    if db_override is not None:
        return Path(db_override), settings

    if project_root is None and not settings.database.path:
        msg = (
            "No .pipeline/ directory found. "
            "Create one, set PIPELINE_DB_PATH or use --db."
        )
        raise FileNotFoundError(msg)
    return settings.resolve_db_path(project_root), settings
