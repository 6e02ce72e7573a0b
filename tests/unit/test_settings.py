"""Tests for .pipeline/config.toml settings loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from pipeline_orchestrator.settings import (
    OrchestratorSettings,
    apply_env_overrides,
    find_project_root,
    load_settings,
    load_settings_file,
    parse_settings,
    resolve_db_for_cli,
)


def _write_config(root: Path, content: str) -> Path:
    pipeline_dir = root / ".pipeline"
    pipeline_dir.mkdir(parents=True, exist_ok=True)
    config_file = pipeline_dir / "config.toml"
    config_file.write_text(content, encoding="utf-8")
    return config_file


class TestParseSettings:
    """Parsing raw TOML data."""

    def test_empty_data_gives_defaults(self) -> None:
        settings = parse_settings({})
        assert settings == OrchestratorSettings()
        assert settings.lock.backend == "memory"
        assert settings.retry.max_attempts == 3
        assert settings.dry_run.sample_limit == 5

    def test_sections_override_defaults(self) -> None:
        settings = parse_settings(
            {
                "lock": {"backend": "sqlite", "ttl_ms": 5000},
                "circuit_breaker": {"failure_threshold": 2},
                "retry": {"max_attempts": 5, "initial_delay_ms": 50},
                "dry_run": {"sample_limit": 1},
                "database": {"path": "state/p.db"},
            }
        )

        assert settings.lock.backend == "sqlite"
        assert settings.lock.ttl_ms == 5000
        assert settings.lock.retry_interval_ms == 100
        assert settings.circuit_breaker.failure_threshold == 2
        assert settings.retry.initial_delay_ms == 50
        assert settings.dry_run.sample_limit == 1
        assert settings.database.path == "state/p.db"

    def test_unknown_keys_ignored(self) -> None:
        settings = parse_settings({"lock": {"colour": "blue"}, "future": {"x": 1}})
        assert settings.lock.backend == "memory"

    @pytest.mark.parametrize(
        ("data", "message"),
        [
            ({"lock": {"backend": "redis"}}, "lock.backend must be one of"),
            ({"lock": {"ttl_ms": 0}}, "lock.ttl_ms must be >= 1"),
            ({"lock": {"refresh_fraction": 1.5}}, "lock.refresh_fraction"),
            ({"retry": {"max_attempts": 0}}, "retry.max_attempts must be >= 1"),
            ({"lock": "sqlite"}, r"\[lock\] section must be a table"),
        ],
    )
    def test_invalid_values_rejected(self, data: dict, message: str) -> None:
        with pytest.raises(ValueError, match=message):
            parse_settings(data)


class TestLoadSettings:
    """Loading from disk and the environment."""

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_settings_file(tmp_path / "missing.toml")

    def test_invalid_toml_raises_value_error(self, tmp_path: Path) -> None:
        config_file = _write_config(tmp_path, "[lock\nbackend = ")
        with pytest.raises(ValueError, match="Invalid TOML"):
            load_settings_file(config_file)

    def test_load_from_project_root(self, tmp_path: Path) -> None:
        _write_config(tmp_path, '[lock]\nbackend = "sqlite"\n')

        settings = load_settings(tmp_path, environ={})

        assert settings.lock.backend == "sqlite"

    def test_no_config_file_gives_defaults(self, tmp_path: Path) -> None:
        (tmp_path / ".pipeline").mkdir()
        assert load_settings(tmp_path, environ={}) == OrchestratorSettings()

    def test_env_overrides(self) -> None:
        settings = apply_env_overrides(
            OrchestratorSettings(),
            {"PIPELINE_LOCK_BACKEND": " SQLite ", "PIPELINE_DB_PATH": "/tmp/x.db"},
        )
        assert settings.lock.backend == "sqlite"
        assert settings.database.path == "/tmp/x.db"

    def test_env_override_validated(self) -> None:
        with pytest.raises(ValueError, match="lock.backend"):
            apply_env_overrides(OrchestratorSettings(), {"PIPELINE_LOCK_BACKEND": "etcd"})


class TestPaths:
    """Project root discovery and database path resolution."""

    def test_find_project_root_walks_up(self, tmp_path: Path) -> None:
        (tmp_path / ".pipeline").mkdir()
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)

        assert find_project_root(nested) == tmp_path.resolve()

    def test_resolve_db_path_default_and_relative(self, tmp_path: Path) -> None:
        default = OrchestratorSettings().resolve_db_path(tmp_path)
        assert default == tmp_path.resolve() / ".pipeline" / "pipeline.db"

        custom = parse_settings({"database": {"path": "data/p.db"}})
        assert custom.resolve_db_path(tmp_path) == tmp_path.resolve() / "data" / "p.db"

    def test_resolve_db_for_cli_requires_project(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("PIPELINE_DB_PATH", raising=False)
        monkeypatch.delenv("PIPELINE_LOCK_BACKEND", raising=False)

        with pytest.raises(FileNotFoundError, match="No .pipeline/ directory found"):
            resolve_db_for_cli()

        path, _ = resolve_db_for_cli(str(tmp_path / "explicit.db"))
        assert path == tmp_path / "explicit.db"
