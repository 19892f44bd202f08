from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import pytest

from utility_hub import load_config
from utility_hub.config import ConfigError


def _base_args(tmp_path: Path, *extra: str) -> list[str]:
    storage_dir = tmp_path / "storage"
    return ["--storage-dir", str(storage_dir), *extra]


def test_defaults(tmp_path: Path) -> None:
    cfg = load_config(argv=_base_args(tmp_path), environ={})

    assert cfg.use_db is False
    assert cfg.database_url is None
    assert cfg.http_path == "/mcp"
    assert cfg.admin_path == "/api/tools"
    assert cfg.registry_staleness == timedelta(seconds=5)
    assert cfg.api_timeout == timedelta(seconds=30)
    assert cfg.script_timeout == timedelta(seconds=10)


def test_duration_flags_accept_suffixes(tmp_path: Path) -> None:
    cfg = load_config(
        argv=_base_args(
            tmp_path,
            "--registry-staleness",
            "2m",
            "--api-timeout",
            "1h",
            "--script-timeout",
            "42s",
            "--shutdown-timeout",
            "120",
        ),
        environ={},
    )

    assert cfg.registry_staleness == timedelta(minutes=2)
    assert cfg.api_timeout == timedelta(hours=1)
    assert cfg.script_timeout == timedelta(seconds=42)
    assert cfg.shutdown_timeout == timedelta(seconds=120)


def test_zero_staleness_is_allowed(tmp_path: Path) -> None:
    cfg = load_config(argv=_base_args(tmp_path), environ={"UTILITY_HUB_REGISTRY_STALENESS": "0"})

    assert cfg.registry_staleness == timedelta(0)


@pytest.mark.parametrize("value", ["", "abc", "3x", "-5"])
def test_invalid_duration_strings_raise(tmp_path: Path, value: str) -> None:
    with pytest.raises(ConfigError):
        load_config(argv=_base_args(tmp_path, "--registry-staleness", value), environ={})


def test_boolean_env_values(tmp_path: Path) -> None:
    cfg = load_config(
        argv=_base_args(tmp_path),
        environ={"UTILITY_HUB_ENABLE_SSE": "off", "UTILITY_HUB_ENABLE_ADMIN_API": "no", "UTILITY_HUB_ENABLE_METRICS": "yes"},
    )

    assert cfg.enable_sse is False
    assert cfg.enable_admin_api is False
    assert cfg.enable_metrics is True


def test_use_db_requires_database_url(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(argv=_base_args(tmp_path, "--use-db", "true"), environ={})


def test_metrics_require_http(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(argv=_base_args(tmp_path, "--enable-metrics", "true", "--enable-http", "false"), environ={})


def test_paths_must_be_distinct(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(argv=_base_args(tmp_path, "--admin-path", "/mcp"), environ={})


@pytest.mark.parametrize("port", ["-1", "70000", "http"])
def test_invalid_port_rejected(tmp_path: Path, port: str) -> None:
    with pytest.raises(ConfigError):
        load_config(argv=_base_args(tmp_path, "--http-port", port), environ={})


def test_invalid_config_file_value_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps(
            {
                "storage_dir": str(tmp_path / "data"),
                "enable_http": "definitely",
            }
        ),
        encoding="utf-8",
    )

    with pytest.raises(ConfigError):
        load_config(argv=["--config-file", str(config_path)], environ={})


def test_malformed_config_file_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{not json", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(argv=["--config-file", str(config_path)], environ={})
