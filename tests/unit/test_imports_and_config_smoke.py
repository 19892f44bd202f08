import json
from pathlib import Path

import pytest

from utility_hub import SERVER, Config, load_config, main
from utility_hub.config import ConfigError


def test_package_imports() -> None:
    """Importing the package should expose main APIs."""

    assert callable(load_config)
    assert callable(main)
    assert Config is not None
    assert SERVER.name == "utility-hub"


def test_default_configuration(tmp_path: Path) -> None:
    """Defaults should populate expected values when no overrides provided."""

    storage_dir = tmp_path / "storage"
    environ = {"UTILITY_HUB_STORAGE_DIR": str(storage_dir)}

    cfg = load_config(argv=[], environ=environ)

    assert cfg.storage_dir == storage_dir.resolve()
    assert cfg.enable_stdio is True
    assert cfg.enable_http is True
    assert cfg.enable_admin_api is True
    assert cfg.http_host == "127.0.0.1"
    assert cfg.http_port == 8765


def test_cli_overrides_take_precedence(tmp_path: Path) -> None:
    """CLI arguments should override defaults and environment values."""

    argv = [
        "--storage-dir",
        str(tmp_path / "storage"),
        "--enable-http",
        "false",
        "--http-port",
        "9001",
    ]

    cfg = load_config(argv=argv, environ={"UTILITY_HUB_HTTP_PORT": "9000", "UTILITY_HUB_ENABLE_HTTP": "true"})

    assert cfg.enable_http is False
    assert cfg.http_port == 9001


def test_env_overrides(tmp_path: Path) -> None:
    """Environment variables should override defaults."""

    environ = {
        "UTILITY_HUB_STORAGE_DIR": str(tmp_path / "data"),
        "UTILITY_HUB_ENABLE_STDIO": "false",
        "UTILITY_HUB_USE_DB": "true",
        "UTILITY_HUB_DATABASE_URL": f"sqlite:///{tmp_path / 'tools.db'}",
    }

    cfg = load_config(argv=[], environ=environ)

    assert cfg.enable_stdio is False
    assert cfg.storage_dir == (tmp_path / "data").resolve()
    assert cfg.use_db is True
    assert cfg.database_url.endswith("tools.db")


def test_json_config_file(tmp_path: Path) -> None:
    """A JSON config file should be merged into the configuration."""

    config_file = tmp_path / "config.json"
    config_file.write_text(
        json.dumps(
            {
                "storage_dir": str(tmp_path / "configured"),
                "enable_http": False,
                "script_timeout": 3,
            }
        ),
        encoding="utf-8",
    )

    cfg = load_config(argv=["--config-file", str(config_file)], environ={})

    assert cfg.storage_dir == (tmp_path / "configured").resolve()
    assert cfg.enable_http is False
    assert cfg.script_timeout.total_seconds() == 3


def test_invalid_numeric_value_raises(tmp_path: Path) -> None:
    """Invalid numeric values should trigger configuration errors."""

    with pytest.raises(ConfigError):
        load_config(argv=["--http-port", "not-a-number", "--storage-dir", str(tmp_path)], environ={})
