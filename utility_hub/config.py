"""Configuration loading utilities for the Utility Hub MCP server."""

from __future__ import annotations

import argparse
import json
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping, MutableMapping, Sequence

ENV_PREFIX = "UTILITY_HUB_"

BOOL_TRUE = {"1", "true", "t", "yes", "y", "on"}
BOOL_FALSE = {"0", "false", "f", "no", "n", "off"}

DEFAULT_HTTP_HOST = "127.0.0.1"
DEFAULT_HTTP_PORT = 8765
DEFAULT_HTTP_PATH = "/mcp"
DEFAULT_SSE_PATH = "/sse"
DEFAULT_METRICS_PATH = "/metrics"
DEFAULT_ADMIN_PATH = "/api/tools"
DEFAULT_STORAGE_SUBDIR = "utility-hub"


def _default_storage_dir() -> Path:
    """Return the default local tool store directory under the current working directory."""

    return (Path.cwd() / DEFAULT_STORAGE_SUBDIR).resolve()


DEFAULT_STORAGE_DIR = _default_storage_dir()
DEFAULT_REGISTRY_STALENESS = "5s"
DEFAULT_API_TIMEOUT = "30s"
DEFAULT_SCRIPT_TIMEOUT = "10s"
DEFAULT_SHUTDOWN_TIMEOUT = "5s"

T_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600}

ENV_FIELD_MAP = {
    "config_file": f"{ENV_PREFIX}CONFIG_FILE",
    "storage_dir": f"{ENV_PREFIX}STORAGE_DIR",
    "use_db": f"{ENV_PREFIX}USE_DB",
    "database_url": f"{ENV_PREFIX}DATABASE_URL",
    "enable_stdio": f"{ENV_PREFIX}ENABLE_STDIO",
    "enable_http": f"{ENV_PREFIX}ENABLE_HTTP",
    "enable_sse": f"{ENV_PREFIX}ENABLE_SSE",
    "enable_metrics": f"{ENV_PREFIX}ENABLE_METRICS",
    "enable_admin_api": f"{ENV_PREFIX}ENABLE_ADMIN_API",
    "http_host": f"{ENV_PREFIX}HTTP_HOST",
    "http_port": f"{ENV_PREFIX}HTTP_PORT",
    "http_socket_path": f"{ENV_PREFIX}HTTP_SOCKET_PATH",
    "http_path": f"{ENV_PREFIX}HTTP_PATH",
    "sse_path": f"{ENV_PREFIX}SSE_PATH",
    "metrics_path": f"{ENV_PREFIX}METRICS_PATH",
    "admin_path": f"{ENV_PREFIX}ADMIN_PATH",
    "registry_staleness": f"{ENV_PREFIX}REGISTRY_STALENESS",
    "api_timeout": f"{ENV_PREFIX}API_TIMEOUT",
    "script_timeout": f"{ENV_PREFIX}SCRIPT_TIMEOUT",
    "shutdown_timeout": f"{ENV_PREFIX}SHUTDOWN_TIMEOUT",
}

DEFAULT_VALUES: dict[str, Any] = {
    "config_file": None,
    "storage_dir": str(DEFAULT_STORAGE_DIR),
    "use_db": False,
    "database_url": None,
    "enable_stdio": True,
    "enable_http": True,
    "enable_sse": True,
    "enable_metrics": False,
    "enable_admin_api": True,
    "http_host": DEFAULT_HTTP_HOST,
    "http_port": DEFAULT_HTTP_PORT,
    "http_socket_path": None,
    "http_path": DEFAULT_HTTP_PATH,
    "sse_path": DEFAULT_SSE_PATH,
    "metrics_path": DEFAULT_METRICS_PATH,
    "admin_path": DEFAULT_ADMIN_PATH,
    "registry_staleness": DEFAULT_REGISTRY_STALENESS,
    "api_timeout": DEFAULT_API_TIMEOUT,
    "script_timeout": DEFAULT_SCRIPT_TIMEOUT,
    "shutdown_timeout": DEFAULT_SHUTDOWN_TIMEOUT,
}


class ConfigError(ValueError):
    """Raised when configuration values are invalid."""


@dataclass(slots=True)
class Config:
    """Configuration model for the Utility Hub MCP server."""

    storage_dir: Path
    use_db: bool
    database_url: str | None
    enable_stdio: bool
    enable_http: bool
    enable_sse: bool
    enable_metrics: bool
    enable_admin_api: bool
    http_host: str
    http_port: int
    http_socket_path: Path | None
    http_path: str
    sse_path: str
    metrics_path: str
    admin_path: str
    registry_staleness: timedelta
    api_timeout: timedelta
    script_timeout: timedelta
    shutdown_timeout: timedelta
    config_file: Path | None = None


def load_config(
    argv: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from CLI arguments, environment variables, and optional file."""

    parser = _build_arg_parser()
    parsed = parser.parse_args(argv)
    cli_values = {k: v for k, v in vars(parsed).items() if v is not None}

    env_values = _extract_env_values(environ if environ is not None else os.environ)

    config_path_value = cli_values.get("config_file") or env_values.get("config_file")
    file_values = _load_config_file(config_path_value)

    merged: dict[str, Any] = {}
    _merge_layer(merged, DEFAULT_VALUES)
    _merge_layer(merged, file_values)
    _merge_layer(merged, env_values)
    _merge_layer(merged, cli_values)

    config = _normalize_values(merged, config_path_value)

    _maybe_write_config_file(config)
    return config


def hot_reload_config(*_args: Any, **_kwargs: Any) -> None:
    """Explicitly prevent runtime configuration reloading."""

    raise ConfigError("Configuration can only be loaded during startup. Restart the server to apply changes.")


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="utility-hub",
        description="Utility Hub MCP server configuration flags.",
        add_help=False,
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("-h", "--help", action="help", help="Show this help message and exit.")
    parser.add_argument(
        "--config-file",
        dest="config_file",
        metavar="PATH",
        help="Path to a JSON configuration file. Default: none.",
    )
    parser.add_argument(
        "--storage-dir",
        dest="storage_dir",
        metavar="PATH",
        help=f"Directory of the local LanceDB tool store (default: {DEFAULT_STORAGE_DIR}).",
    )
    parser.add_argument(
        "--use-db",
        dest="use_db",
        metavar="BOOL",
        help="Persist custom tools in the shared SQL database instead of the local store (default: false).",
    )
    parser.add_argument(
        "--database-url",
        dest="database_url",
        metavar="URL",
        help="SQLAlchemy connection string for the shared store (required with --use-db true).",
    )

    parser.add_argument(
        "--enable-stdio",
        dest="enable_stdio",
        metavar="BOOL",
        help="Enable the MCP stdio transport (default: true).",
    )
    parser.add_argument(
        "--enable-http",
        dest="enable_http",
        metavar="BOOL",
        help="Enable the MCP streamable HTTP endpoint (default: true). Disable for stdio-only runs.",
    )
    parser.add_argument(
        "--enable-sse",
        dest="enable_sse",
        metavar="BOOL",
        help="Enable the MCP SSE stream (default: true).",
    )
    parser.add_argument(
        "--enable-metrics",
        dest="enable_metrics",
        metavar="BOOL",
        help="Expose Prometheus metrics (requires --enable-http true; default: false).",
    )
    parser.add_argument(
        "--enable-admin-api",
        dest="enable_admin_api",
        metavar="BOOL",
        help="Expose the custom tool admin API over HTTP (default: true).",
    )

    parser.add_argument(
        "--http-host",
        dest="http_host",
        metavar="HOST",
        help=f"HTTP listener host (default: {DEFAULT_HTTP_HOST}).",
    )
    parser.add_argument(
        "--http-port",
        dest="http_port",
        metavar="PORT",
        help=f"HTTP listener port (default: {DEFAULT_HTTP_PORT}).",
    )
    parser.add_argument(
        "--http-socket-path",
        dest="http_socket_path",
        metavar="PATH",
        help="Unix domain socket path for the HTTP/SSE listener (optional).",
    )
    parser.add_argument(
        "--http-path",
        dest="http_path",
        metavar="PATH",
        help=f"HTTP RPC path for MCP requests (default: {DEFAULT_HTTP_PATH}).",
    )
    parser.add_argument(
        "--sse-path",
        dest="sse_path",
        metavar="PATH",
        help=f"SSE stream path for MCP events (default: {DEFAULT_SSE_PATH}).",
    )
    parser.add_argument(
        "--metrics-path",
        dest="metrics_path",
        metavar="PATH",
        help=f"Metrics endpoint path (default: {DEFAULT_METRICS_PATH}).",
    )
    parser.add_argument(
        "--admin-path",
        dest="admin_path",
        metavar="PATH",
        help=f"Custom tool admin API path (default: {DEFAULT_ADMIN_PATH}).",
    )

    parser.add_argument(
        "--registry-staleness",
        dest="registry_staleness",
        metavar="DURATION",
        help=f"Maximum age of the cached custom tool registry (default: {DEFAULT_REGISTRY_STALENESS}).",
    )
    parser.add_argument(
        "--api-timeout",
        dest="api_timeout",
        metavar="DURATION",
        help=f"Timeout for outbound custom API tool requests (default: {DEFAULT_API_TIMEOUT}).",
    )
    parser.add_argument(
        "--script-timeout",
        dest="script_timeout",
        metavar="DURATION",
        help=f"Wall-clock budget for custom script tools, 0 disables (default: {DEFAULT_SCRIPT_TIMEOUT}).",
    )
    parser.add_argument("--shutdown-timeout", dest="shutdown_timeout", metavar="DURATION", help="Graceful shutdown timeout (default: 5s).")

    return parser


def _extract_env_values(env: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for field, env_name in ENV_FIELD_MAP.items():
        if env_name in env:
            values[field] = env[env_name]
    return values


def _load_config_file(path_value: str | Path | None) -> dict[str, Any]:
    if not path_value:
        return {}
    path = _parse_path(path_value, field="config_file")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file is not valid JSON: {path}") from exc
    if not isinstance(data, dict):
        raise ConfigError("Config file must contain a JSON object")
    result: dict[str, Any] = {k: v for k, v in data.items() if k in DEFAULT_VALUES}
    result["config_file"] = str(path)
    return result


def _merge_layer(base: MutableMapping[str, Any], overrides: Mapping[str, Any]) -> None:
    for key, value in overrides.items():
        if value is None:
            continue
        base[key] = value


def _normalize_values(values: Mapping[str, Any], config_path_value: str | Path | None) -> Config:
    storage_dir = _parse_path(values["storage_dir"], field="storage_dir")

    use_db = _parse_bool(values.get("use_db"), default=DEFAULT_VALUES["use_db"])
    database_url_value = values.get("database_url")
    database_url = str(database_url_value).strip() if database_url_value is not None else None
    if not database_url:
        database_url = None
    if use_db and database_url is None:
        raise ConfigError("use_db requires database_url to be set")

    enable_stdio = _parse_bool(values.get("enable_stdio"), default=DEFAULT_VALUES["enable_stdio"])
    enable_http = _parse_bool(values.get("enable_http"), default=DEFAULT_VALUES["enable_http"])
    enable_sse = _parse_bool(values.get("enable_sse"), default=DEFAULT_VALUES["enable_sse"])
    enable_metrics = _parse_bool(values.get("enable_metrics"), default=DEFAULT_VALUES["enable_metrics"])
    enable_admin_api = _parse_bool(values.get("enable_admin_api"), default=DEFAULT_VALUES["enable_admin_api"])
    if enable_metrics and not enable_http:
        raise ConfigError("enable_metrics requires enable_http to be true")

    http_host = str(values.get("http_host", DEFAULT_VALUES["http_host"]))
    http_port = _parse_int(values.get("http_port", DEFAULT_VALUES["http_port"]), field="http_port", minimum=0, maximum=65535)

    http_socket_path = _parse_optional_path(values.get("http_socket_path"), field="http_socket_path")

    http_path = str(values.get("http_path", DEFAULT_VALUES["http_path"]))
    sse_path = str(values.get("sse_path", DEFAULT_VALUES["sse_path"]))
    metrics_path = str(values.get("metrics_path", DEFAULT_VALUES["metrics_path"]))
    admin_path = str(values.get("admin_path", DEFAULT_VALUES["admin_path"]))

    paths = [http_path, sse_path, metrics_path, admin_path]
    if len(set(paths)) != len(paths):
        raise ConfigError("http_path, sse_path, metrics_path and admin_path must be distinct")

    registry_staleness = _parse_duration(
        values.get("registry_staleness", DEFAULT_VALUES["registry_staleness"]),
        default_unit="s",
        field="registry_staleness",
    )
    api_timeout = _parse_duration(values.get("api_timeout", DEFAULT_VALUES["api_timeout"]), default_unit="s", field="api_timeout")
    script_timeout = _parse_duration(
        values.get("script_timeout", DEFAULT_VALUES["script_timeout"]),
        default_unit="s",
        field="script_timeout",
    )
    shutdown_timeout = _parse_duration(values.get("shutdown_timeout", DEFAULT_VALUES["shutdown_timeout"]), default_unit="s", field="shutdown_timeout")

    config_file_path = _parse_optional_path(config_path_value, field="config_file")

    return Config(
        storage_dir=storage_dir,
        use_db=use_db,
        database_url=database_url,
        enable_stdio=enable_stdio,
        enable_http=enable_http,
        enable_sse=enable_sse,
        enable_metrics=enable_metrics,
        enable_admin_api=enable_admin_api,
        http_host=http_host,
        http_port=http_port,
        http_socket_path=http_socket_path,
        http_path=http_path,
        sse_path=sse_path,
        metrics_path=metrics_path,
        admin_path=admin_path,
        registry_staleness=registry_staleness,
        api_timeout=api_timeout,
        script_timeout=script_timeout,
        shutdown_timeout=shutdown_timeout,
        config_file=config_file_path,
    )


def _maybe_write_config_file(config: Config) -> None:
    path = config.config_file
    if path is None:
        return

    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        return

    payload = _serialize_config(config)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")


def _serialize_config(config: Config) -> dict[str, Any]:
    # database_url may embed credentials and is never written back to disk.
    return {
        "config_file": str(config.config_file) if config.config_file else None,
        "storage_dir": str(config.storage_dir),
        "use_db": config.use_db,
        "enable_stdio": config.enable_stdio,
        "enable_http": config.enable_http,
        "enable_sse": config.enable_sse,
        "enable_metrics": config.enable_metrics,
        "enable_admin_api": config.enable_admin_api,
        "http_host": config.http_host,
        "http_port": config.http_port,
        "http_socket_path": str(config.http_socket_path) if config.http_socket_path else None,
        "http_path": config.http_path,
        "sse_path": config.sse_path,
        "metrics_path": config.metrics_path,
        "admin_path": config.admin_path,
        "registry_staleness": _format_duration(config.registry_staleness, preferred_unit="s"),
        "api_timeout": _format_duration(config.api_timeout, preferred_unit="s"),
        "script_timeout": _format_duration(config.script_timeout, preferred_unit="s"),
        "shutdown_timeout": _format_duration(config.shutdown_timeout, preferred_unit="s"),
    }


def _format_duration(duration: timedelta, *, preferred_unit: str) -> str:
    total_seconds = int(duration.total_seconds())
    factor = T_DURATION_UNITS.get(preferred_unit, 1)
    if factor and total_seconds % factor == 0:
        return f"{total_seconds // factor}{preferred_unit}"
    return f"{total_seconds}s"


def _parse_bool(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in BOOL_TRUE:
            return True
        if lowered in BOOL_FALSE:
            return False
    raise ConfigError(f"Invalid boolean value: {value!r}")


def _parse_int(value: Any, *, field: str, minimum: int | None = None, maximum: int | None = None) -> int:
    try:
        if isinstance(value, (int, float)):
            int_value = int(value)
        else:
            int_value = int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid integer for {field}: {value!r}") from exc

    if minimum is not None and int_value < minimum:
        raise ConfigError(f"{field} must be >= {minimum}")
    if maximum is not None and int_value > maximum:
        raise ConfigError(f"{field} must be <= {maximum}")
    return int_value


def _parse_duration(value: Any, *, default_unit: str, field: str) -> timedelta:
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
        if seconds < 0:
            raise ConfigError(f"{field} must be positive")
        return timedelta(seconds=seconds)
    if not isinstance(value, str):
        raise ConfigError(f"Invalid duration for {field}: {value!r}")

    stripped = value.strip()
    if not stripped:
        raise ConfigError(f"{field} may not be empty")

    unit = default_unit
    suffix = stripped[-1]
    number_part = stripped
    if suffix.lower() in T_DURATION_UNITS:
        unit = suffix.lower()
        number_part = stripped[:-1]
    if not number_part or not number_part.isdigit():
        raise ConfigError(f"{field} must be a non-negative integer optionally suffixed with s, m, or h")
    seconds = int(number_part) * T_DURATION_UNITS[unit]
    return timedelta(seconds=seconds)


def _parse_path(value: Any, *, field: str) -> Path:
    if isinstance(value, Path):
        return value.expanduser().resolve()
    if not isinstance(value, str):
        raise ConfigError(f"Invalid path for {field}: {value!r}")
    stripped = value.strip()
    if not stripped:
        raise ConfigError(f"{field} may not be empty")
    return Path(stripped).expanduser().resolve()


def _parse_optional_path(value: Any, *, field: str) -> Path | None:
    if value in (None, ""):
        return None
    return _parse_path(value, field=field)
