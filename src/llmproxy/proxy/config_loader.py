from __future__ import annotations

import os
import tempfile
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Callable

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .config import ProxyConfig

CONFIG_FILE_ENV = "LLM_PROXY_CONFIG_FILE"
ENV_PREFIX = "LLM_PROXY_"
DEFAULT_CONFIG_PATH = Path("configs/llm_proxy.toml")

_SECTION_MAP: dict[str, list[str]] = {
    "server": [
        "host",
        "start_port",
        "max_port",
        "bind_retries",
        "startup_timeout_s",
        "drain_timeout_s",
    ],
    "timeouts": ["connect_timeout_ms", "read_timeout_ms"],
    "lifecycle": ["stop_missing_ok", "restart_on_update", "autostart_default"],
    "storage": ["store_path"],
    "logging": ["log_path", "max_log_bytes", "log_requests", "log_level"],
}

# Env names that are not config fields even though they share the prefix.
_NON_FIELD_ENV = {CONFIG_FILE_ENV, "LLM_PROXY_LOG_DIR"}


def _field_types() -> dict[str, Any]:
    return {f.name: f.type for f in fields(ProxyConfig)}


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _coerce_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return int(str(value))


def _coerce_float(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    return float(str(value))


def _coerce_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


_CASTERS: dict[Any, Callable[[Any], Any]] = {
    "bool": _coerce_bool,
    "int": _coerce_int,
    "float": _coerce_float,
    "str": _coerce_str,
}


def _coerce_value(field_type: Any, value: Any) -> Any:
    # Annotations are strings under ``from __future__ import annotations``.
    type_name = field_type if isinstance(field_type, str) else getattr(
        field_type, "__name__", str(field_type)
    )
    caster = _CASTERS.get(type_name)
    return caster(value) if caster else value


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    out: dict[str, Any] = {}
    for section, keys in _SECTION_MAP.items():
        section_values = data.get(section, {})
        if not isinstance(section_values, dict):
            continue
        for key in keys:
            if key in section_values:
                out[key] = section_values[key]
    return out


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """Overlay ``LLM_PROXY_<FIELD>`` variables; unparsable values are ignored."""

    field_types = _field_types()
    for key in config:
        raw = os.environ.get(f"{ENV_PREFIX}{key.upper()}")
        if raw is None:
            continue
        try:
            config[key] = _coerce_value(field_types.get(key), raw)
        except ValueError:
            continue
    return config


def _default_config_dict() -> dict[str, Any]:
    defaults = ProxyConfig()
    data = asdict(defaults)
    data.pop("config_file_path", None)
    return data


def _normalize(config: dict[str, Any]) -> dict[str, Any]:
    field_types = _field_types()
    normalized = {}
    for key, default_value in _default_config_dict().items():
        value = config.get(key, default_value)
        field_type = field_types.get(key)
        try:
            normalized[key] = _coerce_value(field_type, value)
        except (TypeError, ValueError):
            normalized[key] = default_value
    return normalized


def _config_path() -> Path:
    return Path(os.environ.get(CONFIG_FILE_ENV, DEFAULT_CONFIG_PATH)).expanduser()


def _ensure_config_file(path: Path) -> None:
    if path.exists():
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    write_config(ProxyConfig(), path)


def load_file_config() -> dict[str, Any]:
    path = _config_path()
    _ensure_config_file(path)
    base = _default_config_dict()
    base.update(_read_config_file(path))
    return _normalize(base)


def load_proxy_config() -> ProxyConfig:
    candidate = _config_path()
    _ensure_config_file(candidate)
    file_values = _read_config_file(candidate)
    normalized = _normalize(file_values)
    normalized = _apply_env_overrides(normalized)
    cfg = ProxyConfig(**normalized)
    cfg.config_file_path = str(candidate)
    return cfg


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _ordered_sections(config: ProxyConfig) -> dict[str, dict[str, Any]]:
    config_dict = asdict(config)
    config_dict.pop("config_file_path", None)
    sections: dict[str, dict[str, Any]] = {}
    for section, keys in _SECTION_MAP.items():
        section_values = {}
        for key in keys:
            if key in config_dict:
                section_values[key] = config_dict[key]
        if section_values:
            sections[section] = section_values
    return sections


def write_config(config: ProxyConfig, path: Path | None = None) -> None:
    path = Path(path or _config_path()).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    sections = _ordered_sections(config)
    lines: list[str] = [
        "# LLM alias proxy configuration.",
        "# Generated automatically. Edit values as needed.",
    ]
    for section, values in sections.items():
        lines.append("")
        lines.append(f"[{section}]")
        for key, value in values.items():
            lines.append(f"{key} = {_format_value(value)}")

    tmp_fd, tmp_path = tempfile.mkstemp(
        prefix="llm_proxy_config_", suffix=".toml", dir=str(path.parent)
    )
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write("\n".join(lines) + "\n")
        Path(tmp_path).replace(path)
    finally:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass


def update_config_file(updates: dict[str, Any]) -> ProxyConfig:
    path = _config_path()
    _ensure_config_file(path)
    base = _default_config_dict()
    base.update(_read_config_file(path))

    unknown = [key for key in updates if key not in base]
    if unknown:
        raise KeyError(f"Unknown configuration field(s): {', '.join(sorted(unknown))}")

    base.update(updates)
    normalized = _normalize(base)
    file_config = ProxyConfig(**normalized)
    file_config.config_file_path = str(path)
    write_config(file_config, path)
    return load_proxy_config()


def list_env_overrides() -> dict[str, str]:
    return {
        key: value
        for key, value in os.environ.items()
        if key.startswith(ENV_PREFIX) and key not in _NON_FIELD_ENV
    }
