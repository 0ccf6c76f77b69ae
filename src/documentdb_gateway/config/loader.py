from __future__ import annotations

import json
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from documentdb_gateway.exceptions import ConfigError

from .models import TelemetryOptions

TELEMETRY_SECTION = "TelemetryOptions"

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")
_SUPPORTED_SUFFIXES = {".json", ".yaml", ".yml"}


def load_setup_configuration(path: str | Path) -> TelemetryOptions | None:
    """Load a setup configuration file and return its telemetry section.

    Returns None when the file has no ``TelemetryOptions`` section, so the
    resolver falls back to the environment for every field.
    """
    data = _load_config_mapping(path)
    return _telemetry_section(data)


def load_setup_configuration_with_overrides(
    base_path: str | Path, *override_paths: str | Path
) -> TelemetryOptions | None:
    """Load a base setup file and deep-merge one or more override files over it."""
    merged = _load_config_mapping(base_path)
    for override in override_paths:
        overlay = _load_config_mapping(override)
        merged = _merge_mapping(merged, overlay)
    return _telemetry_section(merged)


def _telemetry_section(data: Mapping[str, Any]) -> TelemetryOptions | None:
    section = data.get(TELEMETRY_SECTION)
    if section is None:
        return None
    if not isinstance(section, Mapping):
        raise ConfigError(message=f"{TELEMETRY_SECTION} section must be a mapping")
    return TelemetryOptions.from_dict(section)


def _load_config_mapping(path: str | Path) -> dict[str, Any]:
    config_path = Path(path).expanduser()
    suffix = config_path.suffix.lower()
    if suffix not in _SUPPORTED_SUFFIXES:
        raise ConfigError(message=f"Unsupported config file type: {config_path.suffix}")
    if not config_path.is_file():
        raise ConfigError(message=f"Config file not found: {config_path}")
    try:
        content = config_path.read_text(encoding="utf-8")
        if suffix == ".json":
            data = json.loads(content) if content.strip() else {}
        else:
            data = _get_yaml_module().safe_load(content) or {}
    except ConfigError:
        raise
    except Exception as exc:
        raise ConfigError(message=f"Failed to load config file: {config_path}", cause=exc) from exc
    if not isinstance(data, Mapping):
        raise ConfigError(message="Configuration must be a mapping")
    return _expand_env_in_data(dict(data))


def _expand_env_in_data(value: Any) -> Any:
    if isinstance(value, str):
        return _expand_env_value(value)
    if isinstance(value, Mapping):
        return {key: _expand_env_in_data(val) for key, val in value.items()}
    if isinstance(value, list):
        return [_expand_env_in_data(item) for item in value]
    return value


def _expand_env_value(value: str) -> str:
    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        default = match.group(2)
        env_value = os.getenv(name)
        if env_value is None or env_value == "":
            if default is None:
                raise ConfigError(
                    message=f"Environment variable '{name}' is not set and no default provided"
                )
            return default
        return env_value

    return _ENV_PATTERN.sub(replace, value)


def _merge_mapping(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], Mapping) and isinstance(value, Mapping):
            merged[key] = _merge_mapping(merged[key], value)
        else:
            merged[key] = value
    return merged


def _get_yaml_module() -> Any:
    try:
        import yaml
    except ImportError as exc:  # pragma: no cover - dependency error
        raise ConfigError(message="PyYAML is required to parse YAML config files.") from exc
    return yaml
