# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

import logging
import os
from typing import Any, Dict, Tuple

import yaml

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure root logging from LOG_LEVEL unless a level is given."""
    resolved = (level or get_str_env("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, resolved, logging.INFO), format=_LOG_FORMAT)


def get_bool_env(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "y", "on"}


def get_str_env(name: str, default: str = "") -> str:
    val = os.getenv(name)
    return default if val is None else str(val).strip()


def get_int_env(name: str, default: int = 0) -> int:
    val = os.getenv(name)
    if val is None:
        return default
    try:
        return int(val.strip())
    except ValueError:
        logger.warning("Invalid integer value for %s: %s. Using default %s.", name, val, default)
        return default


def get_float_env(name: str, default: float = 0.0) -> float:
    val = os.getenv(name)
    if val is None:
        return default
    try:
        return float(val.strip())
    except ValueError:
        logger.warning("Invalid float value for %s: %s. Using default %s.", name, val, default)
        return default


def replace_env_vars(value: str) -> str:
    """Replace a `$NAME` value with the content of that environment variable."""
    if not isinstance(value, str):
        return value
    if value.startswith("$"):
        env_var = value[1:]
        return os.getenv(env_var, env_var)
    return value


def process_dict(config: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively process dictionary to replace environment variables."""
    if not config:
        return {}
    result: Dict[str, Any] = {}
    for key, value in config.items():
        if isinstance(value, dict):
            result[key] = process_dict(value)
        elif isinstance(value, list):
            result[key] = [process_dict(item) if isinstance(item, dict) else replace_env_vars(item) for item in value]
        elif isinstance(value, str):
            result[key] = replace_env_vars(value)
        else:
            result[key] = value
    return result


_config_cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}


def load_yaml_config(file_path: str) -> Dict[str, Any]:
    """Load and process YAML configuration file, cached until the file changes."""
    if not os.path.exists(file_path):
        return {}

    mtime = os.path.getmtime(file_path)
    cached = _config_cache.get(file_path)
    if cached is not None and cached[0] == mtime:
        return cached[1]

    with open(file_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f)
    processed_config = process_dict(config or {})

    _config_cache[file_path] = (mtime, processed_config)
    return processed_config
