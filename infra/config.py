"""
config.py - Configuration loader for hunting settings and rule/config files
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Any, Optional

import yaml

import constants
from infra.errors import ConfigError, ErrorCodes

logger = logging.getLogger(__name__)


# === File Loaders ===

def load_json_file(path: str) -> Any:
    """Load a JSON file. Returns None if the file does not exist."""
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r", encoding=constants.ENCODING_UTF8) as f:
            return json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ConfigError(f"Failed to parse JSON file {path}: {e}", ErrorCodes.CONFIG_UNPARSEABLE) from e
    except OSError as e:
        raise ConfigError(f"Failed to read JSON file {path}: {e}", ErrorCodes.CONFIG_UNPARSEABLE) from e


def load_yaml_file(path: str) -> Any:
    """Load a YAML file. Returns None if the file does not exist."""
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r", encoding=constants.ENCODING_UTF8) as f:
            return yaml.safe_load(f)
    except (yaml.YAMLError, UnicodeDecodeError) as e:
        raise ConfigError(f"Failed to parse YAML file {path}: {e}", ErrorCodes.CONFIG_UNPARSEABLE) from e
    except OSError as e:
        raise ConfigError(f"Failed to read YAML file {path}: {e}", ErrorCodes.CONFIG_UNPARSEABLE) from e


def load_structured_file(path: str) -> Any:
    """Dispatch on extension: .json via json, everything else via YAML."""
    if path.lower().endswith(".json"):
        return load_json_file(path)
    return load_yaml_file(path)


# === Settings ===

def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}", ErrorCodes.CONFIG_INVALID_VALUE) from e


@dataclass(frozen=True)
class Settings:
    # Correlation
    correlation_window_seconds: int = constants.CORRELATION_WINDOW_SECONDS
    min_chain_events: int = constants.MIN_CHAIN_EVENTS
    max_tree_depth: int = constants.MAX_PROCESS_TREE_DEPTH

    # Matching (0 disables sharding)
    batch_size: int = 0

    # Rules / logging
    rules_path: str = ""
    log_level: str = "INFO"
    log_dir: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            correlation_window_seconds=_env_int(constants.ENV_WINDOW, constants.CORRELATION_WINDOW_SECONDS),
            min_chain_events=_env_int(constants.ENV_MIN_CHAIN_EVENTS, constants.MIN_CHAIN_EVENTS),
            max_tree_depth=_env_int(constants.ENV_MAX_TREE_DEPTH, constants.MAX_PROCESS_TREE_DEPTH),
            batch_size=_env_int(constants.ENV_BATCH_SIZE, 0),
            rules_path=os.getenv(constants.ENV_RULES_PATH, ""),
            log_level=os.getenv(constants.ENV_LOG_LEVEL, "INFO").upper(),
            log_dir=os.getenv(constants.ENV_LOG_DIR, ""),
        )


def load_settings(path: Optional[str] = None) -> Settings:
    """Settings from the environment, overridden by keys in an optional YAML/JSON file."""
    settings = Settings.from_env()
    if not path:
        return settings

    overrides = load_structured_file(path)
    if overrides is None:
        logger.warning("Settings file %s not found, using environment defaults", path)
        return settings
    if not isinstance(overrides, dict):
        raise ConfigError(f"Settings file {path} must contain a mapping", ErrorCodes.CONFIG_INVALID_VALUE)

    known = {f.name: f.type for f in fields(Settings)}
    unknown = sorted(set(overrides) - set(known))
    if unknown:
        logger.warning("Ignoring unknown settings keys: %s", ", ".join(unknown))

    values = {}
    for key, value in overrides.items():
        if key not in known:
            continue
        default = getattr(settings, key)
        try:
            values[key] = type(default)(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for {key}: {value!r}", ErrorCodes.CONFIG_INVALID_VALUE) from e
    return replace(settings, **values)
