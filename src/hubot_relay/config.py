"""Configuration loading utilities for the relay.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable HUBOT_RELAY_CONFIG
3. Fallback to "config/default.yaml"
4. Built-in defaults when no file exists

Well-known environment variables (``OPENAI_API_KEY``, ``FIREBASE_API_KEY``,
``FIREBASE_DATABASE_URL``, ``PORT`` ...) are mapped onto the tree, and any key
can be overridden with the prefix ``HUBOT_RELAY__`` (e.g.,
HUBOT_RELAY__DEDUP__RETENTION_SECONDS=600). A ``.env`` file in the working
directory is loaded first.
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml
from dotenv import load_dotenv

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "server": {"host": "0.0.0.0", "port": 8080, "cors_origins": ["*"]},
    "completion": {
        "api_key": None,
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4o-mini",
        "max_tokens": 1024,
        "temperature": 0.7,
        "timeout_seconds": 60.0,
    },
    "identity": {"api_key": None},
    "database": {"url": None, "auth_token": None, "root": "conversations", "timeout_seconds": 10.0},
    "dedup": {"retention_seconds": 1800, "max_entries": 10000},
    "prompts": {"system_prompt_file": None, "knowledge_base_file": None},
    "logging": {"level": "INFO"},
}

# env var -> path in the config tree
ENV_MAP = {
    "OPENAI_API_KEY": ("completion", "api_key"),
    "OPENAI_BASE_URL": ("completion", "base_url"),
    "OPENAI_MODEL": ("completion", "model"),
    "FIREBASE_API_KEY": ("identity", "api_key"),
    "FIREBASE_DATABASE_URL": ("database", "url"),
    "FIREBASE_DATABASE_SECRET": ("database", "auth_token"),
    "PORT": ("server", "port"),
    "LOG_LEVEL": ("logging", "level"),
}

ENV_PREFIX = "HUBOT_RELAY__"


def _parse_scalar(value: str) -> Any:
    # Attempt to parse simple types (bool, int, float)
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        return value


def _set_path(cfg: Dict[str, Any], parts: tuple, value: Any) -> None:
    sub = cfg
    for p in parts[:-1]:
        if p not in sub or not isinstance(sub[p], dict):
            sub[p] = {}
        sub = sub[p]
    sub[parts[-1]] = value


def _merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply well-known env vars, then generic HUBOT_RELAY__ overrides."""
    for var, parts in ENV_MAP.items():
        value = os.environ.get(var)
        if value:
            _set_path(cfg, parts, _parse_scalar(value) if var == "PORT" else value)

    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., HUBOT_RELAY__DEDUP__RETENTION_SECONDS -> cfg["dedup"]["retention_seconds"]
        parts = tuple(key[len(ENV_PREFIX):].lower().split("__"))
        _set_path(cfg, parts, _parse_scalar(value))
    return cfg


def load_config(path: str | None = None, *, dotenv: bool = True) -> Dict[str, Any]:
    """Load YAML configuration merged over the built-in defaults.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``HUBOT_RELAY_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.
    dotenv : bool
        Load a ``.env`` file into the environment first.

    Returns
    -------
    Dict[str, Any]
        Configuration dictionary with environment overrides applied.
    """
    if dotenv:
        load_dotenv()

    if path is None:
        path = os.environ.get("HUBOT_RELAY_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse config file {path_obj}: {e}") from e

    if not isinstance(loaded, dict):
        raise ConfigError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(DEFAULTS, loaded))


def validate_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Refuse to start without a completion key; warn about optional services."""
    if not (cfg.get("completion") or {}).get("api_key"):
        raise ConfigError("OPENAI_API_KEY (completion.api_key) is required")
    if not (cfg.get("identity") or {}).get("api_key"):
        logger.warning("FIREBASE_API_KEY not set: bearer tokens will not be verified")
    if not (cfg.get("database") or {}).get("url"):
        logger.warning("FIREBASE_DATABASE_URL not set: conversations are kept in memory only")
    return cfg


def setup_logging(cfg: Dict[str, Any] | None = None) -> None:
    """Configure root logging from the ``logging`` section."""
    level = str(((cfg or {}).get("logging") or {}).get("level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
