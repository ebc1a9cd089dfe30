"""Configuration loading for the assistant server.

Layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable ANUGRAH_CONFIG
3. Fallback to "config.yaml" in the working directory

Environment variables with prefix ``ANUGRAH__`` override individual keys
(e.g., ANUGRAH__GEMINI__MODEL=gemini-2.5-pro).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "ANUGRAH__"
CONFIG_ENV = "ANUGRAH_CONFIG"
DEFAULT_PATH = "config.yaml"

DEFAULTS: Dict[str, Any] = {
    "server": {"cors_origins": ["*"]},
    "gemini": {"model": "gemini-2.5-flash", "timeout": 60.0, "max_retries": 3, "retry_delay": 0.75},
    "chat": {"max_sessions": 256},
    "logging": {"level": "INFO"},
}


def _coerce(value: str) -> Any:
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        return value


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix ANUGRAH__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., ANUGRAH__GEMINI__MODEL -> cfg["gemini"]["model"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        sub[parts[-1]] = _coerce(value)
    return cfg


def _merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration merged over the built-in defaults.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``ANUGRAH_CONFIG`` is consulted. As a last
        resort ``config.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Parsed configuration dictionary with environment overrides applied.
    """
    if path is None:
        path = os.environ.get(CONFIG_ENV, DEFAULT_PATH)

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("config file not found at %s; using defaults", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}") from e

    if not isinstance(cfg, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(DEFAULTS, cfg))


def configure_logging(cfg: Dict[str, Any]) -> None:
    """Apply ``logging.level`` from config to the root logger."""
    level_name = str((cfg.get("logging") or {}).get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger().setLevel(level)
