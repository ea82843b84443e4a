"""Configuration loading utilities for the messaging server.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable DM_SERVER_CONFIG
3. Fallback to "config/default.yaml"

Whatever is loaded is merged over :data:`DEFAULTS`, so partial files are fine.
It also supports overrides from environment variables with prefix
``DM_SERVER__`` (e.g., DM_SERVER__STORAGE__MAX_MESSAGES=200).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "server": {
        "cors_origins": ["*"],
        "auth_timeout_seconds": 10.0,
        "outbox_size": 256,
    },
    "storage": {
        "backend": "disk",
        "data_dir": "data/conversations",
        "max_messages": 1000,
        "use_jsonl": False,
    },
    "directory": {
        "path": None,
        "seed": [],
    },
    "auth": {
        "mode": "directory",
        "tokens": {},
        "jwt_secret": None,
        "jwt_algorithm": "HS256",
    },
    "chat": {
        "preview_chars": 80,
        "max_text_chars": 4000,
        "typing_ttl_seconds": 10.0,
    },
    "logging": {
        "level": "INFO",
        "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    },
}


def merge_config(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merge_config(base[key], value)
        else:
            base[key] = value
    return base


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix DM_SERVER__."""
    prefix = "DM_SERVER__"
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        # e.g., DM_SERVER__STORAGE__DATA_DIR -> cfg["storage"]["data_dir"]
        parts = key[len(prefix):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        leaf = parts[-1]
        # Attempt to parse simple types (bool, int, float)
        if value.lower() in {"true", "false"}:
            sub[leaf] = value.lower() == "true"
        else:
            try:
                if "." in value:
                    sub[leaf] = float(value)
                else:
                    sub[leaf] = int(value)
            except ValueError:
                sub[leaf] = value
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the messaging server.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``DM_SERVER_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Defaults merged with the parsed file, environment overrides applied.
    """
    if path is None:
        path = os.environ.get("DM_SERVER_CONFIG", "config/default.yaml")

    cfg = copy.deepcopy(DEFAULTS)
    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(cfg)

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(merge_config(cfg, loaded))


def configure_logging(cfg: Dict[str, Any]) -> None:
    log_cfg = cfg.get("logging", {})
    level = str(log_cfg.get("level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=log_cfg.get("format") or DEFAULTS["logging"]["format"],
    )
