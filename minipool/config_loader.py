"""
YAML configuration files.

``config/minipool.yaml`` carries a ``minipool:`` section. Setting
``MINIPOOL_ENV=prod`` layers ``config/minipool.prod.yaml`` over it, merging
nested mappings key by key. A missing file contributes nothing.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import yaml

logger = structlog.get_logger(__name__)


def overlay_path(base_path: Path, env_name: str) -> Path:
    return base_path.with_name(f"{base_path.stem}.{env_name}{base_path.suffix}")


def read_mapping(path: Path) -> Optional[Dict[str, Any]]:
    """Parsed YAML mapping at ``path``, or None when the file does not exist."""
    if not path.is_file():
        return None
    with path.open(encoding="utf-8") as handle:
        loaded = yaml.safe_load(handle)
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(loaded).__name__}")
    return loaded


def deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            value = deep_merge(current, value)
        merged[key] = value
    return merged


def load_config(base_path: Path, env: Optional[str] = None) -> Dict[str, Any]:
    """Load ``base_path`` and apply the MINIPOOL_ENV (or ``env``) overlay."""
    config = read_mapping(base_path) or {}
    env_name = (os.getenv("MINIPOOL_ENV", "") if env is None else env).strip()
    if not env_name:
        return config

    path = overlay_path(base_path, env_name)
    overlay = read_mapping(path)
    if overlay is None:
        logger.warning("config_overlay_missing", env=env_name, path=str(path))
        return config
    logger.info("config_overlay_applied", env=env_name, path=str(path), sections=sorted(overlay))
    return deep_merge(config, overlay)
