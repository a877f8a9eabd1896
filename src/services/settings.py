"""
Engine configuration — sweep intervals, retention, presets.

Stored as JSON in config/engine.json. Missing keys fall back to
DEFAULT_CONFIG, and a corrupt file falls back to the defaults entirely.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "engine.json"

DEFAULT_CONFIG = {
    "session_sweep_interval_s": 10,
    "group_sweep_interval_s": 60,
    "recycle_retention_days": 30,
    "query_cache_ttl_s": 30,
    "default_interrupt_reason": "Interrupted by user",
    "duration_presets": [5, 10, 15, 25, 30, 45, 60, 90],
    "auxiliary_duration_presets": [5, 10, 15, 20, 30, 45, 60],
}


def load_config(path: Optional[Path] = None) -> dict:
    path = path or CONFIG_PATH
    if path.exists():
        try:
            with open(path) as f:
                cfg = json.load(f)
            if not isinstance(cfg, dict):
                raise ValueError("engine config must be a JSON object")
            merged = DEFAULT_CONFIG.copy()
            merged.update(cfg)
            return merged
        except (ValueError, OSError):
            logger.warning("Bad engine config at %s, using defaults.", path)
    return DEFAULT_CONFIG.copy()


def save_config(config: dict, path: Optional[Path] = None) -> None:
    path = path or CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(config, f, indent=2)
