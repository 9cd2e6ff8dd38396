"""
Configuration Loading

Defaults merged with an optional YAML file. Unreadable files are logged and
ignored so a bad config never prevents startup.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are Minima, a private assistant that runs entirely on this device. "
    "Answer concisely."
)

DEFAULT_CONFIG: Dict[str, Any] = {
    "system_prompt": DEFAULT_SYSTEM_PROMPT,
    "implementation": "fake",
    "device": "auto",
    "seed": 1234,
    "prefix_cache": {
        "path": "~/.cache/minima/system_prompt.cache",
    },
    "context": {
        "max_context_tokens": 4096,
        "window_size": 3072,
        "compression_target": 512,
        "search_timeout": 2.0,
        "max_snippets": 3,
    },
    "scheduler": {
        "controller": "confidence",
        "min_lookahead": 1,
        "max_lookahead": 32,
        "initial_lookahead": 5,
        "tau": 0.95,
        "max_output_chars": 2000,
        "max_tokens": None,
        "draft_timeout": 10.0,
        "verify_timeout": 10.0,
        "max_consecutive_timeouts": 3,
    },
    "tiers": {
        "load_timeout": 120.0,
        "min_available_memory_mb": None,
        "scout_model": "Qwen/Qwen2.5-0.5B-Instruct",
        "sovereign_model": "Qwen/Qwen2.5-1.5B-Instruct",
    },
    "fake": {
        "reply": "This is a high-speed response from the on-device model.",
        "accuracy": 0.9,
        "draft_latency": 0.0,
        "verify_latency": 0.0,
        "scout_load_delay": 0.0,
        "sovereign_load_delay": 0.0,
    },
}


def merge_config(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge `overrides` into a copy of `base`."""
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from YAML file or use defaults.

    Args:
        config_path: Path to a YAML file (falls back to $MINIMA_CONFIG)

    Returns:
        Configuration dictionary
    """
    config_path = config_path or os.getenv("MINIMA_CONFIG")
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path and Path(config_path).exists():
        try:
            with open(config_path, "r") as f:
                overrides = yaml.safe_load(f) or {}
            if not isinstance(overrides, dict):
                raise ValueError("top-level YAML value must be a mapping")
            config = merge_config(config, overrides)
            logger.info(f"Loaded configuration from {config_path}")
        except (OSError, yaml.YAMLError, ValueError) as e:
            logger.warning(f"Failed to load config from {config_path}: {e}")
            logger.info("Using default configuration")
    elif config_path:
        logger.warning(f"Config file not found: {config_path}, using defaults")

    return config
