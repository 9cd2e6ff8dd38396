"""
Deterministic seeding for reproducible runs.

Seeds Python, NumPy and PyTorch so fake backends and summary pooling behave
identically across runs.
"""

import os
import random
from typing import Optional

import numpy as np
import torch

DEFAULT_SEED = 1234


def set_deterministic_mode(seed: Optional[int] = None) -> int:
    """
    Seed all random number generators.

    Args:
        seed: Random seed (default: 1234 if None)

    Returns:
        The seed that was applied
    """
    if seed is None:
        seed = DEFAULT_SEED

    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)

    os.environ["PYTHONHASHSEED"] = str(seed)
    return seed


def ensure_deterministic() -> None:
    """
    Check environment flag and set deterministic mode if requested.

    Reads MINIMA_DETERMINISTIC environment variable.
    """
    env_value = os.getenv("MINIMA_DETERMINISTIC", "0").lower()
    if env_value in ("1", "true", "yes"):
        set_deterministic_mode()
