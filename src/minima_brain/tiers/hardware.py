"""
Host memory checks used before loading a large model tier.
"""

import logging
from typing import Any, Dict

import psutil

logger = logging.getLogger(__name__)


def available_memory_mb() -> float:
    """Memory available to new allocations, in MB."""
    return psutil.virtual_memory().available / 1024 / 1024


def has_memory_for(required_mb: float) -> bool:
    available = available_memory_mb()
    if available < required_mb:
        logger.warning(
            f"Insufficient memory: {available:.0f}MB available, "
            f"{required_mb:.0f}MB required"
        )
        return False
    return True


def get_memory_info() -> Dict[str, Any]:
    """Snapshot of host and process memory usage."""
    vm = psutil.virtual_memory()
    process = psutil.Process()
    return {
        "total_mb": vm.total / 1024 / 1024,
        "available_mb": vm.available / 1024 / 1024,
        "process_rss_mb": process.memory_info().rss / 1024 / 1024,
    }
