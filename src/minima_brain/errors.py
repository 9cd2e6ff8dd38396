"""
Error Taxonomy for the Inference Control Core

Only LoadFailure (explicit tier requests) and call-level cancellation are meant
to reach callers. The remaining errors are raised at component seams and
absorbed by the component that owns the failing resource.
"""

from typing import Optional


class MinimaError(Exception):
    """Base class for all inference-core errors."""


class ConfigError(MinimaError, ValueError):
    """Invalid configuration value."""


class LoadFailure(MinimaError):
    """A model tier failed to become resident."""

    def __init__(self, tier: str, reason: Optional[str] = None):
        self.tier = tier
        self.reason = reason
        message = f"Failed to load {tier} tier"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class GenerationTimeout(MinimaError):
    """A draft or verify call exceeded its deadline."""

    def __init__(self, phase: str, timeout: float):
        self.phase = phase
        self.timeout = timeout
        super().__init__(f"{phase} call exceeded {timeout:.3f}s deadline")


class PersistenceFailure(MinimaError):
    """Durable store read, write or delete failed."""
