"""
Scheduler Module - Speculative Decoding Loop

Drives the draft -> verify loop against the resolved model tier and adapts the
per-round lookahead from verifier feedback.
"""

from .speculative_scheduler import (
    GenerationResult,
    SpeculationState,
    SpeculativeScheduler,
    StopReason,
    create_speculative_scheduler,
)

__all__ = [
    "SpeculativeScheduler",
    "SpeculationState",
    "GenerationResult",
    "StopReason",
    "create_speculative_scheduler",
]
