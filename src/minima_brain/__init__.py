"""
Minima Brain - On-Device Inference Control Core

This package coordinates a small always-resident model (Scout) and a larger
on-demand model (Sovereign) for private, on-device conversation. It manages
the tokenized system prompt cache, a bounded rolling context with summary
compression and speculative decoding with an adaptive lookahead.

Main modules:
- cache: System prompt prefix cache with durable persistence
- context: Bounded context window, summary reducers and history search
- tiers: Model tier selection and single-flight loading
- scheduler: Speculative draft -> verify loop
- specdec: Backend interfaces, lookahead controllers and backends
- orchestrator: Per-turn control flow
"""

from .errors import ConfigError, LoadFailure, MinimaError, PersistenceFailure
from .orchestrator import InferenceOrchestrator, TurnResult, build_orchestrator

__version__ = "0.1.0"
__author__ = "Minima Team"

__all__ = [
    "InferenceOrchestrator",
    "TurnResult",
    "build_orchestrator",
    "MinimaError",
    "ConfigError",
    "LoadFailure",
    "PersistenceFailure",
]
