"""
Context Module

Bounded conversation context with summary compression and retrieval.
"""

from .history import InMemoryHistory, Message
from .reducers import MeanPoolReducer, SummaryReducer
from .window import ContextSnapshot, ContextWindow

__all__ = [
    "ContextWindow",
    "ContextSnapshot",
    "SummaryReducer",
    "MeanPoolReducer",
    "InMemoryHistory",
    "Message",
]
