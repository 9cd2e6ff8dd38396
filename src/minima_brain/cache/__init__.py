"""
Prefix Cache Module

Memoizes the tokenized system prompt in memory and in a durable store.
"""

from .prefix_cache import PrefixCache, PromptCacheEntry, fingerprint_text
from .stores import DurableStore, FileStore, MemoryStore

__all__ = [
    "PrefixCache",
    "PromptCacheEntry",
    "fingerprint_text",
    "DurableStore",
    "FileStore",
    "MemoryStore",
]
