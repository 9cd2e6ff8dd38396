"""
Prefix Cache for the System Prompt

Memoizes the tokenized system prompt so it is never re-tokenized across turns
or process restarts. Entries are tagged with a content fingerprint (sha256 of
the prompt text); a changed prompt invalidates both the in-memory entry and
the persisted copy.

Persisted blob layout:
    b"MPC1" | sha256 digest (32 bytes) | little-endian int32 token ids
"""

import asyncio
import hashlib
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

import numpy as np

from .stores import DurableStore, MemoryStore

logger = logging.getLogger(__name__)

BLOB_MAGIC = b"MPC1"
DIGEST_SIZE = 32
TOKEN_DTYPE = np.dtype("<i4")

TokenizeFn = Callable[[str], Union[List[int], Awaitable[List[int]]]]


def fingerprint_text(text: str) -> str:
    """Stable content fingerprint of a prompt."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def encode_entry(fingerprint: str, tokens: List[int]) -> bytes:
    """Serialize a fingerprint-tagged token sequence."""
    digest = bytes.fromhex(fingerprint)
    if len(digest) != DIGEST_SIZE:
        raise ValueError(
            f"Fingerprint must be {DIGEST_SIZE} bytes, got {len(digest)}"
        )
    payload = np.asarray(tokens, dtype=TOKEN_DTYPE).tobytes()
    return BLOB_MAGIC + digest + payload


def decode_entry(data: bytes) -> Tuple[str, List[int]]:
    """
    Parse a persisted blob.

    Raises:
        ValueError: If the blob is truncated or does not carry the expected magic
    """
    header_size = len(BLOB_MAGIC) + DIGEST_SIZE
    if len(data) < header_size or not data.startswith(BLOB_MAGIC):
        raise ValueError("Not a prefix cache blob")
    payload = data[header_size:]
    if len(payload) % TOKEN_DTYPE.itemsize:
        raise ValueError(f"Truncated token payload ({len(payload)} bytes)")
    fingerprint = data[len(BLOB_MAGIC) : header_size].hex()
    tokens = np.frombuffer(payload, dtype=TOKEN_DTYPE).tolist()
    return fingerprint, tokens


@dataclass
class PromptCacheEntry:
    """Tokenized system prompt owned by a PrefixCache."""

    fingerprint: str
    tokens: List[int] = field(default_factory=list)
    persisted: bool = False


class PrefixCache:
    """
    Single-owner cache of the tokenized system prompt.

    All mutation goes through an asyncio.Lock, so concurrent warm-ups and
    invalidations are applied one at a time. Reads never block.
    """

    def __init__(self, store: Optional[DurableStore] = None):
        """
        Initialize the prefix cache.

        Args:
            store: Durable store for the persisted entry (in-memory if None)
        """
        self._store = store if store is not None else MemoryStore()
        self._entry: Optional[PromptCacheEntry] = None
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

        self.cache_hits = 0
        self.cache_misses = 0
        self.disk_hits = 0
        self.tokenizations = 0
        self.persistence_failures = 0

    @property
    def is_ready(self) -> bool:
        return self._entry is not None

    @property
    def fingerprint(self) -> Optional[str]:
        return self._entry.fingerprint if self._entry is not None else None

    @property
    def persisted(self) -> bool:
        return self._entry is not None and self._entry.persisted

    def warm_up(self, prompt_text: str, tokenize: TokenizeFn) -> asyncio.Task:
        """
        Start caching `prompt_text` in the background.

        Must be called from a running event loop. The returned task may be
        awaited by callers that need the tokens; it never raises.

        Args:
            prompt_text: System prompt text
            tokenize: Tokenizer function (sync or async); called at most once
                      per cache miss

        Returns:
            The background warm-up task
        """
        task = asyncio.get_running_loop().create_task(
            self._warm_up(prompt_text, tokenize)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def get_cached_tokens(self) -> Optional[List[int]]:
        """Return a copy of the cached tokens, or None before warm-up."""
        if self._entry is None:
            return None
        return list(self._entry.tokens)

    async def invalidate(self) -> None:
        """Drop the cached entry and its persisted copy. Idempotent."""
        async with self._lock:
            self._clear()

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        return {
            "ready": self.is_ready,
            "cached_tokens": len(self._entry.tokens) if self._entry else 0,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "disk_hits": self.disk_hits,
            "tokenizations": self.tokenizations,
            "persistence_failures": self.persistence_failures,
        }

    async def _warm_up(self, prompt_text: str, tokenize: TokenizeFn) -> None:
        fingerprint = fingerprint_text(prompt_text)

        async with self._lock:
            if self._entry is not None:
                if self._entry.fingerprint == fingerprint:
                    self.cache_hits += 1
                    logger.debug("Prefix cache hit")
                    return
                logger.info("System prompt changed, invalidating prefix cache")
                self._clear()

            tokens = self._load_persisted(fingerprint)
            if tokens is not None:
                self.disk_hits += 1
                self._entry = PromptCacheEntry(fingerprint, tokens, persisted=True)
                logger.info(f"Loaded {len(tokens)} system prompt tokens from disk")
                return

            self.cache_misses += 1
            try:
                tokens = await self._run_tokenizer(tokenize, prompt_text)
            except Exception as e:
                logger.error(f"Failed to tokenize system prompt: {e}")
                return
            self.tokenizations += 1

            persisted = self._persist(fingerprint, tokens)
            self._entry = PromptCacheEntry(fingerprint, tokens, persisted=persisted)
            logger.info(f"Tokenized and cached {len(tokens)} system prompt tokens")

    @staticmethod
    async def _run_tokenizer(tokenize: TokenizeFn, text: str) -> List[int]:
        if inspect.iscoroutinefunction(tokenize):
            result = await tokenize(text)
        else:
            result = await asyncio.to_thread(tokenize, text)
            if inspect.isawaitable(result):
                result = await result
        return [int(t) for t in result]

    def _load_persisted(self, fingerprint: str) -> Optional[List[int]]:
        # Stores are injected, so any store error degrades to a memory-only cache.
        try:
            data = self._store.load()
        except Exception as e:
            self.persistence_failures += 1
            logger.warning(f"Prefix cache read failed, treating as miss: {e}")
            return None
        if data is None:
            return None

        try:
            stored_fingerprint, tokens = decode_entry(data)
        except ValueError as e:
            logger.warning(f"Discarding corrupt prefix cache blob: {e}")
            self._delete_persisted()
            return None

        if stored_fingerprint != fingerprint:
            logger.info("Persisted prefix cache is stale, discarding")
            self._delete_persisted()
            return None
        return tokens

    def _persist(self, fingerprint: str, tokens: List[int]) -> bool:
        try:
            self._store.save(encode_entry(fingerprint, tokens))
        except Exception as e:
            self.persistence_failures += 1
            logger.warning(f"Prefix cache write failed, keeping in memory only: {e}")
            return False
        return True

    def _delete_persisted(self) -> None:
        try:
            self._store.delete()
        except Exception as e:
            self.persistence_failures += 1
            logger.warning(f"Prefix cache delete failed: {e}")

    def _clear(self) -> None:
        self._entry = None
        self._delete_persisted()
