"""
Sliding Window Context

Holds the rolling conversation token sequence. When it grows past
max_context_tokens, the oldest tokens are folded into a fixed-width summary
vector and only the most recent window_size tokens are kept verbatim.
Queries can be augmented with snippets retrieved from conversation history.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import torch

from ..errors import ConfigError
from ..specdec.interfaces import HistorySearch
from .reducers import MeanPoolReducer, SummaryReducer

logger = logging.getLogger(__name__)


@dataclass
class ContextSnapshot:
    """Copy of the context state handed to the generation step."""

    summary: Optional[torch.Tensor]
    recent_tokens: List[int] = field(default_factory=list)
    retrieved_snippets: List[str] = field(default_factory=list)
    total_seen: int = 0


class ContextWindow:
    """Bounded conversation context with summary compression."""

    def __init__(
        self,
        max_context_tokens: int = 4096,
        window_size: int = 3072,
        compression_target: int = 512,
        reducer: Optional[SummaryReducer] = None,
        history_search: Optional[HistorySearch] = None,
        search_timeout: Optional[float] = 2.0,
        max_snippets: int = 3,
    ):
        """
        Initialize the context window.

        Args:
            max_context_tokens: Token count above which compression triggers
            window_size: Tokens kept verbatim after compression
            compression_target: Width of the summary vector
            reducer: Reduction used to fold evicted tokens (mean pooling if None)
            history_search: Collaborator used for retrieval augmentation
            search_timeout: Deadline in seconds for a history search
            max_snippets: Maximum number of retrieved snippets per query
        """
        if window_size >= max_context_tokens:
            raise ConfigError(
                f"window_size ({window_size}) must be smaller than "
                f"max_context_tokens ({max_context_tokens})"
            )
        if window_size <= 0 or compression_target <= 0:
            raise ConfigError("window_size and compression_target must be positive")

        self.max_context_tokens = max_context_tokens
        self.window_size = window_size
        self.compression_target = compression_target
        self.reducer = reducer or MeanPoolReducer()
        self.history_search = history_search
        self.search_timeout = search_timeout
        self.max_snippets = max_snippets

        self._tokens: List[int] = []
        self._summary: Optional[torch.Tensor] = None
        self.total_seen = 0
        self.summarized_tokens = 0
        self.compressions = 0

    def __len__(self) -> int:
        return len(self._tokens)

    @property
    def has_summary(self) -> bool:
        return self._summary is not None

    def append(self, new_tokens: Sequence[int]) -> None:
        """
        Append a turn's tokens, compressing before returning if over the limit.

        Args:
            new_tokens: Token IDs to append
        """
        self._tokens.extend(int(t) for t in new_tokens)
        self.total_seen += len(new_tokens)

        if len(self._tokens) > self.max_context_tokens:
            self._compress()

    def _compress(self) -> None:
        excess = len(self._tokens) - self.window_size
        if excess <= 0:
            return

        evicted = self._tokens[:excess]
        del self._tokens[:excess]

        self._summary = self.reducer.reduce(
            evicted, self._summary, self.summarized_tokens, self.compression_target
        )
        self.summarized_tokens += excess
        self.compressions += 1
        logger.info(
            f"Compressed {excess} tokens into summary "
            f"(total summarized: {self.summarized_tokens})"
        )

    async def get_context(self, query: Optional[str] = None) -> ContextSnapshot:
        """
        Get the current context, optionally augmented with retrieved history.

        Args:
            query: Text to search history for; no retrieval when None or empty

        Returns:
            ContextSnapshot holding copies of the summary and recent tokens
        """
        snapshot = ContextSnapshot(
            summary=self._summary.clone() if self._summary is not None else None,
            recent_tokens=list(self._tokens),
            total_seen=self.total_seen,
        )
        if query:
            snapshot.retrieved_snippets = await self._retrieve(query)
        return snapshot

    async def _retrieve(self, query: str) -> List[str]:
        if self.history_search is None:
            return []

        try:
            results = await asyncio.wait_for(
                self.history_search.search(query), timeout=self.search_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"History search timed out after {self.search_timeout}s, "
                "continuing without retrieval"
            )
            return []
        except Exception as e:
            logger.warning(f"History search failed, continuing without retrieval: {e}")
            return []

        return [
            f"[History {i}] {text}"
            for i, text in enumerate(results[: self.max_snippets], start=1)
        ]

    def clear(self) -> None:
        """Start a new conversation."""
        self._tokens = []
        self._summary = None
        self.total_seen = 0
        self.summarized_tokens = 0
        self.compressions = 0
        logger.debug("Context window cleared")

    def get_stats(self) -> Dict[str, Any]:
        """Get context window statistics."""
        return {
            "recent_tokens": len(self._tokens),
            "total_seen": self.total_seen,
            "summarized_tokens": self.summarized_tokens,
            "compressions": self.compressions,
            "has_summary": self.has_summary,
            "max_context_tokens": self.max_context_tokens,
            "window_size": self.window_size,
            "compression_target": self.compression_target,
        }
