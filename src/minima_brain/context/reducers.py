"""
Summary Reducers for Context Compression

A reducer folds a span of evicted tokens, together with the previous summary,
into a fixed-width vector. The width never depends on how many tokens the
summary represents.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

import torch
import torch.nn.functional as F


class SummaryReducer(ABC):
    """Deterministic reduction of evicted tokens into a summary vector."""

    @abstractmethod
    def reduce(
        self,
        evicted: List[int],
        prior: Optional[torch.Tensor],
        prior_count: int,
        width: int,
    ) -> torch.Tensor:
        """
        Fold `evicted` into the running summary.

        Args:
            evicted: Oldest tokens removed from the window
            prior: Previous summary vector (None before the first compression)
            prior_count: Number of tokens already represented by `prior`
            width: Output width (compression target)

        Returns:
            1-D float tensor of length `width`
        """
        pass


class MeanPoolReducer(SummaryReducer):
    """Adaptive mean pooling of token ids, count-weighted across compressions."""

    def __init__(self, scale: float = 1.0):
        self.scale = scale

    def pool(self, tokens: List[int], width: int) -> torch.Tensor:
        span = torch.tensor(tokens, dtype=torch.float32).view(1, 1, -1) * self.scale
        return F.adaptive_avg_pool1d(span, width).view(-1)

    def reduce(
        self,
        evicted: List[int],
        prior: Optional[torch.Tensor],
        prior_count: int,
        width: int,
    ) -> torch.Tensor:
        pooled = self.pool(evicted, width)
        if prior is None or prior_count <= 0:
            return pooled
        total = prior_count + len(evicted)
        return (prior * prior_count + pooled * len(evicted)) / total
